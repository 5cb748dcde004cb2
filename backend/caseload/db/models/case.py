import datetime as dt
from sqlalchemy import String, Integer, Date, Boolean, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from caseload.db.base import Base
from caseload.db.models._mixins import TimestampMixin

class Case(Base, TimestampMixin):
    __tablename__ = "case_record"
    __table_args__ = (
        UniqueConstraint("case_number", "court_name", "filed_year", name="uq_case_natural_key"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)

    # natural key
    case_number: Mapped[str] = mapped_column(String(128), index=True)
    court_name: Mapped[str] = mapped_column(String(255))
    filed_year: Mapped[int] = mapped_column(Integer)

    caseid_type: Mapped[str] = mapped_column(String(20))
    caseid_no: Mapped[str] = mapped_column(String(50))
    case_type_code: Mapped[str] = mapped_column(String(32), index=True)
    case_type_name: Mapped[str] = mapped_column(String(100))
    court_type: Mapped[str] = mapped_column(String(8))
    filed_date: Mapped[dt.date] = mapped_column(Date)

    original_court: Mapped[str | None] = mapped_column(String(255), nullable=True)
    original_code: Mapped[str | None] = mapped_column(String(50), nullable=True)
    original_case_number: Mapped[str | None] = mapped_column(String(50), nullable=True)
    original_year: Mapped[int | None] = mapped_column(Integer, nullable=True)

    male_applicant: Mapped[int] = mapped_column(Integer, default=0)
    female_applicant: Mapped[int] = mapped_column(Integer, default=0)
    organization_applicant: Mapped[int] = mapped_column(Integer, default=0)
    male_defendant: Mapped[int] = mapped_column(Integer, default=0)
    female_defendant: Mapped[int] = mapped_column(Integer, default=0)
    organization_defendant: Mapped[int] = mapped_column(Integer, default=0)

    has_legal_representation: Mapped[bool] = mapped_column(Boolean, default=False)
    last_activity_date: Mapped[dt.date | None] = mapped_column(Date, nullable=True)
    total_activities: Mapped[int] = mapped_column(Integer, default=0)

    # owned by case management, import only sets them on create
    status: Mapped[str] = mapped_column(String(32), default="ACTIVE")
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    activities = relationship("CaseActivity", back_populates="case", order_by="CaseActivity.id")
