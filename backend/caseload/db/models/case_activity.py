import datetime as dt
from sqlalchemy import ForeignKey, String, Integer, Date, Boolean, Text, JSON, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from caseload.db.base import Base
from caseload.db.models._mixins import TimestampMixin

class CaseActivity(Base, TimestampMixin):
    __tablename__ = "case_activity"
    __table_args__ = (
        UniqueConstraint("case_id", "row_fingerprint", name="uq_case_activity_fingerprint"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    case_id: Mapped[int] = mapped_column(ForeignKey("case_record.id", ondelete="CASCADE"), index=True)
    import_batch_id: Mapped[str | None] = mapped_column(
        ForeignKey("import_batch.id", ondelete="SET NULL"), nullable=True, index=True
    )

    activity_date: Mapped[dt.date] = mapped_column(Date, index=True)
    activity_type: Mapped[str] = mapped_column(String(100))
    outcome: Mapped[str] = mapped_column(String(100))
    reason_for_adjournment: Mapped[str | None] = mapped_column(Text, nullable=True)
    next_hearing_date: Mapped[dt.date | None] = mapped_column(Date, nullable=True)

    primary_judge: Mapped[str] = mapped_column(String(255))
    judges: Mapped[list] = mapped_column(JSON, default=list)
    has_legal_representation: Mapped[bool] = mapped_column(Boolean, default=False)
    applicant_witnesses: Mapped[int] = mapped_column(Integer, default=0)
    defendant_witnesses: Mapped[int] = mapped_column(Integer, default=0)
    custody_status: Mapped[str] = mapped_column(String(32))
    details: Mapped[str | None] = mapped_column(Text, nullable=True)

    row_fingerprint: Mapped[str] = mapped_column(String(64))

    case = relationship("Case", back_populates="activities")
