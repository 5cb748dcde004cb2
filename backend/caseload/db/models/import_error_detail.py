from sqlalchemy import ForeignKey, Integer, String, Text, JSON
from sqlalchemy.orm import Mapped, mapped_column, relationship
from caseload.db.base import Base
from caseload.db.models._mixins import TimestampMixin

class ImportErrorDetail(Base, TimestampMixin):
    __tablename__ = "import_error_detail"

    id: Mapped[int] = mapped_column(primary_key=True)
    batch_id: Mapped[str] = mapped_column(ForeignKey("import_batch.id", ondelete="CASCADE"), index=True)
    # NULL for job-level details (timeout, cancellation, store outage)
    row_number: Mapped[int | None] = mapped_column(Integer, nullable=True)
    raw_row_data: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    error_type: Mapped[str] = mapped_column(String(64))
    error_message: Mapped[str] = mapped_column(Text)
    field: Mapped[str | None] = mapped_column(String(128), nullable=True)

    batch = relationship("ImportBatch", back_populates="errors")
