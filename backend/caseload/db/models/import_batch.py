import datetime as dt
from enum import Enum
from sqlalchemy import String, ForeignKey, DateTime, Integer, Boolean, JSON, BigInteger
from sqlalchemy.orm import Mapped, mapped_column, relationship
from caseload.db.base import Base
from caseload.db.models._mixins import TimestampMixin


class BatchStatus(str, Enum):
    pending = "PENDING"
    processing = "PROCESSING"
    completed = "COMPLETED"
    failed = "FAILED"
    partially_completed = "PARTIALLY_COMPLETED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({BatchStatus.completed, BatchStatus.failed, BatchStatus.partially_completed})
IN_FLIGHT_STATUSES = frozenset({BatchStatus.pending, BatchStatus.processing})


class ImportBatch(Base, TimestampMixin):
    __tablename__ = "import_batch"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    filename: Mapped[str] = mapped_column(String(512))
    file_size: Mapped[int] = mapped_column(BigInteger, default=0)
    checksum: Mapped[str] = mapped_column(String(128), index=True)
    status: Mapped[str] = mapped_column(String(32), default=BatchStatus.pending.value, index=True)
    dry_run: Mapped[bool] = mapped_column(Boolean, default=True)

    total_records: Mapped[int] = mapped_column(Integer, default=0)
    successful_records: Mapped[int] = mapped_column(Integer, default=0)
    failed_records: Mapped[int] = mapped_column(Integer, default=0)
    empty_rows_skipped: Mapped[int] = mapped_column(Integer, default=0)
    # activities this batch inserted; rows whose activity already existed count as successes without one
    activities_created: Mapped[int] = mapped_column(Integer, default=0)
    error_logs: Mapped[list] = mapped_column(JSON, default=list)

    worker_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    cancel_requested: Mapped[bool] = mapped_column(Boolean, default=False)
    started_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_by: Mapped[int] = mapped_column(ForeignKey("app_user.id"), index=True)

    creator = relationship("User")
    errors = relationship("ImportErrorDetail", back_populates="batch", order_by="ImportErrorDetail.id")
