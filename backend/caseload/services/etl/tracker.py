from __future__ import annotations

from sqlalchemy.orm import Session

from caseload.core.logging import logger
from caseload.crud.imports import add_error_details, claim_batch, count_row_errors, update_batch, utcnow
from caseload.db.models.import_batch import ImportBatch, BatchStatus
from caseload.services.etl.aggregator import ErrorAggregator
from caseload.services.etl.validators import ErrorType, ValidationError

# error_logs on the batch row is a bounded digest; every detail lives in import_error_detail
MAX_ERROR_LOGS = 500

ALLOWED = {
    BatchStatus.pending: {BatchStatus.processing, BatchStatus.failed},
    BatchStatus.processing: {BatchStatus.completed, BatchStatus.failed, BatchStatus.partially_completed},
}


class InvalidTransition(RuntimeError):
    pass


class BatchTracker:
    """Owns the lifecycle and running counters of one ImportBatch while a worker processes it."""

    def __init__(self, db: Session, batch: ImportBatch, aggregator: ErrorAggregator):
        self.db = db
        self.batch_id = batch.id
        self.status = BatchStatus(batch.status)
        self.aggregator = aggregator
        self.total = batch.total_records or 0
        self.successful = batch.successful_records or 0
        self.failed = batch.failed_records or 0
        self.empty_rows = batch.empty_rows_skipped or 0
        self.activities_created = batch.activities_created or 0
        self.error_logs: list[dict] = list(batch.error_logs or [])

    # -----------------------------
    # state machine
    # -----------------------------
    def _check(self, new: BatchStatus) -> BatchStatus:
        if new not in ALLOWED.get(self.status, set()):
            raise InvalidTransition(f"{self.batch_id}: {self.status.value} -> {new.value}")
        return new

    def _ensure_writable(self) -> None:
        if self.status.is_terminal:
            raise InvalidTransition(f"batch {self.batch_id} is {self.status.value} and can no longer change")

    def rebind(self, db: Session) -> None:
        self.db = db

    def claim(self, worker_id: str) -> bool:
        ok = claim_batch(self.db, self.batch_id, worker_id)
        if not ok:
            logger.warning("batch_claim_lost", batch_id=self.batch_id, worker_id=worker_id)
        return ok

    def start(self) -> None:
        if self.status == BatchStatus.processing:
            return
        new = self._check(BatchStatus.processing)
        update_batch(self.db, self.batch_id, status=new.value, started_at=utcnow())
        self.status = new
        logger.info("batch_processing", batch_id=self.batch_id)

    # -----------------------------
    # per row
    # -----------------------------
    def row_seen(self) -> None:
        self._ensure_writable()
        self.total += 1

    def _counters(self, **over) -> dict:
        values = dict(
            total_records=self.total,
            successful_records=self.successful,
            failed_records=self.failed,
            empty_rows_skipped=self.empty_rows,
            activities_created=self.activities_created,
        )
        values.update(over)
        return values

    def record_success(self, activity_created: bool = False, commit: bool = True) -> None:
        """Count a row as successful; commits together with whatever the row flushed."""
        self._ensure_writable()
        created = self.activities_created + (1 if activity_created else 0)
        update_batch(
            self.db,
            self.batch_id,
            commit=False,
            **self._counters(successful_records=self.successful + 1, activities_created=created),
        )
        if commit:
            self.db.commit()
        self.successful += 1
        self.activities_created = created

    def record_failure(self, error: ValidationError) -> None:
        self._ensure_writable()
        self.aggregator.add(error)
        pending = self.aggregator.drain()
        logs = self.error_logs
        if len(logs) < MAX_ERROR_LOGS:
            logs = logs + [error.as_log()]
        try:
            add_error_details(self.db, self.batch_id, pending, commit=False)
            update_batch(
                self.db,
                self.batch_id,
                commit=False,
                error_logs=logs,
                **self._counters(failed_records=self.failed + 1),
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            self.aggregator.discard_pending()
            raise
        self.aggregator.mark_stored(len(pending))
        self.error_logs = logs
        self.failed += 1

    def set_empty_rows(self, n: int) -> None:
        self.empty_rows = n

    # -----------------------------
    # finalize
    # -----------------------------
    def finalize(self, fatal: ValidationError | None = None) -> BatchStatus:
        self._ensure_writable()
        logs = list(self.error_logs)

        if fatal is not None and fatal.error_type == ErrorType.file and self.status == BatchStatus.pending:
            # nothing was touched
            self.total = self.successful = self.failed = 0
            new = BatchStatus.failed
        elif fatal is not None:
            # rows never read count as neither success nor failure
            self.total = self.successful + self.failed
            if fatal.error_type == ErrorType.persistence_fatal and self.successful > 0:
                new = BatchStatus.partially_completed
            else:
                new = BatchStatus.failed
        else:
            if self.successful + self.failed != self.total:
                logger.error(
                    "batch_counter_mismatch",
                    batch_id=self.batch_id,
                    total=self.total,
                    successful=self.successful,
                    failed=self.failed,
                )
                self.total = self.successful + self.failed
            if self.successful == 0:
                new = BatchStatus.failed
                if self.total == 0:
                    logs.append({"type": ErrorType.validation.value, "message": "File contained no data rows"})
            elif self.failed == 0:
                new = BatchStatus.completed
            else:
                new = BatchStatus.partially_completed

        if fatal is not None:
            # a timeout leaves a terminal detail row; other job-level failures live in error_logs only
            if fatal.error_type == ErrorType.timeout:
                self.aggregator.add(fatal)
            logs.append(fatal.as_log())
        pending = self.aggregator.drain()
        try:
            if pending:
                add_error_details(self.db, self.batch_id, pending, commit=False)

            stored = count_row_errors(self.db, self.batch_id)
            if stored != self.failed:
                msg = f"Stored row errors ({stored}) do not match failed_records ({self.failed})"
                logger.error("batch_error_count_mismatch", batch_id=self.batch_id, stored=stored, failed=self.failed)
                logs.append({"type": ErrorType.consistency.value, "message": msg})
                new = BatchStatus.failed

            # a batch that never reached its first row can only fail
            new = self._check(BatchStatus.failed if self.status == BatchStatus.pending else new)

            update_batch(
                self.db,
                self.batch_id,
                commit=False,
                status=new.value,
                completed_at=utcnow(),
                error_logs=logs,
                **self._counters(),
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            self.aggregator.discard_pending()
            raise
        self.status = new
        self.aggregator.mark_stored(len(pending))
        self.error_logs = logs
        logger.info(
            "batch_finalized",
            batch_id=self.batch_id,
            status=self.status.value,
            total=self.total,
            successful=self.successful,
            failed=self.failed,
        )
        return self.status
