"""Worker-side row loop for one import batch.

Rows are processed one at a time and each row is its own unit of work: the
case/activity writes and the batch counter update commit together, or the
row is rolled back and recorded as a failure. Timeout and cancellation are
checked between rows only.
"""
from __future__ import annotations

import time
from collections import Counter
from contextlib import closing
from dataclasses import dataclass, field
from typing import Callable, Mapping

from sqlalchemy import select
from sqlalchemy.exc import DBAPIError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session
from structlog.contextvars import bound_contextvars
from tenacity import Retrying, retry_if_exception, stop_after_attempt, wait_exponential

from caseload.core.config import settings
from caseload.core.logging import logger
from caseload.crud.imports import get_batch, ping_store, reclaim_batch
from caseload.db.models.import_batch import ImportBatch, BatchStatus
from caseload.schemas.imports import ImportJobIn
from caseload.services.coordination import Coordinator
from caseload.services.etl.aggregator import ErrorAggregator, error_from_failure
from caseload.services.etl.mapper import default_case_types, map_row
from caseload.services.etl.parsers.case_returns import (
    DEFAULT_HEADER_MAPPING,
    HeaderMapping,
    ParsedRow,
    ParseStats,
    RowResult,
    iter_case_returns,
)
from caseload.services.etl.tracker import BatchTracker
from caseload.services.etl.upsert import UpsertEngine, UpsertResult
from caseload.services.etl.validators import (
    ErrorType,
    FileFatalError,
    ImportPipelineError,
    MappingError,
    PersistenceFatalError,
    UpsertError,
    ValidationError,
)

# the db cancel flag is a fallback for a lost coordinator flag, no need to read it every row
CANCEL_POLL_ROWS = 25


def is_transient_db_error(exc: BaseException) -> bool:
    if isinstance(exc, OperationalError):
        return True
    return isinstance(exc, DBAPIError) and bool(exc.connection_invalidated)


class JobAborted(ImportPipelineError):
    def __init__(self, error: ValidationError):
        super().__init__(error.message)
        self.error = error


@dataclass
class ImportOutcome:
    batch_id: str
    status: BatchStatus
    dry_run: bool
    total: int
    successful: int
    failed: int
    empty_rows: int
    outcomes: dict[str, int] = field(default_factory=dict)
    fatal: ValidationError | None = None


class CaseReturnImporter:
    def __init__(
        self,
        db: Session,
        job: ImportJobIn,
        coordinator: Coordinator,
        worker_id: str,
        clock: Callable[[], float] = time.monotonic,
        mapping: HeaderMapping = DEFAULT_HEADER_MAPPING,
        case_types: Mapping[str, str] | None = None,
        timeout: float | None = None,
        retry_attempts: int | None = None,
        retry_backoff: float | None = None,
        allow_takeover: bool = False,
    ):
        self.db = db
        self.job = job
        self.coordinator = coordinator
        self.worker_id = worker_id
        self.clock = clock
        self.mapping = mapping
        self.case_types = case_types if case_types is not None else default_case_types()
        self.timeout = timeout if timeout is not None else settings.IMPORT_JOB_TIMEOUT_SECONDS
        self.retry_attempts = retry_attempts or settings.IMPORT_ROW_RETRY_ATTEMPTS
        self.retry_backoff = (
            retry_backoff if retry_backoff is not None else settings.IMPORT_ROW_RETRY_BACKOFF_SECONDS
        )
        # only a redelivered task may take over a batch from a worker that stopped heartbeating
        self.allow_takeover = allow_takeover
        self.tracker: BatchTracker | None = None
        self.batch: ImportBatch | None = None
        self.dry_run = True
        self.outcomes: Counter = Counter()

    # -----------------------------
    # entry point
    # -----------------------------
    def run(self) -> ImportOutcome | None:
        """Claim and process the batch. None when the batch is missing or owned by another live worker."""
        batch_id = self.job.batch_id
        batch = get_batch(self.db, batch_id)
        if batch is None:
            logger.error("import_batch_missing", batch_id=batch_id)
            return None
        self.batch = batch
        self.dry_run = bool(batch.dry_run)
        checksum = batch.checksum
        self.tracker = BatchTracker(self.db, batch, ErrorAggregator(batch.id))
        if not self.tracker.claim(self.worker_id) and not (self.allow_takeover and self._take_over(batch)):
            return None

        self.coordinator.mark_active(batch_id)
        try:
            with bound_contextvars(batch_id=batch_id, worker_id=self.worker_id):
                return self._run()
        finally:
            self.coordinator.mark_idle(batch_id)
            if self.tracker.status.is_terminal:
                self.coordinator.release_checksum(checksum, batch_id)

    def _take_over(self, batch: ImportBatch) -> bool:
        self.db.refresh(batch)
        owner = batch.worker_id
        if owner is None or BatchStatus(batch.status).is_terminal or self.coordinator.is_active(batch.id):
            return False
        if not reclaim_batch(self.db, batch.id, self.worker_id, owner):
            return False
        self.db.refresh(batch)
        self.tracker = BatchTracker(self.db, batch, ErrorAggregator(batch.id))
        logger.warning("batch_reclaimed", batch_id=batch.id, worker_id=self.worker_id, previous_worker=owner)
        return True

    def _run(self) -> ImportOutcome:
        tracker = self.tracker
        stats = ParseStats()
        engine = UpsertEngine(self.db, self.coordinator, dry_run=self.dry_run)
        deadline = self.clock() + self.timeout
        fatal = None

        logger.info(
            "import_started",
            batch_id=tracker.batch_id,
            worker_id=self.worker_id,
            file=self.job.filename,
            dry_run=self.dry_run,
        )
        try:
            with closing(iter_case_returns(self.job.file_path, self.mapping, stats=stats)) as rows:
                for seen, item in enumerate(rows):
                    self._check_abort(deadline, seen)
                    tracker.start()
                    tracker.set_empty_rows(stats.empty_rows)
                    tracker.row_seen()
                    try:
                        self._process(item, engine)
                    except SQLAlchemyError as e:
                        self._persistence_failure(item, e)
        except FileFatalError as e:
            logger.error("import_file_fatal", batch_id=tracker.batch_id, error=str(e))
            fatal = ValidationError(str(e), ErrorType.file)
        except PersistenceFatalError as e:
            logger.error("import_persistence_fatal", batch_id=tracker.batch_id, error=str(e))
            fatal = ValidationError(str(e), ErrorType.persistence_fatal)
        except JobAborted as e:
            logger.warning("import_aborted", batch_id=tracker.batch_id, reason=e.error.error_type.value)
            fatal = e.error

        tracker.set_empty_rows(stats.empty_rows)
        status = tracker.finalize(fatal)

        outcome = ImportOutcome(
            batch_id=tracker.batch_id,
            status=status,
            dry_run=self.dry_run,
            total=tracker.total,
            successful=tracker.successful,
            failed=tracker.failed,
            empty_rows=tracker.empty_rows,
            outcomes=dict(self.outcomes),
            fatal=fatal,
        )
        logger.info(
            "import_finished",
            batch_id=outcome.batch_id,
            status=status.value,
            total=outcome.total,
            successful=outcome.successful,
            failed=outcome.failed,
            empty_rows=outcome.empty_rows,
            **outcome.outcomes,
        )
        return outcome

    # -----------------------------
    # between rows
    # -----------------------------
    def _check_abort(self, deadline: float, seen: int) -> None:
        batch_id = self.tracker.batch_id
        self.coordinator.heartbeat(batch_id)
        if self.clock() >= deadline:
            raise JobAborted(ValidationError(f"Import exceeded its time budget of {self.timeout:g}s", ErrorType.timeout))
        cancelled = self.coordinator.is_cancelled(batch_id)
        if not cancelled and seen % CANCEL_POLL_ROWS == 0:
            cancelled = bool(
                self.db.execute(select(ImportBatch.cancel_requested).where(ImportBatch.id == batch_id)).scalar()
            )
        if cancelled:
            raise JobAborted(ValidationError("Import was cancelled", ErrorType.cancelled))

    # -----------------------------
    # one row
    # -----------------------------
    def _process(self, item: RowResult, engine: UpsertEngine) -> None:
        tracker = self.tracker
        if not isinstance(item, ParsedRow):
            tracker.record_failure(error_from_failure(item))
            return

        try:
            mapped = map_row(item.row, item.raw, self.case_types)
        except MappingError as e:
            tracker.record_failure(ValidationError(str(e), ErrorType.mapping, item.row_number, e.column, item.raw))
            return

        try:
            res = self._apply(engine, mapped)
        except UpsertError as e:
            self.db.rollback()
            tracker.record_failure(ValidationError(str(e), e.error_type, item.row_number, None, item.raw))
            return
        except SQLAlchemyError as e:
            self._persistence_failure(item, e)
            return

        key = res.outcome
        if res.outcome == "dry_run_simulated":
            key = "would_create" if res.would_create else "would_update"
        self.outcomes[key] += 1
        if res.activity_created:
            self.outcomes["activities_created"] += 1

    def _apply(self, engine: UpsertEngine, mapped) -> UpsertResult:
        def _rollback(retry_state) -> None:
            logger.warning(
                "row_retry",
                batch_id=self.tracker.batch_id,
                attempt=retry_state.attempt_number,
                error=str(retry_state.outcome.exception()),
            )
            self.db.rollback()

        retryer = Retrying(
            stop=stop_after_attempt(self.retry_attempts),
            wait=wait_exponential(multiplier=self.retry_backoff, max=5),
            retry=retry_if_exception(is_transient_db_error),
            before_sleep=_rollback,
            reraise=True,
        )
        return retryer(
            engine.apply,
            mapped,
            self.tracker.batch_id,
            on_applied=lambda res: self.tracker.record_success(activity_created=res.activity_created),
        )

    def _persistence_failure(self, item: RowResult, exc: SQLAlchemyError) -> None:
        self.db.rollback()
        if ping_store(self.db):
            message = f"Database error: {exc.__class__.__name__}: {getattr(exc, 'orig', None) or exc}"
            try:
                self.tracker.record_failure(
                    ValidationError(message, ErrorType.persistence, item.row_number, None, item.raw)
                )
                return
            except SQLAlchemyError as e:
                exc = e
        raise PersistenceFatalError(f"Persistence store unavailable: {exc}") from exc


def run_import(
    db: Session,
    job: ImportJobIn,
    coordinator: Coordinator,
    worker_id: str,
    **kwargs,
) -> ImportOutcome | None:
    return CaseReturnImporter(db, job, coordinator, worker_id, **kwargs).run()
