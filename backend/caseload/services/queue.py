"""Submission, cancellation and statistics for the import job queue.

The queue itself is Celery on a Redis broker; this module owns what happens
around it: the duplicate-submission guard, creating the PENDING batch, and
reporting broker health through ``stats()``.
"""
from __future__ import annotations

import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable

from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError, TimeoutError as RedisTimeoutError
from sqlalchemy.orm import Session
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from caseload.core.config import settings
from caseload.core.logging import logger
from caseload.crud.imports import (
    create_batch,
    fail_abandoned_batch,
    fail_unclaimed_batch,
    find_active_batch_by_checksum,
    get_batch,
    request_cancel,
    update_batch,
    utcnow,
)
from caseload.crud.users import resolve_submitter
from caseload.db.models.import_batch import BatchStatus
from caseload.schemas.imports import ImportJobIn
from caseload.services.coordination import Coordinator
from caseload.services.etl.validators import DuplicateSubmissionError, ErrorType, QueueUnavailableError

Enqueue = Callable[[ImportJobIn, str], None]
Revoke = Callable[[str], None]


def effective_dry_run(requested: bool, live_writes: bool | None = None) -> bool:
    """Live writes happen only when the deployment allows them and the job asks for them."""
    live_writes = settings.IMPORT_LIVE_WRITES if live_writes is None else live_writes
    return requested or not live_writes


def celery_enqueue(job: ImportJobIn, batch_id: str) -> None:
    from caseload.worker.tasks import run_import_task

    run_import_task.apply_async(
        args=[job.model_dump(mode="json")],
        task_id=batch_id,
        queue=settings.IMPORT_QUEUE_NAME,
        retry=True,
        retry_policy={
            "max_retries": settings.BROKER_MAX_RETRIES,
            "interval_start": 0,
            "interval_step": settings.BROKER_RETRY_BACKOFF_SECONDS,
            "interval_max": 5,
        },
    )


def celery_revoke(batch_id: str) -> None:
    from caseload.worker.celery_app import celery_app

    celery_app.control.revoke(batch_id)


@dataclass
class SubmitResult:
    accepted: bool
    batch_id: str
    dry_run: bool
    reason: str | None = None


@dataclass
class QueueStats:
    queue_depth: int | None
    active_workers: int | None
    broker_connected: bool
    broker_state: str
    retry_attempts: int
    last_error: str | None


class BrokerMonitor:
    """Runs broker calls through a bounded retry and remembers how the last one went.

    States: ``connected``, ``retrying`` (a call is backing off) and
    ``unavailable`` (retries exhausted; the caller gets QueueUnavailableError).
    """

    CONNECTED = "connected"
    RETRYING = "retrying"
    UNAVAILABLE = "unavailable"

    def __init__(
        self,
        max_retries: int | None = None,
        backoff: float | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.max_retries = max_retries or settings.BROKER_MAX_RETRIES
        self.backoff = backoff if backoff is not None else settings.BROKER_RETRY_BACKOFF_SECONDS
        self.sleep = sleep
        self.state = self.CONNECTED
        self.attempts = 0
        self.last_error: str | None = None

    def _before_sleep(self, retry_state) -> None:
        self.state = self.RETRYING
        self.attempts = retry_state.attempt_number
        self.last_error = str(retry_state.outcome.exception())
        logger.warning("broker_retry", attempt=self.attempts, error=self.last_error)

    def call(self, fn: Callable[..., Any], *args: Any) -> Any:
        self.attempts = 0
        retryer = Retrying(
            stop=stop_after_attempt(self.max_retries),
            wait=wait_exponential(multiplier=self.backoff, max=10),
            retry=retry_if_exception_type((RedisConnectionError, RedisTimeoutError)),
            before_sleep=self._before_sleep,
            sleep=self.sleep,
            reraise=True,
        )
        try:
            result = retryer(fn, *args)
        except RedisError as e:
            self.state = self.UNAVAILABLE
            self.last_error = str(e)
            logger.error("broker_unavailable", error=self.last_error, attempts=self.attempts)
            raise QueueUnavailableError(f"Broker unavailable: {e}") from e
        self.state = self.CONNECTED
        return result


class ImportQueue:
    def __init__(
        self,
        db: Session,
        coordinator: Coordinator,
        enqueue: Enqueue = celery_enqueue,
        revoke: Revoke = celery_revoke,
        monitor: BrokerMonitor | None = None,
        live_writes: bool | None = None,
        queue_name: str | None = None,
    ):
        self.db = db
        self.coordinator = coordinator
        self.enqueue = enqueue
        self.revoke = revoke
        self.monitor = monitor or BrokerMonitor()
        self.live_writes = live_writes
        self.queue_name = queue_name or settings.IMPORT_QUEUE_NAME

    # -----------------------------
    # submit
    # -----------------------------
    def submit(self, job: ImportJobIn) -> SubmitResult:
        dry_run = effective_dry_run(job.dry_run, self.live_writes)
        batch_id = job.batch_id or uuid.uuid4().hex
        job = job.model_copy(update={"batch_id": batch_id, "dry_run": dry_run})

        claimed = self.monitor.call(
            self.coordinator.claim_checksum, job.checksum, batch_id, settings.IMPORT_CHECKSUM_GUARD_TTL_SECONDS
        )
        if not claimed:
            owner = self.monitor.call(self.coordinator.checksum_owner, job.checksum)
            logger.warning("import_duplicate_rejected", checksum=job.checksum, existing_batch_id=owner)
            raise DuplicateSubmissionError(job.checksum, owner)

        # the guard key can expire under a long backlog; the batch table is the second line
        active = find_active_batch_by_checksum(self.db, job.checksum)
        if active is not None:
            self.coordinator.release_checksum(job.checksum, batch_id)
            logger.warning("import_duplicate_rejected", checksum=job.checksum, existing_batch_id=active.id)
            raise DuplicateSubmissionError(job.checksum, active.id)

        try:
            user = resolve_submitter(self.db, job.user_id, settings.IMPORT_SYSTEM_USER_LOGIN)
            create_batch(
                self.db,
                batch_id=batch_id,
                filename=job.filename,
                file_size=job.file_size,
                checksum=job.checksum,
                created_by=user.id,
                dry_run=dry_run,
            )
        except Exception:
            self.db.rollback()
            self.coordinator.release_checksum(job.checksum, batch_id)
            raise

        try:
            self.enqueue(job, batch_id)
        except Exception as e:
            logger.exception("import_enqueue_failed", batch_id=batch_id, error=str(e))
            batch = get_batch(self.db, batch_id)
            update_batch(
                self.db,
                batch_id,
                status=BatchStatus.failed.value,
                completed_at=utcnow(),
                error_logs=list(batch.error_logs or []) + [
                    {"type": ErrorType.persistence_fatal.value, "message": f"Could not enqueue job: {e}"}
                ],
            )
            self.coordinator.release_checksum(job.checksum, batch_id)
            raise QueueUnavailableError(f"Could not enqueue import {batch_id}: {e}") from e

        logger.info("import_submitted", batch_id=batch_id, checksum=job.checksum, dry_run=dry_run, user_id=user.id)
        return SubmitResult(accepted=True, batch_id=batch_id, dry_run=dry_run)

    # -----------------------------
    # cancel
    # -----------------------------
    def cancel(self, batch_id: str) -> str | None:
        """Cancel a batch. Returns its status afterwards, None when unknown."""
        batch = get_batch(self.db, batch_id)
        if batch is None:
            return None
        # claim/fail are bulk updates, the identity map may hold an older row
        self.db.refresh(batch)
        if BatchStatus(batch.status).is_terminal:
            return batch.status

        checksum = batch.checksum
        if batch.status == BatchStatus.pending.value and batch.worker_id is None:
            self.revoke(batch_id)
            if fail_unclaimed_batch(self.db, batch_id, "Cancelled before a worker claimed the job"):
                self.coordinator.release_checksum(checksum, batch_id)
                logger.info("import_cancelled_unclaimed", batch_id=batch_id)
                return BatchStatus.failed.value

        # flag first: a worker that turns active after the liveness check still reads it before its first row
        self.coordinator.request_cancel(batch_id)
        owner = batch.worker_id
        if owner is not None and not self.coordinator.is_active(batch_id):
            # the owning worker stopped heartbeating, nobody would ever read the cancel flag
            if fail_abandoned_batch(self.db, batch_id, owner, f"Cancelled after worker {owner} stopped"):
                self.coordinator.release_checksum(checksum, batch_id)
                logger.warning("import_cancelled_abandoned", batch_id=batch_id, worker_id=owner)
                return BatchStatus.failed.value

        # claimed by a live worker: it stops at the next row boundary
        request_cancel(self.db, batch_id)
        logger.info("import_cancel_requested", batch_id=batch_id)
        self.db.expire_all()
        return get_batch(self.db, batch_id).status

    # -----------------------------
    # stats
    # -----------------------------
    def stats(self) -> QueueStats:
        try:
            self.monitor.call(self.coordinator.ping)
            depth = self.monitor.call(self.coordinator.queue_depth, self.queue_name)
            active = self.monitor.call(self.coordinator.active_count)
        except QueueUnavailableError:
            return QueueStats(
                queue_depth=None,
                active_workers=None,
                broker_connected=False,
                broker_state=self.monitor.state,
                retry_attempts=self.monitor.attempts,
                last_error=self.monitor.last_error,
            )
        return QueueStats(
            queue_depth=depth,
            active_workers=active,
            broker_connected=True,
            broker_state=self.monitor.state,
            retry_attempts=self.monitor.attempts,
            last_error=self.monitor.last_error,
        )
