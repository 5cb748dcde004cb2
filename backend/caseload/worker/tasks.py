import os
import socket
from sqlalchemy.orm import Session

from caseload.worker.celery_app import celery_app
from caseload.core.logging import logger
from caseload.db import models  # noqa: F401  registers every mapper
from caseload.db.session import SessionLocal
from caseload.crud.imports import update_batch, utcnow
from caseload.db.models.import_batch import BatchStatus
from caseload.schemas.imports import ImportJobIn
from caseload.services.coordination import RedisCoordinator, make_redis_client
from caseload.services.etl.importer import CaseReturnImporter
from caseload.services.etl.validators import ErrorType, ValidationError


def _worker_id(task) -> str:
    host = task.request.hostname or socket.gethostname()
    return f"{host}:{os.getpid()}"


def _mark_failed(db: Session, importer: CaseReturnImporter, message: str) -> None:
    tracker = importer.tracker
    if tracker is None:
        update_batch(db, importer.job.batch_id, status=BatchStatus.failed.value, completed_at=utcnow())
    elif not tracker.status.is_terminal:
        tracker.rebind(db)
        tracker.finalize(ValidationError(f"Worker error: {message}", ErrorType.persistence_fatal))
    importer.coordinator.release_checksum(importer.job.checksum, importer.job.batch_id)


@celery_app.task(name="imports.run_import", bind=True)
def run_import_task(self, job: dict):
    job_in = ImportJobIn.model_validate(job)
    batch_id = job_in.batch_id
    db: Session = SessionLocal()
    coordinator = RedisCoordinator(make_redis_client())
    # acks_late redelivers the task when the worker that held it died mid-run
    redelivered = bool((self.request.delivery_info or {}).get("redelivered"))
    importer = CaseReturnImporter(db, job_in, coordinator, _worker_id(self), allow_takeover=redelivered)
    try:
        outcome = importer.run()
        if outcome is None:
            logger.warning("import_task_skipped", batch_id=batch_id, task_id=self.request.id)
            return None
        return {
            "batch_id": outcome.batch_id,
            "status": outcome.status.value,
            "total": outcome.total,
            "successful": outcome.successful,
            "failed": outcome.failed,
        }

    except Exception as e:
        logger.exception("import_failed", batch_id=batch_id, error=str(e))

        # the session may be mid-transaction in an aborted state; roll back first
        try:
            db.rollback()
            _mark_failed(db, importer, str(e))
        except Exception as e2:
            logger.exception("import_failed_status_update_failed", batch_id=batch_id, error=str(e2))
            # second session in case the first one is unusable
            try:
                db2: Session = SessionLocal()
                try:
                    _mark_failed(db2, importer, str(e))
                finally:
                    db2.close()
            except Exception as e3:
                logger.exception(
                    "import_failed_status_update_failed_second_attempt",
                    batch_id=batch_id,
                    error=str(e3),
                )

        raise

    finally:
        db.close()
