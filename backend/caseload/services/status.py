from sqlalchemy import distinct, func
from sqlalchemy.orm import Session

from caseload.core.config import settings
from caseload.core.logging import logger
from caseload.crud.imports import get_batch, list_import_errors, ping_store
from caseload.db.models.case_activity import CaseActivity
from caseload.db.models.import_batch import BatchStatus
from caseload.schemas.imports import ImportStatusOut, VerifyOut
from caseload.services.queue import ImportQueue


def error_summary(db: Session, batch_id: str, limit: int | None = None) -> list[dict]:
    limit = settings.IMPORT_ERROR_SUMMARY_LIMIT if limit is None else limit
    if limit <= 0:
        return []
    items, _total = list_import_errors(db, batch_id, page=1, page_size=limit)
    return [
        {"row": e.row_number, "type": e.error_type, "field": e.field, "message": e.error_message}
        for e in items
    ]


def get_import_status(db: Session, batch_id: str, summary_limit: int | None = None) -> ImportStatusOut | None:
    """Snapshot of one batch with a bounded error summary; the full list is paginated separately."""
    batch = get_batch(db, batch_id)
    if batch is None:
        return None
    return ImportStatusOut(
        batch_id=batch.id,
        status=batch.status,
        total_records=batch.total_records,
        successful_records=batch.successful_records,
        failed_records=batch.failed_records,
        empty_rows_skipped=batch.empty_rows_skipped,
        dry_run=batch.dry_run,
        error_summary=error_summary(db, batch.id, summary_limit),
        job_errors=[e for e in (batch.error_logs or []) if e.get("row") is None],
        started_at=batch.started_at,
        completed_at=batch.completed_at,
    )


def health(db: Session, queue: ImportQueue) -> dict:
    db_ok = ping_store(db)
    stats = queue.stats()
    status = "ok" if db_ok and stats.broker_connected else "degraded"
    if status != "ok":
        logger.warning("health_degraded", database=db_ok, broker=stats.broker_state)
    return {
        "status": status,
        "database": "ok" if db_ok else "unavailable",
        "broker": stats.broker_state,
    }


def verify_batch(db: Session, batch_id: str) -> VerifyOut | None:
    """Check that what a finished live batch reports as written is actually in the store.

    Every successful row either inserted an activity tagged with the batch or matched one
    that already existed, so the tagged activities must equal ``activities_created`` and
    can never exceed ``successful_records``.
    """
    batch = get_batch(db, batch_id)
    if batch is None:
        return None
    db.refresh(batch)

    found, cases = db.query(
        func.count(CaseActivity.id), func.count(distinct(CaseActivity.case_id))
    ).filter(CaseActivity.import_batch_id == batch_id).one()
    expected = batch.activities_created or 0
    successful = batch.successful_records or 0

    if batch.dry_run:
        verdict, message = "NOT_APPLICABLE", "Dry run batches write nothing to verify"
    elif not BatchStatus(batch.status).is_terminal:
        verdict, message = "NOT_FINISHED", f"Batch is still {batch.status}"
    elif found == expected and expected <= successful:
        verdict = "VERIFIED"
        message = f"{found} activities across {cases} cases match {successful} successful rows"
    else:
        verdict = "MISMATCH"
        message = f"Expected {expected} activities for {successful} successful rows, found {found}"

    if verdict == "MISMATCH":
        logger.error("import_verification_mismatch", batch_id=batch_id, expected=expected, found=found)
    return VerifyOut(
        batch_id=batch.id,
        status=batch.status,
        dry_run=batch.dry_run,
        verdict=verdict,
        successful_records=successful,
        activities_expected=expected,
        activities_found=found,
        cases_touched=cases,
        message=message,
    )
