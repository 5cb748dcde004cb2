import datetime as dt
from typing import Any
from sqlalchemy import func, text, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from caseload.db.models.case_activity import CaseActivity
from caseload.db.models.import_batch import ImportBatch, BatchStatus, IN_FLIGHT_STATUSES
from caseload.db.models.import_error_detail import ImportErrorDetail
from caseload.services.etl.validators import ValidationError, ErrorType

def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)

def get_batch(db: Session, batch_id: str) -> ImportBatch | None:
    return db.query(ImportBatch).filter(ImportBatch.id == batch_id).one_or_none()

def create_batch(
    db: Session,
    batch_id: str,
    filename: str,
    file_size: int,
    checksum: str,
    created_by: int,
    dry_run: bool,
) -> ImportBatch:
    batch = ImportBatch(
        id=batch_id,
        filename=filename,
        file_size=file_size,
        checksum=checksum,
        created_by=created_by,
        dry_run=dry_run,
        status=BatchStatus.pending.value,
        total_records=0,
        successful_records=0,
        failed_records=0,
        empty_rows_skipped=0,
        activities_created=0,
        error_logs=[],
    )
    db.add(batch)
    db.commit()
    db.refresh(batch)
    return batch

def find_active_batch_by_checksum(db: Session, checksum: str) -> ImportBatch | None:
    return (
        db.query(ImportBatch)
        .filter(ImportBatch.checksum == checksum, ImportBatch.status.in_([s.value for s in IN_FLIGHT_STATUSES]))
        .order_by(ImportBatch.created_at.desc())
        .first()
    )

def claim_batch(db: Session, batch_id: str, worker_id: str) -> bool:
    """Give worker_id exclusive ownership of a PENDING batch. False if someone else holds it."""
    res = db.execute(
        update(ImportBatch)
        .where(
            ImportBatch.id == batch_id,
            ImportBatch.status == BatchStatus.pending.value,
            ImportBatch.worker_id.is_(None),
        )
        .values(worker_id=worker_id)
    )
    db.commit()
    return res.rowcount == 1

def update_batch(db: Session, batch_id: str, commit: bool = True, **values: Any) -> None:
    db.execute(update(ImportBatch).where(ImportBatch.id == batch_id).values(**values))
    if commit:
        db.commit()

def fail_unclaimed_batch(db: Session, batch_id: str, message: str) -> bool:
    log = {"type": ErrorType.cancelled.value, "message": message, "at": utcnow().isoformat()}
    batch = get_batch(db, batch_id)
    if batch is None:
        return False
    res = db.execute(
        update(ImportBatch)
        .where(
            ImportBatch.id == batch_id,
            ImportBatch.status == BatchStatus.pending.value,
            ImportBatch.worker_id.is_(None),
        )
        .values(
            status=BatchStatus.failed.value,
            completed_at=utcnow(),
            error_logs=list(batch.error_logs or []) + [log],
        )
    )
    db.commit()
    return res.rowcount == 1

def _owned_in_flight(batch_id: str, owner: str):
    return (
        ImportBatch.id == batch_id,
        ImportBatch.worker_id == owner,
        ImportBatch.status.in_([s.value for s in IN_FLIGHT_STATUSES]),
    )

def reclaim_batch(db: Session, batch_id: str, worker_id: str, stale_worker: str) -> bool:
    """Hand a batch whose worker died to worker_id and reset it so the file is processed again from the first row.

    Row details from the dead run are dropped; activities it already wrote stay and are
    deduplicated by fingerprint on the second pass.
    """
    batch = get_batch(db, batch_id)
    if batch is None:
        return False
    kept = db.query(func.count(CaseActivity.id)).filter(CaseActivity.import_batch_id == batch_id).scalar()
    log = {
        "type": ErrorType.worker_lost.value,
        "message": f"Worker {stale_worker} stopped; reprocessing from the first row",
        "at": utcnow().isoformat(),
    }
    res = db.execute(
        update(ImportBatch)
        .where(*_owned_in_flight(batch_id, stale_worker))
        .values(
            worker_id=worker_id,
            total_records=0,
            successful_records=0,
            failed_records=0,
            empty_rows_skipped=0,
            activities_created=kept,
            error_logs=[e for e in (batch.error_logs or []) if e.get("row") is None] + [log],
        )
    )
    if res.rowcount != 1:
        db.rollback()
        return False
    db.query(ImportErrorDetail).filter(ImportErrorDetail.batch_id == batch_id).delete(synchronize_session=False)
    db.commit()
    return True

def fail_abandoned_batch(db: Session, batch_id: str, owner: str, message: str) -> bool:
    """Fail an in-flight batch whose worker is gone, keeping the counts it had committed."""
    batch = get_batch(db, batch_id)
    if batch is None:
        return False
    db.refresh(batch)
    log = {"type": ErrorType.cancelled.value, "message": message, "at": utcnow().isoformat()}
    res = db.execute(
        update(ImportBatch)
        .where(*_owned_in_flight(batch_id, owner))
        .values(
            status=BatchStatus.failed.value,
            completed_at=utcnow(),
            total_records=batch.successful_records + batch.failed_records,
            error_logs=list(batch.error_logs or []) + [log],
        )
    )
    db.commit()
    return res.rowcount == 1

def request_cancel(db: Session, batch_id: str) -> None:
    update_batch(db, batch_id, cancel_requested=True)

def list_batches(db: Session, limit: int = 20):
    return db.query(ImportBatch).order_by(ImportBatch.created_at.desc(), ImportBatch.id).limit(limit).all()

def add_error_details(db: Session, batch_id: str, errors: list[ValidationError], commit: bool = True) -> None:
    for er in errors:
        db.add(ImportErrorDetail(
            batch_id=batch_id,
            row_number=er.row_num,
            raw_row_data=er.raw,
            error_type=er.error_type.value,
            error_message=er.message,
            field=er.column,
        ))
    if commit:
        db.commit()
    else:
        db.flush()

def count_row_errors(db: Session, batch_id: str) -> int:
    return (
        db.query(func.count(ImportErrorDetail.id))
        .filter(ImportErrorDetail.batch_id == batch_id, ImportErrorDetail.row_number.isnot(None))
        .scalar()
    )

def list_import_errors(db: Session, batch_id: str, page: int = 1, page_size: int = 50) -> tuple[list[ImportErrorDetail], int]:
    q = db.query(ImportErrorDetail).filter(ImportErrorDetail.batch_id == batch_id)
    total = q.count()
    items = (
        q.order_by(ImportErrorDetail.row_number.is_(None), ImportErrorDetail.row_number, ImportErrorDetail.id)
        .offset((page - 1) * page_size)
        .limit(page_size)
        .all()
    )
    return items, total

def repair_inconsistent_batches(db: Session) -> list[str]:
    """Rewrite batches stuck as COMPLETED with zero successful records to FAILED."""
    stuck = (
        db.query(ImportBatch)
        .filter(ImportBatch.status == BatchStatus.completed.value, ImportBatch.successful_records == 0)
        .all()
    )
    now = utcnow()
    for b in stuck:
        b.status = BatchStatus.failed.value
        b.error_logs = list(b.error_logs or []) + [{
            "type": ErrorType.consistency.value,
            "message": "Batch was COMPLETED with zero successful records; corrected to FAILED",
            "at": now.isoformat(),
        }]
        b.completed_at = b.completed_at or now
    db.commit()
    return [b.id for b in stuck]

def ping_store(db: Session) -> bool:
    try:
        db.execute(text("select 1"))
        return True
    except SQLAlchemyError:
        db.rollback()
        return False
