from fastapi import APIRouter, Depends, UploadFile, File, HTTPException, Query
from sqlalchemy.orm import Session
from pathlib import Path
import uuid

from caseload.core.config import settings
from caseload.core.deps import get_db, get_import_queue
from caseload.crud.imports import get_batch, list_batches, list_import_errors
from caseload.schemas.imports import (
    ErrorPageOut,
    ImportBatchOut,
    ImportErrorOut,
    ImportJobIn,
    ImportStatusOut,
    QueueStatsOut,
    SubmitOut,
    VerifyOut,
)
from caseload.services.etl.utils import file_sha256
from caseload.services.etl.validators import DuplicateSubmissionError, QueueUnavailableError
from caseload.services.files import UploadTooLarge, ensure_dirs, save_upload
from caseload.services.queue import ImportQueue
from caseload.services.status import get_import_status, verify_batch

router = APIRouter()


def _submit(queue: ImportQueue, job: ImportJobIn) -> SubmitOut:
    try:
        res = queue.submit(job)
    except DuplicateSubmissionError as e:
        raise HTTPException(
            status_code=409,
            detail={"message": str(e), "existing_batch_id": e.existing_batch_id},
        )
    except QueueUnavailableError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return SubmitOut(accepted=res.accepted, batch_id=res.batch_id, dry_run=res.dry_run, reason=res.reason)


@router.post("", response_model=SubmitOut, status_code=202)
def submit_import(job: ImportJobIn, queue: ImportQueue = Depends(get_import_queue)):
    return _submit(queue, job)


@router.post("/upload", response_model=SubmitOut, status_code=202)
def upload_csv(
    file: UploadFile = File(...),
    dry_run: bool = Query(True, description="Validate and simulate only"),
    user_id: str | None = Query(None),
    queue: ImportQueue = Depends(get_import_queue),
):
    if not file.filename or not file.filename.lower().endswith(".csv"):
        raise HTTPException(status_code=400, detail="Only .csv supported")

    ensure_dirs()

    # unique tmp name so parallel uploads never overwrite each other
    tmp_path = Path(settings.UPLOAD_DIR) / f"tmp_{uuid.uuid4().hex}_{Path(file.filename).name}"
    try:
        size = save_upload(file, tmp_path)
    except UploadTooLarge as e:
        raise HTTPException(status_code=413, detail=str(e))

    checksum = file_sha256(str(tmp_path))
    final_path = Path(settings.UPLOAD_DIR) / f"{checksum}.csv"
    tmp_path.replace(final_path)

    job = ImportJobIn(
        file_path=str(final_path),
        filename=file.filename,
        file_size=size,
        checksum=checksum,
        user_id=user_id,
        dry_run=dry_run,
    )
    return _submit(queue, job)


@router.get("/queue/stats", response_model=QueueStatsOut)
def queue_stats(queue: ImportQueue = Depends(get_import_queue)):
    return QueueStatsOut(**queue.stats().__dict__)


@router.get("/history", response_model=list[ImportBatchOut])
def import_history(limit: int = Query(20, ge=1, le=200), db: Session = Depends(get_db)):
    return list_batches(db, limit)


@router.get("/{batch_id}", response_model=ImportStatusOut)
def import_status(batch_id: str, db: Session = Depends(get_db)):
    status = get_import_status(db, batch_id)
    if status is None:
        raise HTTPException(status_code=404, detail="Import batch not found")
    return status


@router.get("/{batch_id}/errors", response_model=ErrorPageOut)
def import_errors(
    batch_id: str,
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1),
    db: Session = Depends(get_db),
):
    if get_batch(db, batch_id) is None:
        raise HTTPException(status_code=404, detail="Import batch not found")
    page_size = min(page_size, settings.IMPORT_ERROR_PAGE_SIZE_MAX)
    items, total = list_import_errors(db, batch_id, page=page, page_size=page_size)
    return ErrorPageOut(
        batch_id=batch_id,
        page=page,
        page_size=page_size,
        total=total,
        items=[ImportErrorOut.model_validate(e) for e in items],
    )


@router.get("/{batch_id}/verify", response_model=VerifyOut)
def verify_import(batch_id: str, db: Session = Depends(get_db)):
    result = verify_batch(db, batch_id)
    if result is None:
        raise HTTPException(status_code=404, detail="Import batch not found")
    return result


@router.post("/{batch_id}/cancel")
def cancel_import(batch_id: str, queue: ImportQueue = Depends(get_import_queue)):
    status = queue.cancel(batch_id)
    if status is None:
        raise HTTPException(status_code=404, detail="Import batch not found")
    return {"batch_id": batch_id, "status": status}
