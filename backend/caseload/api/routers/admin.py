from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from caseload.core.deps import get_db
from caseload.core.logging import logger
from caseload.crud.imports import repair_inconsistent_batches
from caseload.schemas.imports import RepairOut

router = APIRouter()

@router.post("/imports/repair", response_model=RepairOut)
def repair_imports(db: Session = Depends(get_db)):
    repaired = repair_inconsistent_batches(db)
    logger.info("import_batches_repaired", count=len(repaired), batch_ids=repaired)
    return RepairOut(repaired=repaired)
