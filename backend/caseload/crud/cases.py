from typing import Any
from sqlalchemy import func
from sqlalchemy.orm import Session
from caseload.db.models.case import Case
from caseload.db.models.case_activity import CaseActivity
from caseload.services.etl.mapper import NaturalKey

def find_case_by_natural_key(db: Session, key: NaturalKey) -> Case | None:
    # raises MultipleResultsFound when the court spelling matches more than one case
    return (
        db.query(Case)
        .filter(
            Case.case_number == key.case_number,
            func.upper(Case.court_name) == key.court_name.upper(),
            Case.filed_year == key.filed_year,
        )
        .one_or_none()
    )

def create_case(db: Session, values: dict[str, Any]) -> Case:
    c = Case(**values)
    db.add(c)
    db.flush()
    return c

def update_case(db: Session, case: Case, values: dict[str, Any]) -> Case:
    for k, v in values.items():
        setattr(case, k, v)
    db.flush()
    return case

def find_activity_by_fingerprint(db: Session, case_id: int, fingerprint: str) -> CaseActivity | None:
    return (
        db.query(CaseActivity)
        .filter(CaseActivity.case_id == case_id, CaseActivity.row_fingerprint == fingerprint)
        .one_or_none()
    )

def append_activity(db: Session, values: dict[str, Any]) -> CaseActivity:
    a = CaseActivity(**values)
    db.add(a)
    db.flush()
    return a
