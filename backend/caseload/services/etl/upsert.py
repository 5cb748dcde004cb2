from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Literal

from sqlalchemy.exc import IntegrityError, MultipleResultsFound
from sqlalchemy.orm import Session

from caseload.core.config import settings
from caseload.core.logging import logger
from caseload.crud.cases import (
    append_activity,
    create_case,
    find_activity_by_fingerprint,
    find_case_by_natural_key,
    update_case,
)
from caseload.db.models.case import Case
from caseload.services.coordination import Coordinator, LockTimeout
from caseload.services.etl.mapper import ActivityProjection, CaseProjection, MappedRow, NaturalKey
from caseload.services.etl.validators import ErrorType, UpsertError

Outcome = Literal["created", "updated", "dry_run_simulated"]


@dataclass
class UpsertResult:
    outcome: Outcome
    case_id: int | None
    activity_created: bool
    would_create: bool | None = None


def _import_owned(p: CaseProjection) -> dict[str, Any]:
    # status and notes belong to case management and are left alone on update
    return dict(
        caseid_type=p.caseid_type,
        caseid_no=p.caseid_no,
        case_type_code=p.case_type_code,
        case_type_name=p.case_type_name,
        court_type=p.court_type,
        filed_date=p.filed_date,
        original_court=p.original_court,
        original_code=p.original_code,
        original_case_number=p.original_case_number,
        original_year=p.original_year,
        has_legal_representation=p.has_legal_representation,
        **p.parties,
    )


def _activity_values(a: ActivityProjection, case_id: int, batch_id: str) -> dict[str, Any]:
    return dict(
        case_id=case_id,
        import_batch_id=batch_id,
        activity_date=a.activity_date,
        activity_type=a.activity_type,
        outcome=a.outcome,
        reason_for_adjournment=a.reason_for_adjournment,
        next_hearing_date=a.next_hearing_date,
        primary_judge=a.primary_judge,
        judges=a.judges,
        has_legal_representation=a.has_legal_representation,
        applicant_witnesses=a.applicant_witnesses,
        defendant_witnesses=a.defendant_witnesses,
        custody_status=a.custody_status,
        details=a.details,
        row_fingerprint=a.row_fingerprint,
    )


class UpsertEngine:
    """Find-or-create a case by natural key and append the row's activity.

    One engine serves one job. In dry-run mode nothing is written; the engine
    remembers which keys it has "created" so a later row for the same case in
    the same file reports an update, as a live run would.
    """

    def __init__(
        self,
        db: Session,
        coordinator: Coordinator,
        dry_run: bool,
        lock_timeout: float | None = None,
    ):
        self.db = db
        self.coordinator = coordinator
        self.dry_run = dry_run
        self.lock_timeout = lock_timeout if lock_timeout is not None else settings.IMPORT_CASE_LOCK_TIMEOUT_SECONDS
        self._simulated: set[NaturalKey] = set()

    def _find(self, key: NaturalKey) -> Case | None:
        try:
            return find_case_by_natural_key(self.db, key)
        except MultipleResultsFound:
            raise UpsertError(
                ErrorType.ambiguous,
                f"More than one case matches {key.case_number} / {key.court_name} / {key.filed_year}",
            ) from None

    def apply(
        self,
        mapped: MappedRow,
        batch_id: str,
        on_applied: Callable[[UpsertResult], None] | None = None,
    ) -> UpsertResult:
        """Apply one mapped row. ``on_applied`` runs while the case lock is still held."""
        if self.dry_run:
            res = self._simulate(mapped)
            if on_applied:
                on_applied(res)
            return res

        key = mapped.case.key
        try:
            with self.coordinator.case_lock(key.lock_name(), self.lock_timeout):
                res = self._write(mapped, batch_id)
                if on_applied:
                    on_applied(res)
                return res
        except LockTimeout as e:
            raise UpsertError(ErrorType.persistence, str(e)) from e

    def _simulate(self, mapped: MappedRow) -> UpsertResult:
        key = mapped.case.key
        existing = self._find(key)
        would_create = existing is None and key not in self._simulated
        self._simulated.add(key)
        return UpsertResult(
            outcome="dry_run_simulated",
            case_id=existing.id if existing else None,
            activity_created=False,
            would_create=would_create,
        )

    def _write(self, mapped: MappedRow, batch_id: str) -> UpsertResult:
        p = mapped.case
        case = self._find(p.key)
        created = False

        if case is None:
            values = dict(
                case_number=p.key.case_number,
                court_name=p.key.court_name,
                filed_year=p.key.filed_year,
                status=p.status,
                total_activities=0,
                **_import_owned(p),
            )
            try:
                with self.db.begin_nested():
                    case = create_case(self.db, values)
                created = True
            except IntegrityError:
                # another worker inserted the same key between our lookup and insert
                logger.info("case_create_race", case_number=p.key.case_number, batch_id=batch_id)
                case = self._find(p.key)
                if case is None:
                    raise UpsertError(
                        ErrorType.constraint,
                        f"Case {p.key.case_number} violates a constraint and could not be re-read",
                    ) from None

        try:
            if not created:
                update_case(self.db, case, _import_owned(p))

            a = mapped.activity
            activity_created = False
            if find_activity_by_fingerprint(self.db, case.id, a.row_fingerprint) is None:
                append_activity(self.db, _activity_values(a, case.id, batch_id))
                activity_created = True
                last = case.last_activity_date
                update_case(
                    self.db,
                    case,
                    {
                        "total_activities": (case.total_activities or 0) + 1,
                        "last_activity_date": a.activity_date if last is None else max(last, a.activity_date),
                    },
                )
        except IntegrityError as e:
            raise UpsertError(ErrorType.constraint, f"Constraint violation: {e.orig}") from e

        return UpsertResult(
            outcome="created" if created else "updated",
            case_id=case.id,
            activity_created=activity_created,
        )
