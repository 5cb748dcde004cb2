import datetime as dt
from dataclasses import dataclass
from typing import Mapping

from caseload.core.config import settings
from caseload.services.etl.parsers.case_returns import CaseReturnRow
from caseload.services.etl.utils import date_from_parts, norm_str, row_fingerprint
from caseload.services.etl.validators import MappingError

# code -> canonical name
CASE_TYPES: dict[str, str] = {
    "CIVIL": "Civil Suit",
    "APPEAL": "Civil Appeal",
    "MISC": "Civil Case Miscellaneous",
    "COMM": "Commercial Matters",
    "CRIM_REV": "Criminal Revision",
    "JR": "Judicial Review",
    "CRIM": "Criminal Case",
    "FAMILY": "Family Matters",
    "EMPLOY": "Employment Dispute",
    "CONST": "Constitutional Petition",
    "ENV": "Environmental Matters",
    "ELECT": "Election Petition",
}


def parse_extra_case_types(raw: str) -> dict[str, str]:
    out: dict[str, str] = {}
    for item in raw.split(","):
        code, sep, name = item.partition("=")
        code, name = code.strip().upper(), name.strip()
        if sep and code and name:
            out[code] = name
    return out


def default_case_types() -> dict[str, str]:
    return {**CASE_TYPES, **parse_extra_case_types(settings.IMPORT_EXTRA_CASE_TYPES)}


def _key(s: str) -> str:
    return " ".join(s.split()).upper()


def resolve_case_type(value: str, case_types: Mapping[str, str]) -> tuple[str, str]:
    k = _key(value)
    for code, name in case_types.items():
        if k == _key(code) or k == _key(name):
            return code, name
    raise MappingError(f"Unknown case type: {value!r}", column="case_type")


def derive_court_type(caseid_type: str) -> str:
    prefix = caseid_type.strip().upper()
    # SCC before SC
    if prefix.startswith("SCC"):
        return "SCC"
    two = prefix[:2]
    if two == "SC":
        return "SC"
    if two == "EL":
        return "ELC" if prefix.startswith("ELC") else "ELRC"
    if two == "KC":
        return "KC"
    if two == "CO":
        return "COA"
    if two == "MC":
        return "MC"
    if two == "HC":
        return "HC"
    return "TC"


def custody_status(custody: int) -> str:
    return "IN_CUSTODY" if custody > 0 else "NOT_APPLICABLE"


def make_case_number(caseid_type: str, caseid_no: str) -> str:
    return f"{caseid_type.strip().upper()}-{caseid_no.strip().upper()}"


@dataclass(frozen=True)
class NaturalKey:
    case_number: str
    court_name: str
    filed_year: int

    def lock_name(self) -> str:
        return f"{self.case_number}|{self.court_name.upper()}|{self.filed_year}"


@dataclass
class CaseProjection:
    key: NaturalKey
    caseid_type: str
    caseid_no: str
    case_type_code: str
    case_type_name: str
    court_type: str
    filed_date: dt.date
    original_court: str | None
    original_code: str | None
    original_case_number: str | None
    original_year: int | None
    parties: dict[str, int]
    has_legal_representation: bool
    status: str = "ACTIVE"


@dataclass
class ActivityProjection:
    activity_date: dt.date
    activity_type: str
    outcome: str
    reason_for_adjournment: str | None
    next_hearing_date: dt.date | None
    primary_judge: str
    judges: list[str]
    has_legal_representation: bool
    applicant_witnesses: int
    defendant_witnesses: int
    custody_status: str
    details: str | None
    row_fingerprint: str


@dataclass
class MappedRow:
    case: CaseProjection
    activity: ActivityProjection


def _date(day: int, month: str, year: int, column: str, label: str) -> dt.date:
    try:
        return date_from_parts(day, month, year)
    except ValueError as e:
        raise MappingError(f"Invalid {label}: {e}", column=column) from None


def map_row(
    row: CaseReturnRow,
    raw: dict[str, str] | None = None,
    case_types: Mapping[str, str] | None = None,
) -> MappedRow:
    """Project a validated row onto case and activity fields. Pure; raises MappingError."""
    case_types = case_types if case_types is not None else default_case_types()

    code, name = resolve_case_type(row.case_type, case_types)
    filed = _date(row.filed_dd, row.filed_mon, row.filed_yyyy, "filed_dd", "filed date")
    activity_date = _date(row.date_dd, row.date_mon, row.date_yyyy, "date_dd", "activity date")
    if activity_date < filed:
        raise MappingError(
            f"Activity date {activity_date.isoformat()} is before filed date {filed.isoformat()}",
            column="date_dd",
        )
    next_hearing = None
    if row.next_dd is not None:
        next_hearing = _date(row.next_dd, row.next_mon, row.next_yyyy, "next_dd", "next hearing date")

    legal = row.legalrep == "Yes"
    key = NaturalKey(
        case_number=make_case_number(row.caseid_type, row.caseid_no),
        court_name=" ".join(row.court.split()),
        filed_year=filed.year,
    )
    case = CaseProjection(
        key=key,
        caseid_type=row.caseid_type.upper(),
        caseid_no=row.caseid_no,
        case_type_code=code,
        case_type_name=name,
        court_type=derive_court_type(row.caseid_type),
        filed_date=filed,
        original_court=norm_str(row.original_court),
        original_code=norm_str(row.original_code),
        original_case_number=norm_str(row.original_number),
        original_year=row.original_year,
        parties={
            "male_applicant": row.male_applicant,
            "female_applicant": row.female_applicant,
            "organization_applicant": row.organization_applicant,
            "male_defendant": row.male_defendant,
            "female_defendant": row.female_defendant,
            "organization_defendant": row.organization_defendant,
        },
        has_legal_representation=legal,
    )
    judges = row.judges()
    activity = ActivityProjection(
        activity_date=activity_date,
        activity_type=row.comingfor,
        outcome=row.outcome,
        reason_for_adjournment=norm_str(row.reason_adj),
        next_hearing_date=next_hearing,
        primary_judge=judges[0],
        judges=judges,
        has_legal_representation=legal,
        applicant_witnesses=row.applicant_witness,
        defendant_witnesses=row.defendant_witness,
        custody_status=custody_status(row.custody),
        details=norm_str(row.other_details),
        row_fingerprint=row_fingerprint(raw if raw is not None else row.model_dump(mode="json")),
    )
    return MappedRow(case=case, activity=activity)
