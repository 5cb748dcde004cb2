"""Streaming reader for daily case-return CSV files.

``iter_case_returns`` is a generator: every call re-opens the file and starts
from the first data row. Each data row becomes either a ``ParsedRow`` holding a
validated ``CaseReturnRow`` or a ``RowFailure`` describing why the row was
rejected. Only file-level problems (missing file, bad encoding, unusable
header) raise, as ``FileFatalError``.
"""
from __future__ import annotations

import codecs
import csv
import datetime as dt
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterator, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError
from pydantic import field_validator, model_validator

from caseload.core.logging import logger
from caseload.services.etl.utils import MONTHS, is_empty_row, is_empty_value
from caseload.services.etl.validators import ErrorType, FileFatalError

ROW_SCHEMA_VERSION = "1"

COUNT_FIELDS = (
    "male_applicant",
    "female_applicant",
    "organization_applicant",
    "male_defendant",
    "female_defendant",
    "organization_defendant",
    "applicant_witness",
    "defendant_witness",
    "custody",
)

REQUIRED_FIELDS = (
    "date_dd",
    "date_mon",
    "date_yyyy",
    "caseid_type",
    "caseid_no",
    "filed_dd",
    "filed_mon",
    "filed_yyyy",
    "court",
    "case_type",
    "judge_1",
    "comingfor",
    "outcome",
    "legalrep",
)


class CaseReturnRow(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True, extra="ignore")

    date_dd: int = Field(ge=1, le=31)
    date_mon: str
    date_yyyy: int = Field(ge=2015)

    caseid_type: str = Field(min_length=1, max_length=20)
    caseid_no: str = Field(min_length=1, max_length=50)

    filed_dd: int = Field(ge=1, le=31)
    filed_mon: str
    filed_yyyy: int = Field(ge=1960)

    court: str = Field(min_length=1, max_length=255)

    original_court: str | None = Field(default=None, max_length=255)
    original_code: str | None = Field(default=None, max_length=50)
    original_number: str | None = Field(default=None, max_length=50)
    original_year: int | None = Field(default=None, ge=1900)

    case_type: str = Field(min_length=1, max_length=100)
    judge_1: str = Field(min_length=1, max_length=255)
    judge_2: str | None = Field(default=None, max_length=255)
    judge_3: str | None = Field(default=None, max_length=255)
    judge_4: str | None = Field(default=None, max_length=255)
    judge_5: str | None = Field(default=None, max_length=255)
    judge_6: str | None = Field(default=None, max_length=255)
    judge_7: str | None = Field(default=None, max_length=255)

    comingfor: str = Field(min_length=1, max_length=100)
    outcome: str = Field(min_length=1, max_length=100)
    reason_adj: str | None = None

    next_dd: int | None = Field(default=None, ge=1, le=31)
    next_mon: str | None = None
    next_yyyy: int | None = Field(default=None, ge=2015)

    male_applicant: int = Field(default=0, ge=0, le=999)
    female_applicant: int = Field(default=0, ge=0, le=999)
    organization_applicant: int = Field(default=0, ge=0, le=999)
    male_defendant: int = Field(default=0, ge=0, le=999)
    female_defendant: int = Field(default=0, ge=0, le=999)
    organization_defendant: int = Field(default=0, ge=0, le=999)

    legalrep: Literal["Yes", "No"]
    applicant_witness: int = Field(default=0, ge=0, le=999)
    defendant_witness: int = Field(default=0, ge=0, le=999)
    custody: int = Field(default=0, ge=0, le=999)
    other_details: str | None = None

    @model_validator(mode="before")
    @classmethod
    def _drop_blanks(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        # blank cells behave like absent ones so optional fields and count defaults apply
        return {k: v for k, v in data.items() if not is_empty_value(v)}

    @field_validator("legalrep", mode="before")
    @classmethod
    def _legalrep(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.strip().capitalize()
        return v

    @field_validator("date_mon", "filed_mon", "next_mon")
    @classmethod
    def _month(cls, v: str | None) -> str | None:
        if v is None:
            return None
        if v.upper() not in MONTHS:
            raise ValueError(f"expected a three-letter month abbreviation, got {v!r}")
        return v.capitalize()

    @field_validator("date_yyyy", "filed_yyyy", "next_yyyy")
    @classmethod
    def _not_future_year(cls, v: int | None) -> int | None:
        if v is not None and v > dt.date.today().year:
            raise ValueError(f"year {v} is in the future")
        return v

    @model_validator(mode="after")
    def _next_hearing_complete(self) -> "CaseReturnRow":
        # a partial next-hearing date is treated as no next hearing
        parts = (self.next_dd, self.next_mon, self.next_yyyy)
        if any(p is None for p in parts):
            self.next_dd = self.next_mon = self.next_yyyy = None
        return self

    def judges(self) -> list[str]:
        names = [self.judge_1, self.judge_2, self.judge_3, self.judge_4, self.judge_5, self.judge_6, self.judge_7]
        return [n for n in names if n]


# canonical field -> accepted header spellings (compared after _norm_header)
DEFAULT_HEADER_ALIASES: dict[str, tuple[str, ...]] = {
    name: (name,) for name in CaseReturnRow.model_fields
}
DEFAULT_HEADER_ALIASES.update(
    {
        "caseid_type": ("caseid_type", "case_id_type"),
        "caseid_no": ("caseid_no", "case_id_no", "case_no"),
        "comingfor": ("comingfor", "coming_for"),
        "legalrep": ("legalrep", "legal_rep"),
        "reason_adj": ("reason_adj", "reason_for_adjournment"),
        "other_details": ("other_details", "details"),
    }
)


def _norm_header(h: str) -> str:
    return h.strip().lower().replace(" ", "_").replace("-", "_")


@dataclass(frozen=True)
class HeaderMapping:
    aliases: dict[str, tuple[str, ...]] = field(default_factory=lambda: dict(DEFAULT_HEADER_ALIASES))
    required: tuple[str, ...] = REQUIRED_FIELDS
    version: str = ROW_SCHEMA_VERSION

    def resolve(self, header: list[str]) -> dict[int, str]:
        lookup = {_norm_header(a): canon for canon, names in self.aliases.items() for a in names}
        out: dict[int, str] = {}
        for i, h in enumerate(header):
            canon = lookup.get(_norm_header(h))
            if canon and canon not in out.values():
                out[i] = canon
        missing = [f for f in self.required if f not in out.values()]
        if missing:
            raise FileFatalError(f"CSV header is missing required columns: {', '.join(missing)}")
        return out


DEFAULT_HEADER_MAPPING = HeaderMapping()


@dataclass
class ParsedRow:
    row_number: int
    row: CaseReturnRow
    raw: dict[str, str]
    ok: bool = True


@dataclass
class RowFailure:
    row_number: int
    raw: dict[str, str]
    message: str
    column: str | None = None
    error_type: ErrorType = ErrorType.validation
    ok: bool = False


RowResult = Union[ParsedRow, RowFailure]


@dataclass
class ParseStats:
    rows_seen: int = 0
    empty_rows: int = 0


def preflight(path: str | Path, encoding: str = "utf-8-sig", chunk_size: int = 1024 * 1024) -> None:
    """Decode the whole file once so encoding problems surface before any row is processed."""
    p = Path(path)
    if not p.is_file():
        raise FileFatalError(f"File not found: {p}")
    decoder = codecs.getincrementaldecoder(encoding)()
    try:
        with p.open("rb") as f:
            for chunk in iter(lambda: f.read(chunk_size), b""):
                decoder.decode(chunk)
            decoder.decode(b"", final=True)
    except UnicodeDecodeError as e:
        raise FileFatalError(f"File is not valid {encoding}: {e.reason} at byte {e.start}") from e
    except OSError as e:
        raise FileFatalError(f"File could not be read: {e}") from e


def _describe(e: PydanticValidationError) -> tuple[str, str | None]:
    parts = []
    first_field = None
    for err in e.errors():
        loc = ".".join(str(x) for x in err.get("loc", ())) or None
        if first_field is None:
            first_field = loc
        msg = err.get("msg", "invalid value")
        if err.get("type") == "missing":
            msg = "required field is missing"
        parts.append(f"{loc}: {msg}" if loc else msg)
    return "; ".join(parts), first_field


def iter_case_returns(
    path: str | Path,
    mapping: HeaderMapping = DEFAULT_HEADER_MAPPING,
    encoding: str = "utf-8-sig",
    stats: ParseStats | None = None,
) -> Iterator[RowResult]:
    stats = stats if stats is not None else ParseStats()
    preflight(path, encoding=encoding)

    try:
        f = open(path, "r", encoding=encoding, newline="")
    except OSError as e:
        raise FileFatalError(f"File could not be opened: {e}") from e

    with f:
        reader = csv.reader(f)
        header = None
        for values in reader:
            if values and not is_empty_row(values):
                header = [h.strip() for h in values]
                break
        if header is None:
            raise FileFatalError("CSV file has no header row")
        columns = mapping.resolve(header)
        logger.debug("csv_header_resolved", columns=len(header), mapped=len(columns), schema=mapping.version)

        row_number = 0
        while True:
            try:
                values = next(reader)
            except StopIteration:
                break
            except csv.Error as e:
                row_number += 1
                stats.rows_seen += 1
                yield RowFailure(row_number, {"_line": f"line {reader.line_num}"}, f"Malformed CSV line: {e}")
                continue

            if not values or is_empty_row(values):
                stats.empty_rows += 1
                continue

            row_number += 1
            stats.rows_seen += 1

            if len(values) != len(header):
                yield RowFailure(
                    row_number,
                    {"_line": ",".join(values)},
                    f"Expected {len(header)} fields, found {len(values)}",
                )
                continue

            raw = dict(zip(header, values))
            data = {canon: values[i] for i, canon in columns.items()}
            try:
                row = CaseReturnRow.model_validate(data)
            except PydanticValidationError as e:
                message, column = _describe(e)
                yield RowFailure(row_number, raw, message, column=column)
                continue
            yield ParsedRow(row_number, row, raw)
