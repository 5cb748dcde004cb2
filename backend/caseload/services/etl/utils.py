import datetime as dt
import hashlib
import json
from typing import Any, Iterable

MONTHS = {
    "JAN": 1,
    "FEB": 2,
    "MAR": 3,
    "APR": 4,
    "MAY": 5,
    "JUN": 6,
    "JUL": 7,
    "AUG": 8,
    "SEP": 9,
    "OCT": 10,
    "NOV": 11,
    "DEC": 12,
}

EMPTY_VALUES = frozenset({"", "N/A", "NULL", "null", "-", "n/a"})

def file_sha256(path: str) -> str:
    h = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            h.update(chunk)
    return h.hexdigest()

def norm_str(v: Any) -> str | None:
    if v is None:
        return None
    if isinstance(v, str):
        s = v.strip()
        return s if s else None
    return str(v).strip()

def is_empty_value(v: Any) -> bool:
    if v is None:
        return True
    return str(v).strip() in EMPTY_VALUES

def is_empty_row(values: Iterable[Any]) -> bool:
    return all(is_empty_value(v) for v in values)

def date_from_parts(day: int, month: str, year: int) -> dt.date:
    """Build a date from a day, a three-letter month and a year; raises ValueError on impossible dates."""
    m = MONTHS.get(month.strip().upper())
    if m is None:
        raise ValueError(f"Invalid month: {month}")
    try:
        return dt.date(year, m, day)
    except ValueError:
        raise ValueError(f"Invalid date: {day}/{month}/{year}") from None

def row_fingerprint(raw: dict[str, Any]) -> str:
    norm = {k: (norm_str(v) or "") for k, v in sorted(raw.items())}
    return hashlib.sha256(json.dumps(norm, ensure_ascii=False).encode("utf-8")).hexdigest()
