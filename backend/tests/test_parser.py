from pathlib import Path

import pytest

from caseload.services.etl.parsers.case_returns import (
    HeaderMapping,
    ParsedRow,
    ParseStats,
    RowFailure,
    iter_case_returns,
)
from caseload.services.etl.validators import FileFatalError
from conftest import HEADER, row, write_csv


def test_valid_rows_are_parsed_in_order(tmp_path: Path):
    p = write_csv(tmp_path / "r.csv", [row(caseid_no="E1"), row(caseid_no="E2", judge_2="Hon. B. Otieno")])
    items = list(iter_case_returns(p))
    assert [i.row_number for i in items] == [1, 2]
    assert all(isinstance(i, ParsedRow) for i in items)
    first, second = items
    assert first.row.caseid_no == "E1"
    assert first.row.date_mon == "Mar"
    assert first.row.male_applicant == 1
    assert first.row.original_year is None
    assert second.row.judges() == ["Hon. A. Mwangi", "Hon. B. Otieno"]
    assert first.raw["court"] == "Milimani High Court"


def test_blank_rows_are_skipped_and_not_numbered(tmp_path: Path):
    blank = ["" for _ in HEADER]
    na = ["N/A" for _ in HEADER]
    p = write_csv(tmp_path / "r.csv", [row(caseid_no="E1"), blank, na, row(caseid_no="E2")])
    stats = ParseStats()
    items = list(iter_case_returns(p, stats=stats))
    assert [i.row_number for i in items] == [1, 2]
    assert stats.empty_rows == 2
    assert stats.rows_seen == 2


def test_missing_required_field_is_a_row_failure(tmp_path: Path):
    p = write_csv(tmp_path / "r.csv", [row(court=""), row()])
    bad, good = list(iter_case_returns(p))
    assert isinstance(bad, RowFailure)
    assert bad.row_number == 1
    assert bad.column == "court"
    assert "required field is missing" in bad.message
    assert bad.error_type.value == "validation_error"
    assert good.ok


def test_bad_month_and_out_of_range_counts_fail(tmp_path: Path):
    p = write_csv(tmp_path / "r.csv", [row(date_mon="Foo"), row(custody="1000"), row(legalrep="maybe")])
    items = list(iter_case_returns(p))
    assert [i.ok for i in items] == [False, False, False]
    assert items[0].column == "date_mon"
    assert items[1].column == "custody"
    assert items[2].column == "legalrep"


def test_future_year_is_rejected(tmp_path: Path):
    p = write_csv(tmp_path / "r.csv", [row(date_yyyy="2999")])
    (item,) = list(iter_case_returns(p))
    assert not item.ok
    assert item.column == "date_yyyy"


def test_legalrep_is_case_insensitive(tmp_path: Path):
    p = write_csv(tmp_path / "r.csv", [row(legalrep="no")])
    (item,) = list(iter_case_returns(p))
    assert item.ok
    assert item.row.legalrep == "No"


def test_partial_next_hearing_is_dropped(tmp_path: Path):
    p = write_csv(tmp_path / "r.csv", [row(next_dd="4", next_mon="Apr", next_yyyy="")])
    (item,) = list(iter_case_returns(p))
    assert item.ok
    assert item.row.next_dd is None and item.row.next_mon is None


def test_field_count_mismatch_is_structural_failure(tmp_path: Path):
    short = ["12", "Mar", "2024"]
    p = write_csv(tmp_path / "r.csv", [short, row()])
    bad, good = list(iter_case_returns(p))
    assert not bad.ok
    assert bad.row_number == 1
    assert bad.message.startswith(f"Expected {len(HEADER)} fields")
    assert good.row_number == 2


def test_header_aliases_are_resolved(tmp_path: Path):
    header = ["Case ID Type" if h == "caseid_type" else h.upper() for h in HEADER]
    p = tmp_path / "r.csv"
    write_csv(p, [[row()[h] for h in HEADER]], header=header)
    (item,) = list(iter_case_returns(p))
    assert item.ok
    assert item.row.caseid_type == "HCCC"


def test_missing_required_header_is_file_fatal(tmp_path: Path):
    header = [h for h in HEADER if h != "court"]
    p = write_csv(tmp_path / "r.csv", [row()], header=header)
    with pytest.raises(FileFatalError, match="court"):
        list(iter_case_returns(p))


def test_missing_file_is_file_fatal(tmp_path: Path):
    with pytest.raises(FileFatalError):
        list(iter_case_returns(tmp_path / "nope.csv"))


def test_undecodable_file_is_file_fatal_before_any_row(tmp_path: Path):
    p = write_csv(tmp_path / "r.csv", [row()])
    with open(p, "ab") as f:
        f.write(b"\xff\xfe\xfa broken\n")
    gen = iter_case_returns(p)
    with pytest.raises(FileFatalError, match="not valid"):
        next(gen)


def test_empty_file_has_no_header(tmp_path: Path):
    p = tmp_path / "r.csv"
    p.write_text("\n\n", encoding="utf-8")
    with pytest.raises(FileFatalError, match="no header"):
        list(iter_case_returns(p))


def test_stream_restarts_from_the_beginning(tmp_path: Path):
    p = write_csv(tmp_path / "r.csv", [row(caseid_no="E1"), row(caseid_no="E2")])
    first = [i.row.caseid_no for i in iter_case_returns(p)]
    second = [i.row.caseid_no for i in iter_case_returns(p)]
    assert first == second == ["E1", "E2"]


def test_custom_mapping_requires_its_own_columns(tmp_path: Path):
    mapping = HeaderMapping(required=("court", "extra_column"))
    p = write_csv(tmp_path / "r.csv", [row()])
    with pytest.raises(FileFatalError, match="extra_column"):
        list(iter_case_returns(p, mapping=mapping))
