from pathlib import Path

import structlog
from sqlalchemy.exc import OperationalError

from caseload.crud.imports import claim_batch, count_row_errors, get_batch, update_batch
from caseload.db.models.case import Case
from caseload.db.models.case_activity import CaseActivity
from caseload.db.models.import_batch import BatchStatus
from caseload.db.models.import_error_detail import ImportErrorDetail
from caseload.services.etl import importer as importer_mod
from caseload.services.etl.importer import run_import
from caseload.services.etl.upsert import UpsertEngine
from caseload.services.status import get_import_status, verify_batch
from conftest import HEADER, make_batch, make_job, row, write_csv


def _five_rows(tmp_path: Path) -> Path:
    return write_csv(
        tmp_path / "returns.csv",
        [
            row(caseid_no="E1"),
            row(caseid_no="E2"),
            row(caseid_no="E3", date_dd="31", date_mon="Feb"),
            row(caseid_no="E4"),
            row(caseid_no="E5", case_type="Maritime Claim"),
        ],
    )


def _run(db, coordinator, path, batch_id="batch-1", **kwargs):
    return run_import(db, make_job(path, batch_id=batch_id), coordinator, "worker-1", **kwargs)


class StepClock:
    def __init__(self):
        self.t = 0.0

    def __call__(self):
        now = self.t
        self.t += 1.0
        return now


def test_five_row_example(db, coordinator, system_user, tmp_path):
    p = _five_rows(tmp_path)
    make_batch(db, system_user)
    out = _run(db, coordinator, p)

    assert out.status == BatchStatus.partially_completed
    assert (out.total, out.successful, out.failed) == (5, 3, 2)
    b = get_batch(db, "batch-1")
    assert (b.status, b.total_records, b.successful_records, b.failed_records) == ("PARTIALLY_COMPLETED", 5, 3, 2)
    details = db.query(ImportErrorDetail).order_by(ImportErrorDetail.row_number).all()
    assert [d.row_number for d in details] == [3, 5]
    assert {d.error_type for d in details} == {"mapping_error"}
    assert details[1].field == "case_type"
    assert details[1].raw_row_data["caseid_no"] == "E5"
    assert db.query(Case).count() == 3
    assert out.outcomes == {"created": 3, "activities_created": 3}


def test_error_count_matches_failed_records(db, coordinator, system_user, tmp_path):
    p = write_csv(
        tmp_path / "r.csv",
        [row(caseid_no="E1"), row(court=""), ["too", "short"], row(case_type="??"), row(caseid_no="E2")],
    )
    make_batch(db, system_user)
    out = _run(db, coordinator, p)
    b = get_batch(db, "batch-1")
    assert b.failed_records == 3
    assert count_row_errors(db, b.id) == b.failed_records
    assert b.successful_records + b.failed_records == b.total_records
    assert out.status == BatchStatus.partially_completed


def test_reimport_updates_and_never_creates(db, coordinator, system_user, tmp_path):
    p = _five_rows(tmp_path)
    make_batch(db, system_user, batch_id="first")
    _run(db, coordinator, p, batch_id="first")
    ids_before = sorted(c.id for c in db.query(Case).all())
    activities_before = db.query(CaseActivity).count()

    make_batch(db, system_user, batch_id="second")
    out = _run(db, coordinator, p, batch_id="second")
    assert out.outcomes == {"updated": 3}
    assert sorted(c.id for c in db.query(Case).all()) == ids_before
    assert db.query(CaseActivity).count() == activities_before


def test_dry_run_leaves_store_untouched(db, coordinator, system_user, tmp_path):
    p = _five_rows(tmp_path)
    make_batch(db, system_user, batch_id="live")
    live = _run(db, coordinator, p, batch_id="live")
    cases, activities = db.query(Case).count(), db.query(CaseActivity).count()

    extra = write_csv(tmp_path / "more.csv", [row(caseid_no="E1"), row(caseid_no="NEW")])
    make_batch(db, system_user, batch_id="dry", checksum="d" * 64, dry_run=True)
    dry = _run(db, coordinator, extra, batch_id="dry")
    assert dry.dry_run
    assert dry.outcomes == {"would_update": 1, "would_create": 1}
    assert (db.query(Case).count(), db.query(CaseActivity).count()) == (cases, activities)

    make_batch(db, system_user, batch_id="dry-same", checksum="e" * 64, dry_run=True)
    same = _run(db, coordinator, p, batch_id="dry-same")
    assert (same.total, same.successful, same.failed) == (live.total, live.successful, live.failed)
    assert same.status == live.status


def test_missing_file_fails_with_zero_counts(db, coordinator, system_user, tmp_path):
    make_batch(db, system_user)
    out = _run(db, coordinator, tmp_path / "gone.csv")
    assert out.status == BatchStatus.failed
    b = get_batch(db, "batch-1")
    assert (b.total_records, b.successful_records, b.failed_records) == (0, 0, 0)
    assert db.query(ImportErrorDetail).filter_by(batch_id=b.id).count() == b.failed_records == 0
    assert b.error_logs[-1]["type"] == "file_error"
    assert [e["type"] for e in get_import_status(db, b.id).job_errors] == ["file_error"]


def test_undecodable_file_touches_nothing(db, coordinator, system_user, tmp_path):
    p = write_csv(tmp_path / "r.csv", [row(caseid_no="E1")])
    with open(p, "ab") as f:
        f.write(b"\xff\xfe garbage\n")
    make_batch(db, system_user)
    out = _run(db, coordinator, p)
    assert out.status == BatchStatus.failed
    assert (out.total, out.successful, out.failed) == (0, 0, 0)
    assert db.query(Case).count() == 0


def test_blank_rows_are_counted_separately(db, coordinator, system_user, tmp_path):
    p = write_csv(tmp_path / "r.csv", [row(caseid_no="E1"), ["" for _ in HEADER], row(caseid_no="E2")])
    make_batch(db, system_user)
    out = _run(db, coordinator, p)
    assert out.status == BatchStatus.completed
    assert (out.total, out.empty_rows) == (2, 1)
    assert get_batch(db, "batch-1").empty_rows_skipped == 1


def test_header_only_file_fails(db, coordinator, system_user, tmp_path):
    p = write_csv(tmp_path / "r.csv", [])
    make_batch(db, system_user)
    out = _run(db, coordinator, p)
    assert out.status == BatchStatus.failed
    assert out.total == 0


def test_timeout_stops_between_rows(db, coordinator, system_user, tmp_path):
    p = _five_rows(tmp_path)
    make_batch(db, system_user)
    out = _run(db, coordinator, p, clock=StepClock(), timeout=2.5)
    assert out.status == BatchStatus.failed
    assert (out.total, out.successful, out.failed) == (2, 2, 0)
    terminal = db.query(ImportErrorDetail).filter(ImportErrorDetail.row_number.is_(None)).one()
    assert terminal.error_type == "timeout"


def test_cancel_before_first_row(db, coordinator, system_user, tmp_path):
    p = _five_rows(tmp_path)
    make_batch(db, system_user)
    coordinator.request_cancel("batch-1")
    out = _run(db, coordinator, p)
    assert out.status == BatchStatus.failed
    assert out.total == 0
    b = get_batch(db, "batch-1")
    assert b.error_logs[-1]["type"] == "cancelled"
    assert db.query(ImportErrorDetail).filter_by(batch_id=b.id).count() == b.failed_records == 0


def test_cancel_mid_run_keeps_partial_counts(db, coordinator, system_user, tmp_path):
    p = _five_rows(tmp_path)
    make_batch(db, system_user)
    checks = {"n": 0}
    real = coordinator.is_cancelled

    def _cancel_on_third(batch_id):
        checks["n"] += 1
        return checks["n"] >= 3 or real(batch_id)

    coordinator.is_cancelled = _cancel_on_third
    out = _run(db, coordinator, p)
    assert out.status == BatchStatus.failed
    assert (out.total, out.successful, out.failed) == (2, 2, 0)
    assert db.query(Case).count() == 2


def test_db_cancel_flag_is_honoured(db, coordinator, system_user, tmp_path):
    p = _five_rows(tmp_path)
    b = make_batch(db, system_user)
    b.cancel_requested = True
    db.commit()
    out = _run(db, coordinator, p)
    assert out.status == BatchStatus.failed
    assert out.total == 0


def test_guard_released_and_worker_idle_after_run(db, coordinator, system_user, tmp_path):
    p = _five_rows(tmp_path)
    make_batch(db, system_user)
    coordinator.claim_checksum("c" * 64, "batch-1", 60)
    _run(db, coordinator, p)
    assert coordinator.checksum_owner("c" * 64) is None
    assert coordinator.active_count() == 0


def test_second_worker_cannot_claim(db, coordinator, system_user, tmp_path):
    p = _five_rows(tmp_path)
    make_batch(db, system_user)
    assert _run(db, coordinator, p) is not None
    assert _run(db, coordinator, p) is None


def test_unknown_batch_is_skipped(db, coordinator, tmp_path):
    p = _five_rows(tmp_path)
    assert _run(db, coordinator, p, batch_id="nope") is None


def _flaky_apply(fail_times):
    real = UpsertEngine.apply
    state = {"n": 0}

    def _apply(self, mapped, batch_id, on_applied=None):
        state["n"] += 1
        if state["n"] in fail_times:
            raise OperationalError("INSERT", {}, Exception("connection reset"))
        return real(self, mapped, batch_id, on_applied=on_applied)

    return _apply


def test_transient_error_is_retried(db, coordinator, system_user, tmp_path, monkeypatch):
    p = write_csv(tmp_path / "r.csv", [row(caseid_no="E1"), row(caseid_no="E2")])
    make_batch(db, system_user)
    monkeypatch.setattr(UpsertEngine, "apply", _flaky_apply({1}))
    out = _run(db, coordinator, p, retry_backoff=0)
    assert out.status == BatchStatus.completed
    assert (out.total, out.successful, out.failed) == (2, 2, 0)


def test_exhausted_retries_become_row_failure(db, coordinator, system_user, tmp_path, monkeypatch):
    p = write_csv(tmp_path / "r.csv", [row(caseid_no="E1"), row(caseid_no="E2")])
    make_batch(db, system_user)
    monkeypatch.setattr(UpsertEngine, "apply", _flaky_apply({1, 2}))
    out = _run(db, coordinator, p, retry_attempts=2, retry_backoff=0)
    assert out.status == BatchStatus.partially_completed
    assert (out.successful, out.failed) == (1, 1)
    detail = db.query(ImportErrorDetail).one()
    assert (detail.row_number, detail.error_type) == (1, "persistence_error")


def test_unreachable_store_aborts_the_batch(db, coordinator, system_user, tmp_path, monkeypatch):
    p = write_csv(tmp_path / "r.csv", [row(caseid_no="E1"), row(caseid_no="E2"), row(caseid_no="E3")])
    make_batch(db, system_user)
    monkeypatch.setattr(UpsertEngine, "apply", _flaky_apply({2, 3}))
    monkeypatch.setattr(importer_mod, "ping_store", lambda session: False)
    out = _run(db, coordinator, p, retry_attempts=2, retry_backoff=0)
    assert out.status == BatchStatus.partially_completed
    assert (out.total, out.successful, out.failed) == (1, 1, 0)
    assert out.fatal.error_type.value == "persistence_fatal"


def test_batch_held_by_stopped_worker_is_left_alone_without_takeover(db, coordinator, system_user, tmp_path):
    p = _five_rows(tmp_path)
    make_batch(db, system_user)
    assert claim_batch(db, "batch-1", "dead-worker:1")
    assert _run(db, coordinator, p) is None
    assert get_batch(db, "batch-1").worker_id == "dead-worker:1"


def test_takeover_is_refused_while_owner_heartbeats(db, coordinator, system_user, tmp_path):
    p = _five_rows(tmp_path)
    make_batch(db, system_user)
    assert claim_batch(db, "batch-1", "other-worker:1")
    coordinator.mark_active("batch-1")
    assert _run(db, coordinator, p, allow_takeover=True) is None
    db.expire_all()
    assert get_batch(db, "batch-1").worker_id == "other-worker:1"


def test_takeover_reprocesses_a_half_finished_batch(db, coordinator, system_user, tmp_path):
    make_batch(db, system_user)
    first = write_csv(tmp_path / "first.csv", [row(caseid_no="E1")])
    run_import(db, make_job(first), coordinator, "dead-worker:1")
    # the dead worker had written row 1 and logged a row error before it stopped
    update_batch(
        db,
        "batch-1",
        status="PROCESSING",
        completed_at=None,
        total_records=2,
        failed_records=1,
        error_logs=[{"row": 3, "type": "mapping_error", "message": "stale"}],
    )
    db.add(ImportErrorDetail(batch_id="batch-1", row_number=3, error_type="mapping_error", error_message="stale"))
    db.commit()

    out = _run(db, coordinator, _five_rows(tmp_path), allow_takeover=True)

    assert out.status == BatchStatus.partially_completed
    assert (out.total, out.successful, out.failed) == (5, 3, 2)
    db.expire_all()
    b = get_batch(db, "batch-1")
    assert b.worker_id == "worker-1"
    assert db.query(ImportErrorDetail).filter_by(batch_id=b.id).count() == b.failed_records == 2
    assert [e["type"] for e in b.error_logs if e.get("row") is None] == ["worker_lost"]
    # row 1 was already written by the dead run and is matched, not duplicated
    assert db.query(CaseActivity).filter_by(import_batch_id=b.id).count() == b.activities_created == 3
    assert coordinator.beats >= 5
    assert verify_batch(db, b.id).verdict == "VERIFIED"


def test_verify_live_batch_and_detect_missing_activity(db, coordinator, system_user, tmp_path):
    make_batch(db, system_user)
    _run(db, coordinator, _five_rows(tmp_path))

    v = verify_batch(db, "batch-1")
    assert (v.verdict, v.successful_records, v.activities_expected, v.activities_found, v.cases_touched) == (
        "VERIFIED", 3, 3, 3, 3
    )

    db.delete(db.query(CaseActivity).first())
    db.commit()
    v = verify_batch(db, "batch-1")
    assert v.verdict == "MISMATCH"
    assert v.activities_found == 2


def test_verify_reimport_counts_only_new_activities(db, coordinator, system_user, tmp_path):
    p = _five_rows(tmp_path)
    make_batch(db, system_user, batch_id="first")
    _run(db, coordinator, p, batch_id="first")
    make_batch(db, system_user, batch_id="second", checksum="d" * 64)
    run_import(db, make_job(p, batch_id="second", checksum="d" * 64), coordinator, "worker-1")

    v = verify_batch(db, "second")
    assert (v.verdict, v.successful_records, v.activities_expected, v.activities_found) == ("VERIFIED", 3, 0, 0)


def test_verify_dry_run_and_unfinished_batches(db, coordinator, system_user, tmp_path):
    make_batch(db, system_user, dry_run=True)
    run_import(db, make_job(_five_rows(tmp_path), dry_run=True), coordinator, "worker-1")
    assert verify_batch(db, "batch-1").verdict == "NOT_APPLICABLE"

    make_batch(db, system_user, batch_id="waiting", checksum="d" * 64)
    assert verify_batch(db, "waiting").verdict == "NOT_FINISHED"
    assert verify_batch(db, "nope") is None


def test_run_binds_batch_and_worker_to_log_context(db, coordinator, system_user, tmp_path, monkeypatch):
    seen = []
    real = UpsertEngine.apply

    def _apply(self, mapped, batch_id, on_applied=None):
        seen.append(dict(structlog.contextvars.get_contextvars()))
        return real(self, mapped, batch_id, on_applied=on_applied)

    monkeypatch.setattr(UpsertEngine, "apply", _apply)
    make_batch(db, system_user)
    _run(db, coordinator, write_csv(tmp_path / "r.csv", [row(caseid_no="E1")]))
    assert seen == [{"batch_id": "batch-1", "worker_id": "worker-1"}]
    assert "batch_id" not in structlog.contextvars.get_contextvars()
