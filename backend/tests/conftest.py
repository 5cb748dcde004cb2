import csv
import os
from contextlib import contextmanager
from pathlib import Path

os.environ.setdefault("ENV", "test")
os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from caseload.db.base import Base
from caseload.db import models  # noqa: F401
from caseload.crud.imports import create_batch
from caseload.crud.users import get_or_create_system_user
from caseload.schemas.imports import ImportJobIn
from caseload.services.etl.parsers.case_returns import CaseReturnRow

HEADER = list(CaseReturnRow.model_fields)

VALID_ROW = {
    "date_dd": "12",
    "date_mon": "Mar",
    "date_yyyy": "2024",
    "caseid_type": "HCCC",
    "caseid_no": "E101",
    "filed_dd": "5",
    "filed_mon": "Jan",
    "filed_yyyy": "2023",
    "court": "Milimani High Court",
    "original_court": "",
    "original_code": "",
    "original_number": "",
    "original_year": "",
    "case_type": "Civil Suit",
    "judge_1": "Hon. A. Mwangi",
    "judge_2": "",
    "judge_3": "",
    "judge_4": "",
    "judge_5": "",
    "judge_6": "",
    "judge_7": "",
    "comingfor": "Mention",
    "outcome": "Adjourned",
    "reason_adj": "",
    "next_dd": "",
    "next_mon": "",
    "next_yyyy": "",
    "male_applicant": "1",
    "female_applicant": "0",
    "organization_applicant": "0",
    "male_defendant": "0",
    "female_defendant": "1",
    "organization_defendant": "0",
    "legalrep": "Yes",
    "applicant_witness": "0",
    "defendant_witness": "0",
    "custody": "0",
    "other_details": "",
}


def row(**over) -> dict:
    r = dict(VALID_ROW)
    r.update({k: str(v) for k, v in over.items()})
    return r


def write_csv(path: Path, rows: list, header: list | None = None) -> Path:
    header = header or HEADER
    with open(path, "w", encoding="utf-8", newline="") as f:
        w = csv.writer(f)
        w.writerow(header)
        for r in rows:
            if isinstance(r, dict):
                w.writerow([r.get(h, "") for h in header])
            else:
                w.writerow(r)
    return path


class InMemoryCoordinator:
    """Same surface as RedisCoordinator, kept in process for tests."""

    def __init__(self):
        self.guards: dict[str, str] = {}
        self.cancelled: set[str] = set()
        self.active: set[str] = set()
        self.locked: list[str] = []
        self.depth = 0
        self.beats = 0

    def claim_checksum(self, checksum, batch_id, ttl):
        if checksum in self.guards:
            return False
        self.guards[checksum] = batch_id
        return True

    def checksum_owner(self, checksum):
        return self.guards.get(checksum)

    def release_checksum(self, checksum, batch_id=None):
        if batch_id is None or self.guards.get(checksum) == batch_id:
            self.guards.pop(checksum, None)

    @contextmanager
    def case_lock(self, name, timeout):
        self.locked.append(name)
        yield

    def request_cancel(self, batch_id):
        self.cancelled.add(batch_id)

    def is_cancelled(self, batch_id):
        return batch_id in self.cancelled

    def mark_active(self, batch_id):
        self.active.add(batch_id)

    def heartbeat(self, batch_id):
        self.beats += 1
        self.active.add(batch_id)

    def is_active(self, batch_id):
        return batch_id in self.active

    def mark_idle(self, batch_id):
        self.active.discard(batch_id)

    def active_count(self):
        return len(self.active)

    def queue_depth(self, queue_name):
        return self.depth

    def ping(self):
        return True


@pytest.fixture
def engine():
    eng = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)

    # let SQLAlchemy own BEGIN so SAVEPOINT behaves on pysqlite
    @event.listens_for(eng, "connect")
    def _connect(dbapi_connection, _record):
        dbapi_connection.isolation_level = None

    @event.listens_for(eng, "begin")
    def _begin(conn):
        conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


@pytest.fixture
def db(session_factory):
    s = session_factory()
    yield s
    s.close()


@pytest.fixture
def coordinator():
    return InMemoryCoordinator()


@pytest.fixture
def system_user(db):
    return get_or_create_system_user(db, "system")


def make_batch(db, user, batch_id="batch-1", checksum="c" * 64, dry_run=False, filename="returns.csv"):
    return create_batch(
        db,
        batch_id=batch_id,
        filename=filename,
        file_size=0,
        checksum=checksum,
        created_by=user.id,
        dry_run=dry_run,
    )


def make_job(path: Path, batch_id="batch-1", checksum="c" * 64, dry_run=False) -> ImportJobIn:
    return ImportJobIn(
        file_path=str(path),
        filename=path.name,
        file_size=path.stat().st_size if path.exists() else 0,
        checksum=checksum,
        batch_id=batch_id,
        dry_run=dry_run,
    )
