from __future__ import annotations

import os

# Set deterministic, writable defaults before importing modules that may touch DB paths.
os.environ.setdefault("TL_ENV", "test")
os.environ.setdefault("TL_SQLITE_PATH", "/tmp/timeledger/tl-conftest.db")

from dataclasses import dataclass
from typing import Dict

import pytest

from api.db import get_sessionmaker, init_db, reset_engine_cache
from api.main import build_app as _build_app
from services.credentials import add_staff, issue_session
from services.directory import DirectoryService
from services.principals import Principal


@pytest.fixture(autouse=True)
def _restore_env():
    before = dict(os.environ)
    yield
    os.environ.clear()
    os.environ.update(before)


@pytest.fixture()
def db_path(tmp_path: pytest.TempPathFactory, monkeypatch: pytest.MonkeyPatch) -> str:
    path = str(tmp_path / "tl-test.db")
    monkeypatch.setenv("TL_ENV", "test")
    monkeypatch.setenv("TL_SQLITE_PATH", path)
    monkeypatch.delenv("TL_DB_URL", raising=False)
    reset_engine_cache()
    init_db(sqlite_path=path)
    yield path
    reset_engine_cache()


@pytest.fixture()
def db(db_path: str):
    session = get_sessionmaker(db_path)()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def build_app(db_path: str):
    """
    Factory fixture so tests can build an app against the per-test sqlite file.
    """

    def _factory(clock=None, registry=None):
        return _build_app(clock=clock, registry=registry)

    return _factory


@dataclass
class Seed:
    client_id: int
    other_client_id: int
    project_id: int
    other_project_id: int
    staff_id: int
    staff_token: str
    client_token: str
    other_client_token: str

    def headers(self, token: str) -> Dict[str, str]:
        return {"X-Session-Token": token}

    @property
    def staff(self) -> Dict[str, str]:
        return self.headers(self.staff_token)

    @property
    def client(self) -> Dict[str, str]:
        return self.headers(self.client_token)


@pytest.fixture()
def seed(db) -> Seed:
    """
    Two clients (rate 100 and 80), one project at 150 for the first client,
    one project for the second, a staff member, and a session for each.
    """
    directory = DirectoryService(db)
    acme = directory.add_client(name="Acme", email="billing@acme.test", hourly_rate="100")
    globex = directory.add_client(name="Globex", email="ap@globex.test", hourly_rate="80")
    project = directory.add_project(client_id=acme.id, name="Website", hourly_rate="150")
    other_project = directory.add_project(client_id=globex.id, name="Audit")
    staff = add_staff(db, email="ops@studio.test", name="Ops")

    return Seed(
        client_id=acme.id,
        other_client_id=globex.id,
        project_id=project.id,
        other_project_id=other_project.id,
        staff_id=staff.id,
        staff_token=issue_session(db, Principal.staff(staff.id)),
        client_token=issue_session(db, Principal.client(acme.id)),
        other_client_token=issue_session(db, Principal.client(globex.id)),
    )

