from datetime import datetime, timedelta, timezone

import pytest

from punchclock.cli import main
from punchclock.db import SqliteSessionStore, connect, create_project, create_task, init_db
from punchclock.engine import SessionEngine

T0 = datetime(2026, 1, 5, 9, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime):
        self.current = now

    def now(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)


@pytest.fixture
def at():
    """Timestamp ``seconds`` after a fixed origin."""
    return lambda seconds: T0 + timedelta(seconds=seconds)


@pytest.fixture
def conn():
    c = connect(":memory:")
    init_db(c)
    yield c
    c.close()


@pytest.fixture
def clock():
    return FakeClock(T0 + timedelta(hours=2))


@pytest.fixture
def store(conn):
    return SqliteSessionStore(conn)


@pytest.fixture
def engine(store, clock):
    return SessionEngine(store, clock)


@pytest.fixture
def project(conn):
    return create_project(conn, name="Demo", description="demo project")


@pytest.fixture
def task(conn, project):
    return create_task(conn, project_id=project.id, number="T-1", title="Write parser", tags=["backend"])


@pytest.fixture
def other_task(conn, project):
    return create_task(conn, project_id=project.id, number="T-2", title="Write docs")


@pytest.fixture
def ptc(tmp_path, monkeypatch):
    """Run the CLI against a throwaway database and config."""
    monkeypatch.setenv("PUNCHCLOCK_HOME", str(tmp_path))
    db = str(tmp_path / "ptc.db")

    def run(*argv: str) -> int:
        return main(["--db", db, *argv])

    return run
