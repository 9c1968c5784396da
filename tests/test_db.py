import sqlite3

import pytest

from punchclock import db
from punchclock.engine import SessionEngine
from punchclock.errors import NotFoundError
from punchclock.models import TimeSession

def test_init_is_idempotent(conn):
    db.init_db(conn)
    r = conn.execute("SELECT value FROM meta WHERE key='schema_version';").fetchone()
    assert r["value"] == str(db.SCHEMA_VERSION)

def test_project_roundtrip_and_stats(conn, project, task, engine, at):
    assert db.get_project_by_name(conn, "Demo") == project
    s = engine.start(task.id, at(0))
    engine.stop(s.id, at(600))
    db.update_task(conn, task.id, state="completed")
    stats = db.project_stats(conn, project.id)
    assert stats["total_tasks"] == 1
    assert stats["completed_tasks"] == 1
    assert stats["total_s"] == 600
    assert stats["last_activity"] == at(0)

def test_task_numbers_and_tags(conn, project, task):
    assert db.next_task_number(conn, project.id) == "T-2"
    assert task.tags == ["backend"]
    assert [t.id for t in db.list_tasks(conn, tag="backend")] == [task.id]
    assert db.list_tasks(conn, tag="frontend") == []

def test_duplicate_task_number_rejected(conn, project, task):
    with pytest.raises(sqlite3.IntegrityError):
        db.create_task(conn, project_id=project.id, number="T-1", title="again")

def test_update_task_tracks_completion(conn, task):
    done = db.update_task(conn, task.id, state="completed", tags=["api", "backend"])
    assert done.completed_at_utc is not None
    assert done.tags == ["api", "backend"]
    reopened = db.update_task(conn, task.id, state="in-progress")
    assert reopened.completed_at_utc is None
    assert reopened.tags == ["api", "backend"]

def test_update_missing_task(conn):
    with pytest.raises(NotFoundError):
        db.update_task(conn, 42, title="nope")

def test_deleting_project_cascades(conn, project, task, engine, at):
    engine.start(task.id, at(0))
    db.delete_project(conn, project.id)
    assert db.get_task(conn, task.id) is None
    assert db.list_sessions(conn) == []

def test_one_open_session_per_task_enforced_by_schema(conn, task, at):
    db.insert_session(conn, TimeSession(id=None, task_id=task.id, started_at_utc=at(0)))
    with pytest.raises(sqlite3.IntegrityError):
        db.insert_session(conn, TimeSession(id=None, task_id=task.id, started_at_utc=at(10)))

def test_list_sessions_by_state(conn, store, clock, task, other_task, at):
    engine = SessionEngine(store, clock, single_focus=False)
    a = engine.start(task.id, at(0))
    b = engine.start(other_task.id, at(5))
    engine.pause(b.id, at(10))
    assert [s.id for s in db.list_sessions(conn, state="active")] == [a.id]
    assert [s.id for s in db.list_sessions(conn, state="paused")] == [b.id]
    engine.stop(a.id, at(20))
    assert [s.id for s in db.list_sessions(conn, state="stopped")] == [a.id]

def test_fetch_session_rows_window_and_joins(conn, engine, task, other_task, at):
    s1 = engine.start(task.id, at(0))
    engine.stop(s1.id, at(100))
    s2 = engine.start(other_task.id, at(200))
    engine.stop(s2.id, at(300))

    rows = db.fetch_session_rows(conn, start_utc=at(150))
    assert [r.session.id for r in rows] == [s2.id]
    assert rows[0].task_number == "T-2"
    assert rows[0].project_name == "Demo"

    rows = db.fetch_session_rows(conn, end_utc=at(150), tag="backend")
    assert [r.session.id for r in rows] == [s1.id]
    assert rows[0].tags == ["backend"]

def test_store_atomic_rolls_back(store, task, at):
    with pytest.raises(RuntimeError):
        with store.atomic():
            store.save_session(TimeSession(id=None, task_id=task.id, started_at_utc=at(0)))
            raise RuntimeError("boom")
    assert store.get_open_session() is None

def test_resolve_db_path(tmp_path, monkeypatch):
    monkeypatch.setenv("PUNCHCLOCK_HOME", str(tmp_path / "home"))
    paths = db.resolve_db_path()
    assert paths.db_path == tmp_path / "home" / "punchclock.db"
    assert paths.data_dir.is_dir()

def test_rename_project(conn, project):
    renamed = db.rename_project(conn, project.id, "Website")
    assert renamed.name == "Website"
    assert db.get_project_by_name(conn, "Demo") is None

def test_list_sessions_filters(conn, engine, project, task, at):
    other = db.create_project(conn, name="Other")
    far = db.create_task(conn, project_id=other.id, number="T-1", title="elsewhere")
    s1 = engine.start(task.id, at(0))
    engine.stop(s1.id, at(100))
    s2 = engine.start(far.id, at(200))
    engine.stop(s2.id, at(300))
    assert [s.id for s in db.list_sessions(conn, project_id=project.id)] == [s1.id]
    assert [s.id for s in db.list_sessions(conn, started_from=at(150))] == [s2.id]
    assert [s.id for s in db.list_sessions(conn, started_to=at(150))] == [s1.id]

def test_first_session_starts(conn, engine, task, other_task, at):
    for start in (0, 500):
        s = engine.start(task.id, at(start))
        engine.stop(s.id, at(start + 100))
    assert db.first_session_starts(conn, [task.id, other_task.id]) == {task.id: at(0)}
    assert db.first_session_starts(conn, []) == {}

def test_list_open_sessions(conn, store, clock, task, other_task, at):
    engine = SessionEngine(store, clock, single_focus=False)
    a = engine.start(task.id, at(0))
    b = engine.start(other_task.id, at(10))
    assert [s.id for s in store.get_open_sessions()] == [b.id, a.id]
    engine.stop(b.id, at(20))
    assert [s.id for s in db.list_open_sessions(conn)] == [a.id]
