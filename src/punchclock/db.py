from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, Optional

import structlog

from .errors import NotFoundError
from .models import Project, SessionRow, Task, TimeSession
from .utils import ensure_dir, default_data_dir

logger = structlog.get_logger()

SCHEMA_VERSION = 1

_UNSET = object()


def to_iso(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat()


def from_iso(s: str) -> datetime:
    return datetime.fromisoformat(s)


def _opt_iso(dt: Optional[datetime]) -> Optional[str]:
    return to_iso(dt) if dt is not None else None


def _opt_dt(s: Optional[str]) -> Optional[datetime]:
    return from_iso(s) if s is not None else None


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class DBPaths:
    data_dir: Path
    db_path: Path


def resolve_db_path(explicit_path: Optional[str] = None) -> DBPaths:
    if explicit_path:
        p = Path(explicit_path).expanduser().resolve()
        ensure_dir(p.parent)
        return DBPaths(data_dir=p.parent, db_path=p)

    data_dir = default_data_dir()
    ensure_dir(data_dir)
    db_path = data_dir / "punchclock.db"
    return DBPaths(data_dir=data_dir, db_path=db_path)


def connect(db_path: Path | str) -> sqlite3.Connection:
    conn = sqlite3.connect(str(db_path))
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    conn.execute("PRAGMA journal_mode = WAL;")
    conn.execute("PRAGMA synchronous = NORMAL;")
    return conn


def init_db(conn: sqlite3.Connection) -> None:
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS meta (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS projects (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL UNIQUE,
            description TEXT,
            created_at_utc TEXT NOT NULL,
            updated_at_utc TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS tasks (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            project_id INTEGER NOT NULL,
            number TEXT NOT NULL,
            title TEXT NOT NULL,
            description TEXT,
            state TEXT NOT NULL DEFAULT 'pending',
            size_estimate REAL,
            time_estimate_hours REAL,
            completed_at_utc TEXT,
            created_at_utc TEXT NOT NULL,
            updated_at_utc TEXT NOT NULL,
            FOREIGN KEY(project_id) REFERENCES projects(id) ON DELETE CASCADE,
            UNIQUE(project_id, number)
        );

        CREATE INDEX IF NOT EXISTS idx_tasks_project ON tasks(project_id);
        CREATE INDEX IF NOT EXISTS idx_tasks_state ON tasks(state);

        CREATE TABLE IF NOT EXISTS task_tags (
            task_id INTEGER NOT NULL,
            tag TEXT NOT NULL,
            FOREIGN KEY(task_id) REFERENCES tasks(id) ON DELETE CASCADE,
            UNIQUE(task_id, tag)
        );

        CREATE INDEX IF NOT EXISTS idx_task_tags_tag ON task_tags(tag);

        CREATE TABLE IF NOT EXISTS time_sessions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            task_id INTEGER NOT NULL,
            started_at_utc TEXT NOT NULL,
            paused_at_utc TEXT,
            resumed_at_utc TEXT,
            stopped_at_utc TEXT,
            duration_s REAL NOT NULL DEFAULT 0,
            created_at_utc TEXT NOT NULL,
            updated_at_utc TEXT NOT NULL,
            FOREIGN KEY(task_id) REFERENCES tasks(id) ON DELETE CASCADE
        );

        CREATE INDEX IF NOT EXISTS idx_sessions_task ON time_sessions(task_id);
        CREATE INDEX IF NOT EXISTS idx_sessions_started ON time_sessions(started_at_utc);
        CREATE INDEX IF NOT EXISTS idx_sessions_stopped ON time_sessions(stopped_at_utc);
        CREATE UNIQUE INDEX IF NOT EXISTS idx_sessions_one_open_per_task
            ON time_sessions(task_id) WHERE stopped_at_utc IS NULL;
        """
    )

    row = conn.execute("SELECT value FROM meta WHERE key='schema_version';").fetchone()
    if row is None:
        conn.execute("INSERT INTO meta(key, value) VALUES('schema_version', ?);", (str(SCHEMA_VERSION),))
        logger.debug("schema initialized", version=SCHEMA_VERSION)
    conn.commit()


# --- projects ---


def _row_to_project(r: sqlite3.Row) -> Project:
    return Project(
        id=int(r["id"]),
        name=str(r["name"]),
        description=(str(r["description"]) if r["description"] is not None else None),
        created_at_utc=from_iso(r["created_at_utc"]),
        updated_at_utc=from_iso(r["updated_at_utc"]),
    )


def create_project(conn: sqlite3.Connection, *, name: str, description: Optional[str] = None) -> Project:
    now = to_iso(_now())
    cur = conn.execute(
        "INSERT INTO projects(name, description, created_at_utc, updated_at_utc) VALUES(?, ?, ?, ?);",
        (name, description, now, now),
    )
    conn.commit()
    return get_project(conn, int(cur.lastrowid))


def get_project(conn: sqlite3.Connection, project_id: int) -> Optional[Project]:
    r = conn.execute("SELECT * FROM projects WHERE id=?;", (int(project_id),)).fetchone()
    return _row_to_project(r) if r else None


def get_project_by_name(conn: sqlite3.Connection, name: str) -> Optional[Project]:
    r = conn.execute("SELECT * FROM projects WHERE name=?;", (name,)).fetchone()
    return _row_to_project(r) if r else None


def list_projects(conn: sqlite3.Connection) -> list[Project]:
    rows = conn.execute("SELECT * FROM projects ORDER BY name ASC;").fetchall()
    return [_row_to_project(r) for r in rows]


def rename_project(conn: sqlite3.Connection, project_id: int, name: str) -> Project:
    conn.execute(
        "UPDATE projects SET name=?, updated_at_utc=? WHERE id=?;",
        (name, to_iso(_now()), int(project_id)),
    )
    conn.commit()
    return get_project(conn, project_id)


def delete_project(conn: sqlite3.Connection, project_id: int) -> None:
    conn.execute("DELETE FROM projects WHERE id=?;", (int(project_id),))
    conn.commit()


def project_stats(conn: sqlite3.Connection, project_id: int) -> dict:
    r = conn.execute(
        """
        SELECT
            COUNT(DISTINCT t.id) AS total_tasks,
            COUNT(DISTINCT CASE WHEN t.state = 'completed' THEN t.id END) AS completed_tasks,
            MAX(s.started_at_utc) AS last_activity
        FROM tasks t
        LEFT JOIN time_sessions s ON s.task_id = t.id
        WHERE t.project_id = ?;
        """,
        (int(project_id),),
    ).fetchone()
    total = conn.execute(
        """
        SELECT COALESCE(SUM(s.duration_s), 0) AS total_s
        FROM time_sessions s JOIN tasks t ON t.id = s.task_id
        WHERE t.project_id = ?;
        """,
        (int(project_id),),
    ).fetchone()
    return {
        "total_tasks": int(r["total_tasks"]),
        "completed_tasks": int(r["completed_tasks"]),
        "total_s": float(total["total_s"]),
        "last_activity": _opt_dt(r["last_activity"]),
    }


# --- tasks ---


def _tags_for(conn: sqlite3.Connection, task_ids: list[int]) -> dict[int, list[str]]:
    out: dict[int, list[str]] = {tid: [] for tid in task_ids}
    if not task_ids:
        return out
    marks = ",".join("?" for _ in task_ids)
    rows = conn.execute(
        f"SELECT task_id, tag FROM task_tags WHERE task_id IN ({marks}) ORDER BY rowid ASC;",
        task_ids,
    ).fetchall()
    for r in rows:
        out[int(r["task_id"])].append(str(r["tag"]))
    return out


def _row_to_task(r: sqlite3.Row, tags: list[str]) -> Task:
    return Task(
        id=int(r["id"]),
        project_id=int(r["project_id"]),
        number=str(r["number"]),
        title=str(r["title"]),
        description=(str(r["description"]) if r["description"] is not None else None),
        state=str(r["state"]),
        size_estimate=(float(r["size_estimate"]) if r["size_estimate"] is not None else None),
        time_estimate_hours=(float(r["time_estimate_hours"]) if r["time_estimate_hours"] is not None else None),
        completed_at_utc=_opt_dt(r["completed_at_utc"]),
        created_at_utc=from_iso(r["created_at_utc"]),
        updated_at_utc=from_iso(r["updated_at_utc"]),
        tags=tags,
    )


def next_task_number(conn: sqlite3.Connection, project_id: int) -> str:
    r = conn.execute("SELECT COUNT(*) AS n FROM tasks WHERE project_id=?;", (int(project_id),)).fetchone()
    n = int(r["n"]) + 1
    while conn.execute(
        "SELECT 1 FROM tasks WHERE project_id=? AND number=?;", (int(project_id), f"T-{n}")
    ).fetchone():
        n += 1
    return f"T-{n}"


def create_task(
    conn: sqlite3.Connection,
    *,
    project_id: int,
    number: str,
    title: str,
    description: Optional[str] = None,
    state: str = "pending",
    size_estimate: Optional[float] = None,
    time_estimate_hours: Optional[float] = None,
    tags: Optional[list[str]] = None,
) -> Task:
    now = _now()
    cur = conn.execute(
        """
        INSERT INTO tasks(
            project_id, number, title, description, state, size_estimate, time_estimate_hours,
            completed_at_utc, created_at_utc, updated_at_utc
        )
        VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
        """,
        (
            int(project_id),
            number,
            title,
            description,
            state,
            size_estimate,
            time_estimate_hours,
            (to_iso(now) if state == "completed" else None),
            to_iso(now),
            to_iso(now),
        ),
    )
    task_id = int(cur.lastrowid)
    for tag in tags or []:
        conn.execute("INSERT OR IGNORE INTO task_tags(task_id, tag) VALUES(?, ?);", (task_id, tag))
    conn.commit()
    return get_task(conn, task_id)


def get_task(conn: sqlite3.Connection, task_id: int) -> Optional[Task]:
    r = conn.execute("SELECT * FROM tasks WHERE id=?;", (int(task_id),)).fetchone()
    if not r:
        return None
    return _row_to_task(r, _tags_for(conn, [int(r["id"])])[int(r["id"])])


def list_tasks(
    conn: sqlite3.Connection,
    *,
    project_id: Optional[int] = None,
    state: Optional[str] = None,
    tag: Optional[str] = None,
) -> list[Task]:
    q = "SELECT t.* FROM tasks t WHERE 1=1"
    params: list[object] = []
    if project_id is not None:
        q += " AND t.project_id = ?"
        params.append(int(project_id))
    if state:
        q += " AND t.state = ?"
        params.append(state)
    if tag:
        q += " AND EXISTS (SELECT 1 FROM task_tags tt WHERE tt.task_id = t.id AND tt.tag = ?)"
        params.append(tag)
    q += " ORDER BY t.id ASC"

    rows = conn.execute(q, params).fetchall()
    tags = _tags_for(conn, [int(r["id"]) for r in rows])
    return [_row_to_task(r, tags[int(r["id"])]) for r in rows]


def update_task(
    conn: sqlite3.Connection,
    task_id: int,
    *,
    number=_UNSET,
    title=_UNSET,
    description=_UNSET,
    state=_UNSET,
    size_estimate=_UNSET,
    time_estimate_hours=_UNSET,
    tags=_UNSET,
) -> Task:
    current = get_task(conn, task_id)
    if current is None:
        raise NotFoundError(f"Task #{task_id} not found", task_id=task_id)

    sets: list[str] = []
    params: list[object] = []
    for col, value in (
        ("number", number),
        ("title", title),
        ("description", description),
        ("size_estimate", size_estimate),
        ("time_estimate_hours", time_estimate_hours),
    ):
        if value is not _UNSET:
            sets.append(f"{col} = ?")
            params.append(value)

    now = to_iso(_now())
    if state is not _UNSET and state != current.state:
        sets.append("state = ?")
        params.append(state)
        sets.append("completed_at_utc = ?")
        params.append(now if state == "completed" else None)

    sets.append("updated_at_utc = ?")
    params.append(now)
    params.append(int(task_id))
    conn.execute(f"UPDATE tasks SET {', '.join(sets)} WHERE id = ?;", params)

    if tags is not _UNSET:
        conn.execute("DELETE FROM task_tags WHERE task_id=?;", (int(task_id),))
        for tag in tags or []:
            conn.execute("INSERT OR IGNORE INTO task_tags(task_id, tag) VALUES(?, ?);", (int(task_id), tag))
    conn.commit()
    return get_task(conn, task_id)


def delete_task(conn: sqlite3.Connection, task_id: int) -> None:
    conn.execute("DELETE FROM tasks WHERE id=?;", (int(task_id),))
    conn.commit()


# --- time sessions ---


def _row_to_session(r: sqlite3.Row) -> TimeSession:
    return TimeSession(
        id=int(r["id"]),
        task_id=int(r["task_id"]),
        started_at_utc=from_iso(r["started_at_utc"]),
        paused_at_utc=_opt_dt(r["paused_at_utc"]),
        resumed_at_utc=_opt_dt(r["resumed_at_utc"]),
        stopped_at_utc=_opt_dt(r["stopped_at_utc"]),
        duration_s=float(r["duration_s"]),
    )


def insert_session(conn: sqlite3.Connection, session: TimeSession, *, commit: bool = True) -> TimeSession:
    now = to_iso(_now())
    cur = conn.execute(
        """
        INSERT INTO time_sessions(
            task_id, started_at_utc, paused_at_utc, resumed_at_utc, stopped_at_utc, duration_s,
            created_at_utc, updated_at_utc
        )
        VALUES(?, ?, ?, ?, ?, ?, ?, ?);
        """,
        (
            int(session.task_id),
            to_iso(session.started_at_utc),
            _opt_iso(session.paused_at_utc),
            _opt_iso(session.resumed_at_utc),
            _opt_iso(session.stopped_at_utc),
            float(session.duration_s),
            now,
            now,
        ),
    )
    if commit:
        conn.commit()
    return get_session(conn, int(cur.lastrowid))


def update_session(conn: sqlite3.Connection, session: TimeSession, *, commit: bool = True) -> TimeSession:
    conn.execute(
        """
        UPDATE time_sessions
        SET paused_at_utc=?, resumed_at_utc=?, stopped_at_utc=?, duration_s=?, updated_at_utc=?
        WHERE id=?;
        """,
        (
            _opt_iso(session.paused_at_utc),
            _opt_iso(session.resumed_at_utc),
            _opt_iso(session.stopped_at_utc),
            float(session.duration_s),
            to_iso(_now()),
            int(session.id),
        ),
    )
    if commit:
        conn.commit()
    return get_session(conn, int(session.id))


def get_session(conn: sqlite3.Connection, session_id: int) -> Optional[TimeSession]:
    r = conn.execute("SELECT * FROM time_sessions WHERE id=?;", (int(session_id),)).fetchone()
    return _row_to_session(r) if r else None


def get_open_session_for_task(conn: sqlite3.Connection, task_id: int) -> Optional[TimeSession]:
    r = conn.execute(
        "SELECT * FROM time_sessions WHERE task_id=? AND stopped_at_utc IS NULL "
        "ORDER BY started_at_utc DESC LIMIT 1;",
        (int(task_id),),
    ).fetchone()
    return _row_to_session(r) if r else None


def get_open_session(conn: sqlite3.Connection) -> Optional[TimeSession]:
    r = conn.execute(
        "SELECT * FROM time_sessions WHERE stopped_at_utc IS NULL ORDER BY started_at_utc DESC LIMIT 1;"
    ).fetchone()
    return _row_to_session(r) if r else None


def list_open_sessions(conn: sqlite3.Connection) -> list[TimeSession]:
    rows = conn.execute(
        "SELECT * FROM time_sessions WHERE stopped_at_utc IS NULL ORDER BY started_at_utc DESC;"
    ).fetchall()
    return [_row_to_session(r) for r in rows]


def first_session_starts(conn: sqlite3.Connection, task_ids: list[int]) -> dict[int, datetime]:
    """Earliest session start per task, ignoring any report window."""
    if not task_ids:
        return {}
    marks = ",".join("?" for _ in task_ids)
    rows = conn.execute(
        f"SELECT task_id, MIN(started_at_utc) AS first_start FROM time_sessions "
        f"WHERE task_id IN ({marks}) GROUP BY task_id;",
        [int(t) for t in task_ids],
    ).fetchall()
    return {int(r["task_id"]): from_iso(r["first_start"]) for r in rows}


_STATE_SQL = {
    "active": " AND s.stopped_at_utc IS NULL AND (s.paused_at_utc IS NULL OR s.resumed_at_utc IS NOT NULL)",
    "paused": " AND s.stopped_at_utc IS NULL AND s.paused_at_utc IS NOT NULL AND s.resumed_at_utc IS NULL",
    "stopped": " AND s.stopped_at_utc IS NOT NULL",
}


def list_sessions(
    conn: sqlite3.Connection,
    *,
    task_id: Optional[int] = None,
    project_id: Optional[int] = None,
    started_from: Optional[datetime] = None,
    started_to: Optional[datetime] = None,
    state: Optional[str] = None,
    limit: int = 50,
) -> list[TimeSession]:
    q = "SELECT s.* FROM time_sessions s JOIN tasks t ON t.id = s.task_id WHERE 1=1"
    params: list[object] = []
    if task_id is not None:
        q += " AND s.task_id = ?"
        params.append(int(task_id))
    if project_id is not None:
        q += " AND t.project_id = ?"
        params.append(int(project_id))
    if started_from is not None:
        q += " AND s.started_at_utc >= ?"
        params.append(to_iso(started_from))
    if started_to is not None:
        q += " AND s.started_at_utc < ?"
        params.append(to_iso(started_to))
    if state:
        q += _STATE_SQL[state]
    q += " ORDER BY s.started_at_utc DESC LIMIT ?"
    params.append(int(limit))
    return [_row_to_session(r) for r in conn.execute(q, params).fetchall()]


def fetch_session_rows(
    conn: sqlite3.Connection,
    *,
    start_utc: Optional[datetime] = None,
    end_utc: Optional[datetime] = None,
    project_id: Optional[int] = None,
    task_id: Optional[int] = None,
    tag: Optional[str] = None,
    limit: int = 100000,
) -> list[SessionRow]:
    q = """
        SELECT
            s.*, t.number AS task_number, t.title AS task_title,
            p.id AS project_id, p.name AS project_name
        FROM time_sessions s
        JOIN tasks t ON t.id = s.task_id
        JOIN projects p ON p.id = t.project_id
        WHERE 1=1
    """
    params: list[object] = []
    if start_utc is not None:
        q += " AND s.started_at_utc >= ?"
        params.append(to_iso(start_utc))
    if end_utc is not None:
        q += " AND s.started_at_utc < ?"
        params.append(to_iso(end_utc))
    if project_id is not None:
        q += " AND p.id = ?"
        params.append(int(project_id))
    if task_id is not None:
        q += " AND t.id = ?"
        params.append(int(task_id))
    if tag:
        q += " AND EXISTS (SELECT 1 FROM task_tags tt WHERE tt.task_id = t.id AND tt.tag = ?)"
        params.append(tag)
    q += " ORDER BY s.started_at_utc ASC LIMIT ?"
    params.append(int(limit))

    rows = conn.execute(q, params).fetchall()
    tags = _tags_for(conn, sorted({int(r["task_id"]) for r in rows}))
    out: list[SessionRow] = []
    for r in rows:
        out.append(
            SessionRow(
                session=_row_to_session(r),
                task_number=str(r["task_number"]),
                task_title=str(r["task_title"]),
                project_id=int(r["project_id"]),
                project_name=str(r["project_name"]),
                tags=tags[int(r["task_id"])],
            )
        )
    return out


class SqliteSessionStore:
    """Session storage for the engine, backed by one SQLite connection.

    Writes made inside ``atomic()`` are committed together; outside of it
    every write commits on its own.
    """

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn
        self._depth = 0

    @contextmanager
    def atomic(self) -> Iterator[None]:
        if self._depth:
            self._depth += 1
            try:
                yield
            finally:
                self._depth -= 1
            return

        if self.conn.in_transaction:
            self.conn.commit()
        # IMMEDIATE takes the write lock up front so check-then-insert is serialized across processes
        self.conn.execute("BEGIN IMMEDIATE;")
        self._depth = 1
        try:
            yield
        except BaseException:
            self.conn.rollback()
            raise
        else:
            self.conn.commit()
        finally:
            self._depth = 0

    def get_session(self, session_id: int) -> Optional[TimeSession]:
        return get_session(self.conn, session_id)

    def get_open_session_for_task(self, task_id: int) -> Optional[TimeSession]:
        return get_open_session_for_task(self.conn, task_id)

    def get_open_session(self) -> Optional[TimeSession]:
        return get_open_session(self.conn)

    def get_open_sessions(self) -> list[TimeSession]:
        return list_open_sessions(self.conn)

    def save_session(self, session: TimeSession) -> TimeSession:
        commit = self._depth == 0
        if session.id is None:
            return insert_session(self.conn, session, commit=commit)
        return update_session(self.conn, session, commit=commit)
