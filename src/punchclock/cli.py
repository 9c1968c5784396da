from __future__ import annotations

import argparse
import csv
import json
import sqlite3
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

import structlog

from .config import PCConfig, load_config, save_config
from .db import (
    SqliteSessionStore,
    connect,
    create_project,
    create_task,
    delete_project,
    delete_task,
    fetch_session_rows,
    first_session_starts,
    get_project,
    get_project_by_name,
    get_task,
    init_db,
    list_projects,
    list_sessions,
    list_tasks,
    next_task_number,
    project_stats,
    rename_project,
    resolve_db_path,
    update_task,
)
from .engine import SessionEngine, derive_state
from .errors import ConflictError, NotFoundError, PunchclockError, StorageError, ValidationError
from .log import configure_logging
from .models import TASK_STATES, Project, Task, TimeSession
from .report import (
    GROUP_BY,
    PERIODS,
    build_estimation_report,
    build_time_report,
    build_velocity_report,
    estimation_report_to_dict,
    local_day_bounds,
    render_estimation_text,
    render_time_report_text,
    render_velocity_text,
    time_report_to_dict,
    to_utc,
    velocity_report_to_dict,
)
from .utils import date_range_utc, format_duration, parse_duration, parse_timestamp
from .validation import (
    sanitize_description,
    sanitize_project_name,
    sanitize_tags,
    validate_project,
    validate_task,
    validate_task_transition,
)

logger = structlog.get_logger()


def _add_format(p: argparse.ArgumentParser) -> None:
    p.add_argument("-f", "--format", choices=["table", "json"], default=None, help="Output format (default: from config).")


def _add_window(p: argparse.ArgumentParser) -> None:
    g = p.add_mutually_exclusive_group()
    g.add_argument("--today", action="store_true", help="Only today (local time).")
    g.add_argument("--yesterday", action="store_true", help="Only yesterday (local time).")
    g.add_argument("--last", type=int, default=None, metavar="DAYS", help="The last N days (local time).")
    p.add_argument("--from", dest="from_date", default=None, metavar="YYYY-MM-DD", help="Start date (inclusive).")
    p.add_argument("--to", dest="to_date", default=None, metavar="YYYY-MM-DD", help="End date (inclusive).")


def _parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="ptc",
        description="Punch the clock: task-based time tracking for developers.",
    )
    p.add_argument("--db", default=None, help="Path to the SQLite DB file (default: OS data directory).")
    p.add_argument("-v", "--verbose", action="count", default=0, help="More log output (-vv for debug).")
    p.add_argument("--version", action="store_true", help="Print version and exit.")

    sub = p.add_subparsers(dest="cmd", required=False)

    # project
    pp = sub.add_parser("project", help="Manage projects.")
    ps = pp.add_subparsers(dest="project_cmd", required=True)
    pinit = ps.add_parser("init", help="Create a project.")
    pinit.add_argument("name")
    pinit.add_argument("-d", "--description", default=None, help="Project description.")
    plist = ps.add_parser("list", help="List projects.")
    _add_format(plist)
    pshow = ps.add_parser("show", help="Show project details.")
    pshow.add_argument("name")
    pren = ps.add_parser("rename", help="Rename a project.")
    pren.add_argument("name")
    pren.add_argument("new_name")
    pswitch = ps.add_parser("switch", help="Make a project the current one.")
    pswitch.add_argument("name")
    pdel = ps.add_parser("delete", help="Delete a project and everything in it.")
    pdel.add_argument("name")
    pdel.add_argument("--force", action="store_true", help="Do not ask for confirmation.")

    # task
    pt = sub.add_parser("task", help="Manage tasks in the current project.")
    ts = pt.add_subparsers(dest="task_cmd", required=True)
    tadd = ts.add_parser("add", help="Add a task.")
    tadd.add_argument("title")
    tadd.add_argument("-n", "--number", default=None, help="Task number (default: T-<n>).")
    tadd.add_argument("-d", "--description", default=None)
    tadd.add_argument("-e", "--estimate", default=None, help='Time estimate, e.g. "2h", "30m", "1d", "1h 30m".')
    tadd.add_argument("-s", "--size", type=float, default=None, help="Size estimate in story points.")
    tadd.add_argument("-t", "--tags", default=None, help="Comma-separated tags.")
    tadd.add_argument("--state", choices=TASK_STATES, default="pending")
    tadd.add_argument("--project", default=None, help="Project name (default: current project).")
    tlist = ts.add_parser("list", help="List tasks.")
    tlist.add_argument("--state", choices=TASK_STATES, default=None)
    tlist.add_argument("--tag", default=None)
    tlist.add_argument("--project", default=None)
    _add_format(tlist)
    tshow = ts.add_parser("show", help="Show a task.")
    tshow.add_argument("task", help="Task id or number.")
    _add_format(tshow)
    tupd = ts.add_parser("update", help="Update a task.")
    tupd.add_argument("task", help="Task id or number.")
    tupd.add_argument("--title", default=None)
    tupd.add_argument("-n", "--number", default=None)
    tupd.add_argument("-d", "--description", default=None)
    tupd.add_argument("-e", "--estimate", default=None)
    tupd.add_argument("-s", "--size", type=float, default=None)
    tupd.add_argument("-t", "--tags", default=None, help="Replace tags (comma-separated; empty string clears).")
    tupd.add_argument("--state", choices=TASK_STATES, default=None)
    tdel = ts.add_parser("delete", help="Delete a task.")
    tdel.add_argument("task", help="Task id or number.")
    tdel.add_argument("--force", action="store_true")

    # time
    ptime = sub.add_parser("time", help="Track time.")
    tms = ptime.add_subparsers(dest="time_cmd", required=True)
    tstart = tms.add_parser("start", help="Start tracking a task.")
    tstart.add_argument("task", help="Task id or number.")
    tstart.add_argument("--at", default=None, help="Start time (ISO 8601 or HH:MM; default: now).")
    for name, what in (("pause", "Pause"), ("resume", "Resume"), ("stop", "Stop")):
        sp = tms.add_parser(name, help=f"{what} the open session.")
        sp.add_argument("task", nargs="?", default=None, help="Task id or number (needed when several sessions are open).")
        sp.add_argument("--at", default=None, help=f"{what} time (ISO 8601 or HH:MM; default: now).")
    tstatus = tms.add_parser("status", help="Show the open session.")
    _add_format(tstatus)
    tlog = tms.add_parser("list", help="List recent sessions.")
    tlog.add_argument("--task", default=None, help="Only sessions of this task.")
    tlog.add_argument("--project", default=None, help="Only sessions in this project.")
    tlog.add_argument("--limit", type=int, default=20)
    _add_window(tlog)

    # report
    pr = sub.add_parser("report", help="Reports.")
    rs = pr.add_subparsers(dest="report_cmd", required=True)
    rtime = rs.add_parser("time", help="Time spent.")
    rtime.add_argument("--project", default=None)
    rtime.add_argument("--task", default=None)
    rtime.add_argument("--tag", default=None)
    rtime.add_argument("--by", choices=GROUP_BY, default="task", help="Group by field.")
    _add_window(rtime)
    _add_format(rtime)
    rvel = rs.add_parser("velocity", help="Velocity metrics.")
    rvel.add_argument("--project", default=None)
    rvel.add_argument("--period", choices=PERIODS, default="week")
    _add_window(rvel)
    _add_format(rvel)
    rest = rs.add_parser("estimates", help="Estimation accuracy.")
    rest.add_argument("--project", default=None)
    _add_window(rest)
    _add_format(rest)

    # export
    pe = sub.add_parser("export", help="Export sessions.")
    pe.add_argument("--format", choices=["json", "csv"], default="json", help="Export format.")
    pe.add_argument("--out", default=None, help="Output file path (default: stdout).")
    pe.add_argument("--project", default=None)
    _add_window(pe)

    # config
    pc = sub.add_parser("config", help="Show or change configuration.")
    cs = pc.add_subparsers(dest="config_cmd", required=True)
    cs.add_parser("show", help="Show configuration.")
    cset = cs.add_parser("set", help="Set a configuration value.")
    cset.add_argument("key")
    cset.add_argument("value")
    cs.add_parser("reset", help="Reset configuration to defaults.")
    return p


def main(argv: list[str] | None = None) -> int:
    from . import __version__
    argv = argv if argv is not None else sys.argv[1:]
    p = _parser()
    args = p.parse_args(argv)

    if args.version:
        print(__version__)
        return 0

    if args.cmd is None:
        p.print_help()
        return 0

    try:
        configure_logging(args.verbose)
        cfg = load_config(args.db)
        if cfg.log_level != "warning":
            configure_logging(args.verbose, cfg.log_level)

        if args.cmd == "config":
            return _cmd_config(args, cfg)

        # DB needed for everything else
        paths = resolve_db_path(args.db)
        conn = connect(paths.db_path)
        try:
            init_db(conn)
            if args.cmd == "project":
                return _cmd_project(conn, args, cfg)
            if args.cmd == "task":
                return _cmd_task(conn, args, cfg)
            if args.cmd == "time":
                return _cmd_time(conn, args, cfg)
            if args.cmd == "report":
                return _cmd_report(conn, args, cfg)
            if args.cmd == "export":
                return _cmd_export(conn, args)
        finally:
            conn.close()
    except PunchclockError as e:
        return _fail(e)
    except sqlite3.Error as e:
        return _fail(StorageError(f"Database error: {e}"))

    p.print_help()
    return 2


def _fail(err: PunchclockError) -> int:
    logger.info("command failed", code=err.code, exit_code=err.exit_code, **err.context)
    print(f"Error: {err.message}", file=sys.stderr)
    return err.exit_code


def _fmt(args, cfg: PCConfig) -> str:
    return getattr(args, "format", None) or cfg.output_format


def _print_json(payload) -> None:
    print(json.dumps(payload, indent=2, default=str))


def _confirm(prompt: str) -> bool:
    try:
        answer = input(f"{prompt} [y/N] ")
    except EOFError:
        return False
    return answer.strip().lower() in ("y", "yes")


def _local(dt: Optional[datetime], fmt: str = "%Y-%m-%d %H:%M:%S") -> str:
    if dt is None:
        return "-"
    return dt.astimezone().strftime(fmt)


def _project_or_404(conn, name: str) -> Project:
    project = get_project_by_name(conn, sanitize_project_name(name))
    if project is None:
        raise NotFoundError(f"Project {name!r} not found", project=name)
    return project


def _current_project(conn, args, cfg: PCConfig) -> Project:
    name = getattr(args, "project", None) or cfg.current_project
    if not name:
        raise ValidationError("No project selected. Create one with `ptc project init NAME` or pick one with `ptc project switch NAME`.")
    return _project_or_404(conn, name)


def _resolve_task(conn, ref: str, args, cfg: PCConfig) -> Task:
    """Find a task by numeric id, or by number within the current project."""
    ref = str(ref).strip()
    if ref.isdigit():
        task = get_task(conn, int(ref))
        if task is None:
            raise NotFoundError(f"Task #{ref} not found", task=ref)
        return task
    project = _current_project(conn, args, cfg)
    for task in list_tasks(conn, project_id=project.id):
        if task.number.lower() == ref.lower():
            return task
    raise NotFoundError(f"Task {ref!r} not found in project {project.name!r}", task=ref)


def _task_dict(t: Task) -> dict:
    return {
        "id": t.id,
        "project_id": t.project_id,
        "number": t.number,
        "title": t.title,
        "description": t.description,
        "state": t.state,
        "size_estimate": t.size_estimate,
        "time_estimate_hours": t.time_estimate_hours,
        "tags": t.tags,
        "completed_at": (t.completed_at_utc.isoformat() if t.completed_at_utc else None),
        "created_at": t.created_at_utc.isoformat(),
        "updated_at": t.updated_at_utc.isoformat(),
    }


def _session_dict(s: TimeSession, engine: Optional[SessionEngine] = None) -> dict:
    out = {
        "id": s.id,
        "task_id": s.task_id,
        "state": derive_state(s).name,
        "started_at": s.started_at_utc.isoformat(),
        "paused_at": (s.paused_at_utc.isoformat() if s.paused_at_utc else None),
        "resumed_at": (s.resumed_at_utc.isoformat() if s.resumed_at_utc else None),
        "stopped_at": (s.stopped_at_utc.isoformat() if s.stopped_at_utc else None),
        "duration_s": s.duration_s,
    }
    if engine is not None:
        out["current_duration_s"] = engine.current_duration(s)
    return out


# --- project ---


def _cmd_project(conn, args, cfg: PCConfig) -> int:
    pc = args.project_cmd
    if pc == "init":
        name = sanitize_project_name(args.name)
        description = sanitize_description(args.description)
        validate_project(name, description)
        if get_project_by_name(conn, name) is not None:
            raise ConflictError(f"Project {name!r} already exists", project=name)
        project = create_project(conn, name=name, description=description)
        print(f"Created project #{project.id}: {project.name}")
        if not cfg.current_project:
            cfg.current_project = project.name
            save_config(cfg, args.db)
            print(f"Switched to project {project.name!r}")
        return 0

    if pc == "list":
        projects = list_projects(conn)
        if _fmt(args, cfg) == "json":
            _print_json(
                [
                    {"id": p.id, "name": p.name, "description": p.description, "created_at": p.created_at_utc.isoformat()}
                    for p in projects
                ]
            )
            return 0
        if not projects:
            print("No projects yet. Create one with `ptc project init NAME`.")
            return 0
        print(f"Projects (showing {len(projects)}):")
        for p in projects:
            marker = "*" if p.name == cfg.current_project else " "
            print(f"  {marker} #{p.id:<4} {p.name:<24} {p.description or ''}")
        return 0

    if pc == "show":
        project = _project_or_404(conn, args.name)
        stats = project_stats(conn, project.id)
        print(f"Project #{project.id}: {project.name}")
        if project.description:
            print(f"  {project.description}")
        print(f"  Created:       {_local(project.created_at_utc)}")
        print(f"  Tasks:         {stats['completed_tasks']}/{stats['total_tasks']} completed")
        print(f"  Time tracked:  {format_duration(stats['total_s'])}")
        print(f"  Last activity: {_local(stats['last_activity'])}")
        return 0

    if pc == "rename":
        project = _project_or_404(conn, args.name)
        new_name = sanitize_project_name(args.new_name)
        validate_project(new_name)
        if new_name != project.name and get_project_by_name(conn, new_name) is not None:
            raise ConflictError(f"Project {new_name!r} already exists", project=new_name)
        old_name = project.name
        project = rename_project(conn, project.id, new_name)
        if cfg.current_project == old_name:
            cfg.current_project = project.name
            save_config(cfg, args.db)
        print(f"Renamed project to {project.name!r}")
        return 0

    if pc == "switch":
        project = _project_or_404(conn, args.name)
        cfg.current_project = project.name
        save_config(cfg, args.db)
        print(f"Switched to project {project.name!r}")
        return 0

    if pc == "delete":
        project = _project_or_404(conn, args.name)
        if not args.force and not _confirm(f"Delete project {project.name!r} with all its tasks and sessions?"):
            print("Cancelled.")
            return 0
        delete_project(conn, project.id)
        if cfg.current_project == project.name:
            cfg.current_project = None
            save_config(cfg, args.db)
        print(f"Deleted project {project.name!r}")
        return 0

    return 2


# --- task ---


def _split_tags(raw: Optional[str]) -> Optional[list[str]]:
    if raw is None:
        return None
    return sanitize_tags(raw.split(","))


def _estimate_hours(raw: Optional[str]) -> Optional[float]:
    if raw is None:
        return None
    return parse_duration(raw) / 3600.0


def _cmd_task(conn, args, cfg: PCConfig) -> int:
    tc = args.task_cmd
    if tc == "add":
        project = _current_project(conn, args, cfg)
        number = (args.number or next_task_number(conn, project.id)).strip()
        title = args.title.strip()
        description = sanitize_description(args.description)
        tags = _split_tags(args.tags) or []
        hours = _estimate_hours(args.estimate)
        validate_task(
            number=number,
            title=title,
            description=description,
            state=args.state,
            size_estimate=args.size,
            time_estimate_hours=hours,
            tags=tags,
        )
        try:
            task = create_task(
                conn,
                project_id=project.id,
                number=number,
                title=title,
                description=description,
                state=args.state,
                size_estimate=args.size,
                time_estimate_hours=hours,
                tags=tags,
            )
        except sqlite3.IntegrityError as e:
            raise ConflictError(f"Task number {number!r} already exists in {project.name!r}", number=number) from e
        print(f"Added task #{task.id} {task.number}: {task.title}")
        return 0

    if tc == "list":
        project = _current_project(conn, args, cfg)
        tasks = list_tasks(conn, project_id=project.id, state=args.state, tag=args.tag)
        if _fmt(args, cfg) == "json":
            _print_json([_task_dict(t) for t in tasks])
            return 0
        if not tasks:
            print(f"No tasks in {project.name!r}.")
            return 0
        print(f"Tasks in {project.name!r} (showing {len(tasks)}):")
        for t in tasks:
            est = format_duration(t.time_estimate_s) if t.time_estimate_s is not None else "-"
            size = f"{t.size_estimate:g}" if t.size_estimate is not None else "-"
            tags = ",".join(t.tags) or "-"
            print(f"  #{t.id:<4} {t.number:<8} {t.state:<11} est={est:<10} size={size:<4} tags={tags}  {t.title}")
        return 0

    if tc == "show":
        task = _resolve_task(conn, args.task, args, cfg)
        sessions = list_sessions(conn, task_id=task.id, limit=100000)
        engine = SessionEngine(SqliteSessionStore(conn))
        spent = sum(engine.current_duration(s) for s in sessions)
        if _fmt(args, cfg) == "json":
            payload = _task_dict(task)
            payload["time_spent_s"] = spent
            payload["sessions"] = [_session_dict(s) for s in sessions]
            _print_json(payload)
            return 0
        project = get_project(conn, task.project_id)
        print(f"Task #{task.id} {task.number}: {task.title}")
        print(f"  Project:     {project.name if project else task.project_id}")
        print(f"  State:       {task.state}")
        if task.description:
            print(f"  Description: {task.description}")
        if task.time_estimate_s is not None:
            print(f"  Estimate:    {format_duration(task.time_estimate_s)}")
        if task.size_estimate is not None:
            print(f"  Size:        {task.size_estimate:g}")
        if task.tags:
            print(f"  Tags:        {', '.join(task.tags)}")
        print(f"  Time spent:  {format_duration(spent)} in {len(sessions)} session(s)")
        print(f"  Created:     {_local(task.created_at_utc)}")
        return 0

    if tc == "update":
        task = _resolve_task(conn, args.task, args, cfg)
        changes: dict = {}
        if args.title is not None:
            changes["title"] = args.title.strip()
        if args.number is not None:
            changes["number"] = args.number.strip()
        if args.description is not None:
            changes["description"] = sanitize_description(args.description)
        if args.estimate is not None:
            changes["time_estimate_hours"] = _estimate_hours(args.estimate)
        if args.size is not None:
            changes["size_estimate"] = args.size
        if args.tags is not None:
            changes["tags"] = _split_tags(args.tags)
        if args.state is not None:
            validate_task_transition(task.state, args.state)
            changes["state"] = args.state
        if not changes:
            print("Nothing to update.")
            return 0
        validate_task(partial=True, **changes)
        try:
            task = update_task(conn, task.id, **changes)
        except sqlite3.IntegrityError as e:
            raise ConflictError(f"Task number {changes.get('number')!r} already exists", number=changes.get("number")) from e
        print(f"Updated task #{task.id} {task.number}: {task.title} [{task.state}]")
        return 0

    if tc == "delete":
        task = _resolve_task(conn, args.task, args, cfg)
        if not args.force and not _confirm(f"Delete task {task.number} {task.title!r} and its sessions?"):
            print("Cancelled.")
            return 0
        delete_task(conn, task.id)
        print(f"Deleted task #{task.id} {task.number}")
        return 0

    return 2


# --- time ---


def _describe(conn, session: TimeSession) -> str:
    task = get_task(conn, session.task_id)
    if task is None:
        return f"task #{session.task_id}"
    return f"{task.number} {task.title}"


def _cmd_time(conn, args, cfg: PCConfig) -> int:
    engine = SessionEngine(SqliteSessionStore(conn), single_focus=cfg.single_focus)
    tc = args.time_cmd
    at = parse_timestamp(args.at) if getattr(args, "at", None) else None

    if tc == "start":
        task = _resolve_task(conn, args.task, args, cfg)
        session = engine.start(task.id, at)
        if task.state == "pending":
            update_task(conn, task.id, state="in-progress")
        print(f"Started session #{session.id} on {task.number} {task.title} at {_local(session.started_at_utc, '%H:%M:%S')}")
        return 0

    task_id = _resolve_task(conn, args.task, args, cfg).id if tc in ("pause", "resume", "stop") and args.task else None

    if tc == "pause":
        session = engine.pause_current(at, task_id=task_id)
        print(f"Paused session #{session.id} ({_describe(conn, session)}); tracked {format_duration(session.duration_s)}")
        return 0

    if tc == "resume":
        session = engine.resume_current(at, task_id=task_id)
        print(f"Resumed session #{session.id} ({_describe(conn, session)})")
        return 0

    if tc == "stop":
        session = engine.stop_current(at, task_id=task_id)
        print(f"Stopped session #{session.id} ({_describe(conn, session)}); total {format_duration(session.duration_s)}")
        return 0

    if tc == "status":
        session = engine.open_session()
        if _fmt(args, cfg) == "json":
            _print_json(_session_dict(session, engine) if session else None)
            return 0
        if session is None:
            print("No active time tracking.")
            return 0
        state = derive_state(session)
        print(f"Session #{session.id}: {_describe(conn, session)}")
        print(f"  State:   {state.name}" + (f" since {_local(state.since, '%H:%M:%S')}" if state.name == "paused" else ""))
        print(f"  Started: {_local(session.started_at_utc)}")
        print(f"  Tracked: {format_duration(engine.current_duration(session))}")
        return 0

    if tc == "list":
        task_id = _resolve_task(conn, args.task, args, cfg).id if args.task else None
        project = _project_or_404(conn, args.project) if args.project else None
        start, end, _label = _window(args)
        sessions = list_sessions(
            conn,
            task_id=task_id,
            project_id=(project.id if project else None),
            started_from=start,
            started_to=end,
            limit=args.limit,
        )
        if not sessions:
            print("No sessions recorded yet.")
            return 0
        print(f"Recent sessions (showing {len(sessions)}):")
        for s in sessions:
            dur = format_duration(engine.current_duration(s))
            print(f"  #{s.id:<5} {_local(s.started_at_utc)}  {dur:>11}  {derive_state(s).name:<7}  {_describe(conn, s)}")
        return 0

    return 2


# --- reports ---


def _window(args, default_days: Optional[int] = None) -> tuple[Optional[datetime], Optional[datetime], str]:
    now_local = datetime.now().astimezone()
    if getattr(args, "today", False):
        start_local, end_local = local_day_bounds(now_local)
        return to_utc(start_local), to_utc(end_local), f"{start_local.strftime('%b %d, %Y')} (today)"
    if getattr(args, "yesterday", False):
        start_local, end_local = local_day_bounds(now_local - timedelta(days=1))
        return to_utc(start_local), to_utc(end_local), f"{start_local.strftime('%b %d, %Y')} (yesterday)"
    if getattr(args, "last", None) is not None:
        days = max(1, int(args.last))
        return to_utc(now_local - timedelta(days=days)), to_utc(now_local), f"last {days} days"
    if args.from_date or args.to_date:
        start, end = date_range_utc(args.from_date, args.to_date)
        return start, end, f"{args.from_date or '...'} to {args.to_date or '...'}"
    if default_days is not None:
        _, end_local = local_day_bounds(now_local)
        return to_utc(end_local - timedelta(days=default_days)), to_utc(end_local), f"last {default_days} days"
    return None, None, "all time"


def _cmd_report(conn, args, cfg: PCConfig) -> int:
    rc = args.report_cmd
    project = _project_or_404(conn, args.project) if args.project else None
    scope = f" - {project.name}" if project else ""
    now = datetime.now(timezone.utc)

    if rc == "time":
        start, end, label = _window(args)
        task_id = _resolve_task(conn, args.task, args, cfg).id if args.task else None
        rows = fetch_session_rows(
            conn,
            start_utc=start,
            end_utc=end,
            project_id=(project.id if project else None),
            task_id=task_id,
            tag=args.tag,
        )
        rep = build_time_report(rows, title=f"Time report{scope} - {label}", now=now, group_by=args.by)
        if _fmt(args, cfg) == "json":
            _print_json(time_report_to_dict(rep))
        else:
            print(render_time_report_text(rep), end="")
        return 0

    tasks = list_tasks(conn, project_id=(project.id if project else None))

    if rc == "velocity":
        start, end, label = _window(args, default_days=(28 if args.period == "week" else 90))
        rows = fetch_session_rows(conn, start_utc=start, end_utc=end, project_id=(project.id if project else None))
        rep = build_velocity_report(
            tasks,
            rows,
            title=f"Velocity{scope} - {label}",
            now=now,
            period=args.period,
            start_utc=start,
            end_utc=end,
            first_starts=first_session_starts(conn, [t.id for t in tasks if t.state == "completed"]),
        )
        if _fmt(args, cfg) == "json":
            _print_json(velocity_report_to_dict(rep))
        else:
            print(render_velocity_text(rep), end="")
        return 0

    if rc == "estimates":
        start, end, label = _window(args)
        rows = fetch_session_rows(conn, start_utc=start, end_utc=end, project_id=(project.id if project else None))
        rep = build_estimation_report(tasks, rows, title=f"Estimation accuracy{scope} - {label}", now=now)
        if _fmt(args, cfg) == "json":
            _print_json(estimation_report_to_dict(rep))
        else:
            print(render_estimation_text(rep), end="")
        return 0

    return 2


# --- export ---

EXPORT_FIELDS = [
    "id",
    "project",
    "task_number",
    "task_title",
    "tags",
    "state",
    "started_at",
    "paused_at",
    "resumed_at",
    "stopped_at",
    "duration_s",
]


def _cmd_export(conn, args) -> int:
    start, end, _label = _window(args)
    project = _project_or_404(conn, args.project) if args.project else None
    rows = fetch_session_rows(conn, start_utc=start, end_utc=end, project_id=(project.id if project else None))

    out_rows = []
    for r in rows:
        s = r.session
        out_rows.append(
            {
                "id": s.id,
                "project": r.project_name,
                "task_number": r.task_number,
                "task_title": r.task_title,
                "tags": ",".join(r.tags),
                "state": derive_state(s).name,
                "started_at": s.started_at_utc.isoformat(),
                "paused_at": (s.paused_at_utc.isoformat() if s.paused_at_utc else None),
                "resumed_at": (s.resumed_at_utc.isoformat() if s.resumed_at_utc else None),
                "stopped_at": (s.stopped_at_utc.isoformat() if s.stopped_at_utc else None),
                "duration_s": s.duration_s,
            }
        )

    if args.format == "json":
        payload = json.dumps(out_rows, indent=2)
        if args.out:
            Path(args.out).write_text(payload, encoding="utf-8")
            print(f"Wrote {len(out_rows)} rows to {args.out}")
        else:
            print(payload)
        return 0

    # csv
    if args.out:
        out_f = open(args.out, "w", newline="", encoding="utf-8")
        close = True
    else:
        out_f = sys.stdout
        close = False

    try:
        w = csv.DictWriter(out_f, fieldnames=EXPORT_FIELDS)
        w.writeheader()
        for row in out_rows:
            w.writerow(row)
    finally:
        if close:
            out_f.close()
            print(f"Wrote {len(out_rows)} rows to {args.out}")
    return 0


# --- config ---


def _cmd_config(args, cfg: PCConfig) -> int:
    cc = args.config_cmd
    if cc == "show":
        print(f"current_project = {cfg.current_project or '-'}")
        print(f"output_format   = {cfg.output_format}")
        print(f"single_focus    = {str(cfg.single_focus).lower()}")
        print(f"log_level       = {cfg.log_level}")
        return 0

    if cc == "set":
        cfg.set_value(args.key, args.value)
        save_config(cfg, args.db)
        print(f"Set {args.key} = {args.value}")
        return 0

    if cc == "reset":
        save_config(PCConfig(), args.db)
        print("Configuration reset to defaults.")
        return 0

    return 2


if __name__ == "__main__":
    raise SystemExit(main())
