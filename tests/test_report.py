from datetime import datetime, timedelta, timezone

import pytest

from punchclock.models import SessionRow, Task, TimeSession
from punchclock.report import (
    build_estimation_report,
    build_time_report,
    build_velocity_report,
    estimation_bias,
    estimation_error,
    estimation_report_to_dict,
    period_starts,
    quality_for,
    render_estimation_text,
    render_time_report_text,
    render_velocity_text,
    time_report_to_dict,
)

NOW = datetime(2024, 3, 29, 12, 0, tzinfo=timezone.utc)
START = datetime(2024, 3, 1, 0, 0, tzinfo=timezone.utc)

def mk_task(tid, *, state="pending", hours=None, size=None, created=START, completed=None, tags=()):
    return Task(
        id=tid,
        project_id=1,
        number=f"T-{tid}",
        title=f"task {tid}",
        description=None,
        state=state,
        size_estimate=size,
        time_estimate_hours=hours,
        completed_at_utc=completed,
        created_at_utc=created,
        updated_at_utc=created,
        tags=list(tags),
    )

def mk_row(sid, task_id, started, seconds, *, open_=False, tags=(), project="Demo"):
    session = TimeSession(
        id=sid,
        task_id=task_id,
        started_at_utc=started,
        stopped_at_utc=None if open_ else started + timedelta(seconds=seconds),
        duration_s=0.0 if open_ else float(seconds),
    )
    return SessionRow(
        session=session,
        task_number=f"T-{task_id}",
        task_title=f"task {task_id}",
        project_id=1,
        project_name=project,
        tags=list(tags),
    )

def test_time_report_totals_and_groups():
    rows = [
        mk_row(1, 1, START + timedelta(hours=9), 3600, tags=["api"]),
        mk_row(2, 2, START + timedelta(hours=11), 1800),
        mk_row(3, 1, START + timedelta(days=1, hours=9), 600, tags=["api"]),
    ]
    rep = build_time_report(rows, "Report", now=NOW, group_by="task")
    assert rep.total_s == 6000
    assert rep.session_count == 3
    assert rep.longest_s == 3600
    assert rep.shortest_s == 600
    assert [(g.name, g.total_s, g.sessions) for g in rep.groups] == [("T-1 task 1", 4200, 2), ("T-2 task 2", 1800, 1)]

    by_tag = build_time_report(rows, "Report", now=NOW, group_by="tag")
    assert {g.name: g.total_s for g in by_tag.groups} == {"api": 4200, "(untagged)": 1800}

def test_time_report_counts_open_session_up_to_now():
    rows = [mk_row(1, 1, NOW - timedelta(minutes=30), 0, open_=True)]
    rep = build_time_report(rows, "Live", now=NOW)
    assert rep.total_s == 1800
    assert rep.open_sessions == 1
    assert "(1 open)" in render_time_report_text(rep)

def test_time_report_empty():
    rep = build_time_report([], "Nothing", now=NOW)
    assert rep.total_s == 0
    assert time_report_to_dict(rep)["groups"] == []
    assert "(no data)" in render_time_report_text(rep)

def test_period_starts_clamps_month_end():
    starts = period_starts(datetime(2024, 1, 31, tzinfo=timezone.utc), datetime(2024, 4, 1, tzinfo=timezone.utc), "month")
    assert [s.date().isoformat() for s in starts] == ["2024-01-31", "2024-02-29", "2024-03-29"]
    weeks = period_starts(START, START + timedelta(days=28), "week")
    assert len(weeks) == 4

def test_velocity_report():
    end = START + timedelta(days=28)
    tasks = [
        mk_task(1, state="completed", created=START, completed=START + timedelta(days=2)),
        mk_task(2, state="completed", created=START, completed=START + timedelta(days=20)),
        mk_task(3, state="in-progress"),
        mk_task(4),
    ]
    rows = [
        mk_row(1, 1, START + timedelta(days=1), 3600),
        mk_row(2, 2, START + timedelta(days=19), 7200),
    ]
    rep = build_velocity_report(tasks, rows, "Velocity", now=NOW, period="week", start_utc=START, end_utc=end)
    assert rep.completed_tasks == 2
    assert rep.completion_rate == 50
    assert rep.period_days == 28
    assert rep.throughput == pytest.approx(2 / 28)
    assert rep.velocity == pytest.approx(0.5)
    assert rep.cycle_time_s == pytest.approx(86400)
    assert rep.lead_time_s == pytest.approx((2 + 20) / 2 * 86400)
    assert rep.average_task_s == 5400
    assert [t.completed_tasks for t in rep.trends] == [1, 0, 1, 0]
    assert rep.velocity_change == pytest.approx(-100)
    assert "tasks/week" in render_velocity_text(rep)

def test_velocity_change_between_last_periods():
    end = START + timedelta(days=14)
    tasks = [
        mk_task(1, state="completed", completed=START + timedelta(days=1)),
        mk_task(2, state="completed", completed=START + timedelta(days=8)),
        mk_task(3, state="completed", completed=START + timedelta(days=9)),
    ]
    rep = build_velocity_report(tasks, [], "Velocity", now=NOW, start_utc=START, end_utc=end)
    assert rep.velocity_change == pytest.approx(100)

def test_estimation_math():
    assert estimation_error(3600, 4500) == pytest.approx(25)
    assert estimation_bias(3600, 2700) == pytest.approx(-25)
    assert estimation_error(0, 100) == 0
    assert [quality_for(x) for x in (10, 20, 35, 55, 61)] == ["excellent", "excellent", "good", "fair", "poor"]

def test_estimation_report():
    tasks = [
        mk_task(1, hours=1, size=2),
        mk_task(2, hours=2),
        mk_task(3, size=3),
        mk_task(4),
        mk_task(5, hours=1),
    ]
    rows = [
        mk_row(1, 1, START, 4500),
        mk_row(2, 2, START + timedelta(hours=3), 5400),
        mk_row(3, 3, START + timedelta(hours=6), 1800),
    ]
    rep = build_estimation_report(tasks, rows, "Estimates", now=NOW)
    assert rep.with_any_estimate == 4
    assert rep.with_time_estimate == 3
    assert rep.with_size_estimate == 2
    # task 5 has an estimate but no tracked time
    assert [t.task_id for t in rep.tasks] == [1, 2]
    assert rep.error_pct == pytest.approx(25)
    assert rep.bias_pct == pytest.approx(0)
    assert rep.quality == "good"
    assert rep.seconds_per_point == pytest.approx((4500 + 1800) / 5)
    assert [t.task_id for t in rep.overruns()] == [1]
    assert [t.task_id for t in rep.underruns()] == [2]
    assert rep.recommendations() == []

    d = estimation_report_to_dict(rep)
    assert d["coverage"] == pytest.approx(80)
    assert "Took longer than estimated" in render_estimation_text(rep)

def test_estimation_recommendations():
    tasks = [mk_task(1, hours=1), mk_task(2), mk_task(3), mk_task(4)]
    rows = [mk_row(1, 1, START, 3 * 3600)]
    rep = build_estimation_report(tasks, rows, "Estimates", now=NOW)
    assert rep.quality == "poor"
    recs = rep.recommendations()
    assert len(recs) == 3
    assert any("longer than estimated" in r for r in recs)

def test_cycle_time_counts_sessions_before_window():
    window_start = START + timedelta(days=30)
    task = mk_task(1, state="completed", completed=START + timedelta(days=40))
    rows = [mk_row(2, 1, START + timedelta(days=31), 3600)]

    inside_only = build_velocity_report([task], rows, "Velocity", now=NOW, start_utc=window_start, end_utc=window_start + timedelta(days=28))
    assert inside_only.cycle_time_s == pytest.approx(9 * 86400)

    rep = build_velocity_report(
        [task],
        rows,
        "Velocity",
        now=NOW,
        start_utc=window_start,
        end_utc=window_start + timedelta(days=28),
        first_starts={1: START},
    )
    assert rep.cycle_time_s == pytest.approx(40 * 86400)
