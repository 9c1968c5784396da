from __future__ import annotations

import calendar
import math
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Iterable, Optional

from .engine import current_duration
from .models import SessionRow, Task
from .utils import format_duration

GROUP_BY = ("task", "project", "tag", "day", "week", "month")
PERIODS = ("week", "month")


def local_day_bounds(now_local: datetime) -> tuple[datetime, datetime]:
    start = now_local.replace(hour=0, minute=0, second=0, microsecond=0)
    end = start + timedelta(days=1)
    return start, end


def to_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        dt = dt.astimezone()
    return dt.astimezone(timezone.utc)


def _bar(value: float, max_value: float, width: int = 18) -> str:
    if max_value <= 0:
        return ""
    filled = int(round((value / max_value) * width))
    filled = max(0, min(width, filled))
    return "█" * filled + " " * (width - filled)


def _local_date(dt: datetime) -> date:
    return dt.astimezone().date()


def _group_keys(row: SessionRow, group_by: str) -> list[str]:
    started = _local_date(row.session.started_at_utc)
    if group_by == "task":
        return [f"{row.task_number} {row.task_title}"]
    if group_by == "project":
        return [row.project_name]
    if group_by == "tag":
        return list(row.tags) or ["(untagged)"]
    if group_by == "day":
        return [started.isoformat()]
    if group_by == "week":
        return [(started - timedelta(days=started.weekday())).isoformat()]
    if group_by == "month":
        return [started.strftime("%Y-%m")]
    raise ValueError(f"unknown grouping {group_by!r}")


# --- time report ---


@dataclass(frozen=True)
class TimeGroup:
    name: str
    total_s: float
    sessions: int

    @property
    def average_s(self) -> float:
        return self.total_s / self.sessions if self.sessions else 0.0


@dataclass(frozen=True)
class TimeReport:
    title: str
    group_by: str
    total_s: float
    session_count: int
    average_s: float
    longest_s: float
    shortest_s: float
    open_sessions: int
    groups: list[TimeGroup]
    daily: list[tuple[str, float, int]]  # date, total_s, sessions


def build_time_report(rows: Iterable[SessionRow], title: str, *, now: datetime, group_by: str = "task") -> TimeReport:
    """Aggregate session rows. Open sessions count up to ``now``."""
    durations: list[float] = []
    open_sessions = 0
    grp_total: dict[str, float] = {}
    grp_count: dict[str, int] = {}
    day_total: dict[str, float] = {}
    day_count: dict[str, int] = {}

    for r in rows:
        d = current_duration(r.session, now)
        durations.append(d)
        if r.session.is_open:
            open_sessions += 1
        for key in _group_keys(r, group_by):
            grp_total[key] = grp_total.get(key, 0.0) + d
            grp_count[key] = grp_count.get(key, 0) + 1
        day = _local_date(r.session.started_at_utc).isoformat()
        day_total[day] = day_total.get(day, 0.0) + d
        day_count[day] = day_count.get(day, 0) + 1

    total_s = sum(durations)
    groups = [
        TimeGroup(name=k, total_s=v, sessions=grp_count[k])
        for k, v in sorted(grp_total.items(), key=lambda x: x[1], reverse=True)
    ]
    daily = [(k, day_total[k], day_count[k]) for k in sorted(day_total)]

    return TimeReport(
        title=title,
        group_by=group_by,
        total_s=total_s,
        session_count=len(durations),
        average_s=(total_s / len(durations) if durations else 0.0),
        longest_s=max(durations, default=0.0),
        shortest_s=min(durations, default=0.0),
        open_sessions=open_sessions,
        groups=groups,
        daily=daily,
    )


def render_time_report_text(rep: TimeReport) -> str:
    lines: list[str] = []
    lines.append(rep.title)
    lines.append("")

    lines.append(f"Total tracked: {format_duration(rep.total_s)}")
    lines.append(f"Sessions:      {rep.session_count}" + (f" ({rep.open_sessions} open)" if rep.open_sessions else ""))
    if rep.session_count:
        lines.append(f"Average:       {format_duration(rep.average_s)}")
        lines.append(f"Longest:       {format_duration(rep.longest_s)}")
        lines.append(f"Shortest:      {format_duration(rep.shortest_s)}")
    lines.append("")

    if rep.groups:
        maxv = max(g.total_s for g in rep.groups)
        lines.append(f"By {rep.group_by}:")
        for g in rep.groups[:15]:
            bar = _bar(g.total_s, maxv)
            lines.append(f"  {g.name[:28]:<28} {format_duration(g.total_s):>11}  {g.sessions:>3}x  {bar}")
        lines.append("")
    else:
        lines.append(f"By {rep.group_by}: (no data)")
        lines.append("")

    if len(rep.daily) > 1:
        maxv = max(v for _, v, _ in rep.daily)
        lines.append("Daily:")
        for day, secs, _count in rep.daily:
            lines.append(f"  {day}  {format_duration(secs):>11}  {_bar(secs, maxv)}")
    return "\n".join(lines).rstrip() + "\n"


def time_report_to_dict(rep: TimeReport) -> dict:
    return {
        "title": rep.title,
        "group_by": rep.group_by,
        "total_s": rep.total_s,
        "session_count": rep.session_count,
        "average_s": rep.average_s,
        "longest_s": rep.longest_s,
        "shortest_s": rep.shortest_s,
        "open_sessions": rep.open_sessions,
        "groups": [{"name": g.name, "total_s": g.total_s, "sessions": g.sessions} for g in rep.groups],
        "daily": [{"date": d, "total_s": s, "sessions": n} for d, s, n in rep.daily],
    }


# --- velocity report ---


def _add_months(d: datetime, months: int) -> datetime:
    idx = d.month - 1 + months
    year, month = d.year + idx // 12, idx % 12 + 1
    return d.replace(year=year, month=month, day=min(d.day, calendar.monthrange(year, month)[1]))


def period_starts(start: datetime, end: datetime, period: str) -> list[datetime]:
    out: list[datetime] = []
    cur = start
    while cur < end:
        out.append(cur)
        cur = cur + timedelta(days=7) if period == "week" else _add_months(cur, 1)
    return out


def _period_end(start: datetime, period: str) -> datetime:
    return start + timedelta(days=7) if period == "week" else _add_months(start, 1)


def _in_window(dt: Optional[datetime], start: Optional[datetime], end: Optional[datetime]) -> bool:
    if dt is None:
        return False
    if start is not None and dt < start:
        return False
    if end is not None and dt >= end:
        return False
    return True


def _mean(values: list[float]) -> float:
    return sum(values) / len(values) if values else 0.0


@dataclass(frozen=True)
class VelocityTrend:
    label: str
    completed_tasks: int
    total_s: float


@dataclass(frozen=True)
class VelocityReport:
    title: str
    period: str
    total_tasks: int
    completed_tasks: int
    total_s: float
    average_task_s: float
    period_days: int
    throughput: float  # completed tasks per day
    velocity: float  # completed tasks per period
    cycle_time_s: float
    lead_time_s: float
    trends: list[VelocityTrend] = field(default_factory=list)

    @property
    def completion_rate(self) -> float:
        if self.total_tasks == 0:
            return 0.0
        return self.completed_tasks / self.total_tasks * 100.0

    @property
    def velocity_change(self) -> Optional[float]:
        """Percent change in completed tasks between the last two periods."""
        if len(self.trends) < 2:
            return None
        prev, last = self.trends[-2].completed_tasks, self.trends[-1].completed_tasks
        if prev == 0:
            return None
        return (last - prev) / prev * 100.0


def build_velocity_report(
    tasks: Iterable[Task],
    rows: Iterable[SessionRow],
    title: str,
    *,
    now: datetime,
    period: str = "week",
    start_utc: Optional[datetime] = None,
    end_utc: Optional[datetime] = None,
    first_starts: Optional[dict[int, datetime]] = None,
) -> VelocityReport:
    """Velocity over a window.

    ``first_starts`` maps task id to its earliest session start overall; cycle
    time uses it so sessions before the window still count. Without it only
    ``rows`` are consulted.
    """
    tasks = list(tasks)
    rows = list(rows)

    per_task_s: dict[int, float] = {}
    first_start: dict[int, datetime] = {}
    for r in rows:
        tid = r.session.task_id
        per_task_s[tid] = per_task_s.get(tid, 0.0) + current_duration(r.session, now)
        if tid not in first_start or r.session.started_at_utc < first_start[tid]:
            first_start[tid] = r.session.started_at_utc
    for tid, started in (first_starts or {}).items():
        if tid not in first_start or started < first_start[tid]:
            first_start[tid] = started

    completed = [t for t in tasks if t.state == "completed" and _in_window(t.completed_at_utc, start_utc, end_utc)]
    total_s = sum(per_task_s.values())

    if start_utc is not None and end_utc is not None:
        period_days = max(1, math.ceil((end_utc - start_utc).total_seconds() / 86400))
    else:
        period_days = 7 if period == "week" else 30
    throughput = len(completed) / period_days
    velocity = throughput * (7 if period == "week" else 30)

    cycle = [
        (t.completed_at_utc - first_start[t.id]).total_seconds()
        for t in completed
        if t.id in first_start and t.completed_at_utc >= first_start[t.id]
    ]
    lead = [(t.completed_at_utc - t.created_at_utc).total_seconds() for t in completed]

    trends: list[VelocityTrend] = []
    if start_utc is not None and end_utc is not None:
        for ps in period_starts(start_utc, end_utc, period):
            pe = min(_period_end(ps, period), end_utc)
            trends.append(
                VelocityTrend(
                    label=_local_date(ps).isoformat(),
                    completed_tasks=sum(1 for t in completed if _in_window(t.completed_at_utc, ps, pe)),
                    total_s=sum(
                        current_duration(r.session, now)
                        for r in rows
                        if _in_window(r.session.started_at_utc, ps, pe)
                    ),
                )
            )

    return VelocityReport(
        title=title,
        period=period,
        total_tasks=len(tasks),
        completed_tasks=len(completed),
        total_s=total_s,
        average_task_s=_mean([per_task_s.get(t.id, 0.0) for t in completed]),
        period_days=period_days,
        throughput=throughput,
        velocity=velocity,
        cycle_time_s=_mean(cycle),
        lead_time_s=_mean(lead),
        trends=trends,
    )


def render_velocity_text(rep: VelocityReport) -> str:
    lines: list[str] = [rep.title, ""]
    lines.append(f"Tasks:            {rep.completed_tasks} completed of {rep.total_tasks} ({rep.completion_rate:.0f}%)")
    lines.append(f"Velocity:         {rep.velocity:.2f} tasks/{rep.period}")
    lines.append(f"Throughput:       {rep.throughput:.2f} tasks/day over {rep.period_days} days")
    lines.append(f"Time tracked:     {format_duration(rep.total_s)}")
    lines.append(f"Avg per task:     {format_duration(rep.average_task_s)}")
    lines.append(f"Cycle time:       {format_duration(rep.cycle_time_s)}")
    lines.append(f"Lead time:        {format_duration(rep.lead_time_s)}")
    change = rep.velocity_change
    if change is not None:
        direction = "up" if change >= 0 else "down"
        lines.append(f"Trend:            {direction} {abs(change):.0f}% vs previous {rep.period}")
    lines.append("")

    if rep.trends:
        maxv = max((t.completed_tasks for t in rep.trends), default=0)
        lines.append(f"By {rep.period}:")
        for t in rep.trends:
            lines.append(
                f"  {t.label}  {t.completed_tasks:>3} done  {format_duration(t.total_s):>11}  {_bar(t.completed_tasks, maxv)}"
            )
    return "\n".join(lines).rstrip() + "\n"


def velocity_report_to_dict(rep: VelocityReport) -> dict:
    return {
        "title": rep.title,
        "period": rep.period,
        "total_tasks": rep.total_tasks,
        "completed_tasks": rep.completed_tasks,
        "completion_rate": rep.completion_rate,
        "total_s": rep.total_s,
        "average_task_s": rep.average_task_s,
        "period_days": rep.period_days,
        "throughput": rep.throughput,
        "velocity": rep.velocity,
        "velocity_change": rep.velocity_change,
        "cycle_time_s": rep.cycle_time_s,
        "lead_time_s": rep.lead_time_s,
        "trends": [{"period": t.label, "completed_tasks": t.completed_tasks, "total_s": t.total_s} for t in rep.trends],
    }


# --- estimation report ---


def estimation_error(estimated: float, actual: float) -> float:
    if estimated == 0:
        return 0.0
    return abs(actual - estimated) / estimated * 100.0


def estimation_bias(estimated: float, actual: float) -> float:
    """Positive when the work took longer than estimated."""
    if estimated == 0:
        return 0.0
    return (actual - estimated) / estimated * 100.0


def quality_for(error_pct: float) -> str:
    if error_pct <= 20:
        return "excellent"
    if error_pct <= 40:
        return "good"
    if error_pct <= 60:
        return "fair"
    return "poor"


@dataclass(frozen=True)
class TaskEstimate:
    task_id: int
    number: str
    title: str
    estimate_s: float
    actual_s: float
    error_pct: float
    bias_pct: float


@dataclass(frozen=True)
class EstimationReport:
    title: str
    total_tasks: int
    with_any_estimate: int
    with_time_estimate: int
    with_size_estimate: int
    average_time_estimate_s: float
    average_actual_s: float
    average_size_estimate: float
    seconds_per_point: float
    error_pct: float
    bias_pct: float
    tasks: list[TaskEstimate]

    def coverage(self, count: int) -> float:
        return count / self.total_tasks * 100.0 if self.total_tasks else 0.0

    @property
    def quality(self) -> str:
        return quality_for(self.error_pct) if self.tasks else "n/a"

    def overruns(self, limit: int = 5) -> list[TaskEstimate]:
        out = [t for t in self.tasks if t.bias_pct > 0]
        return sorted(out, key=lambda t: t.bias_pct, reverse=True)[:limit]

    def underruns(self, limit: int = 5) -> list[TaskEstimate]:
        out = [t for t in self.tasks if t.bias_pct < 0]
        return sorted(out, key=lambda t: t.bias_pct)[:limit]

    def recommendations(self) -> list[str]:
        recs: list[str] = []
        if self.total_tasks and self.coverage(self.with_any_estimate) < 50:
            recs.append("Increase estimation coverage: many tasks have no estimate.")
        if self.tasks and self.error_pct > 40:
            recs.append("Estimates are often far off; break large tasks into smaller pieces.")
        if self.tasks and abs(self.bias_pct) > 20:
            if self.bias_pct > 0:
                recs.append("Tasks take longer than estimated; pad estimates using tracked history.")
            else:
                recs.append("Tasks finish faster than estimated; estimates can be tightened.")
        return recs


def build_estimation_report(
    tasks: Iterable[Task],
    rows: Iterable[SessionRow],
    title: str,
    *,
    now: datetime,
) -> EstimationReport:
    tasks = list(tasks)
    actual: dict[int, float] = {}
    for r in rows:
        actual[r.session.task_id] = actual.get(r.session.task_id, 0.0) + current_duration(r.session, now)

    timed = [t for t in tasks if t.time_estimate_s is not None]
    sized = [t for t in tasks if t.size_estimate is not None]

    estimates: list[TaskEstimate] = []
    for t in timed:
        spent = actual.get(t.id, 0.0)
        if spent <= 0:
            continue
        estimates.append(
            TaskEstimate(
                task_id=t.id,
                number=t.number,
                title=t.title,
                estimate_s=t.time_estimate_s,
                actual_s=spent,
                error_pct=estimation_error(t.time_estimate_s, spent),
                bias_pct=estimation_bias(t.time_estimate_s, spent),
            )
        )

    points = sum(t.size_estimate for t in sized if actual.get(t.id, 0.0) > 0)
    point_time = sum(actual[t.id] for t in sized if actual.get(t.id, 0.0) > 0)

    return EstimationReport(
        title=title,
        total_tasks=len(tasks),
        with_any_estimate=sum(1 for t in tasks if t.time_estimate_hours is not None or t.size_estimate is not None),
        with_time_estimate=len(timed),
        with_size_estimate=len(sized),
        average_time_estimate_s=_mean([t.time_estimate_s for t in timed]),
        average_actual_s=_mean([e.actual_s for e in estimates]),
        average_size_estimate=_mean([t.size_estimate for t in sized]),
        seconds_per_point=(point_time / points if points else 0.0),
        error_pct=_mean([e.error_pct for e in estimates]),
        bias_pct=_mean([e.bias_pct for e in estimates]),
        tasks=estimates,
    )


def render_estimation_text(rep: EstimationReport) -> str:
    lines: list[str] = [rep.title, ""]
    lines.append(
        f"Coverage:         {rep.with_any_estimate}/{rep.total_tasks} tasks estimated "
        f"({rep.coverage(rep.with_any_estimate):.0f}%; time {rep.with_time_estimate}, size {rep.with_size_estimate})"
    )
    if rep.tasks:
        lines.append(f"Avg estimate:     {format_duration(rep.average_time_estimate_s)}")
        lines.append(f"Avg actual:       {format_duration(rep.average_actual_s)}")
        lines.append(f"Avg error:        {rep.error_pct:.0f}% ({rep.quality})")
        lines.append(f"Bias:             {rep.bias_pct:+.0f}%")
    else:
        lines.append("Accuracy:         (no estimated tasks with tracked time)")
    if rep.seconds_per_point:
        lines.append(f"Time per point:   {format_duration(rep.seconds_per_point)}")
    lines.append("")

    over = rep.overruns()
    if over:
        lines.append("Took longer than estimated:")
        for t in over:
            lines.append(f"  {t.bias_pct:+5.0f}%  {format_duration(t.actual_s):>11} / {format_duration(t.estimate_s):<11}  {t.number} {t.title}")
        lines.append("")
    under = rep.underruns()
    if under:
        lines.append("Finished under estimate:")
        for t in under:
            lines.append(f"  {t.bias_pct:+5.0f}%  {format_duration(t.actual_s):>11} / {format_duration(t.estimate_s):<11}  {t.number} {t.title}")
        lines.append("")

    recs = rep.recommendations()
    if recs:
        lines.append("Recommendations:")
        for rec in recs:
            lines.append(f"  - {rec}")
    return "\n".join(lines).rstrip() + "\n"


def estimation_report_to_dict(rep: EstimationReport) -> dict:
    return {
        "title": rep.title,
        "total_tasks": rep.total_tasks,
        "with_any_estimate": rep.with_any_estimate,
        "with_time_estimate": rep.with_time_estimate,
        "with_size_estimate": rep.with_size_estimate,
        "coverage": rep.coverage(rep.with_any_estimate),
        "average_time_estimate_s": rep.average_time_estimate_s,
        "average_actual_s": rep.average_actual_s,
        "average_size_estimate": rep.average_size_estimate,
        "seconds_per_point": rep.seconds_per_point,
        "error_pct": rep.error_pct,
        "bias_pct": rep.bias_pct,
        "quality": rep.quality,
        "tasks": [
            {
                "task_id": t.task_id,
                "number": t.number,
                "title": t.title,
                "estimate_s": t.estimate_s,
                "actual_s": t.actual_s,
                "error_pct": t.error_pct,
                "bias_pct": t.bias_pct,
            }
            for t in rep.tasks
        ],
        "recommendations": rep.recommendations(),
    }
