from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

TASK_STATES = ("pending", "in-progress", "completed", "blocked")


@dataclass(frozen=True)
class Project:
    id: int
    name: str
    description: Optional[str]
    created_at_utc: datetime
    updated_at_utc: datetime


@dataclass(frozen=True)
class Task:
    id: int
    project_id: int
    number: str
    title: str
    description: Optional[str]
    state: str
    size_estimate: Optional[float]
    time_estimate_hours: Optional[float]
    completed_at_utc: Optional[datetime]
    created_at_utc: datetime
    updated_at_utc: datetime
    tags: list[str] = field(default_factory=list)

    @property
    def time_estimate_s(self) -> Optional[float]:
        if self.time_estimate_hours is None:
            return None
        return self.time_estimate_hours * 3600.0


@dataclass(frozen=True)
class TimeSession:
    id: Optional[int]
    task_id: int
    started_at_utc: datetime
    paused_at_utc: Optional[datetime] = None
    resumed_at_utc: Optional[datetime] = None
    stopped_at_utc: Optional[datetime] = None
    duration_s: float = 0.0

    @property
    def is_open(self) -> bool:
        return self.stopped_at_utc is None


@dataclass(frozen=True)
class SessionRow:
    """A session joined with its task and project, as reports consume it."""

    session: TimeSession
    task_number: str
    task_title: str
    project_id: int
    project_name: str
    tags: list[str] = field(default_factory=list)
