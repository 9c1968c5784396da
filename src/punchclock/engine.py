"""Time-session state machine and duration accounting.

A session's lifetime is a run of alternating active and paused intervals.
Whenever an active interval ends (pause or stop) its length is added to the
stored ``duration_s``, so the stored value is always correct up to the start
of the current active interval. The state is never stored; it is derived
from which timestamps are set.
"""

from __future__ import annotations

from contextlib import AbstractContextManager
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Optional, Protocol, Union

import structlog

from .errors import ConflictError, InvalidStateError, NotFoundError, ValidationError
from .models import TimeSession

logger = structlog.get_logger()


class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class SessionStore(Protocol):
    def get_session(self, session_id: int) -> Optional[TimeSession]: ...

    def get_open_session_for_task(self, task_id: int) -> Optional[TimeSession]: ...

    def get_open_session(self) -> Optional[TimeSession]: ...

    def get_open_sessions(self) -> list[TimeSession]: ...

    def save_session(self, session: TimeSession) -> TimeSession: ...

    def atomic(self) -> AbstractContextManager: ...


@dataclass(frozen=True)
class Active:
    since: datetime  # start of the current active interval
    name = "active"


@dataclass(frozen=True)
class Paused:
    since: datetime
    name = "paused"


@dataclass(frozen=True)
class Stopped:
    total: float
    name = "stopped"


SessionState = Union[Active, Paused, Stopped]


def derive_state(session: TimeSession) -> SessionState:
    if session.stopped_at_utc is not None:
        return Stopped(session.duration_s)
    if session.paused_at_utc is not None and session.resumed_at_utc is None:
        return Paused(session.paused_at_utc)
    return Active(session.resumed_at_utc or session.started_at_utc)


def _elapsed(start: datetime, end: datetime) -> float:
    return max(0.0, (end - start).total_seconds())


def current_duration(session: TimeSession, now: datetime) -> float:
    """Active seconds as of ``now``; does not touch the record."""
    state = derive_state(session)
    if isinstance(state, Active):
        return session.duration_s + _elapsed(state.since, _as_utc(now))
    return session.duration_s


def _as_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


class SessionEngine:
    """Applies start/pause/resume/stop to sessions held by a store.

    With ``single_focus`` set, starting a session also requires that no
    other session is open anywhere. The store's ``atomic()`` block makes the
    check and the write one unit.
    """

    def __init__(self, store: SessionStore, clock: Optional[Clock] = None, *, single_focus: bool = True):
        self.store = store
        self.clock = clock or SystemClock()
        self.single_focus = single_focus

    def _timestamp(self, at: Optional[datetime], *, after: Optional[datetime], what: str) -> datetime:
        now = _as_utc(self.clock.now())
        ts = now if at is None else _as_utc(at)
        if ts > now:
            raise ValidationError(f"{what.capitalize()} time cannot be in the future", at=ts.isoformat())
        if after is not None and ts <= after:
            raise ValidationError(
                f"{what.capitalize()} time must be after {after.isoformat()}",
                at=ts.isoformat(),
                after=after.isoformat(),
            )
        return ts

    def get(self, session_id: int) -> TimeSession:
        session = self.store.get_session(session_id)
        if session is None:
            raise NotFoundError(f"Time session #{session_id} not found", session_id=session_id)
        return session

    def open_session(self) -> Optional[TimeSession]:
        return self.store.get_open_session()

    def start(self, task_id: int, started_at: Optional[datetime] = None) -> TimeSession:
        ts = self._timestamp(started_at, after=None, what="start")
        with self.store.atomic():
            existing = self.store.get_open_session_for_task(task_id)
            if existing is not None:
                raise ConflictError(
                    f"Time tracking is already open for task #{task_id} (session #{existing.id})",
                    task_id=task_id,
                    session_id=existing.id,
                )
            if self.single_focus:
                other = self.store.get_open_session()
                if other is not None:
                    raise ConflictError(
                        f"Another session is already open (session #{other.id}, task #{other.task_id})",
                        task_id=task_id,
                        session_id=other.id,
                    )
            session = self.store.save_session(TimeSession(id=None, task_id=task_id, started_at_utc=ts))
        logger.info("session started", session_id=session.id, task_id=task_id, at=ts.isoformat())
        return session

    def pause(self, session_id: int, paused_at: Optional[datetime] = None) -> TimeSession:
        with self.store.atomic():
            session = self.get(session_id)
            state = derive_state(session)
            if not isinstance(state, Active):
                raise InvalidStateError(session.id, state.name, "pause")
            ts = self._timestamp(paused_at, after=state.since, what="pause")
            updated = replace(
                session,
                paused_at_utc=ts,
                resumed_at_utc=None,
                duration_s=session.duration_s + _elapsed(state.since, ts),
            )
            updated = self.store.save_session(updated)
        logger.info("session paused", session_id=session_id, at=ts.isoformat(), duration_s=updated.duration_s)
        return updated

    def resume(self, session_id: int, resumed_at: Optional[datetime] = None) -> TimeSession:
        with self.store.atomic():
            session = self.get(session_id)
            state = derive_state(session)
            if not isinstance(state, Paused):
                raise InvalidStateError(session.id, state.name, "resume")
            ts = self._timestamp(resumed_at, after=state.since, what="resume")
            updated = self.store.save_session(replace(session, resumed_at_utc=ts))
        logger.info("session resumed", session_id=session_id, at=ts.isoformat())
        return updated

    def stop(self, session_id: int, stopped_at: Optional[datetime] = None) -> TimeSession:
        with self.store.atomic():
            session = self.get(session_id)
            state = derive_state(session)
            if isinstance(state, Stopped):
                raise InvalidStateError(session.id, state.name, "stop")
            last = max(t for t in (session.started_at_utc, session.paused_at_utc, session.resumed_at_utc) if t is not None)
            ts = self._timestamp(stopped_at, after=last, what="stop")
            duration = session.duration_s
            if isinstance(state, Active):
                duration += _elapsed(state.since, ts)
            updated = self.store.save_session(replace(session, stopped_at_utc=ts, duration_s=duration))
        logger.info("session stopped", session_id=session_id, at=ts.isoformat(), duration_s=duration)
        return updated

    def open_session_for_task(self, task_id: int) -> TimeSession:
        session = self.store.get_open_session_for_task(task_id)
        if session is None:
            raise NotFoundError(f"No open time session for task #{task_id}", task_id=task_id)
        return session

    def _require_open(self, wanted: type, task_id: Optional[int] = None) -> TimeSession:
        """Pick the open session an operation applies to.

        With several sessions open, the single one in the ``wanted`` state is
        used; anything else is ambiguous and the caller must name a task.
        """
        if task_id is not None:
            return self.open_session_for_task(task_id)
        sessions = self.store.get_open_sessions()
        if not sessions:
            raise NotFoundError("No time session is currently open")
        if len(sessions) == 1:
            return sessions[0]
        matching = [s for s in sessions if isinstance(derive_state(s), wanted)]
        if len(matching) == 1:
            return matching[0]
        raise ConflictError(
            f"{len(sessions)} sessions are open; name the task to act on",
            session_ids=[s.id for s in sessions],
        )

    def pause_current(self, paused_at: Optional[datetime] = None, *, task_id: Optional[int] = None) -> TimeSession:
        return self.pause(self._require_open(Active, task_id).id, paused_at)

    def resume_current(self, resumed_at: Optional[datetime] = None, *, task_id: Optional[int] = None) -> TimeSession:
        return self.resume(self._require_open(Paused, task_id).id, resumed_at)

    def stop_current(self, stopped_at: Optional[datetime] = None, *, task_id: Optional[int] = None) -> TimeSession:
        return self.stop(self._require_open(Active, task_id).id, stopped_at)


    def current_duration(self, session: TimeSession) -> float:
        return current_duration(session, self.clock.now())
