from datetime import timedelta

import pytest

from punchclock.engine import Active, Paused, SessionEngine, Stopped, current_duration, derive_state
from punchclock.errors import ConflictError, InvalidStateError, NotFoundError, ValidationError
from punchclock.models import TimeSession


def test_pause_resume_stop_excludes_paused_time(engine, task, at):
    s = engine.start(task.id, at(0))
    s = engine.pause(s.id, at(120))
    assert s.duration_s == 120
    s = engine.resume(s.id, at(180))
    assert s.duration_s == 120
    s = engine.stop(s.id, at(300))
    assert s.duration_s == 240
    assert isinstance(derive_state(s), Stopped)


def test_stop_without_pause(engine, task, at):
    s = engine.start(task.id, at(0))
    s = engine.stop(s.id, at(90))
    assert s.duration_s == 90


def test_two_pause_cycles(engine, task, at):
    s = engine.start(task.id, at(0))
    engine.pause(s.id, at(50))
    engine.resume(s.id, at(60))
    s = engine.pause(s.id, at(200))
    assert s.duration_s == 50 + 140
    assert isinstance(derive_state(s), Paused)
    engine.resume(s.id, at(210))
    s = engine.stop(s.id, at(400))
    assert s.duration_s == 50 + 140 + 190


def test_many_cycles_sum_active_intervals(engine, task, at):
    s = engine.start(task.id, at(0))
    expected = 0
    t = 0
    for active, paused in [(10, 5), (30, 100), (7, 1), (60, 60)]:
        t += active
        expected += active
        engine.pause(s.id, at(t))
        t += paused
        engine.resume(s.id, at(t))
    t += 15
    expected += 15
    s = engine.stop(s.id, at(t))
    assert s.duration_s == expected


def test_stop_while_paused_adds_nothing(engine, task, at):
    s = engine.start(task.id, at(0))
    engine.pause(s.id, at(100))
    s = engine.stop(s.id, at(500))
    assert s.duration_s == 100
    assert s.stopped_at_utc == at(500)


def test_defaults_to_clock(engine, task, clock):
    s = engine.start(task.id)
    assert s.started_at_utc == clock.now()
    clock.advance(90)
    s = engine.stop(s.id)
    assert s.duration_s == 90


def test_start_conflict_leaves_open_session_untouched(engine, store, task, at):
    s = engine.start(task.id, at(0))
    with pytest.raises(ConflictError):
        engine.start(task.id, at(10))
    assert store.get_session(s.id) == s


def test_single_focus_blocks_second_task(engine, task, other_task, at):
    engine.start(task.id, at(0))
    with pytest.raises(ConflictError) as exc:
        engine.start(other_task.id, at(5))
    assert exc.value.context["task_id"] == other_task.id


def test_without_single_focus_tasks_run_in_parallel(store, clock, task, other_task, at):
    engine = SessionEngine(store, clock, single_focus=False)
    a = engine.start(task.id, at(0))
    b = engine.start(other_task.id, at(5))
    assert a.id != b.id
    with pytest.raises(ConflictError):
        engine.start(task.id, at(10))


def test_start_after_stop_is_allowed(engine, task, at):
    s = engine.start(task.id, at(0))
    engine.stop(s.id, at(60))
    s2 = engine.start(task.id, at(120))
    assert s2.id != s.id
    assert s2.duration_s == 0


def test_double_pause_rejected_without_change(engine, store, task, at):
    s = engine.start(task.id, at(0))
    s = engine.pause(s.id, at(30))
    with pytest.raises(InvalidStateError) as exc:
        engine.pause(s.id, at(40))
    assert exc.value.state == "paused"
    assert exc.value.attempted == "pause"
    assert store.get_session(s.id).duration_s == 30


def test_resume_never_paused(engine, task, at):
    s = engine.start(task.id, at(0))
    with pytest.raises(InvalidStateError):
        engine.resume(s.id, at(10))


@pytest.mark.parametrize("op", ["pause", "resume", "stop"])
def test_stopped_is_terminal(engine, store, task, at, op):
    s = engine.start(task.id, at(0))
    s = engine.stop(s.id, at(60))
    with pytest.raises(InvalidStateError):
        getattr(engine, op)(s.id, at(120))
    assert store.get_session(s.id) == s


def test_future_timestamp_rejected(engine, task, clock):
    with pytest.raises(ValidationError):
        engine.start(task.id, clock.now() + timedelta(seconds=1))
    assert engine.open_session() is None


def test_out_of_order_timestamps_rejected(engine, store, task, at):
    s = engine.start(task.id, at(100))
    with pytest.raises(ValidationError):
        engine.pause(s.id, at(50))
    with pytest.raises(ValidationError):
        engine.pause(s.id, at(100))
    assert store.get_session(s.id) == s

    s = engine.pause(s.id, at(200))
    with pytest.raises(ValidationError):
        engine.resume(s.id, at(150))
    with pytest.raises(ValidationError):
        engine.stop(s.id, at(200))
    assert store.get_session(s.id) == s


def test_rejected_transition_rolls_back(engine, conn, task, at):
    s = engine.start(task.id, at(100))
    with pytest.raises(ValidationError):
        engine.stop(s.id, at(10))
    assert not conn.in_transaction
    assert engine.stop(s.id, at(160)).duration_s == 60


def test_unknown_session(engine):
    with pytest.raises(NotFoundError):
        engine.pause(999)


def test_current_transitions_need_an_open_session(engine):
    with pytest.raises(NotFoundError):
        engine.stop_current()


def test_current_helpers_follow_open_session(engine, task, at):
    engine.start(task.id, at(0))
    engine.pause_current(at(10))
    engine.resume_current(at(20))
    s = engine.stop_current(at(50))
    assert s.duration_s == 40
    assert engine.open_session() is None


def test_current_duration_is_live_and_pure(engine, store, task, at):
    s = engine.start(task.id, at(0))
    engine.pause(s.id, at(100))
    s = engine.resume(s.id, at(150))
    assert current_duration(s, at(200)) == 100 + 50
    assert store.get_session(s.id).duration_s == 100

    s = engine.pause(s.id, at(260))
    assert current_duration(s, at(1000)) == 210


def test_derive_state_from_fields(at):
    base = TimeSession(id=1, task_id=1, started_at_utc=at(0))
    assert derive_state(base) == Active(at(0))
    paused = TimeSession(id=1, task_id=1, started_at_utc=at(0), paused_at_utc=at(10), duration_s=10)
    assert derive_state(paused) == Paused(at(10))
    resumed = TimeSession(id=1, task_id=1, started_at_utc=at(0), paused_at_utc=at(10), resumed_at_utc=at(20), duration_s=10)
    assert derive_state(resumed) == Active(at(20))
    stopped = TimeSession(id=1, task_id=1, started_at_utc=at(0), stopped_at_utc=at(30), duration_s=30)
    assert derive_state(stopped) == Stopped(30)


def test_current_helpers_with_several_open_sessions(store, clock, task, other_task, at):
    engine = SessionEngine(store, clock, single_focus=False)
    first = engine.start(task.id, at(0))
    engine.pause(first.id, at(600))
    second = engine.start(other_task.id, at(1200))

    # the only paused session is the one to resume
    assert engine.resume_current(at(1500)).id == first.id
    with pytest.raises(ConflictError):
        engine.pause_current(at(1800))

    s = engine.pause_current(at(1800), task_id=other_task.id)
    assert s.id == second.id
    assert s.duration_s == 600
    assert engine.stop_current(at(2100)).id == first.id


def test_current_helper_for_task_without_open_session(engine, task, other_task, at):
    engine.start(task.id, at(0))
    with pytest.raises(NotFoundError):
        engine.stop_current(at(10), task_id=other_task.id)
