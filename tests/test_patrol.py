"""Tests for the patrol worker loop.

The tracker, sleep and clock are all fakes, so the loop runs instantly.
"""

from __future__ import annotations

import signal

import pytest

from tiller.mate.registry import MateRegistry
from tiller.mate.types import MateState
from tiller.runtime.errors import MateNotFoundError
from tiller.runtime.issue_tracker import TaskClaim, TrackerTask
from tiller.runtime.patrol import (
    CLAIM_RETRY_SECONDS,
    RESULT_CLOSED,
    RESULT_LOST,
    RESULT_TIMEOUT,
    PatrolReport,
    PatrolStopped,
    PatrolWorker,
    TaskOutcome,
)

MATE = "ellis-reed"


class FakeTracker:
    """Scripted tracker: each call pops the next scripted answer."""

    def __init__(self, ready=None, claims=None, shows=None):
        self.ready = list(ready or [])
        self.claims = list(claims or [])
        self.shows = list(shows or [])
        self.claimed = []
        self.mate_states = []
        self.registry = None

    def ready_tasks(self, unassigned=True, limit=1):
        return self.ready.pop(0) if self.ready else []

    def claim_task(self, task_id, actor):
        self.claimed.append((task_id, actor))
        if self.registry is not None:
            self.mate_states.append(self.registry.get(MATE).state)
        if self.claims:
            return self.claims.pop(0)
        return TaskClaim(success=True, task=TrackerTask(task_id, "Claimed title", "open", actor))

    def show_task(self, task_id):
        answer = self.shows.pop(0) if len(self.shows) > 1 else self.shows[0]
        if isinstance(answer, Exception):
            raise answer
        return answer


class FakeTime:
    def __init__(self):
        self.now = 0.0
        self.sleeps = []
        self.on_sleep = None

    def clock(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds
        if self.on_sleep is not None:
            self.on_sleep()


@pytest.fixture
def registry(paths, tmp_path):
    registry = MateRegistry(
        paths, lock_timeout=1.0, sessions_dir=tmp_path / "sessions", session_stale_minutes=60
    )
    registry.add(MATE)
    return registry


@pytest.fixture
def fake_time():
    return FakeTime()


def _task(task_id="bd-1", status="open", assignee=None):
    return TrackerTask(task_id, "Fix the thing", status, assignee)


def _worker(registry, ctx, tracker, fake_time, **kwargs):
    tracker.registry = registry
    kwargs.setdefault("task_timeout", 60.0)
    return PatrolWorker(
        MATE,
        ctx,
        registry,
        tracker,
        poll_interval=5.0,
        task_poll_interval=2.0,
        sleep=fake_time.sleep,
        clock=fake_time.clock,
        **kwargs,
    )


class TestPatrolRun:
    def test_closed_task(self, registry, ctx, fake_time):
        tracker = FakeTracker(ready=[[_task()]], shows=[_task(status="closed", assignee=MATE)])

        report = _worker(registry, ctx, tracker, fake_time).run(once=True, install_signals=False)

        assert report.outcomes == [TaskOutcome("bd-1", "Claimed title", RESULT_CLOSED)]
        assert report.stopped_by is None
        assert tracker.claimed == [("bd-1", MATE)]
        assert tracker.mate_states == [MateState.SAILING]
        mate = registry.get(MATE)
        assert mate.is_available
        assert mate.claimed_by is None

    def test_waits_until_closed(self, registry, ctx, fake_time):
        tracker = FakeTracker(
            ready=[[_task()]],
            shows=[_task(assignee=MATE), _task(assignee=MATE), _task(status="done", assignee=MATE)],
        )

        report = _worker(registry, ctx, tracker, fake_time).run(once=True, install_signals=False)

        assert report.outcomes[0].result == RESULT_CLOSED
        assert fake_time.sleeps == [2.0, 2.0]

    def test_vanished_task_counts_as_closed(self, registry, ctx, fake_time):
        tracker = FakeTracker(ready=[[_task()]], shows=[None])

        report = _worker(registry, ctx, tracker, fake_time).run(once=True, install_signals=False)

        assert report.outcomes[0].result == RESULT_CLOSED

    def test_reassigned_task_is_lost(self, registry, ctx, fake_time):
        tracker = FakeTracker(ready=[[_task()]], shows=[_task(assignee="someone-else")])

        report = _worker(registry, ctx, tracker, fake_time).run(once=True, install_signals=False)

        assert report.outcomes[0].result == RESULT_LOST

    def test_task_times_out(self, registry, ctx, fake_time):
        tracker = FakeTracker(ready=[[_task()]], shows=[_task(assignee=MATE)])
        worker = _worker(registry, ctx, tracker, fake_time, task_timeout=5.0)

        report = worker.run(once=True, install_signals=False)

        assert report.outcomes[0].result == RESULT_TIMEOUT
        assert fake_time.sleeps == [2.0, 2.0, 2.0]
        assert registry.get(MATE).is_available

    def test_failed_claim_is_retried(self, registry, ctx, fake_time):
        tracker = FakeTracker(
            ready=[[_task("bd-1")], [_task("bd-2")]],
            claims=[TaskClaim(success=False, error="lost_race", actual_owner="sam-lane")],
            shows=[_task("bd-2", status="closed", assignee=MATE)],
        )

        report = _worker(registry, ctx, tracker, fake_time).run(once=True, install_signals=False)

        assert [c[0] for c in tracker.claimed] == ["bd-1", "bd-2"]
        assert fake_time.sleeps == [CLAIM_RETRY_SECONDS]
        assert [o.task_id for o in report.outcomes] == ["bd-2"]

    def test_idle_poll_then_stop(self, registry, ctx, fake_time):
        tracker = FakeTracker(ready=[[], []])
        worker = _worker(registry, ctx, tracker, fake_time)
        fake_time.on_sleep = worker.stop

        report = worker.run(install_signals=False)

        assert report.outcomes == []
        assert fake_time.sleeps == [5.0]
        assert registry.get(MATE).is_available

    def test_stop_signal_releases_mate(self, registry, ctx, fake_time):
        tracker = FakeTracker(ready=[[_task()]], shows=[PatrolStopped(signal.SIGTERM)])

        report = _worker(registry, ctx, tracker, fake_time).run(install_signals=False)

        assert report.stopped_by == "SIGTERM"
        assert report.outcomes == []
        assert registry.get(MATE).is_available

    def test_unexpected_error_still_releases(self, registry, ctx, fake_time):
        tracker = FakeTracker(ready=[[_task()]], shows=[RuntimeError("tracker exploded")])

        with pytest.raises(RuntimeError):
            _worker(registry, ctx, tracker, fake_time).run(install_signals=False)

        assert registry.get(MATE).is_available

    def test_unknown_mate(self, paths, ctx, fake_time, tmp_path):
        registry = MateRegistry(paths, lock_timeout=1.0, sessions_dir=tmp_path / "sessions")
        worker = _worker(registry, ctx, FakeTracker(), fake_time)

        with pytest.raises(MateNotFoundError):
            worker.run(once=True, install_signals=False)

    def test_signal_handlers_restored(self, registry, ctx, fake_time):
        before = signal.getsignal(signal.SIGTERM)
        tracker = FakeTracker(ready=[[_task()]], shows=[_task(status="closed")])

        _worker(registry, ctx, tracker, fake_time).run(once=True)

        assert signal.getsignal(signal.SIGTERM) == before


class TestPatrolReport:
    def test_to_dict(self):
        report = PatrolReport(
            mate=MATE,
            outcomes=[TaskOutcome("bd-1", "Fix", RESULT_CLOSED)],
            stopped_by="SIGINT",
        )

        assert report.to_dict() == {
            "mate": MATE,
            "tasks": [{"task_id": "bd-1", "title": "Fix", "result": "closed"}],
            "stopped_by": "SIGINT",
        }


class TestFromConfig:
    def test_defaults(self, paths, ctx):
        worker = PatrolWorker.from_config(MATE, ctx, paths=paths)

        assert worker.poll_interval == 5.0
        assert worker.task_poll_interval == 2.0
        assert worker.task_timeout == 30 * 60.0
        assert worker.registry.paths is paths

    def test_overrides(self, paths, ctx):
        worker = PatrolWorker.from_config(MATE, ctx, paths=paths, task_timeout=7.0)

        assert worker.task_timeout == 7.0
