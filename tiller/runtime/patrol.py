"""
patrol.py - Unattended worker loop bound to a mate identity.

The worker claims a mate as "sailing", then repeatedly:

1. asks the issue tracker for one ready, unassigned task,
2. claims it under the mate's name,
3. waits until the task is closed, reassigned, or the wait times out.

SIGINT/SIGTERM stop the loop; the mate is released on every exit path.
Sleep and clock are injectable so the loop can be driven without waiting.

Usage:
    from tiller.runtime.patrol import PatrolWorker

    worker = PatrolWorker.from_config("ellis-reed", AgentContext.for_current_process())
    report = worker.run(once=True)
"""

from __future__ import annotations

import logging
import signal
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional

from ..config.runtime_config import TillerPaths, get_patrol_settings, resolve_paths
from ..mate.registry import MateRegistry
from ..mate.types import MateState
from .context import AgentContext
from .issue_tracker import IssueTracker

# Module logger
logger = logging.getLogger(__name__)

RESULT_CLOSED = "closed"
RESULT_LOST = "lost"
RESULT_TIMEOUT = "timeout"

CLAIM_RETRY_SECONDS = 1.0


class PatrolStopped(Exception):
    """Raised inside the loop when a stop signal arrives."""

    def __init__(self, signum: int):
        self.signum = signum
        super().__init__(f"Stopped by {signal.Signals(signum).name}")


@dataclass
class TaskOutcome:
    """One task handled by the worker."""

    task_id: str
    title: str
    result: str


@dataclass
class PatrolReport:
    """What a patrol session did before it exited."""

    mate: str
    outcomes: List[TaskOutcome] = field(default_factory=list)
    stopped_by: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mate": self.mate,
            "tasks": [asdict(o) for o in self.outcomes],
            "stopped_by": self.stopped_by,
        }


class PatrolWorker:
    """Polls the tracker for work on behalf of one mate."""

    def __init__(
        self,
        mate_name: str,
        ctx: AgentContext,
        registry: MateRegistry,
        tracker: IssueTracker,
        poll_interval: float = 5.0,
        task_poll_interval: float = 2.0,
        task_timeout: float = 30 * 60.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.mate_name = mate_name
        self.ctx = ctx
        self.registry = registry
        self.tracker = tracker
        self.poll_interval = poll_interval
        self.task_poll_interval = task_poll_interval
        self.task_timeout = task_timeout
        self._sleep = sleep
        self._clock = clock
        self._stopped = False

    @classmethod
    def from_config(
        cls,
        mate_name: str,
        ctx: AgentContext,
        paths: Optional[TillerPaths] = None,
        **overrides: Any,
    ) -> "PatrolWorker":
        paths = paths or resolve_paths()
        settings = get_patrol_settings(paths.root)
        kwargs: Dict[str, Any] = {
            "poll_interval": settings["poll_interval_seconds"],
            "task_poll_interval": settings["task_poll_seconds"],
            "task_timeout": settings["task_timeout_seconds"],
        }
        kwargs.update(overrides)
        return cls(
            mate_name,
            ctx,
            MateRegistry(paths),
            IssueTracker.from_config(paths.root),
            **kwargs,
        )

    def stop(self) -> None:
        """Ask the loop to exit after the current poll."""
        self._stopped = True

    def _handle_signal(self, signum: int, _frame: object) -> None:
        logger.info("Received %s, releasing mate %s", signal.Signals(signum).name, self.mate_name)
        self._stopped = True
        raise PatrolStopped(signum)

    def _install_signal_handlers(self) -> Dict[int, Any]:
        previous: Dict[int, Any] = {}
        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                previous[signum] = signal.signal(signum, self._handle_signal)
            except ValueError:
                # Not the main thread; the caller is responsible for stopping us
                logger.debug("Cannot install handler for %s outside the main thread", signum)
        return previous

    @staticmethod
    def _restore_signal_handlers(previous: Dict[int, Any]) -> None:
        for signum, handler in previous.items():
            signal.signal(signum, handler)

    def wait_for_task(self, task_id: str) -> str:
        """Block until the task closes, is reassigned, or times out."""
        start = self._clock()
        while self._clock() - start < self.task_timeout:
            task = self.tracker.show_task(task_id)
            if task is None or task.is_closed:
                return RESULT_CLOSED
            if task.assignee != self.mate_name:
                return RESULT_LOST
            self._sleep(self.task_poll_interval)
        return RESULT_TIMEOUT

    def _patrol(self, report: PatrolReport, once: bool) -> None:
        while not self._stopped:
            tasks = self.tracker.ready_tasks(unassigned=True, limit=1)
            if not tasks:
                logger.debug("No unblocked tasks available")
                self._sleep(self.poll_interval)
                continue

            task = tasks[0]
            claim = self.tracker.claim_task(task.id, self.mate_name)
            if not claim.success:
                logger.info(
                    "Lost claim on %s: %s (owner: %s)", task.id, claim.error, claim.actual_owner
                )
                self._sleep(CLAIM_RETRY_SECONDS)
                continue

            title = claim.task.title if claim.task else task.title
            logger.info("Claimed %s: %s", task.id, title)
            result = self.wait_for_task(task.id)
            if result == RESULT_TIMEOUT:
                logger.warning("Task %s timed out after %.0fs", task.id, self.task_timeout)
            else:
                logger.info("Task %s %s", task.id, result)
            report.outcomes.append(TaskOutcome(task.id, title, result))

            if once:
                break

    def run(self, once: bool = False, install_signals: bool = True) -> PatrolReport:
        """Claim the mate and patrol until stopped.

        Raises:
            MateNotFoundError: If the mate is not registered.
            MateConflict: If another live process holds the mate.
        """
        self._stopped = False
        self.registry.claim(self.mate_name, self.ctx, state=MateState.SAILING)
        logger.info("Mate %s sailing as pid %d", self.mate_name, self.ctx.pid)

        report = PatrolReport(mate=self.mate_name)
        previous = self._install_signal_handlers() if install_signals else {}
        try:
            self._patrol(report, once)
        except PatrolStopped as e:
            report.stopped_by = signal.Signals(e.signum).name
        finally:
            self._restore_signal_handlers(previous)
            self.registry.release(self.mate_name, self.ctx)
            logger.info("Mate %s released", self.mate_name)
        return report
