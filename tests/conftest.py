"""
Shared fixtures for tiller tests.

Every test gets its own project root under tmp_path with an empty .tiller/
directory, so nothing touches the real working directory. Config caches
and the RunService singleton are reset around each test.
"""

import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional

import pytest

_repo_root = Path(__file__).parent.parent
if str(_repo_root) not in sys.path:
    sys.path.insert(0, str(_repo_root))

from tiller.config.runtime_config import TillerPaths, reset_config  # noqa: E402
from tiller.runtime.context import AgentContext  # noqa: E402
from tiller.runtime.issue_tracker import IssueTracker  # noqa: E402
from tiller.runtime.service import RunService  # noqa: E402
from tiller.runtime.storage import RunStore  # noqa: E402
from tiller.runtime.types import Run, RunState  # noqa: E402
from tiller.workflow.loader import parse_workflow  # noqa: E402
from tiller.workflow.types import WorkflowDefinition  # noqa: E402

FIXED_NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)

_ENV_OVERRIDES = (
    "TILLER_CLAIM_TTL_MINUTES",
    "TILLER_LOCK_TIMEOUT_SECONDS",
    "TILLER_SESSION_STALE_MINUTES",
    "TILLER_ISSUE_TRACKER",
    "TILLER_AGENT",
    "TILLER_SESSION",
)


@pytest.fixture(autouse=True)
def _isolate_state(monkeypatch):
    """Drop env overrides and cached singletons before and after each test."""
    for name in _ENV_OVERRIDES:
        monkeypatch.delenv(name, raising=False)
    reset_config()
    RunService.reset()
    yield
    reset_config()
    RunService.reset()


@pytest.fixture
def project_root(tmp_path) -> Path:
    root = tmp_path / "project"
    (root / ".tiller").mkdir(parents=True)
    return root


@pytest.fixture
def paths(project_root) -> TillerPaths:
    return TillerPaths(root=project_root)


@pytest.fixture
def store(paths) -> RunStore:
    return RunStore(paths)


@pytest.fixture
def now() -> datetime:
    return FIXED_NOW


@pytest.fixture
def ctx() -> AgentContext:
    return AgentContext(agent_id="agent-a", session_id="session-a")


@pytest.fixture
def other_ctx() -> AgentContext:
    return AgentContext(agent_id="agent-b", session_id="session-b")


@pytest.fixture
def service(paths) -> RunService:
    return RunService(paths, tracker=IssueTracker(enabled=False))


@pytest.fixture
def write_plan(project_root) -> Callable[..., str]:
    """Write a plan document and return its project-relative path."""

    def _write(
        relative: str = "plans/tiller-cli/02-claims/02-01-PLAN.md",
        objective: Optional[str] = "Add TTL claims to runs",
    ) -> str:
        path = project_root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        body = "# Plan\n\n"
        if objective is not None:
            body += f"<objective>\n{objective}\n</objective>\n"
        path.write_text(body, encoding="utf-8")
        return relative

    return _write


REVIEW_WORKFLOW = """\
name: plan-review
version: "1.0"
description: Review a plan before execution
initial_step: read
terminal_steps: [approved, rejected]
steps:
  read:
    name: Read the plan
    description: Read the plan and decide.
    outputs: [verdict]
    next:
      - target: approved
        condition: eq(verdict, approve)
      - target: revise
        condition: eq(verdict, revise)
      - target: rejected
  revise:
    name: Revise
    outputs: [revised]
    next:
      - target: read
  approved:
    name: Approved
  rejected:
    name: Rejected
"""


@pytest.fixture
def write_workflow(paths) -> Callable[..., Path]:
    """Write a workflow definition under .tiller/workflows/."""

    def _write(name: str = "plan-review", text: str = REVIEW_WORKFLOW, suffix: str = ".yaml") -> Path:
        paths.workflows_dir.mkdir(parents=True, exist_ok=True)
        path = paths.workflows_dir / f"{name}{suffix}"
        path.write_text(text, encoding="utf-8")
        return path

    return _write


@pytest.fixture
def review_workflow() -> WorkflowDefinition:
    return parse_workflow(REVIEW_WORKFLOW, source="plan-review.yaml")


@pytest.fixture
def make_run(store, now) -> Callable[..., Run]:
    """Save a run directly to the store."""
    counter = {"n": 0}

    def _make(
        run_id: Optional[str] = None,
        state: RunState = RunState.READY,
        files_touched=None,
        priority: int = 99,
        depends_on=None,
        **fields,
    ) -> Run:
        counter["n"] += 1
        fields.setdefault("created", now)
        fields.setdefault("updated", fields["created"])
        run = Run(
            id=run_id or f"run-t{counter['n']:05d}",
            intent=f"test run {counter['n']}",
            state=state,
            plan_path=f"plans/test/01-test/01-{counter['n']:02d}-PLAN.md",
            files_touched=list(files_touched or []),
            priority=priority,
            depends_on=list(depends_on or []),
            **fields,
        )
        store.save(run)
        return run

    return _make
