"""
issue_tracker.py - Optional issue-tracker bookkeeping via the bd CLI.

Every call runs the tracker as a subprocess. Failures of any kind (missing
binary, non-zero exit, timeout, unparseable JSON) are logged as warnings
and turned into a neutral return value, so run state changes always
complete whether or not the tracker is reachable.
"""

from __future__ import annotations

import json
import logging
import os
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from ..config.runtime_config import (
    get_issue_tracker_command,
    get_issue_tracker_timeout,
    is_issue_tracker_enabled,
)

logger = logging.getLogger(__name__)

CLOSED_STATUSES = frozenset({"closed", "done"})


@dataclass
class TrackerTask:
    """A task as reported by the tracker."""

    id: str
    title: str = ""
    status: str = ""
    assignee: Optional[str] = None

    @property
    def is_closed(self) -> bool:
        return self.status in CLOSED_STATUSES


@dataclass
class TaskClaim:
    """Outcome of a claim attempt.

    Attributes:
        success: True if the tracker shows us as the assignee afterwards.
        task: The task, when it could be read back.
        error: "already_claimed", "lost_race", "task_not_found", or a message.
        actual_owner: Assignee seen by the tracker, if known.
    """

    success: bool
    task: Optional[TrackerTask] = None
    error: Optional[str] = None
    actual_owner: Optional[str] = None


def _task_from_dict(data: Dict[str, Any]) -> TrackerTask:
    return TrackerTask(
        id=str(data.get("id", "")),
        title=data.get("title", ""),
        status=data.get("status", ""),
        assignee=data.get("assignee") or None,
    )


class IssueTracker:
    """Thin subprocess wrapper over the tracker CLI."""

    def __init__(
        self,
        command: str = "bd",
        timeout: float = 5.0,
        enabled: bool = True,
        cwd: Optional[Path] = None,
    ):
        self.command = command
        self.timeout = timeout
        self.enabled = enabled
        self.cwd = cwd

    @classmethod
    def from_config(cls, root: Path) -> "IssueTracker":
        return cls(
            command=get_issue_tracker_command(root),
            timeout=get_issue_tracker_timeout(root),
            enabled=is_issue_tracker_enabled(root),
            cwd=root,
        )

    def _run(self, args: List[str], actor: Optional[str] = None) -> Tuple[bool, str, str]:
        """Run a tracker command.

        Returns:
            (success, stdout, stderr). Never raises.
        """
        if not self.enabled:
            return False, "", "issue tracker disabled"

        env = None
        if actor:
            env = dict(os.environ)
            env["BD_ACTOR"] = actor

        try:
            result = subprocess.run(
                [self.command] + args,
                cwd=str(self.cwd) if self.cwd else None,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                env=env,
            )
        except subprocess.TimeoutExpired:
            logger.warning("%s %s timed out after %ss", self.command, " ".join(args), self.timeout)
            return False, "", f"timed out after {self.timeout}s"
        except FileNotFoundError:
            logger.warning("Issue tracker '%s' not found in PATH", self.command)
            return False, "", f"{self.command} not found in PATH"
        except OSError as e:
            logger.warning("Failed to run %s %s: %s", self.command, " ".join(args), e)
            return False, "", str(e)

        if result.returncode != 0:
            logger.warning(
                "%s %s exited %d: %s",
                self.command,
                " ".join(args),
                result.returncode,
                result.stderr.strip(),
            )
            return False, result.stdout, result.stderr
        return True, result.stdout, result.stderr

    def _run_json(self, args: List[str]) -> Optional[Any]:
        ok, stdout, _ = self._run(args)
        if not ok:
            return None
        try:
            return json.loads(stdout or "[]")
        except json.JSONDecodeError as e:
            logger.warning("Unparseable JSON from %s %s: %s", self.command, " ".join(args), e)
            return None

    def ready_tasks(self, unassigned: bool = True, limit: int = 1) -> List[TrackerTask]:
        """Unblocked tasks, empty on any failure."""
        args = ["ready", "--json"]
        if unassigned:
            args.append("--unassigned")
        args.extend(["--limit", str(limit)])
        data = self._run_json(args)
        if not isinstance(data, list):
            return []
        return [_task_from_dict(item) for item in data if isinstance(item, dict)]

    def show_task(self, task_id: str) -> Optional[TrackerTask]:
        """Read one task. None if it is missing or the tracker failed."""
        data = self._run_json(["show", task_id, "--json"])
        if isinstance(data, list):
            data = data[0] if data else None
        if not isinstance(data, dict):
            return None
        return _task_from_dict(data)

    def claim_task(self, task_id: str, actor: str) -> TaskClaim:
        """Claim a task, then read it back to confirm ownership."""
        ok, _, stderr = self._run(["update", task_id, "--claim"], actor=actor)
        if not ok:
            if "already claimed" in stderr:
                owner = stderr.split("already claimed by", 1)[-1].split()
                return TaskClaim(
                    success=False,
                    error="already_claimed",
                    actual_owner=owner[0] if owner else "unknown",
                )
            return TaskClaim(success=False, error=stderr.strip() or "claim failed")

        task = self.show_task(task_id)
        if task is None:
            return TaskClaim(success=False, error="task_not_found")
        if task.assignee != actor:
            return TaskClaim(
                success=False, task=task, error="lost_race", actual_owner=task.assignee or "unknown"
            )
        return TaskClaim(success=True, task=task, actual_owner=actor)

    def close_task(self, task_id: str, reason: Optional[str] = None) -> bool:
        """Close a task. False on any failure."""
        args = ["close", task_id]
        if reason:
            args.extend(["--reason", reason])
        ok, _, _ = self._run(args)
        return ok
