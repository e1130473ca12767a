"""
errors.py - Error taxonomy for run, workflow and mate coordination.

Every failure the core raises derives from TillerError so callers can catch
the whole family at a command boundary. Errors carry the identifiers and
version tokens needed to decide between reload-and-retry and abort; the core
itself never retries.

Usage:
    from tiller.runtime.errors import (
        TillerError, ValidationError, RunNotFoundError, InvalidTransition,
        StaleReadError, StaleWriteError, ClaimConflict, LockTimeout,
        ConfigurationDefect, WorkflowNotFoundError, InstanceNotFoundError,
        MateNotFoundError, MateConflict,
    )
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional


class TillerError(Exception):
    """Base exception for coordination errors."""

    pass


class ValidationError(TillerError):
    """Raised for malformed input. Never retried."""

    def __init__(self, message: str, details: Optional[Any] = None):
        self.details = details
        super().__init__(message)


class RunNotFoundError(TillerError):
    """Raised when a run id or reference does not resolve to a run file."""

    def __init__(self, run_ref: str):
        self.run_ref = run_ref
        super().__init__(f"Run '{run_ref}' not found")


class InvalidTransition(TillerError):
    """Raised when the transition table has no edge for (from, to)."""

    def __init__(self, run_id: str, from_state: str, to_state: str):
        self.run_id = run_id
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(
            f"Invalid transition for run '{run_id}': {from_state} -> {to_state}"
        )


class StaleReadError(TillerError):
    """Raised when a run file changed while it was being read."""

    def __init__(self, run_id: str, expected_version: str, actual_version: str):
        self.run_id = run_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Run '{run_id}' changed during read: "
            f"expected version {expected_version}, got {actual_version}"
        )


class StaleWriteError(TillerError):
    """Raised when the on-disk version no longer matches the loaded version."""

    def __init__(self, run_id: str, expected_version: str, actual_version: Optional[str]):
        self.run_id = run_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Refusing write for run '{run_id}': version mismatch "
            f"(expected {expected_version}, found {actual_version}). "
            "Another process may have modified the file."
        )


class ClaimConflict(TillerError):
    """Raised when a run is held by a live claim or overlaps active runs.

    Attributes:
        run_id: The run that could not be claimed.
        holder: Current claim holder, if the conflict is a live claim.
        expires: Expiry of the live claim, if any.
        conflicts: Ids of active runs whose files_touched overlap.
    """

    def __init__(
        self,
        run_id: str,
        holder: Optional[str] = None,
        expires: Optional[datetime] = None,
        conflicts: Optional[List[str]] = None,
    ):
        self.run_id = run_id
        self.holder = holder
        self.expires = expires
        self.conflicts = list(conflicts or [])
        if holder is not None:
            msg = f"Run '{run_id}' is claimed by '{holder}'"
            if expires is not None:
                msg += f" until {expires.isoformat()}"
        else:
            msg = (
                f"Run '{run_id}' has file conflicts with active runs: "
                f"{', '.join(self.conflicts)} (use force to override)"
            )
        super().__init__(msg)


class LockTimeout(TillerError):
    """Raised when an advisory lock cannot be acquired before the deadline."""

    def __init__(self, name: str, lock_path: str, waited: float):
        self.name = name
        self.lock_path = lock_path
        self.waited = waited
        super().__init__(
            f"Cannot acquire lock for '{name}' at {lock_path} after {waited:.2f}s"
        )


class ConfigurationDefect(TillerError):
    """Raised when a workflow definition leaves a non-terminal step with no way out."""

    def __init__(self, workflow: str, step_id: str, message: Optional[str] = None):
        self.workflow = workflow
        self.step_id = step_id
        super().__init__(
            message
            or (
                f"Workflow '{workflow}' step '{step_id}' is not terminal "
                "but no outgoing edge matched"
            )
        )


class WorkflowNotFoundError(TillerError):
    """Raised when no definition file exists for a workflow name."""

    def __init__(self, name: str, path: Optional[str] = None):
        self.name = name
        self.path = path
        msg = f"Workflow '{name}' not found"
        if path:
            msg += f" at {path}"
        super().__init__(msg)


class InstanceNotFoundError(TillerError):
    """Raised when a workflow instance file does not exist."""

    def __init__(self, instance_id: str):
        self.instance_id = instance_id
        super().__init__(f"Workflow instance '{instance_id}' not found")


class MateNotFoundError(TillerError):
    """Raised when a mate has no registry file."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Mate '{name}' not found")


class MateConflict(TillerError):
    """Raised when a mate operation is refused because of its claim state."""

    def __init__(self, name: str, message: str, holder_pid: Optional[int] = None):
        self.name = name
        self.holder_pid = holder_pid
        super().__init__(message)
