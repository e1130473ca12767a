"""Run types for the plan-execution lifecycle.

This module contains the Run record, its transition and checkpoint
records, the completion record, and the hierarchical state enums.
Serialization follows the module-level *_to_dict / *_from_dict pattern.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from ..errors import ValidationError
from ._ids import AgentId, RunId
from ._time import _datetime_to_iso, _iso_to_datetime, _utcnow
from .verification import (
    VerificationResults,
    verification_results_from_dict,
    verification_results_to_dict,
)


class ParentState(str, Enum):
    """Top-level lifecycle states. Only some carry substates."""

    PROPOSED = "proposed"
    APPROVED = "approved"
    READY = "ready"
    ACTIVE = "active"
    VERIFYING = "verifying"
    COMPLETE = "complete"
    ABANDONED = "abandoned"


class RunState(str, Enum):
    """Concrete states a run can be in.

    Substates are written as "<parent>/<sub>" on disk.
    """

    PROPOSED = "proposed"
    APPROVED = "approved"
    READY = "ready"
    ACTIVE_EXECUTING = "active/executing"
    ACTIVE_PAUSED = "active/paused"
    ACTIVE_CHECKPOINT = "active/checkpoint"
    VERIFYING_TESTING = "verifying/testing"
    VERIFYING_PASSED = "verifying/passed"
    VERIFYING_FAILED = "verifying/failed"
    VERIFYING_FIXING = "verifying/fixing"
    VERIFYING_RETESTING = "verifying/retesting"
    COMPLETE = "complete"
    ABANDONED = "abandoned"


# Flat states written by older versions, mapped to their current substate.
LEGACY_STATES: Dict[str, RunState] = {
    "active": RunState.ACTIVE_EXECUTING,
    "paused": RunState.ACTIVE_PAUSED,
    "checkpoint": RunState.ACTIVE_CHECKPOINT,
    "verifying": RunState.VERIFYING_TESTING,
}


def parse_run_state(value: Any) -> RunState:
    """Parse a state string, migrating legacy flat states.

    Raises:
        ValidationError: If the value is not a known state.
    """
    if isinstance(value, RunState):
        return value
    if isinstance(value, str):
        if value in LEGACY_STATES:
            return LEGACY_STATES[value]
        try:
            return RunState(value)
        except ValueError:
            pass
    raise ValidationError(f"Unknown run state: {value!r}")


class CheckpointType(str, Enum):
    """Kinds of human interaction a checkpoint waits on."""

    HUMAN_VERIFY = "human-verify"
    DECISION = "decision"
    HUMAN_ACTION = "human-action"


@dataclass
class TransitionRecord:
    """One entry in a run's append-only transition history."""

    from_state: RunState
    to_state: RunState
    actor: str
    timestamp: datetime
    note: Optional[str] = None


@dataclass
class CheckpointOption:
    """A selectable option for a decision checkpoint."""

    id: str
    label: str
    description: Optional[str] = None


@dataclass
class Checkpoint:
    """A pause point inside a run that waits for a resolution.

    Attributes:
        id: Checkpoint identifier, unique within the run.
        type: What kind of interaction resolves it.
        prompt: Question or instruction shown to the resolver.
        options: Choices for decision checkpoints.
        resolved: Resolution text, None while pending.
        resolved_at: When the checkpoint was resolved.
    """

    id: str
    type: CheckpointType
    prompt: str
    options: List[CheckpointOption] = field(default_factory=list)
    resolved: Optional[str] = None
    resolved_at: Optional[datetime] = None


@dataclass
class CompletionRecord:
    """Set when a run reaches the complete state."""

    timestamp: datetime
    verification_passed: bool
    verification_skipped: bool = False
    issues_resolved: Optional[int] = None
    duration_minutes: Optional[int] = None
    reason: Optional[str] = None


@dataclass
class Run:
    """A trackable unit of work derived from a plan document.

    Attributes:
        id: Opaque, immutable identifier.
        intent: Free-text description of what the run accomplishes.
        state: Current hierarchical state.
        plan_path: Project-relative path to the plan document.
        created: Creation timestamp.
        updated: Last mutation timestamp.
        initiative: Optional grouping key.
        transitions: Append-only transition history.
        checkpoints: Pause points declared for the run.
        claimed_by: Agent holding the claim (claim triple is all-or-nothing).
        claimed_at: When the claim was taken.
        claim_expires: When the claim lapses.
        files_touched: Declared project-relative file scope.
        priority: Lower sorts first.
        depends_on: Advisory dependencies on other run ids.
        beads_epic_id: Issue-tracker epic pointer.
        beads_task_id: Issue-tracker task pointer.
        beads_snapshot: Last issue-tracker progress snapshot (opaque).
        verification: Event-sourced verification results.
        completion: Completion record, set on reaching complete.
        revision: Write counter, bumped by every versioned save.
    """

    id: RunId
    intent: str
    state: RunState
    plan_path: str
    created: datetime
    updated: datetime
    initiative: Optional[str] = None
    transitions: List[TransitionRecord] = field(default_factory=list)
    checkpoints: List[Checkpoint] = field(default_factory=list)
    claimed_by: Optional[AgentId] = None
    claimed_at: Optional[datetime] = None
    claim_expires: Optional[datetime] = None
    files_touched: List[str] = field(default_factory=list)
    priority: int = 99
    depends_on: List[RunId] = field(default_factory=list)
    beads_epic_id: Optional[str] = None
    beads_task_id: Optional[str] = None
    beads_snapshot: Optional[Dict[str, Any]] = None
    verification: Optional[VerificationResults] = None
    completion: Optional[CompletionRecord] = None
    revision: int = 0

    @property
    def is_claimed(self) -> bool:
        return self.claimed_by is not None


# =============================================================================
# Serialization Functions
# =============================================================================


def transition_record_to_dict(record: TransitionRecord) -> Dict[str, Any]:
    """Convert TransitionRecord to a dictionary for serialization."""
    data: Dict[str, Any] = {
        "from": record.from_state.value,
        "to": record.to_state.value,
        "actor": record.actor,
        "timestamp": _datetime_to_iso(record.timestamp),
    }
    if record.note is not None:
        data["note"] = record.note
    return data


def transition_record_from_dict(data: Dict[str, Any]) -> TransitionRecord:
    """Parse TransitionRecord from a dictionary.

    Accepts the older at/by/reason keys.
    """
    timestamp = _iso_to_datetime(data.get("timestamp") or data.get("at"))
    return TransitionRecord(
        from_state=parse_run_state(data.get("from")),
        to_state=parse_run_state(data.get("to")),
        actor=data.get("actor") or data.get("by") or "unknown",
        timestamp=timestamp or _utcnow(),
        note=data.get("note", data.get("reason")),
    )


def checkpoint_to_dict(checkpoint: Checkpoint) -> Dict[str, Any]:
    """Convert Checkpoint to a dictionary for serialization."""
    data: Dict[str, Any] = {
        "id": checkpoint.id,
        "type": checkpoint.type.value,
        "prompt": checkpoint.prompt,
        "resolved": checkpoint.resolved,
    }
    if checkpoint.options:
        options = []
        for option in checkpoint.options:
            entry = {"id": option.id, "label": option.label}
            if option.description is not None:
                entry["description"] = option.description
            options.append(entry)
        data["options"] = options
    if checkpoint.resolved_at is not None:
        data["resolved_at"] = _datetime_to_iso(checkpoint.resolved_at)
    return data


def checkpoint_from_dict(data: Dict[str, Any]) -> Checkpoint:
    """Parse Checkpoint from a dictionary."""
    return Checkpoint(
        id=data.get("id", ""),
        type=CheckpointType(data.get("type", CheckpointType.HUMAN_VERIFY.value)),
        prompt=data.get("prompt", ""),
        options=[
            CheckpointOption(
                id=o.get("id", ""),
                label=o.get("label", ""),
                description=o.get("description"),
            )
            for o in data.get("options", [])
        ],
        resolved=data.get("resolved"),
        resolved_at=_iso_to_datetime(data.get("resolved_at")),
    )


def completion_record_to_dict(record: CompletionRecord) -> Dict[str, Any]:
    """Convert CompletionRecord to a dictionary for serialization."""
    verification: Dict[str, Any] = {
        "passed": record.verification_passed,
        "skipped": record.verification_skipped,
    }
    if record.issues_resolved is not None:
        verification["issues_resolved"] = record.issues_resolved
    data: Dict[str, Any] = {
        "timestamp": _datetime_to_iso(record.timestamp),
        "verification": verification,
    }
    if record.duration_minutes is not None:
        data["duration_minutes"] = record.duration_minutes
    if record.reason is not None:
        data["reason"] = record.reason
    return data


def completion_record_from_dict(data: Dict[str, Any]) -> CompletionRecord:
    """Parse CompletionRecord from a dictionary."""
    verification = data.get("verification", {})
    return CompletionRecord(
        timestamp=_iso_to_datetime(data.get("timestamp")) or _utcnow(),
        verification_passed=bool(verification.get("passed", False)),
        verification_skipped=bool(verification.get("skipped", False)),
        issues_resolved=verification.get("issues_resolved"),
        duration_minutes=data.get("duration_minutes"),
        reason=data.get("reason"),
    )


def run_to_dict(run: Run) -> Dict[str, Any]:
    """Convert Run to a dictionary for serialization.

    Args:
        run: The Run to convert.

    Returns:
        Dictionary representation suitable for JSON serialization.
    """
    data: Dict[str, Any] = {
        "id": run.id,
        "initiative": run.initiative,
        "intent": run.intent,
        "state": run.state.value,
        "plan_path": run.plan_path,
        "created": _datetime_to_iso(run.created),
        "updated": _datetime_to_iso(run.updated),
        "transitions": [transition_record_to_dict(t) for t in run.transitions],
        "checkpoints": [checkpoint_to_dict(c) for c in run.checkpoints],
        "beads_epic_id": run.beads_epic_id,
        "beads_task_id": run.beads_task_id,
        "beads_snapshot": run.beads_snapshot,
        "claimed_by": run.claimed_by,
        "claimed_at": _datetime_to_iso(run.claimed_at),
        "claim_expires": _datetime_to_iso(run.claim_expires),
        "files_touched": list(run.files_touched),
        "priority": run.priority,
        "depends_on": list(run.depends_on),
        "revision": run.revision,
    }
    if run.verification is not None:
        data["verification"] = verification_results_to_dict(run.verification)
    if run.completion is not None:
        data["completion"] = completion_record_to_dict(run.completion)
    return data


def run_from_dict(data: Dict[str, Any]) -> Run:
    """Parse Run from a dictionary.

    Args:
        data: Dictionary with Run fields. Accepts "run_id" for the id.

    Returns:
        Parsed Run instance.

    Raises:
        ValidationError: If the id is missing, the state is unknown, or the
            claim fields are only partially set.
    """
    run_id = data.get("id") or data.get("run_id")
    if not run_id:
        raise ValidationError("Run record has no id")

    claim_fields = (data.get("claimed_by"), data.get("claimed_at"), data.get("claim_expires"))
    if any(v is not None for v in claim_fields) and not all(v is not None for v in claim_fields):
        raise ValidationError(
            f"Run '{run_id}' has a partial claim: claimed_by, claimed_at and "
            "claim_expires must be set together"
        )

    verification = data.get("verification")
    completion = data.get("completion")
    created = _iso_to_datetime(data.get("created")) or _utcnow()

    return Run(
        id=run_id,
        initiative=data.get("initiative"),
        intent=data.get("intent", ""),
        state=parse_run_state(data.get("state", RunState.PROPOSED.value)),
        plan_path=data.get("plan_path", ""),
        created=created,
        updated=_iso_to_datetime(data.get("updated")) or created,
        transitions=[transition_record_from_dict(t) for t in data.get("transitions", [])],
        checkpoints=[checkpoint_from_dict(c) for c in data.get("checkpoints", [])],
        claimed_by=data.get("claimed_by"),
        claimed_at=_iso_to_datetime(data.get("claimed_at")),
        claim_expires=_iso_to_datetime(data.get("claim_expires")),
        files_touched=list(data.get("files_touched") or []),
        priority=int(data.get("priority", 99)),
        depends_on=list(data.get("depends_on") or []),
        beads_epic_id=data.get("beads_epic_id"),
        beads_task_id=data.get("beads_task_id"),
        beads_snapshot=data.get("beads_snapshot"),
        verification=verification_results_from_dict(verification) if verification else None,
        completion=completion_record_from_dict(completion) if completion else None,
        revision=int(data.get("revision", 0)),
    )
