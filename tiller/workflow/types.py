"""Workflow types: definitions, steps, edges and persisted instances.

A WorkflowDefinition is parsed once from a YAML file and never mutated.
A WorkflowInstance is the persisted execution state of one definition.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, FrozenSet, List, Optional

from ..runtime.types import _datetime_to_iso, _iso_to_datetime, _utcnow


@dataclass(frozen=True)
class StepEdge:
    """Outgoing edge of a step.

    Attributes:
        target: Step id to move to.
        condition: Condition expression; None makes this the default edge.
        label: Optional human-readable label.
    """

    target: str
    condition: Optional[str] = None
    label: Optional[str] = None

    @property
    def is_default(self) -> bool:
        return self.condition is None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StepEdge":
        condition = data.get("condition")
        return cls(
            target=data["target"],
            condition=condition if condition not in ("", None) else None,
            label=data.get("label"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"target": self.target, "condition": self.condition, "label": self.label}


@dataclass(frozen=True)
class WorkflowStep:
    """One step of a workflow.

    Attributes:
        id: Step id, unique within the workflow.
        name: Display name.
        description: What the step asks for.
        outputs: Keys the step is expected to set in instance state.
        next: Outgoing edges in declaration order.
    """

    id: str
    name: str
    description: str = ""
    outputs: tuple = ()
    next: tuple = ()

    @classmethod
    def from_dict(cls, step_id: str, data: Dict[str, Any]) -> "WorkflowStep":
        return cls(
            id=step_id,
            name=data.get("name", step_id),
            description=data.get("description", ""),
            outputs=tuple(data.get("outputs", [])),
            next=tuple(StepEdge.from_dict(e) for e in data.get("next", [])),
        )


@dataclass(frozen=True)
class WorkflowDefinition:
    """A declarative multi-step procedure.

    Attributes:
        name: Workflow name (also its file name).
        version: Definition version string.
        description: Human-readable summary.
        initial_step: Step id new instances start at.
        terminal_steps: Step ids that end the workflow.
        steps: Steps keyed by id, in declaration order.
    """

    name: str
    version: str
    description: str
    initial_step: str
    terminal_steps: FrozenSet[str]
    steps: Dict[str, WorkflowStep] = field(default_factory=dict)

    def get_step(self, step_id: str) -> Optional[WorkflowStep]:
        return self.steps.get(step_id)

    def is_terminal(self, step_id: str) -> bool:
        return step_id in self.terminal_steps

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkflowDefinition":
        """Build a definition from already-validated parsed YAML."""
        return cls(
            name=data["name"],
            version=str(data.get("version", "1.0")),
            description=data.get("description", ""),
            initial_step=data["initial_step"],
            terminal_steps=frozenset(data.get("terminal_steps", [])),
            steps={
                step_id: WorkflowStep.from_dict(step_id, step_data or {})
                for step_id, step_data in data.get("steps", {}).items()
            },
        )


@dataclass
class WorkflowInstance:
    """Persisted execution state of a workflow.

    Attributes:
        id: Instance id ("<workflow>-<unix seconds>").
        workflow_name: Definition this instance executes.
        current_step: Step the instance is at.
        state: Accumulated step outputs.
        history: Visited step ids, append-only, starting with the initial step.
        started_at: Creation time.
        updated_at: Last save time.
    """

    id: str
    workflow_name: str
    current_step: str
    state: Dict[str, Any] = field(default_factory=dict)
    history: List[str] = field(default_factory=list)
    started_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "workflow_name": self.workflow_name,
            "current_step": self.current_step,
            "state": dict(self.state),
            "history": list(self.history),
            "started_at": _datetime_to_iso(self.started_at),
            "updated_at": _datetime_to_iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkflowInstance":
        started = _iso_to_datetime(data.get("started_at")) or _utcnow()
        return cls(
            id=data["id"],
            workflow_name=data["workflow_name"],
            current_step=data["current_step"],
            state=dict(data.get("state") or {}),
            history=list(data.get("history") or []),
            started_at=started,
            updated_at=_iso_to_datetime(data.get("updated_at")) or started,
        )


@dataclass(frozen=True)
class NextStep:
    """An outgoing edge annotated with its condition result."""

    step_id: str
    step_name: str
    condition: Optional[str]
    condition_met: bool
    is_default: bool
    label: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "step_id": self.step_id,
            "step_name": self.step_name,
            "condition": self.condition,
            "condition_met": self.condition_met,
            "is_default": self.is_default,
            "label": self.label,
        }
