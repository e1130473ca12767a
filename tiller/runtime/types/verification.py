"""Verification types for event-sourced check results.

Verification events are appended to a run and never rewritten. The
per-check view (DerivedCheck) is computed at read time from the latest
event for each check name against the plan's current check definitions.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from ._time import _datetime_to_iso, _iso_to_datetime, _utcnow


class VerificationEventType(str, Enum):
    """Kinds of verification events."""

    RUN_STARTED = "run_started"
    CHECK_EXECUTED = "check_executed"
    MANUAL_RECORDED = "manual_recorded"


@dataclass
class VerificationEvent:
    """One append-only verification event.

    Attributes:
        type: Event kind.
        at: When the event was recorded.
        by: "agent" or "human".
        name: Check name (check_executed, manual_recorded).
        status: "pass" | "fail" | "error" (error only for executed checks).
        exit_code: Exit code of an executed check, None if it could not run.
        output_tail: Truncated output of an executed check.
        reason: Free-text reason for a manual result.
        checks_planned: Check names in plan order (run_started).
    """

    type: VerificationEventType
    at: datetime
    by: str = "agent"
    name: Optional[str] = None
    status: Optional[str] = None
    exit_code: Optional[int] = None
    output_tail: Optional[str] = None
    reason: Optional[str] = None
    checks_planned: List[str] = field(default_factory=list)


@dataclass
class VerificationCheckDef:
    """A check declared by the plan document."""

    name: str
    cmd: Optional[str] = None
    manual: bool = False
    timeout: Optional[int] = None


@dataclass
class DerivedCheck:
    """Current view of one check, derived from events."""

    name: str
    kind: str  # "cmd" | "manual"
    status: str = "pending"  # "pending" | "pass" | "fail" | "error"
    exit_code: Optional[int] = None
    output_tail: Optional[str] = None
    timeout: Optional[int] = None
    updated_at: Optional[datetime] = None
    by: Optional[str] = None
    reason: Optional[str] = None


@dataclass
class VerificationSnapshot:
    """Events plus the checks derived from them."""

    events: List[VerificationEvent]
    checks: List[DerivedCheck]
    manual_pending: bool


@dataclass
class VerificationResults:
    """Verification data stored on a run.

    Attributes:
        events: Append-only event log, the source of truth.
        automated: Legacy automated summary, carried through unchanged.
        uat: Legacy UAT summary, carried through unchanged.
    """

    events: List[VerificationEvent] = field(default_factory=list)
    automated: Optional[Dict[str, Any]] = None
    uat: Optional[Dict[str, Any]] = None


# =============================================================================
# Serialization Functions
# =============================================================================


def verification_event_to_dict(event: VerificationEvent) -> Dict[str, Any]:
    """Convert VerificationEvent to a dictionary, omitting unset fields."""
    data: Dict[str, Any] = {
        "type": event.type.value,
        "at": _datetime_to_iso(event.at),
        "by": event.by,
    }
    if event.type == VerificationEventType.RUN_STARTED:
        data["checks_planned"] = list(event.checks_planned)
        return data
    data["name"] = event.name
    data["status"] = event.status
    if event.type == VerificationEventType.CHECK_EXECUTED:
        data["exit_code"] = event.exit_code
        data["output_tail"] = event.output_tail or ""
    elif event.reason is not None:
        data["reason"] = event.reason
    return data


def verification_event_from_dict(data: Dict[str, Any]) -> VerificationEvent:
    """Parse VerificationEvent from a dictionary."""
    return VerificationEvent(
        type=VerificationEventType(data["type"]),
        at=_iso_to_datetime(data.get("at")) or _utcnow(),
        by=data.get("by", "agent"),
        name=data.get("name"),
        status=data.get("status"),
        exit_code=data.get("exit_code"),
        output_tail=data.get("output_tail"),
        reason=data.get("reason"),
        checks_planned=list(data.get("checks_planned", [])),
    )


def verification_results_to_dict(results: VerificationResults) -> Dict[str, Any]:
    """Convert VerificationResults to a dictionary for serialization."""
    data: Dict[str, Any] = {
        "events": [verification_event_to_dict(e) for e in results.events],
    }
    if results.automated is not None:
        data["automated"] = results.automated
    if results.uat is not None:
        data["uat"] = results.uat
    return data


def verification_results_from_dict(data: Dict[str, Any]) -> VerificationResults:
    """Parse VerificationResults from a dictionary."""
    return VerificationResults(
        events=[verification_event_from_dict(e) for e in data.get("events", [])],
        automated=data.get("automated"),
        uat=data.get("uat"),
    )


def derived_check_to_dict(check: DerivedCheck) -> Dict[str, Any]:
    """Convert DerivedCheck to a dictionary, omitting unset fields."""
    data: Dict[str, Any] = {"name": check.name, "kind": check.kind, "status": check.status}
    for key in ("exit_code", "output_tail", "timeout", "by", "reason"):
        value = getattr(check, key)
        if value is not None:
            data[key] = value
    if check.updated_at is not None:
        data["updated_at"] = _datetime_to_iso(check.updated_at)
    return data
