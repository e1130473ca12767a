"""
verification.py - Event-sourced verification results.

Check results are never overwritten: each execution or manual verdict is
appended as a VerificationEvent on the run, and the current per-check
status is derived at read time against the plan's current check list.
Checks removed from the plan vanish from the snapshot while their events
stay on the run.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from .errors import ValidationError
from .types import (
    DerivedCheck,
    Run,
    VerificationCheckDef,
    VerificationEvent,
    VerificationEventType,
    VerificationResults,
    VerificationSnapshot,
    _utcnow,
)

logger = logging.getLogger(__name__)

EXECUTED_STATUSES = frozenset({"pass", "fail", "error"})
MANUAL_STATUSES = frozenset({"pass", "fail"})
OUTPUT_TAIL_MAX_CHARS = 4096


def check_defs_from_list(items: Iterable[Dict[str, Any]]) -> List[VerificationCheckDef]:
    """Parse check definitions as declared in a plan document."""
    defs: List[VerificationCheckDef] = []
    for item in items:
        name = item.get("name")
        if not name:
            raise ValidationError(f"Verification check without a name: {item!r}")
        defs.append(
            VerificationCheckDef(
                name=name,
                cmd=item.get("cmd"),
                manual=bool(item.get("manual", False)),
                timeout=item.get("timeout"),
            )
        )
    return defs


def _validate_event(event: VerificationEvent) -> None:
    if event.type == VerificationEventType.RUN_STARTED:
        return
    if not event.name:
        raise ValidationError(f"{event.type.value} event requires a check name")
    allowed = (
        EXECUTED_STATUSES if event.type == VerificationEventType.CHECK_EXECUTED else MANUAL_STATUSES
    )
    if event.status not in allowed:
        raise ValidationError(
            f"Invalid status {event.status!r} for {event.type.value}; expected one of {sorted(allowed)}"
        )


def append_verification_event(
    run: Run, event: VerificationEvent, now: Optional[datetime] = None
) -> Run:
    """Append a verification event to a run in memory.

    Output tails longer than OUTPUT_TAIL_MAX_CHARS keep only their end.
    """
    _validate_event(event)
    if event.output_tail and len(event.output_tail) > OUTPUT_TAIL_MAX_CHARS:
        event.output_tail = event.output_tail[-OUTPUT_TAIL_MAX_CHARS:]
    if run.verification is None:
        run.verification = VerificationResults()
    run.verification.events.append(event)
    run.updated = now or _utcnow()
    return run


def derive_verification_snapshot(
    run: Run, check_defs: List[VerificationCheckDef]
) -> VerificationSnapshot:
    """Derive per-check status from events against current check definitions.

    For each defined check, the latest check_executed or manual_recorded
    event with the same name decides its status; without one it is pending.
    """
    events = list(run.verification.events) if run.verification else []

    latest: Dict[str, VerificationEvent] = {}
    for event in events:
        if event.type in (VerificationEventType.CHECK_EXECUTED, VerificationEventType.MANUAL_RECORDED):
            latest[event.name or ""] = event

    checks: List[DerivedCheck] = []
    for check_def in check_defs:
        check = DerivedCheck(
            name=check_def.name,
            kind="manual" if check_def.manual else "cmd",
            timeout=check_def.timeout,
        )
        event = latest.get(check_def.name)
        if event is not None:
            check.status = event.status or "pending"
            check.updated_at = event.at
            check.by = event.by
            if event.type == VerificationEventType.CHECK_EXECUTED:
                check.exit_code = event.exit_code
                check.output_tail = event.output_tail
            else:
                check.reason = event.reason
        checks.append(check)

    manual_pending = any(c.kind == "manual" and c.status == "pending" for c in checks)
    return VerificationSnapshot(events=events, checks=checks, manual_pending=manual_pending)


def verification_status(snapshot: VerificationSnapshot) -> str:
    """Aggregate status: "fail" on any fail/error, "pass" if all pass, else "pending".

    A plan with no checks passes.
    """
    if not snapshot.checks:
        return "pass"
    if any(c.status in ("fail", "error") for c in snapshot.checks):
        return "fail"
    if all(c.status == "pass" for c in snapshot.checks):
        return "pass"
    return "pending"


def started_event(checks_planned: List[str], by: str = "agent") -> VerificationEvent:
    return VerificationEvent(
        type=VerificationEventType.RUN_STARTED, at=_utcnow(), by=by, checks_planned=checks_planned
    )


def executed_event(
    name: str, status: str, exit_code: Optional[int], output_tail: str = ""
) -> VerificationEvent:
    return VerificationEvent(
        type=VerificationEventType.CHECK_EXECUTED,
        at=_utcnow(),
        by="agent",
        name=name,
        status=status,
        exit_code=exit_code,
        output_tail=output_tail,
    )


def manual_event(
    name: str, status: str, by: str = "human", reason: Optional[str] = None
) -> VerificationEvent:
    return VerificationEvent(
        type=VerificationEventType.MANUAL_RECORDED,
        at=_utcnow(),
        by=by,
        name=name,
        status=status,
        reason=reason,
    )
