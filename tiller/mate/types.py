"""Mate identity records.

A mate is a named worker identity that one process at a time may hold.
On disk each mate is .tiller/mates/<name>.json with camelCase keys.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from ..runtime.errors import ValidationError
from ..runtime.types import _datetime_to_iso, _iso_to_datetime, _utcnow

MATE_NAME_RE = re.compile(r"^[a-z0-9][a-z0-9_-]{0,63}$")


class MateState(str, Enum):
    """Lifecycle of a mate identity."""

    AVAILABLE = "available"
    CLAIMED = "claimed"  # Held by a process, idle
    SAILING = "sailing"  # Held by a worker loop


@dataclass
class Mate:
    """A worker identity.

    Attributes:
        name: Unique mate name (also the file name).
        state: Current MateState.
        assigned_plan: Plan reference the mate is working on.
        claimed_by: PID of the holding process.
        claimed_by_session: Agent session id of the holder.
        claimed_at: When the current claim began.
        created_at: Registration time.
        updated_at: Last modification time.
    """

    name: str
    state: MateState = MateState.AVAILABLE
    assigned_plan: Optional[str] = None
    claimed_by: Optional[int] = None
    claimed_by_session: Optional[str] = None
    claimed_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    @property
    def is_available(self) -> bool:
        return self.state == MateState.AVAILABLE


def validate_mate_name(name: str) -> str:
    """Return name unchanged if it is a valid mate name.

    Raises:
        ValidationError: If the name is empty or contains path characters.
    """
    if not isinstance(name, str) or not MATE_NAME_RE.match(name):
        raise ValidationError(
            f"Invalid mate name {name!r}: use lowercase letters, digits, '-' or '_'"
        )
    return name


def mate_to_dict(mate: Mate) -> Dict[str, Any]:
    """Convert Mate to its on-disk camelCase form."""
    return {
        "name": mate.name,
        "state": mate.state.value,
        "assignedPlan": mate.assigned_plan,
        "claimedBy": mate.claimed_by,
        "claimedBySession": mate.claimed_by_session,
        "claimedAt": _datetime_to_iso(mate.claimed_at) if mate.claimed_at else None,
        "createdAt": _datetime_to_iso(mate.created_at),
        "updatedAt": _datetime_to_iso(mate.updated_at),
    }


def mate_from_dict(data: Dict[str, Any]) -> Mate:
    """Parse a mate file.

    Raises:
        ValidationError: On a missing name, unknown state, or a garbled
            PID or timestamp.
    """
    if not isinstance(data, dict):
        raise ValidationError(f"Mate record must be an object, got {type(data).__name__}")
    name = data.get("name")
    if not name:
        raise ValidationError("Mate record has no name", details=data)
    try:
        state = MateState(data.get("state", MateState.AVAILABLE.value))
    except ValueError as e:
        raise ValidationError(f"Mate '{name}' has unknown state {data.get('state')!r}") from e

    claimed_by = data.get("claimedBy")
    try:
        claimed_by = int(claimed_by) if claimed_by else None
        claimed_at = _iso_to_datetime(data.get("claimedAt"))
        created = _iso_to_datetime(data.get("createdAt")) or _utcnow()
        updated = _iso_to_datetime(data.get("updatedAt")) or created
    except (TypeError, ValueError, AttributeError) as e:
        raise ValidationError(f"Mate '{name}' has a malformed field: {e}") from e

    return Mate(
        name=name,
        state=state,
        assigned_plan=data.get("assignedPlan"),
        claimed_by=claimed_by,
        claimed_by_session=data.get("claimedBySession"),
        claimed_at=claimed_at,
        created_at=created,
        updated_at=updated,
    )
