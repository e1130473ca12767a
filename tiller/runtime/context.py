"""
context.py - Explicit caller identity for coordination operations.

Every operation that records who did something takes an AgentContext
instead of reading identity from the process environment. The only place
that consults the environment is AgentContext.for_current_process(), which
command entry points call once and then pass along.
"""

from __future__ import annotations

import os
import socket
from dataclasses import dataclass, replace
from typing import Optional

AGENT_ENV_VAR = "TILLER_AGENT"
SESSION_ENV_VAR = "TILLER_SESSION"


@dataclass(frozen=True)
class AgentContext:
    """Who is acting.

    Attributes:
        agent_id: Identity recorded in claims and transitions.
        actor: "agent" or "human".
        session_id: Opaque session identifier, used for mate staleness.
        pid: Process id recorded on mate claims.
    """

    agent_id: str
    actor: str = "agent"
    session_id: Optional[str] = None
    pid: int = 0

    def __post_init__(self) -> None:
        if not self.agent_id:
            raise ValueError("agent_id must be non-empty")
        if self.pid == 0:
            object.__setattr__(self, "pid", os.getpid())

    @classmethod
    def for_current_process(
        cls, agent_id: Optional[str] = None, actor: str = "agent"
    ) -> "AgentContext":
        """Build a context for this process.

        Falls back to TILLER_AGENT / TILLER_SESSION, then to host:pid.
        """
        pid = os.getpid()
        resolved = agent_id or os.environ.get(AGENT_ENV_VAR) or f"{socket.gethostname()}:{pid}"
        session = os.environ.get(SESSION_ENV_VAR) or None
        return cls(agent_id=resolved, actor=actor, session_id=session, pid=pid)

    def with_session(self, session_id: Optional[str]) -> "AgentContext":
        return replace(self, session_id=session_id)
