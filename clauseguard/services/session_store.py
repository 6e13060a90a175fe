"""
Session Store

Per-session memory of analysis runs. Entries live until explicitly cleared;
nothing expires on its own.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, Tuple

from clauseguard.core.utc import to_iso, utc_now
from clauseguard.models.analysis import AgentStep


@dataclass
class SessionMemory:
    session_id: str
    user_id: str
    analysis_ids: List[str] = field(default_factory=list)
    last_decision: Optional[Dict[str, Any]] = None
    last_audit_trail: Tuple[AgentStep, ...] = ()
    updated_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "user_id": self.user_id,
            "analysis_ids": list(self.analysis_ids),
            "last_decision": self.last_decision,
            "last_audit_trail": [s.to_dict() for s in self.last_audit_trail],
            "updated_at": to_iso(self.updated_at),
        }


class SessionStore(Protocol):
    def get(self, session_id: str) -> Optional[SessionMemory]:
        ...

    def put(self, memory: SessionMemory) -> None:
        ...

    def clear(self, session_id: str) -> bool:
        ...


class InMemorySessionStore:
    """Dict-backed store. Owned by one engine instance."""

    def __init__(self):
        self._sessions: Dict[str, SessionMemory] = {}

    def get(self, session_id: str) -> Optional[SessionMemory]:
        return self._sessions.get(session_id)

    def put(self, memory: SessionMemory) -> None:
        memory.updated_at = utc_now()
        self._sessions[memory.session_id] = memory

    def clear(self, session_id: str) -> bool:
        """Returns True if the session existed."""
        return self._sessions.pop(session_id, None) is not None

    def __len__(self) -> int:
        return len(self._sessions)
