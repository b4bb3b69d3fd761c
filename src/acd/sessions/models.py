"""Session data model and state machine."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional

from pydantic import BaseModel, Field


class SessionState(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    BUSY = "busy"
    IDLE = "idle"
    WAITING_INPUT = "waiting_input"
    ERROR = "error"
    STOPPED = "stopped"


_RUNNING_STATES = frozenset({SessionState.ACTIVE, SessionState.BUSY, SessionState.IDLE, SessionState.WAITING_INPUT})

# Allowed moves. STOPPED is terminal; only an explicit stop reaches it.
TRANSITIONS: Dict[SessionState, FrozenSet[SessionState]] = {
    SessionState.PENDING: frozenset({SessionState.ACTIVE, SessionState.BUSY, SessionState.ERROR, SessionState.STOPPED}),
    SessionState.ACTIVE: _RUNNING_STATES | {SessionState.ERROR, SessionState.STOPPED},
    SessionState.BUSY: _RUNNING_STATES | {SessionState.ERROR, SessionState.STOPPED},
    SessionState.IDLE: _RUNNING_STATES | {SessionState.ERROR, SessionState.STOPPED},
    SessionState.WAITING_INPUT: _RUNNING_STATES | {SessionState.ERROR, SessionState.STOPPED},
    SessionState.ERROR: frozenset({SessionState.STOPPED}),
    SessionState.STOPPED: frozenset(),
}


def can_transition(current: SessionState, target: SessionState) -> bool:
    return target in TRANSITIONS[current]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionSnapshot(BaseModel):
    """Immutable copy of a session as handed to callers."""

    id: str
    name: str
    worktree_path: str
    project_path: str
    agent_id: str
    state: SessionState
    created_at: datetime
    pid: Optional[int] = None
    command: List[str] = Field(default_factory=list)
    exit_code: Optional[int] = None
    exited_at: Optional[datetime] = None
    cols: int = 80
    rows: int = 24


class SessionEvent(BaseModel):
    """Notification published to orchestrator subscribers."""

    type: str  # created | state_changed | data | exited | destroyed
    session_id: str
    data: Dict[str, Any] = Field(default_factory=dict)
