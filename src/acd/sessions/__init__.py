"""Agent sessions: pseudo-terminal processes bound to git worktrees."""

from .agents import AgentCatalog, AgentConfig, AgentOption, build_args, validate_options
from .models import SessionEvent, SessionSnapshot, SessionState
from .orchestrator import SessionOrchestrator

__all__ = [
    "AgentCatalog",
    "AgentConfig",
    "AgentOption",
    "SessionEvent",
    "SessionOrchestrator",
    "SessionSnapshot",
    "SessionState",
    "build_args",
    "validate_options",
]
