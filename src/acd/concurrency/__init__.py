"""Bounded concurrency for subprocess-backed work (git status fan-out and friends)."""

from .commands import (
    GIT_RESOURCE_CLASS,
    CommandResult,
    GitStatus,
    GitStatusResult,
    get_git_status,
    get_git_status_limited,
    run_command,
)
from .gate import ConcurrencyGate, GateRegistry, GateStats

__all__ = [
    "GIT_RESOURCE_CLASS",
    "CommandResult",
    "ConcurrencyGate",
    "GateRegistry",
    "GateStats",
    "GitStatus",
    "GitStatusResult",
    "get_git_status",
    "get_git_status_limited",
    "run_command",
]
