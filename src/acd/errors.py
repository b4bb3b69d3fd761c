"""Exception hierarchy shared by the supervisor, the orchestrator and the HTTP layer."""

from pathlib import Path
from typing import List, Optional


# =============================================================================
# Daemon supervision
# =============================================================================

class DaemonError(Exception):
    """Base exception for daemon supervision failures."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class DaemonAlreadyRunningError(DaemonError):
    """Raised when another live daemon already owns the PID file."""

    def __init__(self, pid: int, pid_file: Optional[Path] = None):
        self.pid = pid
        self.pid_file = pid_file
        location = f" ({pid_file})" if pid_file else ""
        super().__init__(f"Daemon already running with PID {pid}{location}")


class DaemonNotRunningError(DaemonError):
    """Raised when a command needs a running daemon and none is reachable."""


class DaemonStartError(DaemonError):
    """Raised when the daemon process could not be launched."""


class DaemonStartTimeoutError(DaemonStartError):
    """Raised when a launched daemon did not become reachable before the deadline."""

    def __init__(self, message: str, pid: Optional[int] = None):
        super().__init__(message)
        self.pid = pid


class DaemonStopTimeoutError(DaemonError):
    """Raised when the daemon ignored SIGTERM for longer than the stop timeout."""

    def __init__(self, pid: int, timeout: float):
        self.pid = pid
        self.timeout = timeout
        super().__init__(f"Timed out waiting for daemon PID {pid} to stop after {timeout:g}s")


class DaemonRestartError(DaemonError):
    """Raised when restart fails; `phase` tells which half failed."""

    def __init__(self, phase: str, cause: DaemonError):
        self.phase = phase
        self.cause = cause
        super().__init__(f"restart failed during {phase}: {cause.message}")


# =============================================================================
# Sessions
# =============================================================================

class SessionError(Exception):
    """Base exception for session orchestration failures."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidWorktreeError(SessionError):
    """The requested path is not a usable git worktree."""

    status_code = 400

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Invalid worktree {path}: {reason}")


class UnknownAgentError(SessionError):
    """No agent profile is registered under the requested id."""

    status_code = 404

    def __init__(self, agent_id: str):
        self.agent_id = agent_id
        super().__init__(f"Agent not found: {agent_id}")


class InvalidAgentOptionsError(SessionError):
    """Selected agent options failed validation."""

    status_code = 400

    def __init__(self, errors: List[str]):
        self.errors = errors
        super().__init__("; ".join(errors))


class SessionSpawnError(SessionError):
    """The agent process could not be started."""


class SessionNotFoundError(SessionError):
    """No session is registered under the requested id."""

    status_code = 404

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session not found: {session_id}")


class SessionNotRunningError(SessionError):
    """The session exists but its agent process has already exited."""

    status_code = 409

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session {session_id} is not running")
