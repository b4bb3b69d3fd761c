"""
Session Orchestrator - owns every running agent session in the daemon.

One instance is built at daemon startup and handed to the HTTP layer; there is
no module-level orchestrator. All methods run on the daemon's event loop.
Registry mutations (add/remove) are serialized by an asyncio.Lock, and
list_sessions() returns copies so callers never see a registry mid-change.

Session lifecycle:
    pending -> active/busy -> idle <-> waiting_input
    any running state -> error      (agent exits non-zero or is killed)
    any state -> stopped            (explicit stop only; terminal)

State changes are driven by PTY output (detection strategies) and by the
process exit watcher. Nothing polls.
"""

import asyncio
import codecs
import logging
import os
import uuid
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional

from acd.errors import SessionNotFoundError, SessionNotRunningError, SessionSpawnError

from .agents import AgentCatalog, OptionValue
from .detection import OutputBuffer, detect_state
from .models import SessionEvent, SessionSnapshot, SessionState, can_transition, utcnow
from .pty import AgentProcess, PosixPtyLauncher, PtyLauncher
from .worktrees import validate_worktree

logger = logging.getLogger(__name__)

Listener = Callable[[SessionEvent], None]


class _SessionEntry:
    """Mutable per-session bookkeeping. Never handed out; see snapshot()."""

    def __init__(
        self,
        session_id: str,
        name: str,
        worktree_path: Path,
        project_path: Path,
        agent_id: str,
        command: List[str],
        detection_strategy: Optional[str],
        cols: int,
        rows: int,
        history_lines: int,
    ):
        self.id = session_id
        self.name = name
        self.worktree_path = worktree_path
        self.project_path = project_path
        self.agent_id = agent_id
        self.command = command
        self.detection_strategy = detection_strategy
        self.cols = cols
        self.rows = rows
        self.state = SessionState.PENDING
        self.created_at: datetime = utcnow()
        self.process: Optional[AgentProcess] = None
        self.buffer = OutputBuffer(max_lines=history_lines)
        self.decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self.exit_code: Optional[int] = None
        self.exited_at: Optional[datetime] = None
        self.watcher: Optional[asyncio.Task] = None
        self.stopping = False
        self.stopped = asyncio.Event()

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            id=self.id,
            name=self.name,
            worktree_path=str(self.worktree_path),
            project_path=str(self.project_path),
            agent_id=self.agent_id,
            state=self.state,
            created_at=self.created_at,
            pid=self.process.pid if self.process else None,
            command=list(self.command),
            exit_code=self.exit_code,
            exited_at=self.exited_at,
            cols=self.cols,
            rows=self.rows,
        )


class SessionOrchestrator:
    """
    Registry and lifecycle manager for agent sessions.

    Args:
        catalog: Agent profiles used to validate and build commands
        launcher: Spawns the agent under a pseudo-terminal
        cols: Default terminal width for new sessions
        rows: Default terminal height for new sessions
        history_lines: Output lines kept per session
        stop_grace: Seconds between SIGTERM and SIGKILL in stop_session()
        env: Base environment for agents (defaults to the daemon's)
    """

    def __init__(
        self,
        catalog: Optional[AgentCatalog] = None,
        launcher: Optional[PtyLauncher] = None,
        cols: int = 80,
        rows: int = 24,
        history_lines: int = 500,
        stop_grace: float = 3.0,
        env: Optional[Dict[str, str]] = None,
    ):
        self.catalog = catalog or AgentCatalog()
        self.launcher = launcher or PosixPtyLauncher()
        self.cols = cols
        self.rows = rows
        self.history_lines = history_lines
        self.stop_grace = stop_grace
        self._env = dict(env) if env is not None else None
        self._sessions: Dict[str, _SessionEntry] = {}
        self._lock = asyncio.Lock()
        self._listeners: List[Listener] = []

    # =========================================================================
    # Events
    # =========================================================================

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """
        Register a listener for session events.

        Returns:
            A callable that removes the listener
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, event_type: str, session_id: str, **data) -> None:
        event = SessionEvent(type=event_type, session_id=session_id, data=data)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception(f"Session listener failed on {event_type} for {session_id}")

    def _transition(self, entry: _SessionEntry, target: SessionState) -> bool:
        previous = entry.state
        if previous == target:
            return False
        if not can_transition(previous, target):
            logger.debug(f"Ignoring transition {previous.value} -> {target.value} for session {entry.id}")
            return False
        entry.state = target
        logger.debug(f"Session {entry.id}: {previous.value} -> {target.value}")
        self._emit("state_changed", entry.id, previous=previous.value, state=target.value)
        return True

    # =========================================================================
    # Creation
    # =========================================================================

    def _build_env(self, session_id: str) -> Dict[str, str]:
        env = dict(self._env if self._env is not None else os.environ)
        env.setdefault("TERM", "xterm-256color")
        env["ACD_SESSION_ID"] = session_id
        return env

    async def create_session(
        self,
        worktree_path: str,
        agent_id: str,
        options: Optional[Dict[str, OptionValue]] = None,
        name: Optional[str] = None,
    ) -> SessionSnapshot:
        """
        Validate, spawn and register a new agent session.

        Returns as soon as the process is running; does not wait for the agent
        to settle.

        Raises:
            InvalidWorktreeError: Path is not a git worktree
            UnknownAgentError: No such agent profile
            InvalidAgentOptionsError: Options failed validation
            SessionSpawnError: The process could not be started
        """
        worktree, project = validate_worktree(worktree_path)
        agent = self.catalog.get(agent_id)
        argv = self.catalog.prepare_command(agent_id, options or {})

        session_id = str(uuid.uuid4())
        entry = _SessionEntry(
            session_id=session_id,
            name=name or f"{agent.name} ({worktree.name})",
            worktree_path=worktree,
            project_path=project,
            agent_id=agent.id,
            command=argv,
            detection_strategy=agent.detection_strategy,
            cols=self.cols,
            rows=self.rows,
            history_lines=self.history_lines,
        )

        async with self._lock:
            self._sessions[session_id] = entry

        logger.info(f"Creating session {session_id} ({agent.id}) in {worktree}")
        try:
            entry.process = await self.launcher.spawn(
                argv,
                cwd=str(worktree),
                env=self._build_env(session_id),
                cols=entry.cols,
                rows=entry.rows,
                on_data=lambda data: self._on_data(entry, data),
            )
        except Exception as e:
            async with self._lock:
                self._sessions.pop(session_id, None)
            logger.error(f"Failed to spawn {argv[0]} for session {session_id}: {e}")
            raise SessionSpawnError(f"Failed to start {argv[0]}: {e}") from e

        if entry.stopping:
            # Stopped while the spawn was in flight; nothing else will reap this process
            self._discard_process(entry.process)
            logger.warning(f"Session {session_id} was stopped before {argv[0]} finished starting")
            raise SessionSpawnError(f"Session {session_id} was stopped while starting")

        self._emit("created", session_id, session=entry.snapshot().model_dump(mode="json"))
        self._transition(entry, SessionState.ACTIVE)
        entry.watcher = asyncio.create_task(self._watch_exit(entry), name=f"session-exit-{session_id}")
        return entry.snapshot()

    # =========================================================================
    # Process events
    # =========================================================================

    def _on_data(self, entry: _SessionEntry, data: bytes) -> None:
        text = entry.decoder.decode(data)
        if not text:
            return
        entry.buffer.feed(text)
        self._emit("data", entry.id, data=text)

        if entry.stopping or entry.exit_code is not None:
            return
        if entry.state in (SessionState.PENDING, SessionState.ERROR, SessionState.STOPPED):
            return

        detected = detect_state(entry.detection_strategy, entry.buffer, entry.state)
        self._transition(entry, detected)

    async def _watch_exit(self, entry: _SessionEntry) -> None:
        process = entry.process
        if process is None:
            return
        code = await process.wait()
        entry.exit_code = code
        entry.exited_at = utcnow()

        if entry.stopping:
            return

        # Release the terminal now; the entry stays queryable until stopped
        process.close()
        if code == 0:
            self._transition(entry, SessionState.IDLE)
            logger.info(f"Session {entry.id} agent exited cleanly")
        else:
            self._transition(entry, SessionState.ERROR)
            logger.warning(f"Session {entry.id} agent exited with status {code}")
        self._emit("exited", entry.id, exit_code=code)

    # =========================================================================
    # Teardown
    # =========================================================================

    def _kill_quietly(self, entry: _SessionEntry) -> None:
        try:
            entry.process.kill()
        except OSError as e:
            logger.error(f"Failed to kill session {entry.id}: {e}")

    def _discard_process(self, process: AgentProcess) -> None:
        try:
            process.kill()
        except OSError as e:
            logger.error(f"Failed to kill pid {process.pid}: {e}")
        process.close()

    async def _wait_for_exit(self, process: AgentProcess, timeout: float) -> bool:
        try:
            await asyncio.wait_for(process.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def stop_session(self, session_id: str) -> bool:
        """
        Terminate a session's agent and remove it from the registry.

        SIGTERM first, SIGKILL after `stop_grace` seconds. The pseudo-terminal
        is released and the entry removed even if signalling fails or the call
        is cancelled; an agent still running at that point is killed.

        Returns:
            True if this call stopped the session, False if it was already gone
        """
        entry = self._sessions.get(session_id)
        if entry is None:
            return False
        if entry.stopping:
            await entry.stopped.wait()
            return False

        entry.stopping = True
        process = entry.process
        logger.info(f"Stopping session {session_id}")
        try:
            if process is not None and process.returncode is None:
                process.terminate()
                if not await self._wait_for_exit(process, self.stop_grace):
                    logger.warning(f"Session {session_id} ignored SIGTERM, killing pid {process.pid}")
                    process.kill()
                    if not await self._wait_for_exit(process, self.stop_grace):
                        logger.error(f"Session {session_id} pid {process.pid} survived SIGKILL")
        finally:
            if process is not None:
                if process.returncode is None:
                    # Signalling failed or the stop was cancelled mid-wait
                    self._kill_quietly(entry)
                process.close()
            if entry.watcher is not None and not entry.watcher.done():
                entry.watcher.cancel()
            self._transition(entry, SessionState.STOPPED)
            async with self._lock:
                self._sessions.pop(session_id, None)
            entry.stopped.set()
            self._emit("destroyed", session_id)

        return True

    async def destroy_all_sessions(self) -> Dict[str, str]:
        """
        Stop every registered session. Used at daemon shutdown.

        A failure on one session never prevents the others from being stopped.

        Returns:
            Session id -> error message for sessions whose stop raised
        """
        session_ids = list(self._sessions.keys())
        if not session_ids:
            return {}

        logger.info(f"Destroying {len(session_ids)} session(s)")
        results = await asyncio.gather(
            *(self.stop_session(session_id) for session_id in session_ids),
            return_exceptions=True,
        )

        failures: Dict[str, str] = {}
        for session_id, result in zip(session_ids, results):
            if isinstance(result, BaseException):
                failures[session_id] = str(result) or type(result).__name__
                logger.error(f"Failed to stop session {session_id}: {result!r}")
        return failures

    def kill_all(self) -> int:
        """
        SIGKILL every remaining agent and drop all entries without waiting.

        Last resort after a bounded shutdown ran out of time.

        Returns:
            Number of sessions killed
        """
        entries = list(self._sessions.values())
        for entry in entries:
            process = entry.process
            if process is not None:
                self._kill_quietly(entry)
                process.close()
            if entry.watcher is not None and not entry.watcher.done():
                entry.watcher.cancel()
            entry.stopping = True
            entry.state = SessionState.STOPPED
            self._sessions.pop(entry.id, None)
            entry.stopped.set()
        if entries:
            logger.warning(f"Force-killed {len(entries)} session(s)")
        return len(entries)

    # =========================================================================
    # Queries and control
    # =========================================================================

    def _get_entry(self, session_id: str) -> _SessionEntry:
        entry = self._sessions.get(session_id)
        if entry is None:
            raise SessionNotFoundError(session_id)
        return entry

    def list_sessions(self) -> List[SessionSnapshot]:
        """Snapshot of all sessions; safe to keep across later mutations."""
        return [entry.snapshot() for entry in list(self._sessions.values())]

    def get_session(self, session_id: str) -> SessionSnapshot:
        return self._get_entry(session_id).snapshot()

    def sessions_for_worktree(self, worktree_path: str) -> List[SessionSnapshot]:
        target = Path(worktree_path).expanduser().resolve()
        return [entry.snapshot() for entry in list(self._sessions.values()) if entry.worktree_path == target]

    def __len__(self) -> int:
        return len(self._sessions)

    async def write_input(self, session_id: str, data: str) -> None:
        """Send keystrokes to a session's terminal."""
        entry = self._get_entry(session_id)
        if entry.process is None or entry.process.closed:
            raise SessionNotRunningError(session_id)
        await entry.process.write(data.encode("utf-8"))

    def resize(self, session_id: str, cols: int, rows: int) -> SessionSnapshot:
        if cols < 1 or rows < 1:
            raise ValueError(f"Invalid terminal size {cols}x{rows}")
        entry = self._get_entry(session_id)
        entry.cols = cols
        entry.rows = rows
        if entry.process is not None:
            entry.process.resize(cols, rows)
        return entry.snapshot()

    def output_history(self, session_id: str) -> str:
        """Recent output with escape sequences stripped."""
        return "\n".join(self._get_entry(session_id).buffer.lines())
