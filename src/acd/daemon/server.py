"""
ACD Daemon Server - FastAPI app hosting the session orchestrator.

The daemon runs on localhost and provides:
- GET  /health                         - Liveness (no token required)
- GET  /api/state                      - Daemon info; also the readiness probe
- GET  /api/sessions                   - List sessions
- GET  /api/sessions/{id}              - One session
- GET  /api/sessions/{id}/output       - Recent output (escape sequences stripped)
- POST /api/session/create-with-agent  - Spawn an agent in a worktree
- POST /api/session/stop               - Stop a session
- POST /api/session/input              - Send keystrokes
- POST /api/session/resize             - Resize a session's terminal
- GET  /api/agents                     - Agent profiles
- GET  /api/worktree/status?path=...   - Git status, admitted through the "git" gate
- GET  /api/gates                      - Concurrency gate counters

All /api routes require the X-Access-Token header when a token is configured.

One DaemonRuntime is built per process and injected into create_app(); routes
reach it through request.app.state, never through a module global.
"""

import asyncio
import logging
import os
import secrets
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, Header, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from acd import __version__
from acd.concurrency import GIT_RESOURCE_CLASS, GateRegistry, GitStatusResult, get_git_status_limited
from acd.config import Settings
from acd.errors import SessionError
from acd.sessions import SessionOrchestrator, SessionSnapshot

from .pidfile import DaemonRecord, PidRegistry

logger = logging.getLogger(__name__)

ACCESS_TOKEN_HEADER = "X-Access-Token"


# =============================================================================
# Request/Response Models
# =============================================================================

class CreateSessionRequest(BaseModel):
    """Request to spawn an agent in a worktree."""
    model_config = ConfigDict(populate_by_name=True)

    path: str
    agent_id: str = Field(alias="agentId")
    options: Dict[str, Any] = Field(default_factory=dict)
    session_name: Optional[str] = Field(default=None, alias="sessionName")


class CreateSessionResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool
    id: str
    name: str
    agent_id: str = Field(alias="agentId")
    session: SessionSnapshot


class SessionIdRequest(BaseModel):
    id: str


class InputRequest(BaseModel):
    id: str
    data: str


class ResizeRequest(BaseModel):
    id: str
    cols: int = Field(ge=1, le=1000)
    rows: int = Field(ge=1, le=1000)


class StopResponse(BaseModel):
    success: bool
    stopped: bool


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    uptime_seconds: float


class StateResponse(BaseModel):
    version: str
    pid: int
    port: int
    started_at: datetime
    uptime_seconds: float
    config_dir: str
    session_count: int
    gates: Dict[str, Any]


class OutputResponse(BaseModel):
    id: str
    output: str


# =============================================================================
# Daemon Runtime
# =============================================================================

class DaemonRuntime:
    """
    Everything one daemon process owns: settings, the orchestrator, the gates,
    and its PID record.
    """

    def __init__(
        self,
        settings: Settings,
        orchestrator: Optional[SessionOrchestrator] = None,
        gates: Optional[GateRegistry] = None,
        registry: Optional[PidRegistry] = None,
        pid: Optional[int] = None,
    ):
        self.settings = settings
        self.orchestrator = orchestrator or SessionOrchestrator(
            cols=settings.terminal_cols,
            rows=settings.terminal_rows,
            history_lines=settings.output_history_lines,
            stop_grace=settings.session_stop_grace,
        )
        self.gates = gates or GateRegistry(limits={GIT_RESOURCE_CLASS: settings.git_concurrency})
        self.registry = registry or PidRegistry()
        self.pid = pid or os.getpid()
        self.started_at = datetime.now(timezone.utc)
        self._shutdown_started = False

    @property
    def uptime_seconds(self) -> float:
        return (datetime.now(timezone.utc) - self.started_at).total_seconds()

    def claim_pid_file(self) -> DaemonRecord:
        """
        Publish this process in the PID file.

        Raises:
            DaemonAlreadyRunningError: Another live daemon owns the config dir
        """
        record = DaemonRecord(
            pid=self.pid,
            started_at=self.started_at,
            config_dir=str(self.settings.config_dir),
            port=self.settings.port,
        )
        self.registry.prepare(self.settings.pid_file, record)
        logger.info(f"Wrote PID file {self.settings.pid_file} (pid={self.pid})")
        return record

    def release_pid_file(self) -> None:
        """Remove the PID file if it still names this process."""
        self.registry.cleanup(self.settings.pid_file, self.pid)

    def state(self) -> StateResponse:
        return StateResponse(
            version=__version__,
            pid=self.pid,
            port=self.settings.port,
            started_at=self.started_at,
            uptime_seconds=self.uptime_seconds,
            config_dir=str(self.settings.config_dir),
            session_count=len(self.orchestrator),
            gates={name: stats.model_dump() for name, stats in self.gates.stats().items()},
        )

    async def shutdown(self) -> None:
        """
        Tear down all sessions, bounded by `shutdown_timeout`, then release
        the PID file. Safe to call more than once.
        """
        if self._shutdown_started:
            return
        self._shutdown_started = True

        logger.info("ACD daemon shutting down...")
        try:
            failures = await asyncio.wait_for(
                self.orchestrator.destroy_all_sessions(),
                timeout=self.settings.shutdown_timeout,
            )
            for session_id, error in failures.items():
                logger.error(f"Session {session_id} did not stop cleanly: {error}")
        except asyncio.TimeoutError:
            logger.error(f"Session teardown exceeded {self.settings.shutdown_timeout:g}s, force-killing")
        finally:
            self.orchestrator.kill_all()
            self.release_pid_file()

        logger.info("ACD daemon stopped")


# =============================================================================
# Dependencies
# =============================================================================

class UnauthorizedError(Exception):
    pass


def get_runtime(request: Request) -> DaemonRuntime:
    return request.app.state.runtime


def get_orchestrator(runtime: DaemonRuntime = Depends(get_runtime)) -> SessionOrchestrator:
    return runtime.orchestrator


def require_token(
    runtime: DaemonRuntime = Depends(get_runtime),
    x_access_token: Optional[str] = Header(default=None),
) -> None:
    expected = runtime.settings.access_token
    if not expected:
        return
    if not x_access_token or not secrets.compare_digest(x_access_token, expected):
        raise UnauthorizedError()


# =============================================================================
# Routes
# =============================================================================

router = APIRouter(prefix="/api", dependencies=[Depends(require_token)])


@router.get("/state", response_model=StateResponse)
async def get_state(runtime: DaemonRuntime = Depends(get_runtime)):
    return runtime.state()


@router.get("/sessions", response_model=List[SessionSnapshot])
async def list_sessions(orchestrator: SessionOrchestrator = Depends(get_orchestrator)):
    return orchestrator.list_sessions()


@router.get("/sessions/{session_id}", response_model=SessionSnapshot)
async def get_session(session_id: str, orchestrator: SessionOrchestrator = Depends(get_orchestrator)):
    return orchestrator.get_session(session_id)


@router.get("/sessions/{session_id}/output", response_model=OutputResponse)
async def get_session_output(session_id: str, orchestrator: SessionOrchestrator = Depends(get_orchestrator)):
    return OutputResponse(id=session_id, output=orchestrator.output_history(session_id))


@router.post("/session/create-with-agent", response_model=CreateSessionResponse, response_model_by_alias=True)
async def create_with_agent(
    request: CreateSessionRequest,
    orchestrator: SessionOrchestrator = Depends(get_orchestrator),
):
    """Spawn an agent session; returns once the process is running."""
    logger.info(
        f"API: Creating session \"{request.session_name or 'unnamed'}\" for {request.path} "
        f"with agent: {request.agent_id}"
    )
    session = await orchestrator.create_session(
        request.path,
        request.agent_id,
        options=request.options,
        name=request.session_name,
    )
    return CreateSessionResponse(
        success=True,
        id=session.id,
        name=session.name,
        agent_id=session.agent_id,
        session=session,
    )


@router.post("/session/stop", response_model=StopResponse)
async def stop_session(request: SessionIdRequest, orchestrator: SessionOrchestrator = Depends(get_orchestrator)):
    stopped = await orchestrator.stop_session(request.id)
    return StopResponse(success=True, stopped=stopped)


@router.post("/session/input")
async def send_input(request: InputRequest, orchestrator: SessionOrchestrator = Depends(get_orchestrator)):
    await orchestrator.write_input(request.id, request.data)
    return {"success": True}


@router.post("/session/resize", response_model=SessionSnapshot)
async def resize_session(request: ResizeRequest, orchestrator: SessionOrchestrator = Depends(get_orchestrator)):
    return orchestrator.resize(request.id, request.cols, request.rows)


@router.get("/agents")
async def list_agents(orchestrator: SessionOrchestrator = Depends(get_orchestrator)):
    return [agent.model_dump() for agent in orchestrator.catalog.list()]


@router.get("/worktree/status", response_model=GitStatusResult)
async def worktree_status(
    path: str = Query(..., description="Worktree path"),
    runtime: DaemonRuntime = Depends(get_runtime),
):
    return await get_git_status_limited(runtime.gates, path)


@router.get("/gates")
async def gate_stats(runtime: DaemonRuntime = Depends(get_runtime)):
    return {name: stats.model_dump() for name, stats in runtime.gates.stats().items()}


# =============================================================================
# FastAPI Application
# =============================================================================

def create_app(runtime: DaemonRuntime) -> FastAPI:
    """
    Build the daemon's FastAPI app around an existing runtime.

    Args:
        runtime: The process's DaemonRuntime

    Returns:
        FastAPI app whose lifespan shutdown tears the runtime down
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"ACD daemon started (pid={runtime.pid}, port={runtime.settings.port})")
        yield
        await runtime.shutdown()

    app = FastAPI(
        title="ACD Daemon",
        description="Agent session daemon",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.runtime = runtime

    @app.exception_handler(UnauthorizedError)
    async def unauthorized_handler(request: Request, exc: UnauthorizedError):
        return JSONResponse(status_code=401, content={"error": "unauthorized"})

    @app.exception_handler(SessionError)
    async def session_error_handler(request: Request, exc: SessionError):
        if exc.status_code >= 500:
            logger.error(f"API: {request.method} {request.url.path} failed: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content={"error": exc.message})

    @app.get("/health", response_model=HealthResponse)
    async def health_check():
        """Health check endpoint."""
        return HealthResponse(status="healthy", uptime_seconds=runtime.uptime_seconds)

    app.include_router(router)
    return app


# =============================================================================
# Entry Point
# =============================================================================

def run_server(settings: Settings) -> None:
    """
    Run the daemon in the foreground until SIGINT/SIGTERM.

    Claims the PID file before binding; on exit every session has been torn
    down and the PID file removed (if still ours).

    Raises:
        DaemonAlreadyRunningError: Another daemon owns this config directory
    """
    import uvicorn

    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    settings.config_dir.mkdir(parents=True, exist_ok=True)
    settings.ensure_access_token()

    runtime = DaemonRuntime(settings)
    runtime.claim_pid_file()

    app = create_app(runtime)
    config = uvicorn.Config(
        app,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
        access_log=True,
    )
    server = uvicorn.Server(config)

    # uvicorn installs its own SIGINT/SIGTERM handlers for the duration of run();
    # lifespan shutdown then tears the sessions down
    try:
        server.run()
    finally:
        # Lifespan shutdown already did this unless startup never completed
        runtime.release_pid_file()
