"""Tests for DaemonClient against the in-process app."""

from pathlib import Path

import httpx
import pytest

from acd.config import Settings
from acd.daemon.client import DaemonClient
from acd.daemon.server import DaemonRuntime, create_app
from acd.errors import DaemonError, DaemonNotRunningError
from acd.sessions import SessionOrchestrator, SessionState

from conftest import FakeLauncher


@pytest.fixture
def runtime(settings: Settings, fake_launcher: FakeLauncher) -> DaemonRuntime:
    orchestrator = SessionOrchestrator(launcher=fake_launcher, stop_grace=0.05)
    return DaemonRuntime(settings, orchestrator=orchestrator, pid=4242)


def make_client(runtime: DaemonRuntime, token: str = "test-token") -> DaemonClient:
    transport = httpx.ASGITransport(app=create_app(runtime))
    return DaemonClient("http://daemon.test", access_token=token, transport=transport)


class TestDaemonClient:
    @pytest.mark.asyncio
    async def test_is_running(self, runtime: DaemonRuntime):
        assert await make_client(runtime).is_running() is True

    @pytest.mark.asyncio
    async def test_state(self, runtime: DaemonRuntime):
        state = await make_client(runtime).get_state()
        assert state["pid"] == 4242

    @pytest.mark.asyncio
    async def test_session_round_trip(self, runtime: DaemonRuntime, worktree: Path):
        client = make_client(runtime)

        created = await client.create_session(str(worktree), "gemini", {"yolo": True}, session_name="g1")
        sessions = await client.list_sessions()

        assert created["agentId"] == "gemini"
        assert [s.id for s in sessions] == [created["id"]]
        assert sessions[0].state == SessionState.ACTIVE
        assert sessions[0].command == ["gemini", "-y"]

        stopped = await client.stop_session(created["id"])
        assert stopped == {"success": True, "stopped": True}
        assert await client.list_sessions() == []

        await runtime.shutdown()

    @pytest.mark.asyncio
    async def test_error_status_raises(self, runtime: DaemonRuntime, worktree: Path):
        with pytest.raises(DaemonError, match="Daemon returned 404: Agent not found: nope"):
            await make_client(runtime).create_session(str(worktree), "nope")

    @pytest.mark.asyncio
    async def test_wrong_token(self, runtime: DaemonRuntime):
        with pytest.raises(DaemonError, match="401: unauthorized"):
            await make_client(runtime, token="wrong").list_sessions()

    @pytest.mark.asyncio
    async def test_connection_refused(self):
        def refuse(request: httpx.Request):
            raise httpx.ConnectError("connection refused", request=request)

        client = DaemonClient("http://127.0.0.1:1", transport=httpx.MockTransport(refuse))

        with pytest.raises(DaemonNotRunningError, match="Cannot reach daemon"):
            await client.get_state()
        assert await client.is_running() is False
