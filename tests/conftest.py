"""Shared fixtures and in-memory fakes for the acd test suite."""

import asyncio
from pathlib import Path
from typing import Dict, List, Optional

import pytest

from acd import config as config_module
from acd.config import Settings
from acd.sessions.pty import AgentProcess, DataCallback, PtyLauncher


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch, tmp_path: Path):
    """Point every test at its own config dir and clear the settings cache."""
    monkeypatch.setenv("ACD_CONFIG_DIR", str(tmp_path / "acd-config"))
    for name in ("ACD_PORT", "ACD_HOST", "ACD_ACCESS_TOKEN", "ACD_GIT_CONCURRENCY", "ACD_LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr(config_module, "_settings", None)
    yield


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings with short timings and a fixed token."""
    return Settings(
        config_dir=tmp_path / "acd-config",
        port=3999,
        access_token="test-token",
        ready_timeout=2.0,
        poll_interval=0.1,
        stop_timeout=1.0,
        shutdown_timeout=2.0,
        session_stop_grace=0.05,
    )


@pytest.fixture
def worktree(tmp_path: Path) -> Path:
    """A directory that looks like a main git checkout."""
    path = tmp_path / "repo"
    (path / ".git").mkdir(parents=True)
    return path


# =============================================================================
# Pseudo-terminal fakes
# =============================================================================

class FakeProcess(AgentProcess):
    """In-memory agent process. Tests drive output and exit explicitly."""

    def __init__(self, pid: int, on_data: DataCallback, exit_on_terminate: bool = True):
        self.pid = pid
        self._on_data = on_data
        self._returncode: Optional[int] = None
        self._closed = False
        self._exited = asyncio.Event()
        self.exit_on_terminate = exit_on_terminate
        self.terminate_error: Optional[Exception] = None
        self.written: List[bytes] = []
        self.sizes: List[tuple] = []
        self.signals: List[str] = []
        self.close_count = 0

    @property
    def returncode(self) -> Optional[int]:
        return self._returncode

    @property
    def closed(self) -> bool:
        return self._closed

    def emit(self, text: str) -> None:
        self._on_data(text.encode("utf-8"))

    def exit(self, code: int) -> None:
        if self._returncode is None:
            self._returncode = code
            self._exited.set()

    async def write(self, data: bytes) -> None:
        self.written.append(data)

    def resize(self, cols: int, rows: int) -> None:
        self.sizes.append((cols, rows))

    def terminate(self) -> None:
        self.signals.append("TERM")
        if self.terminate_error is not None:
            raise self.terminate_error
        if self.exit_on_terminate:
            self.exit(-15)

    def kill(self) -> None:
        self.signals.append("KILL")
        self.exit(-9)

    async def wait(self) -> int:
        await self._exited.wait()
        return self._returncode

    def close(self) -> None:
        self.close_count += 1
        self._closed = True


class FakeLauncher(PtyLauncher):
    """Records spawn calls and hands out FakeProcess instances."""

    def __init__(self):
        self.calls: List[Dict] = []
        self.processes: List[FakeProcess] = []
        self.fail_with: Optional[Exception] = None
        self.exit_on_terminate = True

    async def spawn(self, argv, cwd, env, cols, rows, on_data) -> AgentProcess:
        self.calls.append({"argv": argv, "cwd": cwd, "env": env, "cols": cols, "rows": rows})
        if self.fail_with is not None:
            raise self.fail_with
        process = FakeProcess(1000 + len(self.processes), on_data, self.exit_on_terminate)
        self.processes.append(process)
        return process


@pytest.fixture
def fake_launcher() -> FakeLauncher:
    return FakeLauncher()


async def settle(rounds: int = 10) -> None:
    """Let pending callbacks and watcher tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)
