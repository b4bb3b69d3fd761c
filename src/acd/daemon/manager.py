"""
ACD Daemon Manager - Process lifecycle management for the daemon.

Provides start/stop/status/restart for the background daemon across separate
CLI invocations. The PID file in the config directory is the single-instance
lock: at most one live daemon per config directory.

    start:   NotRunning -> Starting -> Ready
    stop:    Running -> Stopping -> NotRunning

`start` never spawns a duplicate, and on readiness timeout leaves the spawned
process running so its log can be inspected. `stop` sends SIGTERM and reports a
timeout instead of escalating to SIGKILL.
"""

import logging
import os
import signal
import time
from pathlib import Path
from typing import Callable, Optional

import httpx
from pydantic import BaseModel

from acd.config import Settings
from acd.errors import (
    DaemonError,
    DaemonNotRunningError,
    DaemonRestartError,
    DaemonStartError,
    DaemonStartTimeoutError,
    DaemonStopTimeoutError,
)

from .launcher import ProcessLauncher, daemon_command
from .pidfile import DaemonRecord, PidRegistry

logger = logging.getLogger(__name__)

ACCESS_TOKEN_HEADER = "X-Access-Token"
READY_PATH = "/api/state"
# Any of these means the listener and routes are live
READY_STATUS_CODES = (200, 401, 403)
MAX_PROBE_TIMEOUT = 1.0

ReadinessProbe = Callable[[Settings, float], bool]


def http_readiness_probe(settings: Settings, timeout: float) -> bool:
    """
    One readiness check against the daemon's HTTP listener.

    Args:
        settings: Supplies the base URL and access token
        timeout: Per-request timeout in seconds

    Returns:
        True if /api/state answered with 200, 401 or 403
    """
    headers = {}
    if settings.access_token:
        headers[ACCESS_TOKEN_HEADER] = settings.access_token
    try:
        with httpx.Client(timeout=timeout) as client:
            response = client.get(f"{settings.base_url}{READY_PATH}", headers=headers)
        return response.status_code in READY_STATUS_CODES
    except httpx.HTTPError as e:
        logger.debug(f"Readiness probe failed: {e}")
        return False


# =============================================================================
# Results
# =============================================================================

class StartResult(BaseModel):
    started: bool
    pid: int
    port: int
    url: str
    web_url: str
    config_dir: str
    pid_file: str
    log_file: str


class StopResult(BaseModel):
    stopped: bool
    pid: Optional[int] = None
    message: str


class DaemonStatus(BaseModel):
    running: bool
    pid: Optional[int] = None
    port: int
    uptime_seconds: Optional[float] = None
    reachable: Optional[bool] = None
    url: str
    web_url: Optional[str] = None
    config_dir: str
    pid_file: str
    log_file: str
    message: Optional[str] = None


class RestartResult(BaseModel):
    stop: StopResult
    start: StartResult


# =============================================================================
# Supervisor
# =============================================================================

class ProcessSupervisor:
    """
    Manages the acd daemon process lifecycle from the CLI side.

    Every collaborator with side effects is injectable so the state machine
    can be exercised without real processes or sockets.
    """

    def __init__(
        self,
        settings: Settings,
        registry: Optional[PidRegistry] = None,
        launcher: Optional[ProcessLauncher] = None,
        probe: Optional[ReadinessProbe] = None,
        send_signal: Callable[[int, int], None] = os.kill,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings
        self.registry = registry or PidRegistry()
        self.launcher = launcher or ProcessLauncher()
        self.probe = probe or http_readiness_probe
        self._send_signal = send_signal
        self._sleep = sleep
        self._clock = clock

    @property
    def pid_file(self) -> Path:
        return self.settings.pid_file

    @property
    def log_file(self) -> Path:
        return self.settings.log_file

    def _read_live_record(self) -> Optional[DaemonRecord]:
        """Read the PID record, cleaning it up if the process is gone."""
        record = self.registry.read_record(self.pid_file)
        if record is None:
            return None
        if not self.registry.is_process_running(record.pid):
            logger.info(f"Removing stale PID file (process {record.pid} not running)")
            self.registry.cleanup(self.pid_file, record.pid)
            return None
        if record.port and record.port != self.settings.port:
            logger.debug(f"Daemon {record.pid} listens on port {record.port}, not {self.settings.port}")
            self.settings.port = record.port
        record.access_token = self.settings.access_token
        return record

    def _start_result(self, started: bool, pid: int) -> StartResult:
        return StartResult(
            started=started,
            pid=pid,
            port=self.settings.port,
            url=self.settings.base_url,
            web_url=self.settings.web_url,
            config_dir=str(self.settings.config_dir),
            pid_file=str(self.pid_file),
            log_file=str(self.log_file),
        )

    # =========================================================================
    # Readiness
    # =========================================================================

    def wait_for_pid(self, spawned_pid: int, deadline: float) -> int:
        """
        Poll the PID file until a live daemon pid appears.

        Raises:
            DaemonStartError: The spawned process died before writing the file
            DaemonStartTimeoutError: Deadline passed
        """
        last_seen: Optional[int] = None
        while True:
            pid = self.registry.read(self.pid_file)
            if pid is not None:
                last_seen = pid
                if self.registry.is_process_running(pid):
                    return pid
            elif not self.registry.is_process_running(spawned_pid):
                raise DaemonStartError(
                    f"Daemon process {spawned_pid} exited during startup. Check {self.log_file}"
                )

            if self._clock() >= deadline:
                if last_seen is not None:
                    raise DaemonStartTimeoutError(
                        f"Timed out waiting for daemon PID {last_seen} to become reachable", pid=last_seen
                    )
                raise DaemonStartTimeoutError(
                    f"Timed out waiting for daemon PID file at {self.pid_file}", pid=spawned_pid
                )
            self._sleep(self.settings.poll_interval)

    def wait_for_ready(self, pid: int, deadline: float) -> None:
        """
        Poll the readiness probe until it passes.

        Raises:
            DaemonStartTimeoutError: Deadline passed (the process is left running)
        """
        while True:
            remaining = deadline - self._clock()
            if remaining <= 0:
                raise DaemonStartTimeoutError(
                    f"Timed out waiting for daemon PID {pid} to become reachable. Check {self.log_file}",
                    pid=pid,
                )
            if self.probe(self.settings, min(MAX_PROBE_TIMEOUT, remaining)):
                return
            self._sleep(self.settings.poll_interval)

    # =========================================================================
    # Commands
    # =========================================================================

    def start(self) -> StartResult:
        """
        Start the daemon unless one is already running.

        Returns:
            StartResult; `started` is False when an existing daemon was found

        Raises:
            DaemonStartError: Launch failed or the process died during startup
            DaemonStartTimeoutError: Not reachable within `ready_timeout`
            OSError: PID file or config directory unusable
        """
        record = self._read_live_record()
        if record is not None:
            logger.info(f"Daemon already running (pid={record.pid})")
            return self._start_result(started=False, pid=record.pid)

        self.settings.config_dir.mkdir(parents=True, exist_ok=True)
        self.settings.ensure_access_token()

        cmd = daemon_command(self.settings.port)
        try:
            spawned_pid = self.launcher.spawn_detached(cmd[0], cmd[1:], self.log_file)
        except OSError as e:
            raise DaemonStartError(f"Failed to launch daemon: {e}") from e

        logger.info(f"Launched daemon process {spawned_pid}, waiting for it to become ready")
        deadline = self._clock() + self.settings.ready_timeout
        pid = self.wait_for_pid(spawned_pid, deadline)
        self.wait_for_ready(pid, deadline)
        return self._start_result(started=True, pid=pid)

    def stop(self) -> StopResult:
        """
        Stop the daemon with SIGTERM.

        Returns:
            StopResult; `stopped` is False when no daemon was running

        Raises:
            DaemonStopTimeoutError: Still alive after `stop_timeout`
            DaemonError: The signal could not be delivered
        """
        record = self.registry.read_record(self.pid_file)
        if record is None:
            return StopResult(stopped=False, message="No daemon running")

        pid = record.pid
        if not self.registry.is_process_running(pid):
            self.registry.cleanup(self.pid_file, pid)
            return StopResult(stopped=False, pid=pid, message="No daemon running (cleaned up stale PID file)")

        try:
            self._send_signal(pid, signal.SIGTERM)
        except ProcessLookupError:
            self.registry.cleanup(self.pid_file, pid)
            return StopResult(stopped=False, pid=pid, message="No daemon running (cleaned up stale PID file)")
        except OSError as e:
            raise DaemonError(f"Failed to send SIGTERM to PID {pid}: {e}") from e

        deadline = self._clock() + self.settings.stop_timeout
        while self.registry.is_process_running(pid):
            if self._clock() >= deadline:
                raise DaemonStopTimeoutError(pid, self.settings.stop_timeout)
            self._sleep(self.settings.poll_interval)

        # The daemon removes its own file on clean exit; this covers a hard crash
        self.registry.cleanup(self.pid_file, pid)
        logger.info(f"Daemon {pid} stopped")
        return StopResult(stopped=True, pid=pid, message="Daemon stopped")

    def status(self) -> DaemonStatus:
        """Report whether the daemon is running, and for how long."""
        record = self._read_live_record()
        base = dict(
            port=self.settings.port,
            url=self.settings.base_url,
            config_dir=str(self.settings.config_dir),
            pid_file=str(self.pid_file),
            log_file=str(self.log_file),
        )
        if record is None:
            return DaemonStatus(running=False, message="Daemon not running", **base)

        return DaemonStatus(
            running=True,
            pid=record.pid,
            uptime_seconds=record.uptime_seconds,
            reachable=self.probe(self.settings, MAX_PROBE_TIMEOUT),
            web_url=self.settings.web_url,
            **base,
        )

    def restart(self) -> RestartResult:
        """
        Stop then start.

        Raises:
            DaemonRestartError: With `phase` set to "stop" or "start"
        """
        try:
            stop_result = self.stop()
        except DaemonError as e:
            raise DaemonRestartError("stop", e) from e

        try:
            start_result = self.start()
        except DaemonError as e:
            raise DaemonRestartError("start", e) from e

        return RestartResult(stop=stop_result, start=start_result)

    def ensure_running(self, auto_start: bool = True) -> DaemonStatus:
        """
        Make sure a reachable daemon exists, starting one if allowed.

        Raises:
            DaemonNotRunningError: No daemon and `auto_start` is False
        """
        record = self._read_live_record()
        if record is None:
            if not auto_start:
                raise DaemonNotRunningError("Daemon is not running. Start it with `acd start`.")
            self.start()
        else:
            deadline = self._clock() + self.settings.ready_timeout
            self.wait_for_ready(record.pid, deadline)
        return self.status()
