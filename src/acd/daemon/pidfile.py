"""
PID file registry for the acd daemon.

The PID file is the single-instance lock across separate CLI invocations: at
most one live daemon may be recorded per config directory. The file holds a
JSON DaemonRecord; a bare integer (older or hand-written files) is accepted on
read. Writes go to a temp file in the same directory followed by os.replace so
readers never observe a partial record.
"""

import json
import logging
import os
import sys
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Union

from pydantic import BaseModel, Field, ValidationError

from acd.errors import DaemonAlreadyRunningError

logger = logging.getLogger(__name__)


class DaemonRecord(BaseModel):
    """What the daemon publishes about itself in the PID file."""

    pid: int
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    config_dir: Optional[str] = None
    port: Optional[int] = None
    # Never persisted; filled in from settings when handed to callers
    access_token: Optional[str] = Field(default=None, exclude=True)

    @property
    def uptime_seconds(self) -> float:
        started = self.started_at
        if started.tzinfo is None:
            started = started.replace(tzinfo=timezone.utc)
        return max(0.0, (datetime.now(timezone.utc) - started).total_seconds())


def _is_windows_process_running(pid: int) -> bool:
    import ctypes

    PROCESS_QUERY_LIMITED_INFORMATION = 0x1000
    STILL_ACTIVE = 259

    kernel32 = ctypes.windll.kernel32  # type: ignore[attr-defined]
    handle = kernel32.OpenProcess(PROCESS_QUERY_LIMITED_INFORMATION, False, pid)
    if not handle:
        return False
    try:
        exit_code = ctypes.c_ulong()
        if not kernel32.GetExitCodeProcess(handle, ctypes.byref(exit_code)):
            return False
        return exit_code.value == STILL_ACTIVE
    finally:
        kernel32.CloseHandle(handle)


class PidRegistry:
    """
    Read, write and clean up the daemon PID file.

    All methods take the PID file path explicitly, so a single registry can be
    shared by the supervisor (CLI side) and the daemon runtime.
    """

    def write(self, path: Path, record: Union[DaemonRecord, int]) -> None:
        """
        Atomically persist a daemon record.

        Args:
            path: PID file path
            record: DaemonRecord, or a bare pid

        Raises:
            OSError: If the directory or file cannot be written. Not retried.
        """
        if isinstance(record, int):
            record = DaemonRecord(pid=record)

        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(record.model_dump_json())
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
            raise

        logger.debug(f"Wrote PID file {path} (pid={record.pid})")

    def read_record(self, path: Path) -> Optional[DaemonRecord]:
        """
        Read the full daemon record.

        Returns None for a missing, empty or corrupt file, or a pid that is not
        a positive integer.
        """
        try:
            raw = path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.debug(f"Error reading PID file {path}: {e}")
            return None

        if not raw:
            return None

        try:
            data = json.loads(raw)
        except ValueError:
            logger.debug(f"PID file {path} is not valid JSON")
            return None

        if isinstance(data, bool):
            return None
        if isinstance(data, int):
            data = {"pid": data}
        if not isinstance(data, dict):
            return None

        try:
            record = DaemonRecord.model_validate(data)
        except ValidationError as e:
            logger.debug(f"PID file {path} has an invalid record: {e}")
            return None

        if record.pid <= 0:
            return None
        return record

    def read(self, path: Path) -> Optional[int]:
        """Read the pid from the PID file, or None if absent or unusable."""
        record = self.read_record(path)
        return record.pid if record else None

    def is_process_running(self, pid: int) -> bool:
        """Check if a process with the given pid exists, without affecting it."""
        if pid <= 0:
            return False
        if sys.platform == "win32":
            return _is_windows_process_running(pid)
        try:
            # A child of ours that already exited is a zombie until reaped
            reaped, _ = os.waitpid(pid, os.WNOHANG)
            if reaped == pid:
                return False
        except ChildProcessError:
            # Not our child
            pass
        try:
            os.kill(pid, 0)  # Signal 0 doesn't kill, just checks
        except ProcessLookupError:
            return False
        except PermissionError:
            # Exists but owned by someone else
            return True
        except OSError:
            return False
        return True

    def cleanup(self, path: Path, expected_pid: int) -> bool:
        """
        Remove the PID file only if it still names `expected_pid`.

        Returns:
            True if the file was removed
        """
        current = self.read(path)
        if current != expected_pid:
            if current is not None:
                logger.debug(f"Leaving PID file {path}: holds {current}, not {expected_pid}")
            return False
        return self.remove(path)

    def remove(self, path: Path) -> bool:
        """Remove the PID file unconditionally. A missing file is not an error."""
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        logger.debug(f"Removed PID file {path}")
        return True

    def prepare(self, path: Path, record: DaemonRecord) -> None:
        """
        Claim the PID file for `record.pid`.

        Raises:
            DaemonAlreadyRunningError: If a different, live pid already holds it
        """
        existing = self.read(path)
        if existing is not None and existing != record.pid and self.is_process_running(existing):
            raise DaemonAlreadyRunningError(existing, path)
        if existing is not None and existing != record.pid:
            logger.info(f"Replacing stale PID file (process {existing} not running)")
        self.write(path, record)
