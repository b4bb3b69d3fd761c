"""
Pseudo-terminal process handles.

Each session exclusively owns one PtyProcess: the child process plus the master
side of its pseudo-terminal. `close()` releases the master fd and its event-loop
reader exactly once; the orchestrator calls it from a `finally` on stop and from
the exit watcher on crash, so release never waits for garbage collection.
"""

import asyncio
import errno
import logging
import os
import signal
import struct
import sys
from typing import Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

DataCallback = Callable[[bytes], None]

READ_CHUNK = 64 * 1024


class AgentProcess:
    """Interface the orchestrator drives. Tests substitute in-memory fakes."""

    pid: Optional[int] = None

    @property
    def returncode(self) -> Optional[int]:
        raise NotImplementedError

    @property
    def closed(self) -> bool:
        raise NotImplementedError

    async def write(self, data: bytes) -> None:
        raise NotImplementedError

    def resize(self, cols: int, rows: int) -> None:
        raise NotImplementedError

    def terminate(self) -> None:
        raise NotImplementedError

    def kill(self) -> None:
        raise NotImplementedError

    async def wait(self) -> int:
        raise NotImplementedError

    def close(self) -> None:
        raise NotImplementedError


class PtyLauncher:
    """Spawns agent processes; the orchestrator's only way to create one."""

    async def spawn(
        self,
        argv: List[str],
        cwd: str,
        env: Dict[str, str],
        cols: int,
        rows: int,
        on_data: DataCallback,
    ) -> AgentProcess:
        raise NotImplementedError


def _set_window_size(fd: int, cols: int, rows: int) -> None:
    import fcntl
    import termios

    fcntl.ioctl(fd, termios.TIOCSWINSZ, struct.pack("HHHH", rows, cols, 0, 0))


def _take_controlling_tty() -> None:
    """Runs in the child after `setsid`: adopt stdin (the pty slave) as the controlling terminal."""
    import fcntl
    import termios

    fcntl.ioctl(0, termios.TIOCSCTTY, 0)


class PtyProcess(AgentProcess):
    """A child process attached to the slave side of a pseudo-terminal."""

    def __init__(self, process: asyncio.subprocess.Process, master_fd: int, on_data: DataCallback):
        self._process = process
        self._master_fd: Optional[int] = master_fd
        self._on_data = on_data
        self._loop = asyncio.get_running_loop()
        self.pid = process.pid

        os.set_blocking(master_fd, False)
        self._loop.add_reader(master_fd, self._read_ready)

    @property
    def returncode(self) -> Optional[int]:
        return self._process.returncode

    @property
    def closed(self) -> bool:
        return self._master_fd is None

    def _read_ready(self) -> None:
        if self._master_fd is None:
            return
        try:
            data = os.read(self._master_fd, READ_CHUNK)
        except BlockingIOError:
            return
        except OSError as e:
            # EIO on Linux once the slave side has no writers left
            if e.errno != errno.EIO:
                logger.debug(f"PTY read failed for pid {self.pid}: {e}")
            self._stop_reading()
            return

        if not data:
            self._stop_reading()
            return

        try:
            self._on_data(data)
        except Exception:
            logger.exception(f"Output handler failed for pid {self.pid}")

    def _stop_reading(self) -> None:
        if self._master_fd is not None:
            self._loop.remove_reader(self._master_fd)

    async def write(self, data: bytes) -> None:
        view = memoryview(data)
        while view:
            if self._master_fd is None:
                raise OSError(errno.EBADF, "pseudo-terminal already closed")
            try:
                written = os.write(self._master_fd, view)
            except BlockingIOError:
                # Terminal input buffer is full; let the agent drain it
                await asyncio.sleep(0.01)
                continue
            view = view[written:]

    def resize(self, cols: int, rows: int) -> None:
        if self._master_fd is None:
            return
        _set_window_size(self._master_fd, cols, rows)

    def _signal_group(self, sig: int) -> None:
        if self._process.returncode is not None:
            return
        try:
            # Child runs in its own session, so signal the whole group
            os.killpg(self._process.pid, sig)
        except ProcessLookupError:
            pass
        except PermissionError:
            self._process.send_signal(sig)

    def terminate(self) -> None:
        self._signal_group(signal.SIGTERM)

    def kill(self) -> None:
        self._signal_group(signal.SIGKILL)

    async def wait(self) -> int:
        return await self._process.wait()

    def _drain(self) -> None:
        # Deliver output still buffered in the master before it goes away
        while self._master_fd is not None:
            try:
                data = os.read(self._master_fd, READ_CHUNK)
            except OSError:
                return
            if not data:
                return
            try:
                self._on_data(data)
            except Exception:
                logger.exception(f"Output handler failed for pid {self.pid}")
                return

    def close(self) -> None:
        fd = self._master_fd
        if fd is None:
            return
        self._stop_reading()
        self._drain()
        self._master_fd = None
        try:
            os.close(fd)
        except OSError as e:
            logger.debug(f"Error closing PTY master for pid {self.pid}: {e}")


class PosixPtyLauncher(PtyLauncher):
    """Spawn agents under `pty.openpty()`; POSIX only."""

    async def spawn(
        self,
        argv: List[str],
        cwd: str,
        env: Dict[str, str],
        cols: int,
        rows: int,
        on_data: DataCallback,
    ) -> AgentProcess:
        if sys.platform == "win32":
            raise OSError("pseudo-terminals are not supported on Windows")

        import pty

        master, slave = pty.openpty()
        try:
            _set_window_size(slave, cols, rows)
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=slave,
                stdout=slave,
                stderr=slave,
                cwd=cwd,
                env=env,
                start_new_session=True,
                close_fds=True,
                preexec_fn=_take_controlling_tty,
            )
        except BaseException:
            os.close(master)
            raise
        finally:
            os.close(slave)

        logger.debug(f"Spawned {argv[0]} (pid={process.pid}) in {cwd}")
        return PtyProcess(process, master, on_data)
