"""
Detached process launching.

The supervisor never waits on the daemon it starts: the child gets its own
session (POSIX) or a detached process group (Windows), stdin from /dev/null, and
stdout/stderr appended to the daemon log file. Platform differences stay in
this module.
"""

import logging
import subprocess
import sys
import time
from pathlib import Path
from typing import List, Optional

logger = logging.getLogger(__name__)


def daemon_command(port: Optional[int] = None) -> List[str]:
    """argv for running the daemon in the foreground under this interpreter."""
    cmd = [sys.executable, "-m", "acd", "daemon"]
    if port is not None:
        cmd.extend(["--port", str(port)])
    return cmd


class ProcessLauncher:
    """Starts fully detached background processes."""

    def spawn_detached(self, entrypoint: str, args: List[str], log_file: Path) -> int:
        """
        Start `entrypoint args...` in the background.

        Args:
            entrypoint: Executable to run
            args: Arguments after the executable
            log_file: File that receives stdout and stderr (appended)

        Returns:
            The child's pid

        Raises:
            OSError: If the process could not be started
        """
        cmd = [entrypoint, *args]
        log_file.parent.mkdir(parents=True, exist_ok=True)

        with open(log_file, "a") as log:
            log.write(f"\n{'=' * 60}\n")
            log.write(f"Starting daemon at {time.strftime('%Y-%m-%d %H:%M:%S')}\n")
            log.write(f"Command: {' '.join(cmd)}\n")
            log.write(f"{'=' * 60}\n")
            log.flush()

            kwargs = {}
            if sys.platform == "win32":
                kwargs["creationflags"] = (
                    subprocess.DETACHED_PROCESS | subprocess.CREATE_NEW_PROCESS_GROUP
                )
            else:
                kwargs["start_new_session"] = True  # Detach from parent

            process = subprocess.Popen(
                cmd,
                stdout=log,
                stderr=log,
                stdin=subprocess.DEVNULL,
                cwd=str(Path.home()),
                close_fds=True,
                **kwargs,
            )

        logger.debug(f"Spawned detached process {process.pid}: {' '.join(cmd)}")
        return process.pid
