"""
Subprocess-backed operations that run behind a ConcurrencyGate.

Expected failures (missing binary, non-zero exit, timeout) come back as result
objects with `success=False` and an `error` string; they are never raised.
"""

import asyncio
import logging
import re
from pathlib import Path
from typing import List, Optional, Tuple, Union

from pydantic import BaseModel

from .gate import GateRegistry

logger = logging.getLogger(__name__)

GIT_RESOURCE_CLASS = "git"
DEFAULT_COMMAND_TIMEOUT = 30.0

_SHORTSTAT_INSERTIONS = re.compile(r"(\d+) insertions?\(\+\)")
_SHORTSTAT_DELETIONS = re.compile(r"(\d+) deletions?\(-\)")


class CommandResult(BaseModel):
    """Outcome of one subprocess run."""

    args: List[str]
    success: bool
    returncode: Optional[int] = None
    stdout: str = ""
    stderr: str = ""
    error: Optional[str] = None
    timed_out: bool = False


class GitStatus(BaseModel):
    """Change counts and branch position for a worktree."""

    branch: Optional[str] = None
    upstream: Optional[str] = None
    files_added: int = 0
    files_deleted: int = 0
    ahead_count: int = 0
    behind_count: int = 0


class GitStatusResult(BaseModel):
    worktree_path: str
    success: bool
    status: Optional[GitStatus] = None
    error: Optional[str] = None


async def run_command(
    args: List[str],
    cwd: Optional[Union[str, Path]] = None,
    timeout: float = DEFAULT_COMMAND_TIMEOUT,
) -> CommandResult:
    """
    Run a command to completion and capture its output.

    Args:
        args: argv, first element is the executable
        cwd: Working directory
        timeout: Seconds before the process is killed

    Returns:
        CommandResult; never raises for missing binaries, exit codes or timeouts
    """
    if cwd is not None and not Path(cwd).is_dir():
        return CommandResult(args=args, success=False, error=f"Working directory does not exist: {cwd}")

    try:
        process = await asyncio.create_subprocess_exec(
            *args,
            cwd=str(cwd) if cwd else None,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError:
        return CommandResult(args=args, success=False, error=f"Command not found: {args[0]}")
    except OSError as e:
        return CommandResult(args=args, success=False, error=f"Failed to run {args[0]}: {e}")

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        return CommandResult(
            args=args,
            success=False,
            returncode=process.returncode,
            error=f"Command timed out after {timeout:g}s: {' '.join(args)}",
            timed_out=True,
        )
    except asyncio.CancelledError:
        if process.returncode is None:
            process.kill()
            await process.wait()
        raise

    out = stdout.decode("utf-8", errors="replace")
    err = stderr.decode("utf-8", errors="replace")
    if process.returncode != 0:
        message = err.strip() or out.strip() or f"exit status {process.returncode}"
        return CommandResult(
            args=args,
            success=False,
            returncode=process.returncode,
            stdout=out,
            stderr=err,
            error=f"{' '.join(args)} failed: {message}",
        )

    return CommandResult(args=args, success=True, returncode=0, stdout=out, stderr=err)


def parse_shortstat(output: str) -> Tuple[int, int]:
    """Parse `git diff --shortstat` into (insertions, deletions)."""
    insertions = _SHORTSTAT_INSERTIONS.search(output)
    deletions = _SHORTSTAT_DELETIONS.search(output)
    return (
        int(insertions.group(1)) if insertions else 0,
        int(deletions.group(1)) if deletions else 0,
    )


async def _git(args: List[str], worktree: Path) -> CommandResult:
    return await run_command(["git", *args], cwd=worktree)


async def get_git_status(worktree_path: Union[str, Path]) -> GitStatusResult:
    """
    Collect diff stats, current branch and ahead/behind counts for a worktree.

    Unstaged and staged line counts are summed. Ahead/behind is measured against
    the branch's upstream; without one both counts are zero.
    """
    worktree = Path(worktree_path)
    path_str = str(worktree)

    diff = await _git(["diff", "--shortstat"], worktree)
    if not diff.success:
        return GitStatusResult(worktree_path=path_str, success=False, error=diff.error)

    staged = await _git(["diff", "--staged", "--shortstat"], worktree)
    if not staged.success:
        return GitStatusResult(worktree_path=path_str, success=False, error=staged.error)

    branch = await _git(["branch", "--show-current"], worktree)
    if not branch.success:
        return GitStatusResult(worktree_path=path_str, success=False, error=branch.error)

    added, deleted = parse_shortstat(diff.stdout)
    staged_added, staged_deleted = parse_shortstat(staged.stdout)

    status = GitStatus(
        branch=branch.stdout.strip() or None,
        files_added=added + staged_added,
        files_deleted=deleted + staged_deleted,
    )

    upstream = await _git(["rev-parse", "--abbrev-ref", "--symbolic-full-name", "@{upstream}"], worktree)
    if upstream.success and upstream.stdout.strip():
        status.upstream = upstream.stdout.strip()
        counts = await _git(["rev-list", "--left-right", "--count", f"{status.upstream}...HEAD"], worktree)
        if counts.success:
            parts = counts.stdout.split()
            if len(parts) == 2:
                status.behind_count = int(parts[0])
                status.ahead_count = int(parts[1])
        else:
            logger.debug(f"Could not compute ahead/behind for {path_str}: {counts.error}")

    return GitStatusResult(worktree_path=path_str, success=True, status=status)


async def get_git_status_limited(registry: GateRegistry, worktree_path: Union[str, Path]) -> GitStatusResult:
    """get_git_status, admitted through the registry's "git" gate."""
    return await registry.submit(GIT_RESOURCE_CLASS, lambda: get_git_status(worktree_path))
