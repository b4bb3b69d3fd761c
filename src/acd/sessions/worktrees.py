"""Git worktree validation and project path resolution."""

import logging
from pathlib import Path
from typing import Tuple

from acd.errors import InvalidWorktreeError

logger = logging.getLogger(__name__)


def _read_gitdir_pointer(git_file: Path) -> Path:
    content = git_file.read_text(encoding="utf-8").strip()
    if not content.startswith("gitdir:"):
        raise ValueError(f"{git_file} is not a gitdir pointer")
    target = Path(content[len("gitdir:"):].strip())
    if not target.is_absolute():
        target = (git_file.parent / target).resolve()
    return target


def resolve_project_path(worktree: Path) -> Path:
    """
    Find the main checkout a worktree belongs to.

    A linked worktree's `.git` file points at `<project>/.git/worktrees/<name>`;
    a main checkout is its own project.
    """
    git_entry = worktree / ".git"
    if git_entry.is_dir():
        return worktree

    gitdir = _read_gitdir_pointer(git_entry)
    # <project>/.git/worktrees/<name>
    if gitdir.parent.name == "worktrees" and gitdir.parent.parent.name == ".git":
        return gitdir.parent.parent.parent
    # Submodules and other layouts: fall back to the worktree itself
    return worktree


def validate_worktree(path: str) -> Tuple[Path, Path]:
    """
    Check that `path` is a usable git worktree.

    Args:
        path: Worktree path as supplied by the caller

    Returns:
        (resolved worktree path, owning project path)

    Raises:
        InvalidWorktreeError: Missing directory or no `.git` entry
    """
    if not path:
        raise InvalidWorktreeError(path, "path is required")

    worktree = Path(path).expanduser()
    if not worktree.exists():
        raise InvalidWorktreeError(path, "directory does not exist")
    if not worktree.is_dir():
        raise InvalidWorktreeError(path, "not a directory")

    worktree = worktree.resolve()
    git_entry = worktree / ".git"
    if not git_entry.exists():
        raise InvalidWorktreeError(path, "not a git worktree (no .git)")

    try:
        project = resolve_project_path(worktree)
    except (OSError, ValueError) as e:
        raise InvalidWorktreeError(path, str(e)) from e

    return worktree, project
