"""acd: run AI coding agents concurrently, one per git worktree, behind a local daemon."""

__version__ = "0.1.0"
