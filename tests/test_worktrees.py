"""Tests for worktree validation and project path resolution."""

from pathlib import Path

import pytest

from acd.errors import InvalidWorktreeError
from acd.sessions.worktrees import resolve_project_path, validate_worktree


class TestValidateWorktree:
    """Test rejection of unusable paths."""

    def test_main_checkout(self, worktree: Path):
        resolved, project = validate_worktree(str(worktree))
        assert resolved == worktree.resolve()
        assert project == worktree.resolve()

    def test_empty_path(self):
        with pytest.raises(InvalidWorktreeError, match="path is required"):
            validate_worktree("")

    def test_missing_directory(self, tmp_path: Path):
        with pytest.raises(InvalidWorktreeError, match="does not exist") as exc_info:
            validate_worktree(str(tmp_path / "gone"))
        assert exc_info.value.status_code == 400

    def test_file_instead_of_directory(self, tmp_path: Path):
        path = tmp_path / "file"
        path.write_text("x")
        with pytest.raises(InvalidWorktreeError, match="not a directory"):
            validate_worktree(str(path))

    def test_no_git_entry(self, tmp_path: Path):
        with pytest.raises(InvalidWorktreeError, match="no .git"):
            validate_worktree(str(tmp_path))

    def test_broken_git_file(self, tmp_path: Path):
        (tmp_path / ".git").write_text("garbage")
        with pytest.raises(InvalidWorktreeError, match="not a gitdir pointer"):
            validate_worktree(str(tmp_path))


class TestResolveProjectPath:
    """Test linked worktree resolution through the gitdir pointer."""

    def test_linked_worktree_absolute(self, tmp_path: Path):
        project = tmp_path / "project"
        (project / ".git" / "worktrees" / "feature").mkdir(parents=True)
        linked = tmp_path / "feature"
        linked.mkdir()
        (linked / ".git").write_text(f"gitdir: {project / '.git' / 'worktrees' / 'feature'}\n")

        assert resolve_project_path(linked) == project

    def test_linked_worktree_relative(self, tmp_path: Path):
        project = tmp_path / "project"
        (project / ".git" / "worktrees" / "feature").mkdir(parents=True)
        linked = tmp_path / "feature"
        linked.mkdir()
        (linked / ".git").write_text("gitdir: ../project/.git/worktrees/feature\n")

        _, resolved_project = validate_worktree(str(linked))
        assert resolved_project == project.resolve()

    def test_other_layout_falls_back_to_worktree(self, tmp_path: Path):
        sub = tmp_path / "sub"
        sub.mkdir()
        (sub / ".git").write_text("gitdir: ../.git/modules/sub\n")
        assert resolve_project_path(sub) == sub
