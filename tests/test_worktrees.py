"""Tests for per-issue worktrees."""

import pytest

from issue_pipeline.git_manager import GitManager
from issue_pipeline.models import PipelineConfig
from issue_pipeline.worktrees import (
    age_display, branch_for_issue, ensure_worktree, remove_stale_worktrees, scan_worktrees, worktree_base
)

from fakes import HAS_GIT, clone_with_origin, commit_file


class TestHelpers:
    def test_branch_name(self):
        assert branch_for_issue(12) == "issue-12"

    def test_default_base_is_next_to_clone(self, tmp_path):
        clone = tmp_path / "app"
        assert worktree_base(clone, PipelineConfig()) == tmp_path.resolve() / "app-worktrees"

    def test_configured_base(self, tmp_path):
        config = PipelineConfig(worktree_dir=str(tmp_path / "wts"))
        assert worktree_base(tmp_path / "app", config) == tmp_path / "wts"

    def test_age_display(self):
        assert age_display(0) == "<1h old"
        assert age_display(5) == "5h old"
        assert age_display(72) == "3d old"
        assert age_display(200) == "8d old (stale)"


@pytest.mark.skipif(not HAS_GIT, reason="git not installed")
class TestEnsureWorktree:
    def test_created_from_mainline_with_shared_data_dir(self, tmp_path):
        _, clone = clone_with_origin(tmp_path)
        config = PipelineConfig(worktree_dir=str(tmp_path / "wts"))

        path = ensure_worktree(clone, config, 4)

        assert path == tmp_path / "wts" / "issue-4"
        assert GitManager(path).current_branch() == "issue-4"
        link = path / ".pipeline"
        assert link.is_symlink()
        assert link.resolve() == (clone / ".pipeline").resolve()
        # the shared data directory is not work to commit
        assert not GitManager(path).is_dirty()
        assert not GitManager(clone).is_dirty()

    def test_existing_worktree_is_reused(self, tmp_path):
        _, clone = clone_with_origin(tmp_path)
        config = PipelineConfig(worktree_dir=str(tmp_path / "wts"))
        first = ensure_worktree(clone, config, 4)
        (first / "wip.txt").write_text("keep me\n")

        second = ensure_worktree(clone, config, 4)

        assert second.resolve() == first.resolve()
        assert (second / "wip.txt").read_text() == "keep me\n"

    def test_remote_branch_is_picked_up(self, tmp_path):
        """A branch pushed by an earlier attempt is checked out instead of recreated."""
        _, clone = clone_with_origin(tmp_path)
        config = PipelineConfig(worktree_dir=str(tmp_path / "wts"))
        first = ensure_worktree(clone, config, 6)
        pushed = commit_file(first, "a.txt", "a\n", "feat: a")
        GitManager(first).push("origin", "issue-6")
        GitManager(clone).remove_worktree(first)
        GitManager(clone).delete_branch("issue-6")

        again = ensure_worktree(clone, config, 6)

        assert GitManager(again).rev_parse("HEAD") == pushed


@pytest.mark.skipif(not HAS_GIT, reason="git not installed")
class TestScan:
    def test_scan_reports_uncommitted_and_unpushed(self, tmp_path):
        _, clone = clone_with_origin(tmp_path)
        config = PipelineConfig(worktree_dir=str(tmp_path / "wts"))
        path = ensure_worktree(clone, config, 8)
        commit_file(path, "a.txt", "a\n", "feat: a")
        (path / "README.md").write_text("changed\n")

        records = scan_worktrees(clone, config)

        assert len(records) == 1
        record = records[0]
        assert record.branch == "issue-8"
        assert record.uncommitted == 1
        assert record.commits_behind == 0
        assert not record.is_stale

    def test_fresh_worktrees_are_not_removed(self, tmp_path):
        _, clone = clone_with_origin(tmp_path)
        config = PipelineConfig(worktree_dir=str(tmp_path / "wts"))
        path = ensure_worktree(clone, config, 9)
        assert remove_stale_worktrees(clone, config) == []
        assert path.exists()
