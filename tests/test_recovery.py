"""Tests for interrupt handling."""

import signal

import pytest

from issue_pipeline.models import WorkflowMode
from issue_pipeline.orchestration.recovery import (
    COMMIT_WIP, LEAVE_UNCOMMITTED, InterruptHandler
)
from issue_pipeline.prompts import FixedAnswerPrompter
from issue_pipeline.session_tracker import SessionTracker

from fakes import FakeGit


@pytest.fixture
def tracker(tmp_path):
    t = SessionTracker(tmp_path)
    t.init()
    return t


class TestStopRequests:
    def test_stop_file_requests_shutdown(self, tmp_path, tracker):
        handler = InterruptHandler(tmp_path, tracker)
        assert not handler.is_shutdown_requested()
        path = handler.request_stop("lunch")
        assert path == tmp_path / ".pipeline" / "stop-requested"
        assert path.read_text().endswith("lunch")
        assert handler.is_shutdown_requested()

    def test_signal_sets_flag(self, tmp_path, tracker):
        handler = InterruptHandler(tmp_path, tracker)
        handler._handle_shutdown_signal(signal.SIGTERM, None)
        assert handler.is_shutdown_requested()


class TestGracefulShutdown:
    def test_unattended_commits_wip_and_snapshots(self, tmp_path, tracker, monkeypatch):
        monkeypatch.chdir(tmp_path)
        worktree = tmp_path / "wt"
        worktree.mkdir()
        git = FakeGit(branch="issue-3")
        git.dirty = True
        handler = InterruptHandler(tmp_path, tracker, git_factory=lambda path: git)
        handler.request_stop()
        handler.set_current_context(3, worktree, WorkflowMode.UNATTENDED)

        snapshot = handler.graceful_shutdown()

        assert git.commits_made == ["wip: auto-commit interrupted work on issue-3\n\nIssue in progress: #3"]
        assert snapshot == tracker.snapshot_path(3)
        assert tracker.load_snapshot(3).reason == "interrupted"
        assert not handler.stop_file.exists()

    def test_attended_can_leave_changes_uncommitted(self, tmp_path, tracker, monkeypatch):
        monkeypatch.chdir(tmp_path)
        worktree = tmp_path / "wt"
        worktree.mkdir()
        git = FakeGit()
        git.dirty = True
        prompter = FixedAnswerPrompter(LEAVE_UNCOMMITTED, mode=WorkflowMode.ATTENDED)
        handler = InterruptHandler(tmp_path, tracker, prompter=prompter, git_factory=lambda path: git)
        handler.set_current_context(3, worktree, WorkflowMode.ATTENDED)

        handler.graceful_shutdown()

        assert git.commits_made == []
        assert prompter.questions[0][1] == [COMMIT_WIP, LEAVE_UNCOMMITTED]
        assert git.dirty

    def test_nothing_in_progress(self, tmp_path, tracker, monkeypatch):
        monkeypatch.chdir(tmp_path)
        handler = InterruptHandler(tmp_path, tracker)
        assert handler.graceful_shutdown() is None
