"""Tests for the command-line interface."""

import json
from unittest.mock import patch

import pytest
from click.testing import CliRunner

from issue_pipeline.cli import main
from issue_pipeline.models import PRState, PullRequest, WorkflowMode
from issue_pipeline.session_tracker import SessionTracker

from fakes import HAS_GIT, FakeHost, init_git_repo, run_git

pytestmark = pytest.mark.skipif(not HAS_GIT, reason="git not installed")


@pytest.fixture
def repo(tmp_path):
    path = tmp_path / "project"
    path.mkdir()
    init_git_repo(path)
    return path


def invoke(*args):
    return CliRunner().invoke(main, [str(a) for a in args])


class TestProjectChecks:
    def test_not_a_git_repository(self, tmp_path):
        result = invoke("status", "-p", tmp_path)
        assert result.exit_code == 1
        assert "Not a git repository" in result.output

    def test_malformed_config(self, repo):
        config = repo / ".pipeline" / "config.json"
        config.parent.mkdir()
        config.write_text("{ not json")
        result = invoke("status", "-p", repo)
        assert result.exit_code == 1


class TestStatus:
    def test_no_session(self, repo):
        result = invoke("status", "-p", repo)
        assert result.exit_code == 0
        assert "No active session" in result.output

    def test_shows_current_issue(self, repo):
        tracker = SessionTracker(repo)
        tracker.init(WorkflowMode.UNATTENDED)
        tracker.set_current_issue(4)
        result = invoke("status", "-p", repo)
        assert result.exit_code == 0
        assert "#4" in result.output
        assert "unattended" in result.output


class TestStop:
    def test_writes_stop_file(self, repo):
        result = invoke("stop", "-p", repo, "--reason", "end of day")
        assert result.exit_code == 0
        stop_file = repo / ".pipeline" / "stop-requested"
        assert stop_file.read_text().endswith("end of day")


class TestSession:
    def test_show_empty(self, repo):
        result = invoke("session", "show", "-p", repo)
        assert result.exit_code == 0
        assert json.loads(result.output) == {}

    def test_reset_keeps_approvals(self, repo):
        tracker = SessionTracker(repo)
        tracker.init()
        tracker.add_approved_blocker(2, "critical_issues")
        tracker.increment_completed()

        result = invoke("session", "reset", "-p", repo, "--unattended")

        assert result.exit_code == 0
        record = tracker.load()
        assert record.mode == WorkflowMode.UNATTENDED
        assert record.issues_completed == 0
        assert tracker.has_approved_blocker(2, "critical_issues")

    def test_clear_deletes_record(self, repo):
        tracker = SessionTracker(repo)
        tracker.init()
        result = CliRunner().invoke(main, ["session", "clear", "-p", str(repo)], input="y\n")
        assert result.exit_code == 0
        assert tracker.load() is None


class TestWorktrees:
    def test_no_worktrees(self, repo):
        result = invoke("worktrees", "-p", repo)
        assert result.exit_code == 0
        assert "No worktrees" in result.output


class TestUndo:
    """The host is faked; git runs for real."""

    def attempt(self, repo):
        worktree = repo.parent / "project-worktrees" / "issue-1"
        run_git(repo, "worktree", "add", "-q", "-b", "issue-1", str(worktree))
        return worktree

    @patch('issue_pipeline.cli.GitHubClient')
    def test_merged_pr_is_refused(self, mock_client, repo):
        host = FakeHost()
        host.prs[7] = PullRequest(number=7, branch="issue-1", state=PRState.MERGED, body="Closes #1")
        mock_client.return_value = host
        worktree = self.attempt(repo)

        result = invoke("undo", 1, "-p", repo)

        assert result.exit_code == 1
        assert "already been merged" in result.output
        assert host.closed == []
        assert worktree.exists()

    @patch('issue_pipeline.cli.GitHubClient')
    def test_confirmed_undo_removes_the_attempt(self, mock_client, repo):
        host = FakeHost()
        host.prs[7] = PullRequest(number=7, branch="issue-1", body="Closes #1")
        mock_client.return_value = host
        worktree = self.attempt(repo)

        result = CliRunner().invoke(main, ["undo", "1", "-p", str(repo)], input="y\n")

        assert result.exit_code == 0
        assert host.closed == [7]
        assert not worktree.exists()
        assert run_git(repo, "branch", "--list", "issue-1") == ""

    @patch('issue_pipeline.cli.GitHubClient')
    def test_declined_undo_changes_nothing(self, mock_client, repo):
        host = FakeHost()
        host.prs[7] = PullRequest(number=7, branch="issue-1", body="Closes #1")
        mock_client.return_value = host
        worktree = self.attempt(repo)

        result = CliRunner().invoke(main, ["undo", "1", "-p", str(repo)], input="n\n")

        assert result.exit_code == 0
        assert host.closed == []
        assert worktree.exists()
