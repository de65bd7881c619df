"""Tests for divergence detection, classification and resolution."""

from pathlib import Path

import pytest

from issue_pipeline.divergence import (
    ACTION_LABELS, DivergenceAction, DivergenceClassifier, decide,
    fallback_classification, is_automation_commit, moved_pr_head, stash_safe_integrate
)
from issue_pipeline.git_manager import GitManager
from issue_pipeline.models import (
    Classification, DivergenceReport, ResolutionKind, Urgency, WorkflowMode
)
from issue_pipeline.notifications import NotificationCenter
from issue_pipeline.prompts import FixedAnswerPrompter
from issue_pipeline.session_tracker import SessionTracker

from fakes import (
    HAS_GIT, FakeClassifier, FakeGit, FakeHost, RecordingSink, assessment_comment, commit,
    configure_identity, run_git
)

LOCAL = "1111111"
REMOTE = "2222222"


def diverged_git(foreign, local_ahead: int = 0) -> FakeGit:
    git = FakeGit(refs={"HEAD": LOCAL, "refs/remotes/origin/issue-1": REMOTE})
    git.ranges[(LOCAL, REMOTE)] = foreign
    git.counts[(REMOTE, LOCAL)] = local_ahead
    return git


def report_with(foreign) -> DivergenceReport:
    return DivergenceReport(branch="issue-1", local_head=LOCAL, remote_head=REMOTE, foreign_commits=foreign)


class TestPatterns:
    """Tests for automation patterns and fallbacks."""

    def test_automation_commits(self):
        assert is_automation_commit("fix: address review findings for #3")
        assert is_automation_commit("chore: resolve review issues")
        assert is_automation_commit("wip: auto-commit interrupted work on issue-3")
        assert is_automation_commit("issue-pipeline: auto-stash")
        assert not is_automation_commit("feat: add export button")

    def test_fallback_classification(self):
        """Unattended fails closed; attended asks."""
        assert fallback_classification(WorkflowMode.UNATTENDED) == Classification.UNRELATED
        assert fallback_classification(WorkflowMode.ATTENDED) == Classification.RELATED


class TestDecisionMatrix:
    """The pure classification x reviewed x mode matrix."""

    def test_trivial_always_rebases(self):
        for mode in WorkflowMode:
            for reviewed in (True, False):
                assert decide(Classification.TRIVIAL, reviewed, mode) == [DivergenceAction.AUTO_REBASE]

    def test_reviewed_related_rebases(self):
        for mode in WorkflowMode:
            assert decide(Classification.RELATED, True, mode) == [DivergenceAction.AUTO_REBASE]

    def test_unreviewed_related(self):
        assert decide(Classification.RELATED, False, WorkflowMode.UNATTENDED) == [DivergenceAction.BLOCK]
        assert decide(Classification.RELATED, False, WorkflowMode.ATTENDED) == [
            DivergenceAction.PULL_AND_REREVIEW,
            DivergenceAction.PULL_WITHOUT_REVIEW,
            DivergenceAction.FORCE_PUSH_LOCAL,
            DivergenceAction.ABORT,
        ]

    def test_unrelated_never_offers_pull(self):
        assert decide(Classification.UNRELATED, True, WorkflowMode.UNATTENDED) == [DivergenceAction.BLOCK]
        attended = decide(Classification.UNRELATED, False, WorkflowMode.ATTENDED)
        assert attended == [DivergenceAction.FORCE_PUSH_LOCAL, DivergenceAction.ABORT]


class TestDetect:
    """Tests for DivergenceClassifier.detect."""

    def test_detects_foreign_commits(self):
        foreign = [commit("f1", "feat: from elsewhere", 100)]
        report = DivergenceClassifier(diverged_git(foreign)).detect("issue-1")
        assert report.local_head == LOCAL
        assert report.remote_head == REMOTE
        assert [c.sha for c in report.foreign_commits] == ["f1"]
        assert not report.is_three_way

    def test_three_way_divergence_is_flagged(self):
        foreign = [commit("f1", "feat: from elsewhere", 100)]
        report = DivergenceClassifier(diverged_git(foreign, local_ahead=2)).detect("issue-1")
        assert report.local_ahead == 2
        assert report.is_three_way

    def test_local_only_ahead_is_not_divergence(self):
        assert DivergenceClassifier(diverged_git([], local_ahead=1)).detect("issue-1") is None

    def test_equal_heads(self):
        git = FakeGit(refs={"HEAD": LOCAL, "refs/remotes/origin/issue-1": LOCAL})
        assert DivergenceClassifier(git).detect("issue-1") is None

    def test_fetch_failure_reports_nothing(self):
        git = diverged_git([commit("f1", "x", 1)])
        git.fetch_ok = False
        assert DivergenceClassifier(git).detect("issue-1") is None


class TestClassify:
    """The classification chain; the first matching rule wins."""

    def test_all_on_mainline_is_trivial(self):
        foreign = [commit("m1", "feat: mainline work", 100), commit("m2", "fix: mainline", 90)]
        git = diverged_git(foreign)
        git.ancestors = {"m1", "m2"}
        classifier = FakeClassifier(Classification.UNRELATED)
        result = DivergenceClassifier(git, classifier=classifier).classify(report_with(foreign))
        assert result == Classification.TRIVIAL
        assert classifier.calls == 0

    def test_only_sync_merges_off_mainline_is_trivial(self):
        foreign = [
            commit("s1", "Merge branch 'main' into issue-1", 200),
            commit("m1", "feat: mainline work", 100),
        ]
        git = diverged_git(foreign)
        git.ancestors = {"m1"}
        result = DivergenceClassifier(git, classifier=FakeClassifier()).classify(report_with(foreign))
        assert result == Classification.TRIVIAL

    def test_automation_commits_are_related(self):
        foreign = [commit("a1", "fix: address review findings for #1", 100)]
        classifier = FakeClassifier(Classification.UNRELATED)
        result = DivergenceClassifier(diverged_git(foreign), classifier=classifier).classify(report_with(foreign))
        assert result == Classification.RELATED
        assert classifier.calls == 0

    def test_classifier_answer_is_used_and_recorded(self):
        foreign = [commit("x1", "feat: something", 100)]
        report = report_with(foreign)
        classifier = FakeClassifier(Classification.UNRELATED)
        result = DivergenceClassifier(diverged_git(foreign), classifier=classifier).classify(report, "Issue #1")
        assert result == Classification.UNRELATED
        assert report.classification == Classification.UNRELATED
        assert classifier.calls == 1

    def test_classifier_failure_uses_mode_default(self):
        foreign = [commit("x1", "feat: something", 100)]
        divergence = DivergenceClassifier(diverged_git(foreign), classifier=FakeClassifier(None))
        assert divergence.classify(report_with(foreign), mode=WorkflowMode.UNATTENDED) == Classification.UNRELATED
        assert divergence.classify(report_with(foreign), mode=WorkflowMode.ATTENDED) == Classification.RELATED


class TestReviewed:
    """Foreign commits count as reviewed when an assessment came after all of them."""

    def test_is_reviewed(self):
        report = report_with([commit("a", "x", 100), commit("b", "y", 300)])
        divergence = DivergenceClassifier(FakeGit())
        assert divergence.is_reviewed(report, 301)
        assert not divergence.is_reviewed(report, 300)
        assert not divergence.is_reviewed(report, 200)
        assert not divergence.is_reviewed(report, None)

    def test_assessment_time_from_host(self):
        host = FakeHost()
        host.comments[7] = [assessment_comment(400)]
        assert DivergenceClassifier(FakeGit(), host=host).assessment_time(7) == 400

    def test_assessment_time_unreadable(self):
        host = FakeHost()
        host.fail_reads.add("get_pr_comments")
        assert DivergenceClassifier(FakeGit(), host=host).assessment_time(7) is None


class TestResolve:
    """Tests for DivergenceClassifier.resolve."""

    def test_trivial_rebases_and_pushes(self):
        git = diverged_git([])
        result = DivergenceClassifier(git).resolve(
            report_with([commit("m", "x", 1)]), Classification.TRIVIAL, False, WorkflowMode.UNATTENDED
        )
        assert result.kind == ResolutionKind.RESOLVED
        assert git.called("rebase") == [("rebase", "origin/issue-1")]
        assert git.called("push") == [("push", "origin", "issue-1", None)]

    def test_unattended_unreviewed_related_blocks_without_touching_git(self):
        git = diverged_git([])
        result = DivergenceClassifier(git).resolve(
            report_with([commit("r", "x", 1)]), Classification.RELATED, False, WorkflowMode.UNATTENDED
        )
        assert result.kind == ResolutionKind.BLOCKED
        assert "not been reviewed" in result.reason
        assert not git.called("rebase")
        assert not git.called("push")

    def test_pull_and_rereview(self):
        git = diverged_git([])
        prompter = FixedAnswerPrompter(ACTION_LABELS[DivergenceAction.PULL_AND_REREVIEW], mode=WorkflowMode.ATTENDED)
        result = DivergenceClassifier(git).resolve(
            report_with([commit("r", "x", 1)]), Classification.RELATED, False, WorkflowMode.ATTENDED, prompter
        )
        assert result.kind == ResolutionKind.NEEDS_REREVIEW
        assert git.called("rebase")

    def test_pull_without_review(self):
        git = diverged_git([])
        prompter = FixedAnswerPrompter(ACTION_LABELS[DivergenceAction.PULL_WITHOUT_REVIEW], mode=WorkflowMode.ATTENDED)
        result = DivergenceClassifier(git).resolve(
            report_with([commit("r", "x", 1)]), Classification.RELATED, False, WorkflowMode.ATTENDED, prompter
        )
        assert result.kind == ResolutionKind.RESOLVED

    def test_unrelated_attended_menu_and_force_push_lease(self):
        """Force push is conditional on the remote head seen at detection."""
        git = diverged_git([])
        prompter = FixedAnswerPrompter(ACTION_LABELS[DivergenceAction.FORCE_PUSH_LOCAL], mode=WorkflowMode.ATTENDED)
        result = DivergenceClassifier(git).resolve(
            report_with([commit("u", "x", 1)]), Classification.UNRELATED, False, WorkflowMode.ATTENDED, prompter
        )
        _, options = prompter.questions[0]
        assert ACTION_LABELS[DivergenceAction.PULL_AND_REREVIEW] not in options
        assert ACTION_LABELS[DivergenceAction.PULL_WITHOUT_REVIEW] not in options
        assert result.kind == ResolutionKind.RESOLVED
        assert git.called("push") == [("push", "origin", "issue-1", f"issue-1:{REMOTE}")]

    def test_force_push_refused_when_remote_moved(self):
        git = diverged_git([])
        git.push_results = [False]
        result = DivergenceClassifier(git).force_push(report_with([commit("u", "x", 1)]))
        assert result.kind == ResolutionKind.BLOCKED

    def test_abort(self):
        git = diverged_git([])
        prompter = FixedAnswerPrompter(ACTION_LABELS[DivergenceAction.ABORT], mode=WorkflowMode.ATTENDED)
        result = DivergenceClassifier(git).resolve(
            report_with([commit("u", "x", 1)]), Classification.UNRELATED, False, WorkflowMode.ATTENDED, prompter
        )
        assert result.kind == ResolutionKind.BLOCKED
        assert result.action == "abort"
        assert not git.called("push")

    def test_rebase_conflict_unattended_blocks_and_restores(self):
        git = diverged_git([])
        git.rebase_ok = False
        git.conflicts = ["src/app.py"]
        git.dirty = True
        result = DivergenceClassifier(git).resolve(
            report_with([commit("m", "x", 1)]), Classification.TRIVIAL, False, WorkflowMode.UNATTENDED
        )
        assert result.kind == ResolutionKind.BLOCKED
        assert "src/app.py" in result.reason
        assert git.called("rebase_abort")
        assert git.stash == []
        assert git.dirty
        assert not git.called("push")

    def test_uncommitted_work_conflicting_after_rebase_blocks_push(self):
        git = diverged_git([])
        git.dirty = True
        git.stash_pop_ok = False
        result = DivergenceClassifier(git).resolve(
            report_with([commit("m", "x", 1)]), Classification.TRIVIAL, False, WorkflowMode.UNATTENDED
        )
        assert result.kind == ResolutionKind.BLOCKED
        assert "stash" in result.reason
        assert len(git.stash) == 1
        assert not git.called("push")


class TestStashSafeIntegrate:
    """Tests for the shared stash-safe primitive with a fake checkout."""

    def test_clean_tree_is_not_stashed(self):
        git = FakeGit()
        result = stash_safe_integrate(git, "origin/main", method="merge", merge_message="Merge branch 'main' into x")
        assert result.success
        assert not git.called("stash_push")
        assert git.called("merge") == [("merge", "origin/main", "Merge branch 'main' into x")]

    def test_stash_pop_conflict_after_success_keeps_stash(self):
        git = FakeGit()
        git.dirty = True
        git.stash_pop_ok = False
        result = stash_safe_integrate(git, "origin/main")
        assert result.success
        assert result.stash_preserved
        assert len(git.stash) == 1
        assert git.called("reset_merge")
        assert not git.dirty

    def test_stash_restored_with_index(self):
        git = FakeGit()
        git.dirty = True
        git.rebase_ok = False
        stash_safe_integrate(git, "origin/main")
        assert git.called("stash_pop") == [("stash_pop", True)]

    def test_unknown_method(self):
        with pytest.raises(ValueError):
            stash_safe_integrate(FakeGit(), "origin/main", method="cherry-pick")


class TestPushRejection:
    """End-to-end handling of a rejected push."""

    def test_unattended_unrelated_blocks_and_notifies_once(self, tmp_path):
        foreign = [commit("x1", "feat: unrelated change", 100)]
        git = diverged_git(foreign)
        sink = RecordingSink()
        tracker = SessionTracker(tmp_path)
        tracker.init(WorkflowMode.UNATTENDED)
        divergence = DivergenceClassifier(
            git,
            classifier=FakeClassifier(Classification.UNRELATED),
            notifier=NotificationCenter([sink], tracker),
        )

        first = divergence.handle_push_rejection("issue-1", 1, WorkflowMode.UNATTENDED, issue_context="Issue #1")
        second = divergence.handle_push_rejection("issue-1", 1, WorkflowMode.UNATTENDED, issue_context="Issue #1")

        assert first.kind == ResolutionKind.BLOCKED
        assert second.kind == ResolutionKind.BLOCKED
        assert len(sink.messages) == 1
        assert sink.messages[0][1] == Urgency.HIGH

    def test_reviewed_related_commits_rebase(self):
        foreign = [commit("x1", "feat: teammate follow-up", 100)]
        git = diverged_git(foreign)
        host = FakeHost()
        host.comments[7] = [assessment_comment(200)]
        divergence = DivergenceClassifier(git, classifier=FakeClassifier(Classification.RELATED), host=host)
        result = divergence.handle_push_rejection("issue-1", 1, WorkflowMode.UNATTENDED, pr_number=7)
        assert result.kind == ResolutionKind.RESOLVED

    def test_rejection_without_divergence_blocks(self):
        git = FakeGit(refs={"HEAD": LOCAL, "refs/remotes/origin/issue-1": LOCAL})
        result = DivergenceClassifier(git).handle_push_rejection("issue-1", 1, WorkflowMode.UNATTENDED)
        assert result.kind == ResolutionKind.BLOCKED


class TestHeadVerification:
    """Tests for the pre-merge head guard."""

    def test_head_moved(self):
        host = FakeHost()
        host.heads[7] = "bbbbbbbbbbbb"
        assert moved_pr_head(host, 7, "aaaaaaa") == "bbbbbbbbbbbb"
        assert not DivergenceClassifier(FakeGit(), host=host).verify_pr_head(7, "aaaaaaa")

    def test_short_sha_prefix_matches(self):
        host = FakeHost()
        host.heads[7] = "aaaaaaa123456"
        assert moved_pr_head(host, 7, "aaaaaaa") is None
        assert DivergenceClassifier(FakeGit(), host=host).verify_pr_head(7, "aaaaaaa")

    def test_unreadable_head_does_not_block(self):
        host = FakeHost()
        host.fail_reads.add("get_pr_head")
        assert moved_pr_head(host, 7, "aaaaaaa") is None


@pytest.mark.skipif(not HAS_GIT, reason="git not installed")
class TestRealRebaseRoundTrip:
    """A failed rebase leaves the tree and the stash list exactly as they were."""

    def _repo(self, tmp_path: Path) -> Path:
        repo = tmp_path / "repo"
        repo.mkdir()
        run_git(repo, "init", "-q")
        configure_identity(repo)
        run_git(repo, "checkout", "-q", "-b", "base")
        (repo / "a.txt").write_text("one\n")
        (repo / "b.txt").write_text("bee\n")
        run_git(repo, "add", "-A")
        run_git(repo, "commit", "-q", "-m", "initial")

        run_git(repo, "checkout", "-q", "-b", "other")
        (repo / "a.txt").write_text("two\n")
        run_git(repo, "commit", "-q", "-am", "other change")

        run_git(repo, "checkout", "-q", "base")
        run_git(repo, "checkout", "-q", "-b", "feature")
        (repo / "a.txt").write_text("three\n")
        run_git(repo, "commit", "-q", "-am", "feature change")
        return repo

    def test_conflicting_rebase_round_trip(self, tmp_path):
        repo = self._repo(tmp_path)
        (repo / "b.txt").write_text("bee staged\n")
        run_git(repo, "add", "b.txt")
        (repo / "b.txt").write_text("bee modified\n")
        (repo / "untracked.txt").write_text("scratch\n")

        git = GitManager(repo)
        head_before = git.rev_parse("HEAD")
        status_before = git.status_short()
        stashes_before = git.stash_count()

        result = stash_safe_integrate(git, "other", method="rebase")

        assert not result.success
        assert "a.txt" in result.conflicted_files
        assert git.rev_parse("HEAD") == head_before
        assert git.status_short() == status_before
        assert git.stash_count() == stashes_before
        assert (repo / "b.txt").read_text() == "bee modified\n"
        assert (repo / "untracked.txt").read_text() == "scratch\n"
        assert (repo / "a.txt").read_text() == "three\n"

    def test_staged_changes_stay_staged(self, tmp_path):
        repo = self._repo(tmp_path)
        (repo / "b.txt").write_text("bee staged\n")
        run_git(repo, "add", "b.txt")

        git = GitManager(repo)
        assert git.status_short() == "M  b.txt"

        result = stash_safe_integrate(git, "other", method="rebase")

        assert not result.success
        assert git.status_short() == "M  b.txt"
        assert run_git(repo, "diff", "--cached", "--name-only") == "b.txt"

    def test_clean_rebase_keeps_uncommitted_work(self, tmp_path):
        repo = self._repo(tmp_path)
        run_git(repo, "checkout", "-q", "other")
        run_git(repo, "checkout", "-q", "-b", "follow-up")
        (repo / "c.txt").write_text("new\n")
        run_git(repo, "add", "c.txt")
        run_git(repo, "commit", "-q", "-m", "add c")
        (repo / "b.txt").write_text("bee modified\n")

        git = GitManager(repo)
        result = stash_safe_integrate(git, "other", method="rebase")

        assert result.success
        assert not result.stash_preserved
        assert (repo / "b.txt").read_text() == "bee modified\n"
        assert git.stash_count() == 0

    def test_work_conflicting_with_rebased_branch_is_kept_in_stash(self, tmp_path):
        repo = self._repo(tmp_path)
        run_git(repo, "checkout", "-q", "base")
        run_git(repo, "checkout", "-q", "-b", "side")
        (repo / "c.txt").write_text("new\n")
        run_git(repo, "add", "c.txt")
        run_git(repo, "commit", "-q", "-m", "add c")
        (repo / "a.txt").write_text("local edit\n")

        git = GitManager(repo)
        result = stash_safe_integrate(git, "other", method="rebase")

        assert result.success
        assert result.stash_preserved
        assert git.stash_count() == 1
        assert git.conflicted_files() == []
        assert (repo / "a.txt").read_text() == "two\n"
        assert "<<<<<<<" not in (repo / "a.txt").read_text()
