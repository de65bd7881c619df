"""Tests for notification formatting and dedup."""

import sys
from types import SimpleNamespace

from issue_pipeline.blockers import make_blocker
from issue_pipeline.models import BlockerType, Classification, DivergenceReport, Urgency
from issue_pipeline.notifications import DesktopNotificationSink, NotificationCenter
from issue_pipeline.session_tracker import SessionTracker

from fakes import RecordingSink, commit


class TestNotificationCenter:
    """Tests for NotificationCenter."""

    def test_dedup_per_issue_and_type(self, tmp_path):
        sink = RecordingSink()
        center = NotificationCenter([sink], SessionTracker(tmp_path))
        assert center.notify(1, "critical_issues", "first", Urgency.HIGH)
        assert not center.notify(1, "critical_issues", "again", Urgency.HIGH)
        assert center.notify(1, "head_changed", "other type")
        assert center.notify(2, "critical_issues", "other issue")
        assert [m for m, _ in sink.messages] == ["first", "other type", "other issue"]

    def test_dedup_survives_new_tracker(self, tmp_path):
        """A resumed session reads the same ledger and stays quiet."""
        NotificationCenter([RecordingSink()], SessionTracker(tmp_path)).notify(1, "divergence", "x")
        sink = RecordingSink()
        assert not NotificationCenter([sink], SessionTracker(tmp_path)).notify(1, "divergence", "x")
        assert sink.messages == []

    def test_without_tracker_nothing_is_deduplicated(self):
        sink = RecordingSink()
        center = NotificationCenter([sink])
        center.notify(1, "x", "a")
        center.notify(1, "x", "a")
        assert len(sink.messages) == 2

    def test_blocker_message(self):
        sink = RecordingSink()
        center = NotificationCenter([sink], repo_url="https://github.com/org/repo")
        event = make_blocker(BlockerType.SESSION_LIMIT, "limit reached")
        center.notify_blocker(event, 4, pr_number=9, worktree="/tmp/wt")
        message, urgency = sink.messages[0]
        assert "Blocker: session_limit" in message
        assert "https://github.com/org/repo/issues/4" in message
        assert "https://github.com/org/repo/pull/9" in message
        assert "The batch has been halted." in message
        assert urgency == Urgency.NORMAL

    def test_divergence_message(self):
        sink = RecordingSink()
        report = DivergenceReport(
            branch="issue-4", local_head="a", remote_head="b",
            foreign_commits=[commit("abcdef123", "feat: other", 1)],
            classification=Classification.UNRELATED,
        )
        NotificationCenter([sink]).notify_divergence(report, 4, "blocked")
        message, urgency = sink.messages[0]
        assert "Classification: UNRELATED" in message
        assert "abcdef1 feat: other" in message
        assert urgency == Urgency.HIGH

    def test_batch_progress(self):
        sink = RecordingSink()
        NotificationCenter([sink]).batch_progress(1, 4, current=12)
        assert sink.messages[0][0] == "Progress: 1/4 issues (25%)\nCurrent: #12"


class FakeNotification:
    def __init__(self):
        self.sent = []

    def notify(self, **kwargs):
        self.sent.append(kwargs)


class TestDesktopSink:
    """Tests for DesktopNotificationSink with a stand-in plyer module."""

    def test_urgency_threshold(self, monkeypatch):
        notification = FakeNotification()
        monkeypatch.setitem(sys.modules, "plyer", SimpleNamespace(notification=notification))
        sink = DesktopNotificationSink(min_urgency=Urgency.HIGH)
        sink.send("progress", Urgency.NORMAL)
        sink.send("blocked", Urgency.HIGH)
        assert [n["message"] for n in notification.sent] == ["blocked"]
