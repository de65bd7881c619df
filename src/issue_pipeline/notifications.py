"""Notification dispatch for blockers, divergence and batch progress.

Transport is left to sinks. The center only formats messages, tags them
with an urgency and makes sure each (issue, notification type) pair is
delivered at most once, using the session ledger for dedup so a resumed
session does not repeat itself.
"""

from typing import Optional

from rich.console import Console
from rich.panel import Panel

from .models import BlockerEvent, DivergenceReport, Urgency
from .protocols import NotificationSink
from .session_tracker import SessionTracker

console = Console()

URGENCY_STYLES = {
    Urgency.NORMAL: "blue",
    Urgency.HIGH: "yellow",
    Urgency.URGENT: "red",
}


class ConsoleNotificationSink:
    """Prints notifications to the terminal."""

    def send(self, message: str, urgency: Urgency) -> None:
        style = URGENCY_STYLES.get(urgency, "blue")
        console.print(Panel(message, title=f"Notification ({urgency.value})", border_style=style))


class DesktopNotificationSink:
    """Desktop notifications for high and urgent messages.

    Uses plyer for cross-platform support.
    Does nothing if plyer is not available.
    """

    def __init__(self, min_urgency: Urgency = Urgency.HIGH):
        self.min_urgency = min_urgency

    def send(self, message: str, urgency: Urgency) -> None:
        order = [Urgency.NORMAL, Urgency.HIGH, Urgency.URGENT]
        if order.index(urgency) < order.index(self.min_urgency):
            return
        try:
            from plyer import notification
        except ImportError:
            return
        try:
            notification.notify(
                title="issue-pipeline",
                message=message[:250],
                app_name="issue-pipeline",
                timeout=10,
            )
        except Exception as e:
            console.print(f"[yellow]Desktop notification failed: {e}[/yellow]")


class NotificationCenter:
    """Sends deduplicated notifications to a list of sinks."""

    def __init__(
        self,
        sinks: Optional[list[NotificationSink]] = None,
        tracker: Optional[SessionTracker] = None,
        repo_url: Optional[str] = None,
    ):
        self.sinks = sinks if sinks is not None else [ConsoleNotificationSink()]
        self.tracker = tracker
        self.repo_url = repo_url

    def notify(
        self,
        issue: int,
        notification_type: str,
        message: str,
        urgency: Urgency = Urgency.NORMAL,
    ) -> bool:
        """Send a message unless this (issue, type) was already sent.

        Returns:
            True if the message was sent
        """
        if self.tracker is not None and self.tracker.has_sent_notification(issue, notification_type):
            console.print(f"[dim]Notification {notification_type} for #{issue} already sent[/dim]")
            return False

        for sink in self.sinks:
            sink.send(message, urgency)

        if self.tracker is not None:
            self.tracker.mark_notification_sent(issue, notification_type)
        return True

    def send(self, message: str, urgency: Urgency = Urgency.NORMAL) -> None:
        """Send without dedup (batch progress, completion)."""
        for sink in self.sinks:
            sink.send(message, urgency)

    def _link(self, kind: str, number: int) -> str:
        if self.repo_url:
            return f"{self.repo_url}/{kind}/{number}"
        return f"#{number}"

    def notify_blocker(
        self,
        event: BlockerEvent,
        issue: int,
        pr_number: Optional[int] = None,
        worktree: Optional[str] = None,
    ) -> bool:
        lines = [
            f"Blocker: {event.type.value}",
            f"Issue: {self._link('issues', issue)}",
        ]
        if pr_number is not None:
            lines.append(f"PR: {self._link('pull', pr_number)}")
        if worktree:
            lines.append(f"Worktree: {worktree}")
        if event.details:
            lines.append("")
            lines.append(event.details)
        if event.batch_blocking:
            lines.append("")
            lines.append("The batch has been halted.")
        return self.notify(issue, event.type.value, "\n".join(lines), event.urgency)

    def notify_divergence(self, report: DivergenceReport, issue: int, reason: str) -> bool:
        commits = "\n".join(f"  {c.oneline()}" for c in report.foreign_commits[:10])
        message = (
            f"Branch {report.branch} diverged from its remote ({reason})\n"
            f"Issue: {self._link('issues', issue)}\n"
            f"Classification: {report.classification.value if report.classification else 'unknown'}\n"
            f"Foreign commits:\n{commits}"
        )
        return self.notify(issue, "divergence", message, Urgency.HIGH)

    def batch_progress(self, completed: int, total: int, current: Optional[int] = None) -> None:
        percent = completed * 100 // total if total else 100
        message = f"Progress: {completed}/{total} issues ({percent}%)"
        if current is not None:
            message += f"\nCurrent: #{current}"
        self.send(message, Urgency.NORMAL)
