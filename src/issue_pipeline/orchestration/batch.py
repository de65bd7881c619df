"""Batch runs over several issues.

Issues are processed one at a time, in the order given. Session limits are
checked before each issue. A batch-blocking blocker (expired credentials,
session limit) halts the batch; any other blocker only parks its issue and
the batch moves on.
"""

from typing import Optional, Protocol

from rich.console import Console
from rich.table import Table

from ..models import BatchReport, ContinueDecision, IssueResult, IssueStatus
from ..notifications import NotificationCenter
from ..session_tracker import SessionTracker

console = Console()


class IssueProcessor(Protocol):
    async def process(self, issue_number: int) -> IssueResult:
        ...


class BatchRunner:
    """Runs a list of issues through an IssueProcessor."""

    def __init__(
        self,
        processor: IssueProcessor,
        tracker: SessionTracker,
        notifier: Optional[NotificationCenter] = None,
    ):
        self.processor = processor
        self.tracker = tracker
        self.notifier = notifier
        self.results: list[IssueResult] = []

    async def run(self, issues: list[int]) -> BatchReport:
        report = BatchReport()
        total = len(issues)

        for index, issue in enumerate(issues):
            decision = self.tracker.should_continue()
            if decision != ContinueDecision.CONTINUE:
                console.print(f"[yellow]Session limit reached ({decision.value}); stopping batch[/yellow]")
                report.halted_by = decision.value
                report.not_attempted = issues[index:]
                break

            result = await self.processor.process(issue)
            self.results.append(result)

            if result.status == IssueStatus.COMPLETED:
                self.tracker.increment_completed()
                report.completed.append(issue)
            elif result.status == IssueStatus.BLOCKED:
                report.blocked.append(issue)
                if result.blocker is not None and result.blocker.batch_blocking:
                    console.print(f"[red]Batch halted by {result.blocker.type.value} on #{issue}[/red]")
                    report.halted_by = result.blocker.type.value
                    report.not_attempted = issues[index + 1:]
                    break
            elif result.status == IssueStatus.INTERRUPTED:
                report.halted_by = "interrupted"
                report.not_attempted = issues[index + 1:]
                break
            else:
                self.tracker.increment_failed()
                report.failed.append(issue)

            if self.notifier is not None and total > 1:
                self.notifier.batch_progress(index + 1, total, issue)

        self.tracker.set_current_issue(None)
        self.print_report(report)
        return report

    def print_report(self, report: BatchReport) -> None:
        table = Table(title="Batch Summary")
        table.add_column("Outcome", style="cyan")
        table.add_column("Issues")
        rows = [
            ("Completed", report.completed),
            ("Blocked", report.blocked),
            ("Failed", report.failed),
            ("Not attempted", report.not_attempted),
        ]
        for label, numbers in rows:
            table.add_row(label, ", ".join(f"#{n}" for n in numbers) or "-")
        console.print(table)
        if report.halted_by:
            console.print(f"[yellow]Halted by: {report.halted_by}[/yellow]")
