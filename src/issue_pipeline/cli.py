"""CLI interface for the issue pipeline."""

import asyncio
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .agent_runner import AgentRunner
from .blockers import BlockerGate, CommandCredentialProbe
from .classifier import ClaudeCommitClassifier
from .cli_utils import require_tools, resolve_agent_command
from .errors import FatalPreconditionError, PipelineError
from .git_manager import GitManager
from .github_client import GitHubClient
from .models import PipelineConfig, WorkflowMode
from .notifications import ConsoleNotificationSink, DesktopNotificationSink, NotificationCenter
from .orchestration import AgentPipelineSteps, BatchRunner, InterruptHandler, IssuePipeline
from .prompts import ConsolePrompter, FixedAnswerPrompter
from .session_tracker import SessionTracker
from .stale_branch import StaleBranchManager
from .state_resolver import StateResolver
from .worktrees import age_display, remove_stale_worktrees, scan_worktrees

console = Console()

project_option = click.option(
    '--project-path', '-p', type=click.Path(exists=True, file_okay=False), default='.',
    help='Path to the git clone (default: current directory)'
)


def _load(project_path: str) -> tuple[Path, PipelineConfig]:
    """Resolve the clone and its configuration, exiting on a fatal precondition."""
    path = Path(project_path).resolve()
    try:
        if not GitManager(path).is_git_repo():
            raise FatalPreconditionError(f"Not a git repository: {path}")
        config = PipelineConfig.load(path)
    except FatalPreconditionError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)
    return path, config


@click.group()
@click.version_option()
def main():
    """Issue pipeline - takes issues from PR to merge with an AI agent."""
    pass


@main.command()
@click.argument('issues', nargs=-1, type=int, required=True)
@project_option
@click.option('--unattended', is_flag=True,
              help='Never prompt: block and notify at every decision point')
@click.option('--new-session', is_flag=True, help='Reset session counters before starting')
def run(issues: tuple[int, ...], project_path: str, unattended: bool, new_session: bool):
    """Run one or more issues through the pipeline.

    ISSUES are issue numbers, processed one at a time in the order given.
    """
    path, config = _load(project_path)
    try:
        require_tools("git", "gh")
        agent_command = resolve_agent_command(config)
    except FatalPreconditionError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)

    mode = WorkflowMode.UNATTENDED if unattended else WorkflowMode.ATTENDED
    tracker = SessionTracker(path, config)
    record = tracker.load()
    if new_session or record is None:
        tracker.init(mode)
    elif record.mode != mode:
        tracker.update("mode", mode)

    notifier = NotificationCenter([ConsoleNotificationSink(), DesktopNotificationSink()], tracker)
    host = GitHubClient(path)
    gate = BlockerGate(
        config, tracker, CommandCredentialProbe(config.credential_probe_command), host, notifier
    )
    prompter = ConsolePrompter() if mode == WorkflowMode.ATTENDED else FixedAnswerPrompter()
    interrupt = InterruptHandler(path, tracker, config, prompter)
    interrupt.setup_signal_handlers()

    steps = AgentPipelineSteps(path, config, host, AgentRunner(config, command=[*agent_command, "--print"]))
    classifier = ClaudeCommitClassifier(command=agent_command, timeout=config.classifier_timeout_seconds)
    pipeline = IssuePipeline(
        path, config, tracker, host, gate, steps,
        mode=mode, prompter=prompter, classifier=classifier, interrupt=interrupt,
    )

    console.print(Panel(
        f"Issues: {', '.join(f'#{n}' for n in issues)}\nMode: {mode.value}",
        title="Issue Pipeline", border_style="blue"
    ))
    report = asyncio.run(BatchRunner(pipeline, tracker, notifier).run(list(issues)))
    console.print(Panel(tracker.summary(), title="Session", border_style="blue"))

    if report.failed or report.blocked or report.halted_by:
        sys.exit(1)


@main.command()
@click.argument('issue', type=int)
@project_option
def phase(issue: int, project_path: str):
    """Show the pipeline phase of ISSUE, derived from the host and the clone."""
    path, config = _load(project_path)
    resolver = StateResolver(config, GitHubClient(path))
    result = resolver.resolve_issue(issue)
    pr = f" (PR #{result.pr_number})" if result.pr_number else ""
    console.print(f"#{issue}{pr}: [bold]{result.label}[/bold]")


@main.command()
@project_option
def status(project_path: str):
    """Show the session ledger and the issue in progress."""
    path, config = _load(project_path)
    tracker = SessionTracker(path, config)
    record = tracker.load()
    if record is None:
        console.print("[yellow]No active session. Run 'issue-pipeline run' to start.[/yellow]")
        return

    console.print(Panel(tracker.summary(), title="Session", border_style="blue"))
    if record.current_issue is not None:
        console.print(f"[blue]Current issue:[/blue] #{record.current_issue}")
    if record.worktree_path:
        console.print(f"[blue]Worktree:[/blue] {record.worktree_path}")
    if record.limit_reached:
        console.print(f"[yellow]Limit reached:[/yellow] {record.limit_reached.value}")
    if record.approved_blockers:
        approved = ", ".join(f"#{issue} {kind}" for issue, kind in record.approved_blockers)
        console.print(f"[dim]Approved blockers: {approved}[/dim]")


@main.command()
@project_option
@click.option('--reason', default='User requested stop', help='Reason recorded with the request')
def stop(project_path: str, reason: str):
    """Ask a running pipeline to stop after its current step."""
    path, config = _load(project_path)
    handler = InterruptHandler(path, SessionTracker(path, config), config)
    stop_file = handler.request_stop(reason)
    console.print(f"[green]Stop requested[/green] ({stop_file})")


@main.group()
def session():
    """Inspect or reset the session ledger."""
    pass


@session.command('show')
@project_option
def session_show(project_path: str):
    """Print the session record as JSON."""
    path, config = _load(project_path)
    console.print_json(SessionTracker(path, config).to_json())


@session.command('reset')
@project_option
@click.option('--unattended', is_flag=True, help='Mode recorded for the new session')
def session_reset(project_path: str, unattended: bool):
    """Start a new session, keeping approvals and notification history."""
    path, config = _load(project_path)
    mode = WorkflowMode.UNATTENDED if unattended else WorkflowMode.ATTENDED
    SessionTracker(path, config).init(mode)
    console.print("[green]Session reset[/green]")


@session.command('clear')
@project_option
@click.confirmation_option(prompt='Delete the session record, including approved blockers?')
def session_clear(project_path: str):
    """Delete the session record entirely."""
    path, config = _load(project_path)
    SessionTracker(path, config).cleanup()


@main.command()
@click.argument('issue', type=int)
@project_option
def undo(issue: int, project_path: str):
    """Throw away the unmerged attempt at ISSUE.

    Closes the open PR and deletes the issue's worktree, local and remote
    branches and saved snapshot. Refuses when the PR is already merged.
    """
    path, config = _load(project_path)
    manager = StaleBranchManager(path, config, SessionTracker(path, config), GitHubClient(path))
    try:
        plan = manager.plan_undo(issue)
    except PipelineError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)

    manager.describe_undo(plan)
    if not click.confirm("Proceed with undo? Uncommitted work in the worktree is lost", default=False):
        console.print("[dim]Undo cancelled[/dim]")
        return
    manager.undo(plan)


@main.command()
@project_option
@click.option('--clean', is_flag=True, help='Remove stale worktrees that hold no unsaved work')
def worktrees(project_path: str, clean: bool):
    """List the per-issue worktrees of the clone."""
    path, config = _load(project_path)
    if clean:
        removed = remove_stale_worktrees(path, config)
        console.print(f"[green]Removed {len(removed)} stale worktree(s)[/green]")

    records = scan_worktrees(path, config)
    if not records:
        console.print("[dim]No worktrees[/dim]")
        return

    table = Table(title="Worktrees")
    table.add_column("Branch", style="cyan")
    table.add_column("Path")
    table.add_column("Status")
    table.add_column("Age")
    table.add_column("Behind", justify="right")
    for record in records:
        color = "yellow" if record.uncommitted or record.unpushed else "green"
        table.add_row(
            record.branch,
            record.path,
            f"[{color}]{record.status_text}[/{color}]",
            age_display(record.age_hours),
            str(record.commits_behind),
        )
    console.print(table)


if __name__ == '__main__':
    main()
