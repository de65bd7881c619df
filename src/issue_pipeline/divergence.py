"""Remote-vs-local branch divergence.

A push is rejected when the remote branch carries commits the local branch
does not have ("foreign commits"). This module finds them, decides what
they are, and resolves the divergence without ever silently dropping them:

1. detect()   - fetch and compute local..remote
2. classify() - ancestry and message heuristics first, then an injected
                CommitClassifier; its failure falls back to a mode default
3. resolve()  - pure decision matrix, then rebase, force-push or block

Force pushes are always conditional on the remote head seen at detection.
The stash-safe integration primitive here is shared with stale_branch.py.
"""

import re
from enum import Enum
from typing import Optional

from rich.console import Console
from rich.panel import Panel

from .errors import ClassificationError, GitCommandError, RemoteReadError
from .models import (
    Classification, DivergenceReport, IntegrationResult, PipelineConfig,
    Resolution, ResolutionKind, WorkflowMode
)
from .notifications import NotificationCenter
from .prompts import ConsolePrompter
from .protocols import CodeHost, CommitClassifier, GitOperations, Prompter
from .state_resolver import is_mainline_sync_merge, latest_assessment
from .timestamps import is_strictly_after

console = Console()

AUTOMATION_COMMIT_PATTERN = re.compile(
    r"^(fix|chore): (address|fix|resolve) review (findings|issues|feedback)"
    r"|issue-pipeline"
    r"|fix-review"
    r"|wip:.*auto-commit",
    re.IGNORECASE
)


class DivergenceAction(str, Enum):
    """What to do about a divergence."""
    AUTO_REBASE = "auto_rebase"
    PULL_AND_REREVIEW = "pull_and_rereview"
    PULL_WITHOUT_REVIEW = "pull_without_review"
    FORCE_PUSH_LOCAL = "force_push_local"
    ABORT = "abort"
    BLOCK = "block"


ACTION_LABELS = {
    DivergenceAction.PULL_AND_REREVIEW: "Pull and re-enter review cycle",
    DivergenceAction.PULL_WITHOUT_REVIEW: "Pull without review (you take responsibility for these commits)",
    DivergenceAction.FORCE_PUSH_LOCAL: "Overwrite remote with local work (force-push, discards foreign commits)",
    DivergenceAction.ABORT: "Abort workflow",
}


def is_automation_commit(message: str) -> bool:
    return bool(AUTOMATION_COMMIT_PATTERN.search(message))


def fallback_classification(mode: WorkflowMode) -> Classification:
    """Safe default when the classifier cannot answer: block unattended, ask attended."""
    if mode == WorkflowMode.UNATTENDED:
        return Classification.UNRELATED
    return Classification.RELATED


def decide(classification: Classification, reviewed: bool, mode: WorkflowMode) -> list[DivergenceAction]:
    """Actions allowed for a classified divergence.

    A single AUTO_REBASE or BLOCK is applied without asking. Longer lists
    are offered to a human, in the order given.
    """
    if classification == Classification.TRIVIAL:
        return [DivergenceAction.AUTO_REBASE]
    if classification == Classification.RELATED:
        if reviewed:
            return [DivergenceAction.AUTO_REBASE]
        if mode == WorkflowMode.UNATTENDED:
            return [DivergenceAction.BLOCK]
        return [
            DivergenceAction.PULL_AND_REREVIEW,
            DivergenceAction.PULL_WITHOUT_REVIEW,
            DivergenceAction.FORCE_PUSH_LOCAL,
            DivergenceAction.ABORT,
        ]
    # Out of scope: pulling is never offered
    if mode == WorkflowMode.UNATTENDED:
        return [DivergenceAction.BLOCK]
    return [DivergenceAction.FORCE_PUSH_LOCAL, DivergenceAction.ABORT]


def moved_pr_head(host: CodeHost, pr_number: int, expected_sha: str) -> Optional[str]:
    """The PR's current head if it differs from expected_sha, else None.

    An unreadable head counts as unchanged.
    """
    try:
        current = host.get_pr_head(pr_number)
    except RemoteReadError:
        console.print("[yellow]Could not fetch PR head SHA; skipping verification[/yellow]")
        return None
    if current.startswith(expected_sha):
        return None
    return current


def stash_safe_integrate(
    git: GitOperations,
    upstream: str,
    method: str = "rebase",
    merge_message: Optional[str] = None,
) -> IntegrationResult:
    """Rebase onto, or merge in, upstream without losing uncommitted work.

    A dirty tree is stashed first. On conflict the operation is aborted
    and the stash restored, index included, so the tree is exactly as it
    was before. On success the stash is popped; if that pop conflicts the
    half-applied pop is reset, the stash entry is kept and the result
    carries stash_preserved so the caller stops instead of pushing.
    """
    if method not in ("rebase", "merge"):
        raise ValueError(f"Unknown integration method: {method}")

    stashed = False
    if git.is_dirty():
        console.print(f"[dim]Stashing uncommitted changes before {method}...[/dim]")
        stashed = git.stash_push(f"issue-pipeline: auto-stash before {method}")

    try:
        if method == "rebase":
            integrated = git.rebase(upstream)
        else:
            integrated = git.merge(upstream, merge_message)
    except GitCommandError:
        if stashed:
            git.stash_pop(index=True)
        raise

    if not integrated:
        conflicted = git.conflicted_files()
        console.print(f"[red]{method.capitalize()} onto {upstream} stopped on conflicts[/red]")
        for path in conflicted:
            console.print(f"  [dim]{path}[/dim]")
        if method == "rebase":
            git.rebase_abort()
        else:
            git.merge_abort()
        if stashed and not git.stash_pop(index=True):
            git.reset_merge()
            console.print("[yellow]Could not restore auto-stash; it is kept in the stash list[/yellow]")
            return IntegrationResult(success=False, conflicted_files=conflicted, stash_preserved=True)
        return IntegrationResult(success=False, conflicted_files=conflicted)

    if stashed and not git.stash_pop(index=True):
        git.reset_merge()
        console.print(
            "[yellow]Uncommitted changes conflict with the integrated branch; "
            "they are kept in the stash (run 'git stash pop' manually)[/yellow]"
        )
        return IntegrationResult(success=True, stash_preserved=True)
    return IntegrationResult(success=True)


class DivergenceClassifier:
    """Detects, classifies and resolves divergence of one checkout's branch."""

    def __init__(
        self,
        git: GitOperations,
        config: Optional[PipelineConfig] = None,
        classifier: Optional[CommitClassifier] = None,
        host: Optional[CodeHost] = None,
        notifier: Optional[NotificationCenter] = None,
    ):
        self.git = git
        self.config = config or PipelineConfig()
        self.classifier = classifier
        self.host = host
        self.notifier = notifier

    @property
    def remote(self) -> str:
        return self.config.remote

    def _remote_ref(self, branch: str) -> str:
        return f"refs/remotes/{self.remote}/{branch}"

    # =========================================================================
    # Detection
    # =========================================================================

    def detect(self, branch: str) -> Optional[DivergenceReport]:
        """Compare the local branch with its remote counterpart.

        Returns None when there is nothing foreign on the remote (equal
        heads, local merely ahead) or when the remote cannot be read.
        """
        if not self.git.fetch(self.remote, branch):
            console.print(f"[yellow]Could not fetch {self.remote}/{branch}; assuming no divergence[/yellow]")
            return None

        local_head = self.git.rev_parse("HEAD")
        remote_head = self.git.rev_parse(self._remote_ref(branch))
        if not local_head or not remote_head or local_head == remote_head:
            return None

        foreign = self.git.commits_between(local_head, remote_head)
        if not foreign:
            return None

        report = DivergenceReport(
            branch=branch,
            local_head=local_head,
            remote_head=remote_head,
            foreign_commits=foreign,
            diff_summary=self.git.diff_stat(local_head, remote_head),
            local_ahead=self.git.count_commits(remote_head, local_head) or 0,
        )
        if report.is_three_way:
            # Local and remote both moved; handled like any other divergence
            console.print(
                f"[yellow]Three-way divergence on {branch}: {report.local_ahead} local "
                f"commit(s) ahead and {len(foreign)} foreign commit(s) on the remote[/yellow]"
            )
        return report

    # =========================================================================
    # Classification
    # =========================================================================

    def classify(
        self,
        report: DivergenceReport,
        issue_context: str = "",
        mode: WorkflowMode = WorkflowMode.ATTENDED,
    ) -> Classification:
        """Classify the foreign commits; first matching rule wins."""
        classification = self._classify(report, issue_context, mode)
        report.classification = classification
        return classification

    def _classify(self, report: DivergenceReport, issue_context: str, mode: WorkflowMode) -> Classification:
        commits = report.foreign_commits
        mainline = self._remote_ref(self.config.mainline)
        self.git.fetch(self.remote, self.config.mainline)

        not_on_mainline = [c for c in commits if not self.git.is_ancestor(c.sha, mainline)]
        if not not_on_mainline:
            console.print("[dim]All foreign commits already exist on mainline (branch sync)[/dim]")
            return Classification.TRIVIAL

        if all(is_mainline_sync_merge(c.message) for c in not_on_mainline):
            console.print(
                f"[dim]Mainline sync: {len(not_on_mainline)} merge commit(s), rest from mainline[/dim]"
            )
            return Classification.TRIVIAL

        if all(is_automation_commit(c.message) for c in commits):
            console.print(f"[dim]All {len(commits)} foreign commit(s) match automation patterns[/dim]")
            return Classification.RELATED

        if self.classifier is None:
            console.print("[yellow]No commit classifier configured; using safe default[/yellow]")
            return fallback_classification(mode)

        console.print("[blue]Classifying foreign commits...[/blue]")
        try:
            return self.classifier.classify(issue_context, commits, report.diff_summary)
        except ClassificationError as e:
            console.print(f"[yellow]Classification failed ({e}); using safe default[/yellow]")
            return fallback_classification(mode)

    def is_reviewed(self, report: DivergenceReport, assessment_time: Optional[int]) -> bool:
        """True when an assessment was written after every foreign commit."""
        return is_strictly_after(assessment_time, report.latest_foreign_time)

    def assessment_time(self, pr_number: Optional[int]) -> Optional[int]:
        if pr_number is None or self.host is None:
            return None
        try:
            comments = self.host.get_pr_comments(pr_number)
        except RemoteReadError as e:
            console.print(f"[yellow]Could not read assessment for PR #{pr_number}: {e}[/yellow]")
            return None
        assessment = latest_assessment(comments, self.config.assessment_marker)
        return assessment.created_at if assessment else None

    # =========================================================================
    # Resolution
    # =========================================================================

    def resolve(
        self,
        report: DivergenceReport,
        classification: Classification,
        reviewed: bool,
        mode: WorkflowMode,
        prompter: Optional[Prompter] = None,
    ) -> Resolution:
        """Apply the decision matrix to a classified divergence."""
        actions = decide(classification, reviewed, mode)

        if actions == [DivergenceAction.AUTO_REBASE]:
            console.print(f"[blue]Auto-rebasing ({classification.value})...[/blue]")
            return self.rebase_and_push(report, mode, prompter)

        if actions == [DivergenceAction.BLOCK]:
            reason = f"{classification.value} foreign commits on {report.branch}"
            if classification == Classification.RELATED:
                reason += " have not been reviewed"
            console.print(f"[red]Blocked: {reason}[/red]")
            return Resolution.blocked(reason)

        self._show(report, classification)
        prompter = prompter or ConsolePrompter()
        labels = [ACTION_LABELS[a] for a in actions]
        choice = prompter.choose(
            f"Remote branch {report.branch} has {len(report.foreign_commits)} "
            f"{classification.value} foreign commit(s).",
            labels,
            default=labels[0],
        )
        action = actions[labels.index(choice)]

        if action == DivergenceAction.PULL_AND_REREVIEW:
            result = self.rebase_and_push(report, mode, prompter)
            if result.kind == ResolutionKind.RESOLVED and result.action == "rebase":
                return Resolution.needs_rereview(action.value)
            return result
        if action == DivergenceAction.PULL_WITHOUT_REVIEW:
            return self.rebase_and_push(report, mode, prompter)
        if action == DivergenceAction.FORCE_PUSH_LOCAL:
            return self.force_push(report)
        return Resolution.blocked("Workflow aborted by user", action=DivergenceAction.ABORT.value)

    def _show(self, report: DivergenceReport, classification: Classification) -> None:
        commits = "\n".join(f"  {c.oneline()}" for c in report.foreign_commits)
        body = f"Foreign commits ({classification.value}):\n{commits}"
        if report.diff_summary:
            body += f"\n\nDiff summary:\n{report.diff_summary}"
        console.print(Panel(body, title=f"Divergence on {report.branch}", border_style="yellow"))

    def rebase_and_push(
        self,
        report: DivergenceReport,
        mode: WorkflowMode,
        prompter: Optional[Prompter] = None,
    ) -> Resolution:
        """Rebase local work onto the remote branch and push it."""
        upstream = f"{self.remote}/{report.branch}"
        result = stash_safe_integrate(self.git, upstream, method="rebase")

        if not result.success:
            files = ", ".join(result.conflicted_files) or "unknown files"
            reason = f"Rebase onto {upstream} conflicted in {files}"
            if mode == WorkflowMode.UNATTENDED:
                return Resolution.blocked(reason)
            prompter = prompter or ConsolePrompter()
            options = [ACTION_LABELS[DivergenceAction.FORCE_PUSH_LOCAL], ACTION_LABELS[DivergenceAction.ABORT]]
            choice = prompter.choose(f"{reason}. The rebase was aborted.", options, default=options[1])
            if choice == options[0]:
                return self.force_push(report)
            return Resolution.blocked(reason, action=DivergenceAction.ABORT.value)

        if result.stash_preserved:
            return Resolution.blocked(
                f"Rebased onto {upstream}, but uncommitted work conflicts with it and is kept in the stash"
            )

        if not self.git.push(self.remote, report.branch):
            return Resolution.blocked(f"Push of {report.branch} failed after rebase")

        console.print(f"[green]Rebased onto {upstream} and pushed[/green]")
        return Resolution.resolved("rebase")

    def force_push(self, report: DivergenceReport) -> Resolution:
        """Overwrite the remote branch, only if it still points where it did at detection."""
        lease = f"{report.branch}:{report.remote_head}"
        if not self.git.push(self.remote, report.branch, force_with_lease=lease):
            return Resolution.blocked(
                f"Force-push refused: {self.remote}/{report.branch} changed after detection"
            )
        console.print(f"[green]Force-pushed local {report.branch}[/green]")
        return Resolution.resolved("force_push")

    def handle_push_rejection(
        self,
        branch: str,
        issue: int,
        mode: WorkflowMode,
        pr_number: Optional[int] = None,
        prompter: Optional[Prompter] = None,
        issue_context: str = "",
    ) -> Resolution:
        """Full handling of a rejected push: detect, classify, resolve, notify."""
        report = self.detect(branch)
        if report is None:
            return Resolution.blocked(f"Push of {branch} was rejected but no divergence was detected")

        console.print(
            f"[yellow]Remote branch has {len(report.foreign_commits)} foreign commit(s):[/yellow]"
        )
        for commit in report.foreign_commits:
            console.print(f"  [dim]{commit.oneline()}[/dim]")

        if not issue_context and self.host is not None:
            try:
                issue_context = self.host.get_issue(issue).context()
            except RemoteReadError:
                issue_context = f"Issue #{issue}"

        classification = self.classify(report, issue_context, mode)
        reviewed = False
        if classification == Classification.RELATED:
            reviewed = self.is_reviewed(report, self.assessment_time(pr_number))

        resolution = self.resolve(report, classification, reviewed, mode, prompter)
        if resolution.kind == ResolutionKind.BLOCKED and resolution.action != DivergenceAction.ABORT.value:
            if self.notifier is not None:
                self.notifier.notify_divergence(report, issue, resolution.reason or "blocked")
        return resolution

    def verify_pr_head(self, pr_number: int, expected_sha: str) -> bool:
        """Pre-merge guard: the PR head must still be the assessed commit.

        A host read failure does not block the merge.
        """
        if self.host is None:
            return True
        current = moved_pr_head(self.host, pr_number, expected_sha)
        if current is not None:
            console.print("[yellow]PR head has changed since assessment[/yellow]")
            console.print(f"  [dim]Expected: {expected_sha[:12]}[/dim]")
            console.print(f"  [dim]Current:  {current[:12]}[/dim]")
            return False
        return True
