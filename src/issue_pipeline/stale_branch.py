"""Drift from mainline.

A branch a few commits behind mainline has mainline merged in (stash-safe,
plain push). A branch at or past the threshold is cheaper to redo than to
integrate: unattended runs close the PR and delete everything belonging to
the attempt so the issue starts over; attended runs are asked. Final merges
are squashed, so merge commits on the branch never reach mainline history.

The same cleanup backs undo, which a human runs to throw away an unmerged
attempt. Merged work is never undone.
"""

from pathlib import Path
from typing import Callable, Optional

from rich.console import Console
from rich.panel import Panel

from .divergence import stash_safe_integrate
from .errors import PipelineError, UndoRefusedError
from .git_manager import GitManager
from .models import (
    PipelineConfig, PRState, PullRequest, StaleCheckResult, StaleOutcome, UndoPlan, WorkflowMode
)
from .notes import CURRENT_WORK, NotesDocument
from .prompts import ConsolePrompter
from .protocols import CodeHost, GitOperations, Prompter
from .session_tracker import SessionTracker
from .state_resolver import find_pr_for_issue
from .timestamps import format_epoch
from .worktrees import branch_for_issue, worktree_base

console = Console()

RESTART = "Close PR and restart fresh (recommended)"
MERGE = "Merge mainline into branch"
CONTINUE_UNMERGED = "Continue without merging mainline (not recommended)"
ABORT = "Abort"


class StaleBranchManager:
    """Measures and resolves how far a worktree's branch is behind mainline."""

    def __init__(
        self,
        project_root: Path,
        config: Optional[PipelineConfig] = None,
        tracker: Optional[SessionTracker] = None,
        host: Optional[CodeHost] = None,
        git_factory: Callable[[Path], GitOperations] = GitManager,
    ):
        self.project_root = Path(project_root)
        self.config = config or PipelineConfig()
        self.tracker = tracker
        self.host = host
        self.git_factory = git_factory

    @property
    def mainline_ref(self) -> str:
        return f"{self.config.remote}/{self.config.mainline}"

    def commits_behind(self, git: GitOperations) -> int:
        """Mainline commits not reachable from HEAD, counted from the merge base."""
        base = git.merge_base("HEAD", self.mainline_ref)
        if base is None:
            return 0
        return git.count_commits(base, self.mainline_ref) or 0

    def check(
        self,
        worktree: Path,
        pr: Optional[PullRequest],
        issue: int,
        mode: WorkflowMode,
        prompter: Optional[Prompter] = None,
    ) -> StaleCheckResult:
        """Check a worktree's branch and bring it up to date if needed.

        RESTARTED means the PR, branch, worktree and snapshot are gone and the
        caller must reset all per-issue state.
        """
        git = self.git_factory(worktree)
        branch = git.current_branch()
        if not branch or branch in (self.config.mainline, "main", "master"):
            return StaleCheckResult(outcome=StaleOutcome.CONTINUE, action="not_feature_branch")

        console.print("[blue]Checking branch freshness against mainline...[/blue]")
        if not git.fetch(self.config.remote, self.config.mainline):
            console.print(f"[yellow]Could not fetch {self.mainline_ref}; skipping stale branch check[/yellow]")
            return StaleCheckResult(outcome=StaleOutcome.CONTINUE, action="fetch_failed")

        behind = self.commits_behind(git)
        threshold = self.config.stale_branch_threshold
        if behind == 0:
            console.print("[dim]Branch is up to date with mainline[/dim]")
            return StaleCheckResult(outcome=StaleOutcome.CONTINUE, action="up_to_date")

        if behind < threshold:
            console.print(
                f"[blue]Branch is {behind} commit(s) behind mainline "
                f"(threshold: {threshold}); merging mainline[/blue]"
            )
            return self.merge_mainline(git, branch, behind, mode, prompter)

        console.print(f"[yellow]Branch is {behind} commit(s) behind mainline (threshold: {threshold})[/yellow]")
        if mode == WorkflowMode.UNATTENDED:
            self.close_and_cleanup(git, worktree, pr, issue, branch, behind)
            return StaleCheckResult(outcome=StaleOutcome.RESTARTED, commits_behind=behind, action="restart")

        self._report(git, branch, pr, behind)
        prompter = prompter or ConsolePrompter()
        choice = prompter.choose(
            "This branch is significantly behind mainline.",
            [RESTART, MERGE, CONTINUE_UNMERGED, ABORT],
            default=RESTART,
        )
        if choice == RESTART:
            self.close_and_cleanup(git, worktree, pr, issue, branch, behind)
            return StaleCheckResult(outcome=StaleOutcome.RESTARTED, commits_behind=behind, action="restart")
        if choice == MERGE:
            return self.merge_mainline(git, branch, behind, mode, prompter)
        if choice == CONTINUE_UNMERGED:
            console.print("[yellow]Continuing without merging mainline; code may be based on stale mainline[/yellow]")
            return StaleCheckResult(outcome=StaleOutcome.CONTINUE, commits_behind=behind, action="continue_unmerged")
        return StaleCheckResult(
            outcome=StaleOutcome.BLOCKED, commits_behind=behind, action="abort",
            reason="Workflow aborted by user"
        )

    def _report(self, git: GitOperations, branch: str, pr: Optional[PullRequest], behind: int) -> None:
        work = git.commits_between(self.mainline_ref, "HEAD") or []
        last = format_epoch(work[0].authored_at) if work else "unknown"
        lines = [
            f"Branch:        {branch}",
            f"PR:            #{pr.number}" if pr else "PR:            none",
            f"Behind main:   {behind} commits",
            f"Last activity: {last}",
            f"Branch work:   {len(work)} commit(s)",
        ]
        console.print(Panel("\n".join(lines), title="Branch Staleness Report", border_style="blue"))

    def merge_mainline(
        self,
        git: GitOperations,
        branch: str,
        behind: int,
        mode: WorkflowMode,
        prompter: Optional[Prompter] = None,
    ) -> StaleCheckResult:
        """Merge mainline into the branch and push without force."""
        result = stash_safe_integrate(
            git,
            self.mainline_ref,
            method="merge",
            merge_message=f"Merge branch '{self.config.mainline}' into {branch}",
        )
        if result.success and result.stash_preserved:
            return StaleCheckResult(
                outcome=StaleOutcome.BLOCKED, commits_behind=behind, action="merge",
                reason="Merged mainline, but uncommitted work conflicts with it and is kept in the stash"
            )
        if result.success:
            if not git.push(self.config.remote, branch):
                console.print("[red]Push failed after merge[/red]")
                return StaleCheckResult(
                    outcome=StaleOutcome.BLOCKED, commits_behind=behind, action="merge",
                    reason="Push failed after merging mainline"
                )
            console.print("[green]Merged mainline into branch and pushed[/green]")
            return StaleCheckResult(outcome=StaleOutcome.CONTINUE, commits_behind=behind, action="merged")

        reason = "Merge with mainline had conflicts in " + (", ".join(result.conflicted_files) or "unknown files")
        if mode == WorkflowMode.UNATTENDED:
            console.print(f"[red]{reason}; cannot proceed unattended[/red]")
            return StaleCheckResult(
                outcome=StaleOutcome.BLOCKED, commits_behind=behind, action="merge", reason=reason
            )

        prompter = prompter or ConsolePrompter()
        choice = prompter.choose(f"{reason}. The merge was aborted.", [CONTINUE_UNMERGED, ABORT], default=ABORT)
        if choice == CONTINUE_UNMERGED:
            return StaleCheckResult(outcome=StaleOutcome.CONTINUE, commits_behind=behind, action="continue_unmerged")
        return StaleCheckResult(outcome=StaleOutcome.BLOCKED, commits_behind=behind, action="abort", reason=reason)

    def format_close_comment(self, git: GitOperations, behind: int) -> str:
        """Summary posted on a PR closed for staleness."""
        commits = git.commits_between(self.mainline_ref, "HEAD")
        commit_lines = "\n".join(c.oneline() for c in commits) if commits else "(none)"
        files = git.get_changed_files(self.mainline_ref)
        file_lines = "\n".join(files) if files else "(none)"
        return (
            f"Closing: branch is {behind} commits behind {self.config.mainline}.\n\n"
            f"**Work summary:**\n```\n{commit_lines}\n```\n\n"
            f"**Files modified:**\n```\n{file_lines}\n```\n\n"
            f"This branch has diverged too far from {self.config.mainline} for safe integration.\n"
            f"A fresh implementation will be started from current {self.config.mainline}."
        )

    def close_and_cleanup(
        self,
        git: GitOperations,
        worktree: Path,
        pr: Optional[PullRequest],
        issue: int,
        branch: str,
        behind: int,
    ) -> None:
        """Close the PR and remove every trace of the attempt."""
        comment = self.format_close_comment(git, behind) if pr is not None else None
        self._remove_attempt(issue, branch, pr, worktree, comment)
        console.print("[green]Stale branch cleanup complete; restarting fresh[/green]")

    def _remove_attempt(
        self,
        issue: int,
        branch: str,
        pr: Optional[PullRequest],
        worktree: Optional[Path],
        comment: Optional[str],
    ) -> None:
        """Best effort: each step that fails is reported and skipped."""
        if pr is not None and self.host is not None:
            try:
                self.host.close_pr(pr.number, comment)
            except PipelineError as e:
                console.print(f"[yellow]Failed to close PR #{pr.number}: {e}[/yellow]")

        root = self.git_factory(self.project_root)
        if worktree is not None:
            if root.remove_worktree(worktree):
                console.print(f"[dim]Removed worktree: {Path(worktree).name}[/dim]")
            else:
                console.print(f"[yellow]Failed to remove worktree: {worktree}[/yellow]")

        if root.delete_branch(branch):
            console.print(f"[dim]Deleted local branch: {branch}[/dim]")
        if root.delete_remote_branch(self.config.remote, branch):
            console.print(f"[dim]Deleted remote branch: {branch}[/dim]")

        if self.tracker is not None:
            self.tracker.clear_snapshot(issue)

    # =========================================================================
    # Undo
    # =========================================================================

    def plan_undo(self, issue: int) -> UndoPlan:
        """Find what an attempt at the issue left behind.

        Raises:
            UndoRefusedError: When the issue's PR has already been merged
            RemoteReadError: When the host cannot list pull requests
        """
        if self.host is None:
            raise PipelineError("Undo needs a code host")
        prs = self.host.list_prs()
        pr = find_pr_for_issue(issue, [p for p in prs if p.state == PRState.OPEN])
        if pr is None:
            merged = find_pr_for_issue(issue, [p for p in prs if p.state == PRState.MERGED])
            if merged is not None:
                raise UndoRefusedError(
                    f"PR #{merged.number} for issue #{issue} has already been merged; "
                    f"use 'git revert' instead"
                )

        branch = pr.branch if pr is not None else branch_for_issue(issue)
        worktree = worktree_base(self.project_root, self.config) / branch
        if not worktree.is_dir() and self.tracker is not None:
            record = self.tracker.load()
            if record is not None and record.current_issue == issue and record.worktree_path:
                worktree = Path(record.worktree_path)
        return UndoPlan(
            issue=issue,
            branch=branch,
            pr=pr,
            worktree=str(worktree) if worktree.is_dir() else None,
        )

    def describe_undo(self, plan: UndoPlan) -> None:
        lines = [f"Issue #{plan.issue}"]
        lines.append(f"PR: close #{plan.pr.number}" if plan.pr else "PR: none open (skip)")
        lines.append(f"Worktree: remove {plan.worktree}" if plan.worktree else "Worktree: not found (skip)")
        lines.append(f"Branch: delete {plan.branch} locally and on {self.config.remote}")
        lines.append("Session: clear the issue's snapshot and current work")
        console.print(Panel("\n".join(lines), title="Undo", border_style="yellow"))

    def undo(self, plan: UndoPlan) -> None:
        """Remove an unmerged attempt so the issue can be run again from mainline.

        Uncommitted work in the worktree is discarded.
        """
        comment = (
            f"Closing: the attempt at #{plan.issue} was undone. "
            f"The issue stays open and a later run starts fresh from {self.config.mainline}."
        )
        worktree = Path(plan.worktree) if plan.worktree else None
        self._remove_attempt(plan.issue, plan.branch, plan.pr, worktree, comment)

        if self.tracker is not None:
            record = self.tracker.load()
            if record is not None and record.current_issue == plan.issue:
                self.tracker.set_current_issue(None)
                self.tracker.set_current_worktree(None)

        notes = NotesDocument(self.project_root / self.config.data_dir)
        if notes.path.exists() and f"Issue #{plan.issue}:" in notes.section(CURRENT_WORK):
            notes.clear_current_work()
        console.print(f"[green]Undid issue #{plan.issue}[/green]")
