"""Per-issue phase loop.

The pipeline never remembers where an issue is. Every turn of the loop asks
the StateResolver for the phase, performs the one step that phase calls for,
and asks again. Gates are consulted before anything changes state; push
rejections go to the DivergenceClassifier; branch drift goes to the
StaleBranchManager.
"""

from pathlib import Path
from typing import Callable, Optional, Union

from rich.console import Console
from rich.panel import Panel

from ..blockers import BlockerGate, format_hints, make_blocker
from ..divergence import DivergenceClassifier
from ..errors import GitCommandError, PipelineError, RemoteReadError
from ..git_manager import GitManager
from ..models import (
    BlockerEvent, BlockerType, GateParams, GatePass, GateStage, Issue, IssueResult,
    IssueStatus, Phase, PhaseResult, PipelineConfig, PullRequest, ResolutionKind,
    StaleCheckResult, StaleOutcome, WorkflowMode
)
from ..notes import NotesDocument
from ..prompts import ConsolePrompter, FixedAnswerPrompter
from ..protocols import CodeHost, CommitClassifier, GitOperations, PipelineSteps, Prompter
from ..session_tracker import SessionTracker
from ..stale_branch import StaleBranchManager
from ..state_resolver import StateResolver, find_pr_for_issue, latest_review
from .recovery import InterruptHandler

console = Console()

# Upper bound on phase transitions for one issue
MAX_PHASE_STEPS = 40

# Consecutive unreadable-comment results before giving up
MAX_UNREADABLE = 2


class IssuePipeline:
    """Drives one issue from no PR to merged."""

    def __init__(
        self,
        project_root: Path,
        config: PipelineConfig,
        tracker: SessionTracker,
        host: CodeHost,
        gate: BlockerGate,
        steps: PipelineSteps,
        mode: WorkflowMode = WorkflowMode.ATTENDED,
        prompter: Optional[Prompter] = None,
        classifier: Optional[CommitClassifier] = None,
        resolver: Optional[StateResolver] = None,
        stale: Optional[StaleBranchManager] = None,
        interrupt: Optional[InterruptHandler] = None,
        notes: Optional[NotesDocument] = None,
        git_factory: Callable[[Path], GitOperations] = GitManager,
    ):
        self.project_root = Path(project_root)
        self.config = config
        self.tracker = tracker
        self.host = host
        self.gate = gate
        self.steps = steps
        self.mode = mode
        if prompter is None:
            prompter = ConsolePrompter() if mode == WorkflowMode.ATTENDED else FixedAnswerPrompter()
        self.prompter = prompter
        self.classifier = classifier
        self.git_factory = git_factory
        self.resolver = resolver or StateResolver(config, host, git_factory)
        self.stale = stale or StaleBranchManager(project_root, config, tracker, host, git_factory)
        self.interrupt = interrupt
        self.notes = notes or NotesDocument(self.project_root / config.data_dir)
        self._worktree: Optional[Path] = None

    # =========================================================================
    # Gates and blockers
    # =========================================================================

    def _escalate(
        self,
        event: BlockerEvent,
        issue: int,
        stage: Optional[GateStage] = None,
        pr_number: Optional[int] = None,
        worktree: Optional[Path] = None,
        decided: bool = False,
    ) -> bool:
        """Hand a blocker to the gate. True if a human approved continuing.

        decided means a human already chose to stop at a decision point, so
        there is nothing left to ask.
        """
        if decided:
            self.tracker.snapshot(issue, event.type.value, worktree)
            return False
        return self.gate.handle_blocker(
            event, issue, self.mode, stage, self.prompter, pr_number,
            str(worktree) if worktree is not None else None,
        )

    def _check_gate(
        self,
        stage: GateStage,
        params: GateParams,
        worktree: Optional[Path] = None,
    ) -> Union[GatePass, BlockerEvent]:
        """Evaluate a gate; an approved blocker counts as a pass."""
        result = self.gate.evaluate(stage, params)
        if isinstance(result, GatePass):
            return result
        if self._escalate(result, params.issue_number, stage, params.pr_number, worktree):
            return GatePass(stage=stage)
        return result

    def _result(
        self,
        issue: int,
        status: IssueStatus,
        message: str,
        pr: Optional[PullRequest] = None,
        blocker: Optional[BlockerEvent] = None,
        phase: Optional[Phase] = None,
    ) -> IssueResult:
        color = {IssueStatus.COMPLETED: "green", IssueStatus.BLOCKED: "yellow"}.get(status, "red")
        console.print(f"[{color}]Issue #{issue} {status.value}: {message}[/{color}]")
        return IssueResult(
            issue=issue,
            status=status,
            pr_number=pr.number if pr else None,
            blocker=blocker,
            final_phase=phase,
            message=message,
        )

    # =========================================================================
    # Git helpers
    # =========================================================================

    def _commit_work(self, git: GitOperations, issue: Issue, message: str,
                     pr: Optional[PullRequest], worktree: Path) -> Optional[BlockerEvent]:
        """Commit whatever the agent left uncommitted, behind the pre-commit gate."""
        if not git.is_dirty():
            return None
        conflicted = git.conflicted_files()
        if conflicted:
            event = make_blocker(
                BlockerType.INTEGRATION_CONFLICT,
                "Refusing to commit unresolved conflicts in " + ", ".join(conflicted),
            )
            self._escalate(
                event, issue.number, None, pr.number if pr else None, worktree,
                decided=self.mode == WorkflowMode.ATTENDED,
            )
            return event
        params = GateParams(issue_number=issue.number, pr_number=pr.number if pr else None)
        result = self._check_gate(GateStage.PRE_COMMIT, params, worktree)
        if isinstance(result, BlockerEvent):
            return result
        git.stage_all()
        git.commit(message)
        return None

    def _push(self, git: GitOperations, issue: Issue, pr: Optional[PullRequest],
              worktree: Path) -> Optional[BlockerEvent]:
        """Push the branch; a rejection is handed to the divergence handling."""
        branch = git.current_branch()
        if git.push(self.config.remote, branch):
            return None

        console.print(f"[yellow]Push of {branch} rejected; checking for divergence...[/yellow]")
        divergence = DivergenceClassifier(
            git, self.config, self.classifier, self.host, self.gate.notifier
        )
        resolution = divergence.handle_push_rejection(
            branch,
            issue.number,
            self.mode,
            pr_number=pr.number if pr else None,
            prompter=self.prompter,
            issue_context=issue.context(),
        )
        if resolution.kind == ResolutionKind.NEEDS_REREVIEW:
            console.print("[blue]Pulled foreign commits; re-entering review[/blue]")
        if resolution.kind != ResolutionKind.BLOCKED:
            return None

        event = make_blocker(BlockerType.DIVERGENCE, resolution.reason or f"{branch} diverged from its remote")
        # Attended runs already asked at the divergence menu
        self._escalate(
            event, issue.number, None, pr.number if pr else None, worktree,
            decided=self.mode == WorkflowMode.ATTENDED,
        )
        return event

    def _check_stale(self, worktree: Path, pr: Optional[PullRequest],
                     issue: Issue) -> Union[StaleCheckResult, BlockerEvent]:
        result = self.stale.check(worktree, pr, issue.number, self.mode, self.prompter)
        if result.outcome != StaleOutcome.BLOCKED:
            return result
        reason = result.reason or "Branch is too far behind mainline"
        blocker_type = BlockerType.INTEGRATION_CONFLICT if "conflict" in reason.lower() else BlockerType.STALE_BRANCH
        event = make_blocker(blocker_type, reason)
        self._escalate(
            event, issue.number, None, pr.number if pr else None, worktree,
            decided=self.mode == WorkflowMode.ATTENDED,
        )
        return event

    def _find_pr(self, issue: int, known: Optional[PullRequest]) -> Optional[PullRequest]:
        """The issue's open PR. Raises RemoteReadError when nothing is known."""
        try:
            pr = find_pr_for_issue(issue, self.host.list_open_prs())
        except RemoteReadError:
            if known is None:
                raise
            console.print(f"[yellow]Could not list pull requests; using PR #{known.number}[/yellow]")
            return known
        # A PR opened moments ago may not be listed yet
        return pr or known

    # =========================================================================
    # Main loop
    # =========================================================================

    async def process(self, issue_number: int) -> IssueResult:
        """Run an issue through every remaining phase."""
        console.print(Panel(f"Processing issue #{issue_number} ({self.mode.value})", border_style="blue"))
        self.tracker.set_current_issue(issue_number)
        self.resolver.invalidate()

        session = self._check_gate(GateStage.SESSION_CHECK, GateParams(issue_number=issue_number))
        if isinstance(session, BlockerEvent):
            return self._result(issue_number, IssueStatus.BLOCKED, session.details, blocker=session)
        start = self._check_gate(GateStage.PRE_START, GateParams(issue_number=issue_number))
        if isinstance(start, BlockerEvent):
            return self._result(issue_number, IssueStatus.BLOCKED, start.details, blocker=start)

        try:
            issue = self.host.get_issue(issue_number)
        except RemoteReadError as e:
            return self._result(issue_number, IssueStatus.FAILED, f"Could not read issue: {e}")

        try:
            return await self._run_phases(issue)
        except (GitCommandError, PipelineError) as e:
            self.tracker.snapshot(issue_number, "error", self._worktree)
            return self._result(issue_number, IssueStatus.FAILED, str(e))

    async def _run_phases(self, issue: Issue) -> IssueResult:
        number = issue.number
        worktree = self._start_worktree(issue)
        pr: Optional[PullRequest] = None
        fix_cycles = 0
        unreadable = 0
        result = PhaseResult(phase=Phase.NOT_STARTED)

        for _ in range(MAX_PHASE_STEPS):
            if self.interrupt is not None and self.interrupt.is_shutdown_requested():
                self.interrupt.graceful_shutdown("interrupted")
                return self._result(number, IssueStatus.INTERRUPTED, "Stopped on request", pr, phase=result.phase)

            try:
                pr = self._find_pr(number, pr)
            except RemoteReadError as e:
                return self._result(number, IssueStatus.FAILED, f"Could not determine PR state: {e}")

            result = self.resolver.phase(number, pr, worktree=worktree)
            console.print(f"[blue]#{number}: {result.label}[/blue]")
            git = self.git_factory(worktree)

            if result.phase == Phase.NEEDS_REVIEW:
                # Comments were unreadable; retry before giving up
                unreadable += 1
                if unreadable >= MAX_UNREADABLE:
                    return self._result(number, IssueStatus.FAILED, "Could not read PR comments", pr, phase=result.phase)
                self.resolver.invalidate(pr.number)
                continue
            unreadable = 0

            if result.phase == Phase.NOT_STARTED:
                if not await self.steps.develop(issue, worktree):
                    return self._result(number, IssueStatus.FAILED, "Agent could not implement the issue")
                blocked = (
                    self._commit_work(git, issue, f"feat: implement #{number}", None, worktree)
                    or self._push(git, issue, None, worktree)
                )
                if blocked:
                    return self._result(number, IssueStatus.BLOCKED, blocked.details, blocker=blocked)
                pr = self.steps.open_pr(issue, worktree)
                if pr is None:
                    return self._result(number, IssueStatus.FAILED, "Could not open a PR")

            elif result.phase in (Phase.DEV_PR, Phase.REVIEW_STALE):
                blocked = (
                    self._commit_work(git, issue, f"chore: work in progress on #{number}", pr, worktree)
                    or self._push(git, issue, pr, worktree)
                )
                if blocked:
                    return self._result(number, IssueStatus.BLOCKED, blocked.details, pr, blocked, result.phase)

                stale = self._check_stale(worktree, pr, issue)
                if isinstance(stale, BlockerEvent):
                    return self._result(number, IssueStatus.BLOCKED, stale.details, pr, stale, result.phase)
                if stale.outcome == StaleOutcome.RESTARTED:
                    worktree, pr, fix_cycles = self._restart(issue), None, 0
                    continue

                guidance = format_hints(self.gate.hints_for_pr(pr.number))
                if not await self.steps.review(issue, pr, worktree, guidance):
                    return self._result(number, IssueStatus.FAILED, "Review could not be completed", pr, phase=result.phase)

            elif result.phase == Phase.NEEDS_ASSESSMENT:
                if not await self.steps.assess(issue, pr, worktree):
                    return self._result(number, IssueStatus.FAILED, "Assessment could not be completed", pr, phase=result.phase)

            elif result.phase == Phase.NEEDS_FIXES:
                fix_cycles += 1
                if fix_cycles > self.config.max_fix_cycles:
                    return self._result(
                        number, IssueStatus.FAILED,
                        f"Findings remain after {self.config.max_fix_cycles} fix cycles", pr, phase=result.phase
                    )
                if not await self.steps.fix(issue, pr, worktree, result.actionable_count):
                    return self._result(number, IssueStatus.FAILED, "Fixes could not be applied", pr, phase=result.phase)
                blocked = (
                    self._commit_work(git, issue, f"fix: address review findings for #{number}", pr, worktree)
                    or self._push(git, issue, pr, worktree)
                )
                if blocked:
                    return self._result(number, IssueStatus.BLOCKED, blocked.details, pr, blocked, result.phase)

            elif result.phase == Phase.READY_TO_MERGE:
                stale = self._check_stale(worktree, pr, issue)
                if isinstance(stale, BlockerEvent):
                    return self._result(number, IssueStatus.BLOCKED, stale.details, pr, stale, result.phase)
                if stale.outcome == StaleOutcome.RESTARTED:
                    worktree, pr, fix_cycles = self._restart(issue), None, 0
                    continue
                if stale.action == "merged":
                    # Mainline came in after the assessment; assess the new head
                    if not await self.steps.assess(issue, pr, worktree):
                        return self._result(number, IssueStatus.FAILED, "Reassessment could not be completed", pr)
                    self.resolver.invalidate(pr.number)
                    continue
                return self._merge(issue, pr, worktree, result)

            if pr is not None:
                self.resolver.invalidate(pr.number)

        return self._result(number, IssueStatus.FAILED, "Too many phase transitions", pr, phase=result.phase)

    def _start_worktree(self, issue: Issue) -> Path:
        worktree = self.steps.prepare_worktree(issue)
        self._worktree = worktree
        self.tracker.set_current_worktree(worktree)
        if self.interrupt is not None:
            self.interrupt.set_current_context(issue.number, worktree, self.mode)
        self.notes.set_current_work(issue.number, issue.title, f"Worktree: {worktree}")
        return worktree

    def _restart(self, issue: Issue) -> Path:
        """Fresh worktree after the previous attempt was thrown away."""
        console.print(f"[blue]Restarting #{issue.number} from current mainline[/blue]")
        self.resolver.invalidate()
        return self._start_worktree(issue)

    def _merge(self, issue: Issue, pr: PullRequest, worktree: Path, result: PhaseResult) -> IssueResult:
        params = GateParams(
            issue_number=issue.number,
            pr_number=pr.number,
            expected_head=result.assessment_head,
        )
        gate = self._check_gate(GateStage.PRE_MERGE, params, worktree)
        if isinstance(gate, BlockerEvent):
            return self._result(issue.number, IssueStatus.BLOCKED, gate.details, pr, gate, result.phase)
        for hint in gate.hints:
            console.print(f"[dim]Hint ({hint.category}): {hint.guidance}[/dim]")

        if not self.steps.merge(pr):
            return self._result(issue.number, IssueStatus.FAILED, "Merge failed", pr, phase=result.phase)

        self._after_merge(issue, pr, worktree)
        return self._result(issue.number, IssueStatus.COMPLETED, f"PR #{pr.number} merged", pr, phase=result.phase)

    def _after_merge(self, issue: Issue, pr: PullRequest, worktree: Path) -> None:
        """Record the merge in the notes and remove the issue's worktree and branch."""
        try:
            review = latest_review(self.host.get_pr_comments(pr.number), self.config.review_marker)
        except RemoteReadError:
            review = None
        self.notes.add_security_findings(pr.number, pr.title, review.body if review else "")
        self.notes.archive_completed(pr.number, pr.title, f"Closes #{issue.number}")
        self.notes.clear_current_work()

        root = self.git_factory(self.project_root)
        if root.remove_worktree(worktree):
            console.print(f"[dim]Removed worktree: {worktree}[/dim]")
        root.delete_branch(pr.branch)
        root.delete_remote_branch(self.config.remote, pr.branch)

        self.tracker.clear_snapshot(issue.number)
        self.tracker.set_current_issue(None)
        self.tracker.set_current_worktree(None)
