"""Blocking policy.

Two tiers:

- Sensitivity hints flag risky areas of a change (infrastructure,
  migrations, auth, architecture docs, expensive services, the pipeline's
  own automation). They are attached to the next review pass as guidance
  and never stop anything.
- Hard gates are evaluated per workflow stage and return either a GatePass
  or a BlockerEvent. Credential expiry and session limits are
  batch-blocking; every other blocker only stops the current issue.

A human approval of an (issue, blocker type) pair is recorded in the
session ledger and that pair is never raised again for the issue.
"""

import re
import shlex
import subprocess
from functools import partial
from typing import Callable, Optional, Union

from rich.console import Console
from rich.panel import Panel

from .divergence import moved_pr_head
from .errors import RemoteReadError
from .models import (
    BlockerEvent, BlockerType, GateParams, GatePass, GateStage, PipelineConfig,
    SensitivityHint, Urgency, WorkflowMode
)
from .notifications import NotificationCenter
from .prompts import ConsolePrompter
from .protocols import CodeHost, CredentialProbe, Prompter
from .session_tracker import SessionTracker
from .state_resolver import latest_review, parse_severity_counts

console = Console()

GateResult = Union[GatePass, BlockerEvent]
GateHook = Callable[[GateParams], Optional[BlockerEvent]]

URGENCY = {
    BlockerType.CRITICAL_ISSUES: Urgency.HIGH,
    BlockerType.HEAD_CHANGED: Urgency.HIGH,
    BlockerType.DIVERGENCE: Urgency.HIGH,
    BlockerType.INTEGRATION_CONFLICT: Urgency.HIGH,
    BlockerType.SESSION_LIMIT: Urgency.NORMAL,
    BlockerType.CREDENTIALS_EXPIRED: Urgency.NORMAL,
    BlockerType.STALE_BRANCH: Urgency.NORMAL,
}

BATCH_BLOCKING = {BlockerType.CREDENTIALS_EXPIRED, BlockerType.SESSION_LIMIT}

NEXT_STEPS = {
    BlockerType.CREDENTIALS_EXPIRED: "Refresh credentials, then resume the issue.",
    BlockerType.SESSION_LIMIT: "Work was saved. Start a fresh session to continue.",
    BlockerType.CRITICAL_ISSUES: "Fix the critical findings on the branch, push, and wait for a new review.",
    BlockerType.HEAD_CHANGED: "New commits arrived after assessment. Reassess before merging.",
    BlockerType.DIVERGENCE: "Inspect the foreign commits on the remote branch and decide how to integrate them.",
    BlockerType.INTEGRATION_CONFLICT: "Resolve the conflicts by hand in the worktree.",
    BlockerType.STALE_BRANCH: "Merge mainline into the branch or restart the issue.",
}

HINT_GUIDANCE = {
    "infrastructure": "Infrastructure changes: check blast radius, IAM scope and rollback.",
    "database_migration": "Database migration: check reversibility, locking and data loss.",
    "auth_changes": "Auth code changed: review access control and tenant isolation closely.",
    "architectural_docs": "Architecture docs changed: confirm the documented design matches the code.",
    "expensive_services": "Expensive cloud services referenced: confirm the cost is intended.",
    "protected_scripts": "Pipeline automation changed: review for unintended workflow effects.",
}


def urgency_for(blocker_type: BlockerType) -> Urgency:
    return URGENCY.get(blocker_type, Urgency.NORMAL)


def is_batch_blocking(blocker_type: BlockerType) -> bool:
    return blocker_type in BATCH_BLOCKING


def make_blocker(blocker_type: BlockerType, details: str) -> BlockerEvent:
    """Build a BlockerEvent with the urgency and batch flag of its type."""
    return BlockerEvent(
        type=blocker_type,
        urgency=urgency_for(blocker_type),
        details=details,
        batch_blocking=is_batch_blocking(blocker_type),
    )


def format_hints(hints: list[SensitivityHint]) -> str:
    """Guidance text for the next review pass."""
    if not hints:
        return ""
    lines = ["## Areas needing extra attention", ""]
    for hint in hints:
        lines.append(f"- **{hint.category}**: {hint.guidance}")
        for match in hint.matches[:10]:
            lines.append(f"  - `{match}`")
    return "\n".join(lines)


class CommandCredentialProbe:
    """Runs a shell command; exit status 0 means the credentials are valid."""

    def __init__(self, command: str, timeout: int = 30):
        self.command = command
        self.timeout = timeout

    def is_valid(self) -> bool:
        try:
            result = subprocess.run(
                shlex.split(self.command),
                capture_output=True,
                text=True,
                timeout=self.timeout,
                check=False
            )
        except (OSError, subprocess.TimeoutExpired):
            return False
        return result.returncode == 0


class BlockerGate:
    """Evaluates sensitivity hints and per-stage hard gates."""

    def __init__(
        self,
        config: Optional[PipelineConfig] = None,
        tracker: Optional[SessionTracker] = None,
        credential_probe: Optional[CredentialProbe] = None,
        host: Optional[CodeHost] = None,
        notifier: Optional[NotificationCenter] = None,
    ):
        self.config = config or PipelineConfig()
        self.tracker = tracker
        self.credential_probe = credential_probe or CommandCredentialProbe(
            self.config.credential_probe_command
        )
        self.host = host
        self.notifier = notifier
        self._hooks: dict[GateStage, list[GateHook]] = {}

    def register_hook(self, stage: GateStage, hook: GateHook) -> None:
        """Add an extra gate for a stage (pre-commit has none by default)."""
        self._hooks.setdefault(stage, []).append(hook)

    # =========================================================================
    # Sensitivity hints
    # =========================================================================

    def sensitivity_hints(self, files: list[str], diff: str = "") -> list[SensitivityHint]:
        """Informational matches against changed paths and added diff lines."""
        patterns = self.config.blocker_patterns
        hints = []

        def path_hint(category: str, pattern: str, exclude: Optional[str] = None) -> None:
            regex = re.compile(pattern)
            excluded = re.compile(exclude) if exclude else None
            matches = [
                f for f in files
                if regex.search(f) and not (excluded and excluded.search(f))
            ]
            if matches:
                hints.append(SensitivityHint(
                    category=category, matches=matches, guidance=HINT_GUIDANCE[category]
                ))

        path_hint("infrastructure", patterns.infrastructure_paths)
        path_hint("database_migration", patterns.migration_paths)
        path_hint("auth_changes", patterns.auth_paths, patterns.auth_excluded_paths)
        path_hint("architectural_docs", patterns.doc_paths)

        if diff:
            added = "\n".join(
                line[1:] for line in diff.splitlines()
                if line.startswith("+") and not line.startswith("+++")
            )
            services = sorted({
                m.group(0).lower()
                for m in re.finditer(patterns.expensive_services, added, re.IGNORECASE)
            })
            if services:
                hints.append(SensitivityHint(
                    category="expensive_services",
                    matches=services,
                    guidance=HINT_GUIDANCE["expensive_services"],
                ))

        protected = [f for f in files if any(p in f for p in patterns.protected_scripts)]
        if protected:
            hints.append(SensitivityHint(
                category="protected_scripts",
                matches=protected,
                guidance=HINT_GUIDANCE["protected_scripts"],
            ))
        return hints

    def hints_for_pr(self, pr_number: int) -> list[SensitivityHint]:
        """Hints for a PR read from the host; no hints when the host cannot be read."""
        if self.host is None:
            return []
        try:
            files = self.host.get_pr_files(pr_number)
            diff = self.host.get_pr_diff(pr_number)
        except RemoteReadError as e:
            console.print(f"[yellow]Could not read PR #{pr_number} for sensitivity hints: {e}[/yellow]")
            return []
        return self.sensitivity_hints(files, diff)

    # =========================================================================
    # Hard gates
    # =========================================================================

    def _credentials(self, during: bool = False) -> Optional[BlockerEvent]:
        if self.config.skip_credential_check:
            return None
        if self.credential_probe.is_valid():
            return None
        when = "during processing" if during else "before starting"
        return make_blocker(BlockerType.CREDENTIALS_EXPIRED, f"Credentials are expired ({when})")

    def _critical_findings(self, params: GateParams) -> Optional[BlockerEvent]:
        body = params.review_body
        if body is None and self.host is not None and params.pr_number is not None:
            try:
                review = latest_review(
                    self.host.get_pr_comments(params.pr_number), self.config.review_marker
                )
            except RemoteReadError as e:
                return make_blocker(
                    BlockerType.CRITICAL_ISSUES,
                    f"Review on PR #{params.pr_number} could not be read ({e}); "
                    "critical findings cannot be ruled out"
                )
            body = review.body if review else None
        if body is None:
            return None
        critical = parse_severity_counts(body).critical
        if critical > 0:
            return make_blocker(
                BlockerType.CRITICAL_ISSUES,
                f"CRITICAL issues found in review ({critical}); they must be fixed before merge"
            )
        return None

    def _head_changed(self, params: GateParams) -> Optional[BlockerEvent]:
        if not params.expected_head or params.pr_number is None or self.host is None:
            return None
        current = moved_pr_head(self.host, params.pr_number, params.expected_head)
        if current is None:
            return None
        return make_blocker(
            BlockerType.HEAD_CHANGED,
            f"PR #{params.pr_number} head moved from {params.expected_head[:12]} to "
            f"{current[:12]} after assessment; merge needs reassessment"
        )

    def _session_limit(self, params: GateParams) -> Optional[BlockerEvent]:
        completed = params.issues_completed
        hours = params.elapsed_hours
        if self.tracker is not None:
            record = self.tracker.load()
            if completed is None and record is not None:
                completed = record.issues_completed
            if hours is None:
                hours = self.tracker.elapsed_hours()
        completed = completed or 0
        hours = hours or 0.0

        if completed >= self.config.max_issues_per_session:
            return make_blocker(
                BlockerType.SESSION_LIMIT,
                f"Approaching token limit ({completed} issues completed); "
                "starting fresh session to prevent quality degradation"
            )
        if hours >= self.config.max_session_hours:
            return make_blocker(
                BlockerType.SESSION_LIMIT,
                f"Approaching session time limit ({hours:.1f} hours elapsed)"
            )
        return None

    def _checks(self, stage: GateStage, params: GateParams) -> list[Callable[[], Optional[BlockerEvent]]]:
        if stage == GateStage.PRE_START:
            return [self._credentials]
        if stage == GateStage.PRE_MERGE:
            return [lambda: self._critical_findings(params), lambda: self._head_changed(params)]
        if stage == GateStage.SESSION_CHECK:
            return [lambda: self._session_limit(params), lambda: self._credentials(during=True)]
        return []

    def evaluate(self, stage: GateStage, params: Optional[GateParams] = None) -> GateResult:
        """Run the hard gates of a stage; the first unapproved blocker wins."""
        params = params or GateParams()
        checks = self._checks(stage, params)
        for hook in self._hooks.get(stage, []):
            checks.append(partial(hook, params))

        for check in checks:
            event = check()
            if event is None:
                continue
            if params.issue_number is not None and self.is_approved(params.issue_number, event.type):
                console.print(f"[dim]Blocker {event.type.value} already approved for #{params.issue_number}[/dim]")
                continue
            return event

        hints = []
        if stage == GateStage.PRE_MERGE and params.pr_number is not None:
            hints = self.hints_for_pr(params.pr_number)
        return GatePass(stage=stage, hints=hints)

    # =========================================================================
    # Approvals and handling
    # =========================================================================

    def approve(self, issue: int, blocker_type: BlockerType) -> None:
        if self.tracker is not None:
            self.tracker.add_approved_blocker(issue, blocker_type.value)

    def is_approved(self, issue: int, blocker_type: BlockerType) -> bool:
        return self.tracker is not None and self.tracker.has_approved_blocker(issue, blocker_type.value)

    def handle_blocker(
        self,
        event: BlockerEvent,
        issue: int,
        mode: WorkflowMode,
        stage: Optional[GateStage] = None,
        prompter: Optional[Prompter] = None,
        pr_number: Optional[int] = None,
        worktree: Optional[str] = None,
    ) -> bool:
        """Surface a blocker to a human or park the issue.

        Returns:
            True if a human approved proceeding past the blocker
        """
        body = event.details or "No details available"
        body += f"\n\nNext steps: {NEXT_STEPS.get(event.type, 'Resolve the blocker, then resume the issue.')}"
        console.print(Panel(body, title=f"BLOCKER: {event.type.value}", border_style="red"))

        if mode == WorkflowMode.ATTENDED and not event.batch_blocking:
            prompter = prompter or ConsolePrompter()
            options = ["Approve and continue", "Stop this issue"]
            if prompter.choose(f"Proceed past {event.type.value} for #{issue}?", options, options[1]) == options[0]:
                self.approve(issue, event.type)
                console.print(f"[green]Approved {event.type.value} for #{issue}[/green]")
                return True

        if self.tracker is not None:
            self.tracker.snapshot(issue, event.type.value, worktree)

        if stage == GateStage.PRE_START:
            console.print("[dim]Initial check failed; no notification sent[/dim]")
        elif self.notifier is not None:
            self.notifier.notify_blocker(event, issue, pr_number, worktree)

        if mode == WorkflowMode.UNATTENDED and self.tracker is not None:
            self.tracker.create_resume_script(issue, event.type.value, worktree)
        return False
