"""Data models for the issue pipeline.

Uses Pydantic for validation. JSON format keeps the shared session ledger
readable and hard to corrupt. Every timestamp stored on these models is a
UTC epoch second, normalized once when the value is ingested.
"""

import json
from enum import Enum
from pathlib import Path
from typing import ClassVar, Optional

from pydantic import BaseModel, Field, ValidationError

from .errors import FatalPreconditionError


class WorkflowMode(str, Enum):
    """Who answers decision points."""
    ATTENDED = "attended"      # A human is prompted
    UNATTENDED = "unattended"  # Fixed answers, fail closed


class PRState(str, Enum):
    """Lifecycle state of a pull request."""
    OPEN = "open"
    MERGED = "merged"
    CLOSED = "closed"


class Phase(str, Enum):
    """Pipeline phase of an issue, in pipeline order."""
    NOT_STARTED = "not_started"
    DEV_PR = "dev_pr"
    NEEDS_REVIEW = "needs_review"
    REVIEW_STALE = "review_stale"
    NEEDS_ASSESSMENT = "needs_assessment"
    NEEDS_FIXES = "needs_fixes"
    READY_TO_MERGE = "ready_to_merge"


PHASE_LABELS = {
    Phase.NOT_STARTED: "Not started",
    Phase.DEV_PR: "Dev/PR",
    Phase.NEEDS_REVIEW: "Needs review",
    Phase.REVIEW_STALE: "Review stale",
    Phase.NEEDS_ASSESSMENT: "Needs assessment",
    Phase.NEEDS_FIXES: "Needs fixes",
    Phase.READY_TO_MERGE: "Ready to merge",
}


class Classification(str, Enum):
    """Classification of foreign commits found on a remote branch."""
    TRIVIAL = "TRIVIAL"      # Mainline sync, formatting, docs
    RELATED = "RELATED"      # Same scope as the issue
    UNRELATED = "UNRELATED"  # Different scope or unknown origin


class Urgency(str, Enum):
    """Notification urgency of a blocker."""
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class GateStage(str, Enum):
    """Workflow stage at which hard gates are evaluated."""
    PRE_START = "pre-start"
    PRE_COMMIT = "pre-commit"
    PRE_MERGE = "pre-merge"
    SESSION_CHECK = "session-check"


class BlockerType(str, Enum):
    """Kinds of blocking conditions."""
    CREDENTIALS_EXPIRED = "credentials_expired"
    SESSION_LIMIT = "session_limit"
    CRITICAL_ISSUES = "critical_issues"
    HEAD_CHANGED = "head_changed"
    DIVERGENCE = "divergence"
    INTEGRATION_CONFLICT = "integration_conflict"
    STALE_BRANCH = "stale_branch"


class Disposition(str, Enum):
    """Disposition of a single review finding."""
    ACTIONABLE_NOW = "ACTIONABLE_NOW"
    ACTIONABLE_LATER = "ACTIONABLE_LATER"
    DISMISSED = "DISMISSED"


class ContinueDecision(str, Enum):
    """Answer of SessionTracker.should_continue()."""
    CONTINUE = "continue"
    TOKEN_LIMIT = "token_limit"
    TIME_LIMIT = "time_limit"


# =============================================================================
# Remote / VCS entities
# =============================================================================

class Issue(BaseModel):
    """An issue on the code host."""
    number: int
    title: str = ""
    body: str = ""
    labels: list[str] = Field(default_factory=list)

    def context(self) -> str:
        """Short text used when asking a classifier about scope."""
        return f"Issue #{self.number}: {self.title}\n{self.body}".strip()


class PullRequest(BaseModel):
    """A pull request on the code host."""
    number: int
    branch: str
    head_sha: str = ""
    is_draft: bool = False
    state: PRState = PRState.OPEN
    title: str = ""
    body: str = ""


class Commit(BaseModel):
    """A commit with its author timestamp as UTC epoch seconds."""
    sha: str
    message: str
    authored_at: int

    @property
    def short_sha(self) -> str:
        return self.sha[:7]

    def oneline(self) -> str:
        return f"{self.short_sha} {self.message}"


class Comment(BaseModel):
    """A conversation comment on a pull request."""
    body: str
    created_at: int
    author: str = ""


class SeverityCounts(BaseModel):
    """Finding counts parsed from a review body."""
    critical: int = 0
    high: int = 0
    medium: int = 0
    low: int = 0


class ReviewRecord(BaseModel):
    """A review comment, automation-authored or human."""
    body: str
    created_at: int
    marker: Optional[str] = Field(
        default=None,
        description="Marker token found in the body; None for human comments"
    )
    severity: SeverityCounts = Field(default_factory=SeverityCounts)

    @property
    def is_automation(self) -> bool:
        return self.marker is not None


class Finding(BaseModel):
    """One assessed finding."""
    title: str
    disposition: Disposition


class AssessmentRecord(BaseModel):
    """Structured disposition of review findings."""
    created_at: int
    findings: list[Finding] = Field(default_factory=list)
    head_sha: Optional[str] = Field(
        default=None,
        description="PR head recorded when the assessment was written"
    )

    @property
    def actionable_now(self) -> int:
        return sum(1 for f in self.findings if f.disposition == Disposition.ACTIONABLE_NOW)


class PhaseResult(BaseModel):
    """Resolved phase of an issue plus the numbers behind its label."""
    phase: Phase
    pr_number: Optional[int] = None
    actionable_count: int = 0
    review_iterations: int = 0
    assessment_head: Optional[str] = None

    @property
    def label(self) -> str:
        if self.phase == Phase.NEEDS_FIXES:
            return f"Needs fixes({self.actionable_count}) r{max(self.review_iterations, 1)}"
        return PHASE_LABELS[self.phase]


# =============================================================================
# Gate and divergence results
# =============================================================================

class SensitivityHint(BaseModel):
    """A non-blocking pointer at a risk area for the next review pass."""
    category: str
    matches: list[str] = Field(default_factory=list)
    guidance: str


class BlockerEvent(BaseModel):
    """A blocking condition raised by a gate or a resolution step."""
    type: BlockerType
    urgency: Urgency = Urgency.NORMAL
    details: str = ""
    batch_blocking: bool = False


class GatePass(BaseModel):
    """Result of a gate evaluation that found nothing blocking."""
    stage: GateStage
    hints: list[SensitivityHint] = Field(default_factory=list)


class GateParams(BaseModel):
    """Inputs for BlockerGate.evaluate; each stage reads what it needs."""
    issue_number: Optional[int] = None
    pr_number: Optional[int] = None
    review_body: Optional[str] = None
    expected_head: Optional[str] = None
    issues_completed: Optional[int] = None
    elapsed_hours: Optional[float] = None


class DivergenceReport(BaseModel):
    """Remote-vs-local branch divergence."""
    branch: str
    local_head: str
    remote_head: str
    foreign_commits: list[Commit] = Field(default_factory=list)
    diff_summary: str = ""
    local_ahead: int = Field(
        default=0,
        description="Local commits absent from the remote branch"
    )
    classification: Optional[Classification] = None

    @property
    def is_three_way(self) -> bool:
        """Local is ahead AND the remote carries foreign commits."""
        return self.local_ahead > 0 and bool(self.foreign_commits)

    @property
    def latest_foreign_time(self) -> Optional[int]:
        if not self.foreign_commits:
            return None
        return max(c.authored_at for c in self.foreign_commits)


class ResolutionKind(str, Enum):
    RESOLVED = "resolved"
    BLOCKED = "blocked"
    NEEDS_REREVIEW = "needs_rereview"


class Resolution(BaseModel):
    """Outcome of resolving a divergence."""
    kind: ResolutionKind
    action: str = ""
    reason: Optional[str] = None

    @classmethod
    def resolved(cls, action: str) -> "Resolution":
        return cls(kind=ResolutionKind.RESOLVED, action=action)

    @classmethod
    def blocked(cls, reason: str, action: str = "block") -> "Resolution":
        return cls(kind=ResolutionKind.BLOCKED, action=action, reason=reason)

    @classmethod
    def needs_rereview(cls, action: str) -> "Resolution":
        return cls(kind=ResolutionKind.NEEDS_REREVIEW, action=action)


class IntegrationResult(BaseModel):
    """Outcome of a stash-safe rebase or merge."""
    success: bool
    conflicted_files: list[str] = Field(default_factory=list)
    stash_preserved: bool = Field(
        default=False,
        description="True when popping the auto-stash conflicted and it was kept"
    )


class StaleOutcome(str, Enum):
    CONTINUE = "continue"
    BLOCKED = "blocked"
    RESTARTED = "restarted"


class StaleCheckResult(BaseModel):
    """Outcome of a stale-branch check."""
    outcome: StaleOutcome
    commits_behind: int = 0
    action: str = ""
    reason: Optional[str] = None


class UndoPlan(BaseModel):
    """What undoing one unmerged issue attempt removes."""
    issue: int
    branch: str
    pr: Optional[PullRequest] = None
    worktree: Optional[str] = None


class WorktreeRecord(BaseModel):
    """A per-issue worktree on disk."""
    path: str
    branch: str
    uncommitted: int = 0
    unpushed: int = 0
    age_hours: int = 0
    commits_behind: int = 0

    STALE_AFTER_HOURS: ClassVar[int] = 168

    @property
    def is_stale(self) -> bool:
        return self.age_hours > self.STALE_AFTER_HOURS

    @property
    def status_text(self) -> str:
        parts = []
        if self.uncommitted:
            parts.append(f"{self.uncommitted} uncommitted")
        if self.unpushed:
            parts.append(f"{self.unpushed} unpushed")
        return ", ".join(parts) or "clean"


# =============================================================================
# Persistent session ledger
# =============================================================================

class SessionRecord(BaseModel):
    """The single mutable ledger for a project clone.

    Counters reset on every SessionTracker.init(); the approval and
    notification sets are carried forward across inits.
    """
    start_time: int
    mode: WorkflowMode = WorkflowMode.ATTENDED
    issues_completed: int = 0
    issues_failed: int = 0
    current_issue: Optional[int] = None
    worktree_path: Optional[str] = None
    approved_blockers: list[tuple[int, str]] = Field(default_factory=list)
    sent_notifications: list[tuple[int, str]] = Field(default_factory=list)
    limit_reached: Optional[ContinueDecision] = None
    last_update: int


class SessionSnapshot(BaseModel):
    """Interrupt snapshot for one issue, enough to resume by hand."""
    saved_at: int
    saved_at_human: str
    reason: str
    issue_number: int
    worktree_path: Optional[str] = None
    session: Optional[SessionRecord] = None
    git_status: str = ""
    last_commit: str = ""


class AgentRunResult(BaseModel):
    """Result of running the AI agent child process."""
    exit_code: Optional[int] = None
    timed_out: bool = False
    elapsed_seconds: float = 0.0
    has_work_in_progress: bool = False

    @property
    def success(self) -> bool:
        return self.exit_code == 0 and not self.timed_out


class IssueStatus(str, Enum):
    """How processing of one issue ended."""
    COMPLETED = "completed"      # Merged
    BLOCKED = "blocked"          # Parked behind a BlockerEvent
    FAILED = "failed"            # Gave up (agent failure, fix-cycle limit, unreadable state)
    INTERRUPTED = "interrupted"  # Signal or stop file


class IssueResult(BaseModel):
    """Outcome of processing one issue."""
    issue: int
    status: IssueStatus
    pr_number: Optional[int] = None
    blocker: Optional[BlockerEvent] = None
    final_phase: Optional[Phase] = None
    message: str = ""


class BatchReport(BaseModel):
    """Outcome of a batch run."""
    completed: list[int] = Field(default_factory=list)
    failed: list[int] = Field(default_factory=list)
    blocked: list[int] = Field(default_factory=list)
    not_attempted: list[int] = Field(default_factory=list)
    halted_by: Optional[str] = Field(
        default=None,
        description="Blocker type or limit that stopped the batch early"
    )


# =============================================================================
# Configuration
# =============================================================================

class BlockerPatterns(BaseModel):
    """Regular expressions behind the sensitivity hints."""
    infrastructure_paths: str = Field(
        default=r"infrastructure/|cdk/|terraform/|cloudformation/|\.github/workflows/|\.claude/"
    )
    migration_paths: str = Field(
        default=r"prisma/migrations/|migrations/|db/migrate/|alembic/"
    )
    auth_paths: str = Field(
        default=r"auth/|Auth|authentication|authorization|cognito|oauth"
    )
    auth_excluded_paths: str = Field(
        default=r"tests?/|docs?/",
        description="Auth matches under these paths are ignored"
    )
    doc_paths: str = Field(
        default=r"Technical-Specs|Architecture|CLAUDE\.md|ARCHITECTURE\.md"
    )
    expensive_services: str = Field(
        default=r"\b(rds|aurora|nat|ec2|fargate|sagemaker|redshift)\b",
        description="Matched case-insensitively against added diff lines"
    )
    protected_scripts: list[str] = Field(
        default_factory=lambda: [
            "issue_pipeline/orchestration/",
            "issue_pipeline/divergence.py",
            "issue_pipeline/blockers.py",
        ],
        description="Path fragments of automation code that needs a human look"
    )


class PipelineConfig(BaseModel):
    """Configuration for the pipeline."""
    # Session limits
    max_issues_per_session: int = Field(
        default=8,
        description="Completed issues after which the session stops (stands in for a token limit)"
    )
    max_session_hours: float = Field(
        default=4,
        description="Elapsed hours after which the session stops"
    )
    max_fix_cycles: int = Field(
        default=3,
        description="Review/fix iterations per issue before giving up"
    )

    # Branches
    mainline: str = Field(default="main")
    remote: str = Field(default="origin")
    stale_branch_threshold: int = Field(
        default=10,
        description="Commits behind mainline at which a branch is restarted instead of merged"
    )

    # Agent
    agent_command: list[str] = Field(default_factory=lambda: ["claude"])
    agent_timeout_seconds: int = Field(default=7200)
    heartbeat_seconds: int = Field(default=60)
    classifier_timeout_seconds: int = Field(default=120)

    # Credentials
    skip_credential_check: bool = Field(default=True)
    credential_probe_command: str = Field(
        default="aws sts get-caller-identity --profile default"
    )

    # Storage
    data_dir: str = Field(default=".pipeline")
    worktree_dir: Optional[str] = Field(
        default=None,
        description="Directory holding per-issue worktrees (default: <clone>-worktrees next to the clone)"
    )

    # Comment markers
    review_marker: str = Field(default="<!-- issue-pipeline-review")
    assessment_marker: str = Field(default="<!-- issue-pipeline-assessment")

    blocker_patterns: BlockerPatterns = Field(default_factory=BlockerPatterns)

    CONFIG_FILENAME: ClassVar[str] = "config.json"

    @classmethod
    def load(cls, project_path: Path, data_dir: str = ".pipeline") -> "PipelineConfig":
        """Load <project>/<data_dir>/config.json, or defaults when it is absent.

        Raises:
            FatalPreconditionError: If the file exists but is malformed
        """
        config_file = Path(project_path) / data_dir / cls.CONFIG_FILENAME
        if not config_file.exists():
            return cls(data_dir=data_dir)
        try:
            data = json.loads(config_file.read_text(encoding="utf-8"))
            data.setdefault("data_dir", data_dir)
            return cls.model_validate(data)
        except (json.JSONDecodeError, ValidationError) as e:
            raise FatalPreconditionError(f"Malformed configuration in {config_file}: {e}") from e
