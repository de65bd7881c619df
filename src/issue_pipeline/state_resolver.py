"""Pipeline phase derivation.

The phase of an issue is derived from two sources that update independently:
the code host (PR, review and assessment comments) and the local clone
(commit history, tracking refs). Neither is trusted to be current. When a
read fails the resolver degrades to the most conservative phase it can
still justify instead of raising.
"""

import re
from pathlib import Path
from typing import Callable, Optional

from rich.console import Console

from .errors import RemoteReadError
from .git_manager import GitManager
from .models import (
    AssessmentRecord, Comment, Commit, Disposition, Finding, Phase, PhaseResult,
    PipelineConfig, PullRequest, ReviewRecord, SeverityCounts
)
from .protocols import CodeHost, GitOperations

console = Console()

MAINLINE_SYNC_PATTERN = re.compile(
    r"Merge branch '(main|master|develop)' into"
    r"|Merge remote-tracking branch '[^']*/(main|master|develop)'"
    r"|Merge pull request .* from .*/main"
)

FINDING_PATTERN = re.compile(
    r"^### (?P<title>.+?) - (?P<disposition>ACTIONABLE_NOW|ACTIONABLE_LATER|DISMISSED)\s*$",
    re.MULTILINE
)

HEAD_ATTRIBUTE = re.compile(r"\bhead:([0-9a-f]{7,40})\b")


def is_mainline_sync_merge(message: str) -> bool:
    """True for merge commits that only bring mainline into a branch."""
    return bool(MAINLINE_SYNC_PATTERN.search(message))


def latest_qualifying_commit(commits: list[Commit]) -> Optional[Commit]:
    """First commit in log order that is not a mainline-sync merge."""
    for commit in commits:
        if not is_mainline_sync_merge(commit.message):
            return commit
    return None


def _severity_count(body: str, severity: str) -> Optional[int]:
    match = re.search(rf"\b{severity}[\s:]+\(?(\d+)\)?", body, re.IGNORECASE)
    return int(match.group(1)) if match else None


def parse_severity_counts(body: str) -> SeverityCounts:
    """Read "CRITICAL: 2" style counts from a review body.

    A CRITICAL section with at least one finding heading but no explicit
    count is counted as one critical finding.
    """
    critical = _severity_count(body, "CRITICAL")
    counts = SeverityCounts(
        critical=critical or 0,
        high=_severity_count(body, "HIGH") or 0,
        medium=_severity_count(body, "MEDIUM") or 0,
        low=_severity_count(body, "LOW") or 0,
    )
    if critical is None:
        section = re.search(r"^###[^\n]*CRITICAL[^\n]*\n(.*?)(?=^### |\Z)", body, re.MULTILINE | re.DOTALL)
        if section and re.search(r"^#### ", section.group(1), re.MULTILINE):
            counts.critical = 1
    return counts


def parse_assessment(comment: Comment) -> AssessmentRecord:
    """Build an AssessmentRecord from an assessment comment body."""
    findings = [
        Finding(title=m.group("title").strip(), disposition=Disposition(m.group("disposition")))
        for m in FINDING_PATTERN.finditer(comment.body)
    ]
    first_line = comment.body.strip().split("\n", 1)[0]
    head = HEAD_ATTRIBUTE.search(first_line)
    return AssessmentRecord(
        created_at=comment.created_at,
        findings=findings,
        head_sha=head.group(1) if head else None,
    )


def review_records(comments: list[Comment], marker: str) -> list[ReviewRecord]:
    """Automation review comments, oldest first."""
    reviews = [
        ReviewRecord(
            body=c.body,
            created_at=c.created_at,
            marker=marker,
            severity=parse_severity_counts(c.body),
        )
        for c in comments
        if marker in c.body
    ]
    return sorted(reviews, key=lambda r: r.created_at)


def latest_review(comments: list[Comment], marker: str) -> Optional[ReviewRecord]:
    reviews = review_records(comments, marker)
    return reviews[-1] if reviews else None


def latest_assessment(comments: list[Comment], marker: str) -> Optional[AssessmentRecord]:
    marked = [c for c in comments if marker in c.body]
    if not marked:
        return None
    return parse_assessment(max(marked, key=lambda c: c.created_at))


def find_pr_for_issue(issue_number: int, prs: list[PullRequest]) -> Optional[PullRequest]:
    """First PR whose body closes the issue ("Closes #N", "Fixes #N", "Resolves #N")."""
    link = re.compile(rf"\b(closes|fixes|resolves)\s+#{issue_number}\b", re.IGNORECASE)
    for pr in prs:
        if link.search(pr.body or ""):
            return pr
    return None


class StateResolver:
    """Derives the pipeline phase of an issue.

    Host reads are memoized per PR number for the lifetime of the resolver;
    call invalidate() after writing to the host.
    """

    def __init__(
        self,
        config: PipelineConfig,
        host: Optional[CodeHost] = None,
        git_factory: Callable[[Path], GitOperations] = GitManager,
    ):
        self.config = config
        self.host = host
        self.git_factory = git_factory
        self._comments: dict[int, list[Comment]] = {}
        self._commits: dict[int, list[Commit]] = {}

    def invalidate(self, pr_number: Optional[int] = None) -> None:
        if pr_number is None:
            self._comments.clear()
            self._commits.clear()
        else:
            self._comments.pop(pr_number, None)
            self._commits.pop(pr_number, None)

    def _read_comments(self, pr_number: int) -> Optional[list[Comment]]:
        if pr_number in self._comments:
            return self._comments[pr_number]
        if self.host is None:
            return None
        try:
            comments = self.host.get_pr_comments(pr_number)
        except RemoteReadError as e:
            console.print(f"[yellow]Could not read comments on PR #{pr_number}: {e}[/yellow]")
            return None
        self._comments[pr_number] = comments
        return comments

    def _read_pr_commits(self, pr_number: int) -> Optional[list[Commit]]:
        if pr_number in self._commits:
            return self._commits[pr_number]
        if self.host is None:
            return None
        try:
            commits = self.host.get_pr_commits(pr_number)
        except RemoteReadError as e:
            console.print(f"[yellow]Could not read commits of PR #{pr_number}: {e}[/yellow]")
            return None
        self._commits[pr_number] = commits
        return commits

    def review_is_current(
        self,
        review_time: int,
        pr: PullRequest,
        worktree: Optional[Path] = None,
    ) -> bool:
        """True iff the review is strictly newer than the latest qualifying commit.

        With a local checkout, unpushed or unfetched work (HEAD differing
        from the remote tracking ref) makes the review stale regardless of
        timestamps. Without one, the PR's commit list from the host is used.
        An unreadable history counts as stale.
        """
        commits: Optional[list[Commit]]
        if worktree is not None:
            git = self.git_factory(worktree)
            local_head = git.rev_parse("HEAD")
            tracking = git.rev_parse(f"refs/remotes/{self.config.remote}/{pr.branch}")
            if local_head is None or local_head != tracking:
                return False
            commits = git.log_commits("HEAD", limit=100)
        else:
            pr_commits = self._read_pr_commits(pr.number)
            # Host lists commits oldest first
            commits = list(reversed(pr_commits)) if pr_commits is not None else None

        if commits is None:
            return False
        latest = latest_qualifying_commit(commits)
        if latest is None:
            return True
        return review_time > latest.authored_at

    def phase(
        self,
        issue: int,
        pr: Optional[PullRequest],
        comments: Optional[list[Comment]] = None,
        worktree: Optional[Path] = None,
    ) -> PhaseResult:
        """Resolve the phase of an issue.

        Args:
            issue: Issue number
            pr: The PR matched to the issue, if any
            comments: PR comments; None means "not read yet" and they are
                fetched from the host when one is configured
            worktree: Local checkout of the PR branch, if one exists
        """
        if pr is None:
            return PhaseResult(phase=Phase.NOT_STARTED)

        if comments is None:
            comments = self._read_comments(pr.number)
            if comments is None:
                return PhaseResult(phase=Phase.NEEDS_REVIEW, pr_number=pr.number)

        reviews = review_records(comments, self.config.review_marker)
        if not reviews:
            return PhaseResult(phase=Phase.DEV_PR, pr_number=pr.number)

        review = reviews[-1]
        iterations = len(reviews)
        if not self.review_is_current(review.created_at, pr, worktree):
            return PhaseResult(phase=Phase.REVIEW_STALE, pr_number=pr.number, review_iterations=iterations)

        assessment = latest_assessment(comments, self.config.assessment_marker)
        # An assessment older than the latest review belongs to an earlier pass
        if assessment is None or assessment.created_at < review.created_at:
            return PhaseResult(phase=Phase.NEEDS_ASSESSMENT, pr_number=pr.number, review_iterations=iterations)

        if assessment.actionable_now > 0:
            return PhaseResult(
                phase=Phase.NEEDS_FIXES,
                pr_number=pr.number,
                actionable_count=assessment.actionable_now,
                review_iterations=iterations,
                assessment_head=assessment.head_sha,
            )
        return PhaseResult(
            phase=Phase.READY_TO_MERGE,
            pr_number=pr.number,
            review_iterations=iterations,
            assessment_head=assessment.head_sha,
        )

    def resolve_issue(self, issue: int, worktree: Optional[Path] = None) -> PhaseResult:
        """Look up the PR for an issue on the host and resolve its phase.

        A failed PR listing is reported as NOT_STARTED only when nothing
        else is known; callers that already know the PR should use phase().
        """
        if self.host is None:
            return PhaseResult(phase=Phase.NOT_STARTED)
        try:
            pr = find_pr_for_issue(issue, self.host.list_open_prs())
        except RemoteReadError as e:
            console.print(f"[yellow]Could not list pull requests: {e}[/yellow]")
            return PhaseResult(phase=Phase.NOT_STARTED)
        return self.phase(issue, pr, worktree=worktree)
