"""Protocol definitions for dependency injection.

These protocols define the interfaces the policy components depend on,
enabling:
- Loose coupling between the policy layer and git / the code host
- Easy testing via mock implementations
- Substitutable decision and classification capabilities
"""

from pathlib import Path
from typing import Optional, Protocol, runtime_checkable

from .models import (
    Classification, Comment, Commit, Issue, PullRequest, Urgency, WorkflowMode
)


@runtime_checkable
class GitOperations(Protocol):
    """Protocol for the git operations the policy layer needs.

    GitManager is the production implementation. All reads return plain
    values; failures of mutating commands raise GitCommandError.
    """

    def current_branch(self) -> str:
        """Name of the checked-out branch ("" when detached)."""
        ...

    def rev_parse(self, ref: str) -> Optional[str]:
        """Resolve a ref to a commit id, or None if it does not exist."""
        ...

    def fetch(self, remote: str, ref: Optional[str] = None) -> bool:
        """Fetch from the remote. False when the fetch failed."""
        ...

    def commits_between(self, base: str, head: str) -> Optional[list[Commit]]:
        """Commits reachable from head but not base, newest first.

        None when the range could not be read.
        """
        ...

    def log_commits(self, ref: str = "HEAD", limit: int = 50) -> Optional[list[Commit]]:
        """Recent commits reachable from ref, newest first."""
        ...

    def is_ancestor(self, commit: str, ref: str) -> bool:
        """True when commit is reachable from ref."""
        ...

    def diff_stat(self, base: str, head: str) -> str:
        """Short diff summary between two refs."""
        ...

    def is_dirty(self) -> bool:
        """True when the working tree or index has changes."""
        ...

    def stage_all(self) -> None:
        ...

    def commit(self, message: str, allow_empty: bool = False) -> Optional[str]:
        """Commit staged changes. Returns the new commit id, None if nothing was committed."""
        ...

    def stash_push(self, message: str) -> bool:
        """Stash all changes including untracked files. False if nothing was stashed."""
        ...

    def stash_pop(self, index: bool = False) -> bool:
        """Pop the latest stash, restoring the index too when asked.

        False on conflict (the stash is kept).
        """
        ...

    def reset_merge(self) -> None:
        ...

    def rebase(self, upstream: str) -> bool:
        """Rebase the current branch. False on conflict (left in progress)."""
        ...

    def rebase_abort(self) -> None:
        ...

    def merge(self, ref: str, message: Optional[str] = None) -> bool:
        """Merge ref into the current branch. False on conflict (left in progress)."""
        ...

    def merge_abort(self) -> None:
        ...

    def conflicted_files(self) -> list[str]:
        ...

    def push(self, remote: str, branch: str, force_with_lease: Optional[str] = None) -> bool:
        """Push a branch. False when the remote rejected it."""
        ...

    def merge_base(self, a: str, b: str) -> Optional[str]:
        ...

    def count_commits(self, base: str, head: str) -> Optional[int]:
        """Number of commits in base..head, None when unreadable."""
        ...

    def get_changed_files(self, since_commit: Optional[str] = None) -> list[str]:
        """Files changed on HEAD since its merge base with since_commit."""
        ...

    def remove_worktree(self, path: Path) -> bool:
        ...

    def delete_branch(self, branch: str) -> bool:
        ...

    def delete_remote_branch(self, remote: str, branch: str) -> bool:
        ...


@runtime_checkable
class CodeHost(Protocol):
    """Protocol for the remote code-hosting API.

    Read methods raise RemoteReadError when the host cannot be reached or
    returns unusable data.
    """

    def get_issue(self, number: int) -> Issue:
        ...

    def list_open_prs(self) -> list[PullRequest]:
        ...

    def list_prs(self, state: str = "all") -> list[PullRequest]:
        """PRs in the given state ("open", "closed", "merged" or "all"), newest first."""
        ...

    def get_pr(self, number: int) -> PullRequest:
        ...

    def get_pr_comments(self, number: int) -> list[Comment]:
        ...

    def get_pr_commits(self, number: int) -> list[Commit]:
        """Commits of a PR, oldest first."""
        ...

    def get_pr_files(self, number: int) -> list[str]:
        ...

    def get_pr_diff(self, number: int) -> str:
        ...

    def get_pr_head(self, number: int) -> str:
        ...

    def comment_on_pr(self, number: int, body: str) -> None:
        ...

    def close_pr(self, number: int, comment: Optional[str] = None) -> None:
        ...


@runtime_checkable
class CommitClassifier(Protocol):
    """Single-method capability that sorts foreign commits by scope."""

    def classify(self, issue_context: str, commits: list[Commit], diff_summary: str) -> Classification:
        """Classify foreign commits.

        Raises:
            ClassificationError: When no answer could be obtained
        """
        ...


@runtime_checkable
class Prompter(Protocol):
    """Choose-among-options capability for decision points."""

    mode: WorkflowMode

    def choose(self, question: str, options: list[str], default: Optional[str] = None) -> str:
        """Return one of options."""
        ...


@runtime_checkable
class NotificationSink(Protocol):
    """Delivers a message to a human at a given urgency."""

    def send(self, message: str, urgency: Urgency) -> None:
        ...


@runtime_checkable
class CredentialProbe(Protocol):
    """Checks that the credentials the agent needs are still valid."""

    def is_valid(self) -> bool:
        ...


@runtime_checkable
class PipelineSteps(Protocol):
    """The work the pipeline delegates: running the agent and talking to the host.

    Agent steps return False when the agent failed and left nothing usable.
    """

    def prepare_worktree(self, issue: Issue) -> Path:
        ...

    async def develop(self, issue: Issue, worktree: Path) -> bool:
        ...

    def open_pr(self, issue: Issue, worktree: Path) -> Optional[PullRequest]:
        ...

    async def review(self, issue: Issue, pr: PullRequest, worktree: Path, guidance: str = "") -> bool:
        """Have the agent post a review comment carrying the review marker."""
        ...

    async def assess(self, issue: Issue, pr: PullRequest, worktree: Path) -> bool:
        """Have the agent post an assessment comment recording the assessed head."""
        ...

    async def fix(self, issue: Issue, pr: PullRequest, worktree: Path, actionable: int) -> bool:
        ...

    def merge(self, pr: PullRequest) -> bool:
        ...
