"""GitHub access through the `gh` CLI.

Read methods raise RemoteReadError on any failure so callers can treat the
host as "no signal" and fall back to a conservative default. Write methods
raise PipelineError when the host refuses.
"""

import json
import re
import subprocess
from pathlib import Path
from typing import Any, Optional

from rich.console import Console

from .errors import PipelineError, RemoteReadError
from .models import Comment, Commit, Issue, PRState, PullRequest
from .timestamps import to_epoch

console = Console()

PR_FIELDS = "number,headRefName,headRefOid,isDraft,state,title,body"


def pr_from_json(data: dict[str, Any]) -> PullRequest:
    """Build a PullRequest from `gh --json` output."""
    state = str(data.get("state", "OPEN")).lower()
    return PullRequest(
        number=int(data["number"]),
        branch=data.get("headRefName", ""),
        head_sha=data.get("headRefOid", "") or "",
        is_draft=bool(data.get("isDraft", False)),
        state=PRState(state) if state in PRState._value2member_map_ else PRState.OPEN,
        title=data.get("title", "") or "",
        body=data.get("body", "") or "",
    )


def _epoch(value: Any, what: str) -> int:
    try:
        epoch = to_epoch(value)
    except ValueError as e:
        raise RemoteReadError(f"{what} has an unreadable timestamp: {value}") from e
    if epoch is None:
        raise RemoteReadError(f"{what} has no timestamp")
    return epoch


class GitHubClient:
    """Code host implementation backed by the `gh` CLI."""

    def __init__(self, project_path: Path, timeout: int = 60):
        self.project_path = Path(project_path)
        self.timeout = timeout

    def _gh(self, *args: str, input_text: Optional[str] = None) -> subprocess.CompletedProcess:
        try:
            return subprocess.run(
                ["gh", *args],
                cwd=self.project_path,
                capture_output=True,
                text=True,
                input=input_text,
                timeout=self.timeout,
                check=False
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            raise RemoteReadError(f"gh {' '.join(args[:2])} failed: {e}") from e

    def _read(self, *args: str) -> str:
        result = self._gh(*args)
        if result.returncode != 0:
            raise RemoteReadError(
                f"gh {' '.join(args[:2])} failed: {result.stderr.strip()[:200]}"
            )
        return result.stdout

    def _read_json(self, *args: str) -> Any:
        output = self._read(*args)
        try:
            return json.loads(output)
        except json.JSONDecodeError as e:
            raise RemoteReadError(f"gh {' '.join(args[:2])} returned invalid JSON") from e

    def _write(self, *args: str, input_text: Optional[str] = None) -> str:
        try:
            result = self._gh(*args, input_text=input_text)
        except RemoteReadError as e:
            raise PipelineError(str(e)) from e
        if result.returncode != 0:
            raise PipelineError(f"gh {' '.join(args[:2])} failed: {result.stderr.strip()[:200]}")
        return result.stdout

    # =========================================================================
    # Reads
    # =========================================================================

    def get_issue(self, number: int) -> Issue:
        data = self._read_json("issue", "view", str(number), "--json", "number,title,body,labels")
        return Issue(
            number=int(data["number"]),
            title=data.get("title", "") or "",
            body=data.get("body", "") or "",
            labels=[label.get("name", "") for label in data.get("labels", [])],
        )

    def list_open_prs(self) -> list[PullRequest]:
        return self.list_prs("open")

    def list_prs(self, state: str = "all") -> list[PullRequest]:
        data = self._read_json(
            "pr", "list", "--state", state, "--limit", "200", "--json", PR_FIELDS
        )
        return [pr_from_json(item) for item in data]

    def get_pr(self, number: int) -> PullRequest:
        return pr_from_json(self._read_json("pr", "view", str(number), "--json", PR_FIELDS))

    def get_pr_comments(self, number: int) -> list[Comment]:
        data = self._read_json("pr", "view", str(number), "--json", "comments")
        comments = []
        for item in data.get("comments", []):
            created = _epoch(item.get("createdAt"), f"Comment on PR #{number}")
            comments.append(Comment(
                body=item.get("body", "") or "",
                created_at=created,
                author=(item.get("author") or {}).get("login", ""),
            ))
        return comments

    def get_pr_commits(self, number: int) -> list[Commit]:
        """Commits of a PR, oldest first."""
        data = self._read_json("pr", "view", str(number), "--json", "commits")
        commits = []
        for item in data.get("commits", []):
            authored = _epoch(item.get("authoredDate") or item.get("committedDate"), f"Commit on PR #{number}")
            commits.append(Commit(
                sha=item.get("oid", ""),
                message=item.get("messageHeadline", "") or "",
                authored_at=authored,
            ))
        return commits

    def get_pr_files(self, number: int) -> list[str]:
        data = self._read_json("pr", "view", str(number), "--json", "files")
        return [f["path"] for f in data.get("files", []) if f.get("path")]

    def get_pr_diff(self, number: int) -> str:
        return self._read("pr", "diff", str(number))

    def get_pr_head(self, number: int) -> str:
        data = self._read_json("pr", "view", str(number), "--json", "headRefOid")
        head = data.get("headRefOid")
        if not head:
            raise RemoteReadError(f"PR #{number} has no head commit")
        return head

    # =========================================================================
    # Writes
    # =========================================================================

    def comment_on_pr(self, number: int, body: str) -> None:
        self._write("pr", "comment", str(number), "--body-file", "-", input_text=body)

    def close_pr(self, number: int, comment: Optional[str] = None) -> None:
        if comment:
            self.comment_on_pr(number, comment)
        self._write("pr", "close", str(number))
        console.print(f"[dim]Closed PR #{number}[/dim]")

    def mark_ready(self, number: int) -> None:
        self._write("pr", "ready", str(number))

    def merge_pr(self, number: int) -> None:
        """Squash-merge a PR. Branch cleanup is left to the caller."""
        self._write("pr", "merge", str(number), "--squash")
        console.print(f"[green]Merged PR #{number}[/green]")

    def create_pr(self, branch: str, base: str, title: str, body: str, draft: bool = True) -> int:
        args = ["pr", "create", "--head", branch, "--base", base, "--title", title, "--body-file", "-"]
        if draft:
            args.append("--draft")
        url = self._write(*args, input_text=body).strip()
        match = re.search(r"/pull/(\d+)", url)
        if not match:
            raise PipelineError(f"Could not read PR number from: {url}")
        return int(match.group(1))
