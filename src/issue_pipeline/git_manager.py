"""Git operations for the pipeline.

Wraps the git CLI for status, commit ranges with UTC timestamps, stash,
rebase/merge with their abort primitives, lease-guarded pushes and
worktrees. Read helpers never raise; mutating helpers raise GitCommandError
unless the failure is an expected outcome (conflict, rejected push).
"""

import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .errors import GitCommandError
from .models import Commit
from .timestamps import to_epoch

# Field and record separators for machine-readable git log output
_FS = "\x1f"
_LOG_FORMAT = "--format=%H%x1f%aI%x1f%s%x1e"
_RS = "\x1e"


@dataclass
class GitStatus:
    """Current git status."""
    branch: str
    has_changes: bool
    staged_files: list[str]
    modified_files: list[str]
    untracked_files: list[str]
    last_commit_hash: Optional[str]
    last_commit_message: Optional[str]


@dataclass
class WorktreeEntry:
    """One entry of `git worktree list`."""
    path: str
    branch: Optional[str]
    head: Optional[str]


def parse_log(output: str) -> list[Commit]:
    """Parse output produced with _LOG_FORMAT into commits."""
    commits = []
    for record in output.split(_RS):
        record = record.strip()
        if not record:
            continue
        parts = record.split(_FS, 2)
        if len(parts) != 3:
            continue
        sha, authored, subject = parts
        commits.append(Commit(sha=sha, message=subject, authored_at=to_epoch(authored)))
    return commits


class GitManager:
    """Manages git operations for one checkout (clone or worktree)."""

    def __init__(self, project_path: Path):
        self.project_path = Path(project_path)

    def _run(self, *args: str, check: bool = True) -> subprocess.CompletedProcess:
        """Run a git command."""
        result = subprocess.run(
            ["git", *args],
            cwd=self.project_path,
            capture_output=True,
            text=True,
            check=False
        )
        if check and result.returncode != 0:
            raise GitCommandError(list(args), result.returncode, result.stderr)
        return result

    def is_git_repo(self) -> bool:
        """Check if the project is a git repository."""
        result = self._run("rev-parse", "--git-dir", check=False)
        return result.returncode == 0

    def toplevel(self) -> Optional[Path]:
        result = self._run("rev-parse", "--show-toplevel", check=False)
        if result.returncode != 0:
            return None
        return Path(result.stdout.strip())

    def get_status(self) -> GitStatus:
        """Get current git status."""
        status_result = self._run("status", "--porcelain", check=False)
        lines = status_result.stdout.rstrip("\n").split("\n") if status_result.stdout.strip() else []

        staged = []
        modified = []
        untracked = []

        for line in lines:
            if not line:
                continue
            status_code = line[:2]
            filename = line[3:]

            if status_code == "??":
                untracked.append(filename)
                continue
            if status_code[0] in "MADRCU":
                staged.append(filename)
            if status_code[1] in "MDU":
                modified.append(filename)

        log_result = self._run("log", "-1", "--format=%H%n%s", check=False)
        if log_result.returncode == 0 and log_result.stdout.strip():
            parts = log_result.stdout.strip().split("\n", 1)
            last_hash = parts[0]
            last_message = parts[1] if len(parts) > 1 else ""
        else:
            last_hash = None
            last_message = None

        return GitStatus(
            branch=self.current_branch(),
            has_changes=bool(staged or modified or untracked),
            staged_files=staged,
            modified_files=modified,
            untracked_files=untracked,
            last_commit_hash=last_hash,
            last_commit_message=last_message
        )

    def status_short(self) -> str:
        """`git status --short` text, for snapshots."""
        return self._run("status", "--short", check=False).stdout.strip()

    def last_commit_oneline(self) -> str:
        result = self._run("log", "-1", "--oneline", check=False)
        return result.stdout.strip() if result.returncode == 0 else ""

    def is_dirty(self) -> bool:
        return bool(self._run("status", "--porcelain", check=False).stdout.strip())

    # =========================================================================
    # Refs and history
    # =========================================================================

    def current_branch(self) -> str:
        return self._run("branch", "--show-current", check=False).stdout.strip()

    def rev_parse(self, ref: str) -> Optional[str]:
        result = self._run("rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}", check=False)
        if result.returncode != 0:
            return None
        return result.stdout.strip() or None

    def fetch(self, remote: str, ref: Optional[str] = None) -> bool:
        args = ["fetch", "--quiet", remote]
        if ref:
            args.append(ref)
        return self._run(*args, check=False).returncode == 0

    def commits_between(self, base: str, head: str) -> Optional[list[Commit]]:
        result = self._run("log", _LOG_FORMAT, f"{base}..{head}", check=False)
        if result.returncode != 0:
            return None
        return parse_log(result.stdout)

    def log_commits(self, ref: str = "HEAD", limit: int = 50) -> Optional[list[Commit]]:
        result = self._run("log", f"-{limit}", _LOG_FORMAT, ref, check=False)
        if result.returncode != 0:
            return None
        return parse_log(result.stdout)

    def commit_time(self, ref: str) -> Optional[int]:
        """Author time of a commit as UTC epoch seconds."""
        result = self._run("log", "-1", "--format=%aI", ref, check=False)
        if result.returncode != 0 or not result.stdout.strip():
            return None
        return to_epoch(result.stdout.strip())

    def is_ancestor(self, commit: str, ref: str) -> bool:
        return self._run("merge-base", "--is-ancestor", commit, ref, check=False).returncode == 0

    def merge_base(self, a: str, b: str) -> Optional[str]:
        result = self._run("merge-base", a, b, check=False)
        if result.returncode != 0:
            return None
        return result.stdout.strip() or None

    def count_commits(self, base: str, head: str) -> Optional[int]:
        result = self._run("rev-list", "--count", f"{base}..{head}", check=False)
        if result.returncode != 0:
            return None
        try:
            return int(result.stdout.strip())
        except ValueError:
            return None

    def diff_stat(self, base: str, head: str) -> str:
        result = self._run("diff", "--stat", f"{base}...{head}", check=False)
        return result.stdout.strip()

    def get_changed_files(self, since_commit: Optional[str] = None) -> list[str]:
        """Get list of files changed since a commit (or all uncommitted)."""
        if since_commit:
            result = self._run("diff", "--name-only", f"{since_commit}...HEAD", check=False)
        else:
            result = self._run("diff", "--name-only", "HEAD", check=False)

        if result.returncode != 0 or not result.stdout.strip():
            return []

        return result.stdout.strip().split("\n")

    # =========================================================================
    # Mutations
    # =========================================================================

    def stage_all(self) -> None:
        """Stage all changes."""
        self._run("add", "-A")

    def commit(self, message: str, allow_empty: bool = False) -> Optional[str]:
        """Create a commit and return the hash."""
        args = ["commit", "-m", message]
        if allow_empty:
            args.append("--allow-empty")

        result = self._run(*args, check=False)
        if result.returncode != 0:
            return None

        hash_result = self._run("rev-parse", "HEAD")
        return hash_result.stdout.strip()

    def stash_push(self, message: str) -> bool:
        before = self.rev_parse("refs/stash")
        self._run("stash", "push", "--include-untracked", "-m", message)
        return self.rev_parse("refs/stash") != before

    def stash_pop(self, index: bool = False) -> bool:
        # git keeps the stash entry when the pop conflicts
        args = ["stash", "pop"]
        if index:
            args.append("--index")
        return self._run(*args, check=False).returncode == 0

    def reset_merge(self) -> None:
        """Drop a half-applied stash pop, keeping the stash entry."""
        self._run("reset", "--merge", check=False)

    def stash_count(self) -> int:
        result = self._run("stash", "list", check=False)
        return len([line for line in result.stdout.splitlines() if line.strip()])

    def conflicted_files(self) -> list[str]:
        result = self._run("diff", "--name-only", "--diff-filter=U", check=False)
        return [line for line in result.stdout.splitlines() if line.strip()]

    def add_exclude(self, pattern: str) -> None:
        """Append pattern to the info/exclude file shared by all worktrees."""
        result = self._run("rev-parse", "--git-common-dir", check=False)
        if result.returncode != 0:
            return
        common = Path(result.stdout.strip())
        if not common.is_absolute():
            common = self.project_path / common
        exclude = common / "info" / "exclude"
        existing = exclude.read_text(encoding="utf-8") if exclude.exists() else ""
        if pattern in existing.splitlines():
            return
        exclude.parent.mkdir(parents=True, exist_ok=True)
        prefix = "\n" if existing and not existing.endswith("\n") else ""
        with exclude.open("a", encoding="utf-8") as f:
            f.write(f"{prefix}{pattern}\n")

    def _in_progress(self, name: str) -> bool:
        result = self._run("rev-parse", "--git-path", name, check=False)
        if result.returncode != 0:
            return False
        path = Path(result.stdout.strip())
        if not path.is_absolute():
            path = self.project_path / path
        return path.exists()

    def rebase(self, upstream: str) -> bool:
        result = self._run("rebase", upstream, check=False)
        if result.returncode == 0:
            return True
        if self._in_progress("rebase-merge") or self._in_progress("rebase-apply"):
            return False
        raise GitCommandError(["rebase", upstream], result.returncode, result.stderr)

    def rebase_abort(self) -> None:
        self._run("rebase", "--abort", check=False)

    def merge(self, ref: str, message: Optional[str] = None) -> bool:
        args = ["merge", "--no-edit"]
        if message:
            args.extend(["-m", message])
        args.append(ref)
        result = self._run(*args, check=False)
        if result.returncode == 0:
            return True
        if self._in_progress("MERGE_HEAD"):
            return False
        raise GitCommandError(args, result.returncode, result.stderr)

    def merge_abort(self) -> None:
        self._run("merge", "--abort", check=False)

    def push(self, remote: str, branch: str, force_with_lease: Optional[str] = None) -> bool:
        args = ["push"]
        if force_with_lease:
            args.append(f"--force-with-lease={force_with_lease}")
        args.extend([remote, branch])
        return self._run(*args, check=False).returncode == 0

    def delete_branch(self, branch: str) -> bool:
        return self._run("branch", "-D", branch, check=False).returncode == 0

    def delete_remote_branch(self, remote: str, branch: str) -> bool:
        return self._run("push", remote, "--delete", branch, check=False).returncode == 0

    # =========================================================================
    # Worktrees
    # =========================================================================

    def add_worktree(self, path: Path, branch: str, base: str) -> None:
        if self.rev_parse(f"refs/heads/{branch}"):
            self._run("worktree", "add", str(path), branch)
        else:
            self._run("worktree", "add", "-b", branch, str(path), base)

    def remove_worktree(self, path: Path) -> bool:
        result = self._run("worktree", "remove", "--force", str(path), check=False)
        self._run("worktree", "prune", check=False)
        return result.returncode == 0

    def list_worktrees(self) -> list[WorktreeEntry]:
        result = self._run("worktree", "list", "--porcelain", check=False)
        if result.returncode != 0:
            return []

        entries = []
        current: dict = {}
        for line in result.stdout.splitlines() + [""]:
            if not line.strip():
                if current.get("path"):
                    entries.append(WorktreeEntry(
                        path=current["path"],
                        branch=current.get("branch"),
                        head=current.get("head"),
                    ))
                current = {}
                continue
            key, _, value = line.partition(" ")
            if key == "worktree":
                current["path"] = value
            elif key == "HEAD":
                current["head"] = value
            elif key == "branch":
                current["branch"] = value.removeprefix("refs/heads/")
        return entries
