"""Per-issue worktrees.

Each issue is worked on in its own worktree next to the clone. The clone's
data directory is symlinked into every worktree so all checkouts share one
session ledger and one notes document.
"""

from pathlib import Path
from typing import Optional

from rich.console import Console

from .git_manager import GitManager
from .models import PipelineConfig, WorktreeRecord
from .timestamps import now_epoch

console = Console()


def worktree_base(project_root: Path, config: PipelineConfig) -> Path:
    if config.worktree_dir:
        return Path(config.worktree_dir).expanduser()
    root = Path(project_root).resolve()
    return root.parent / f"{root.name}-worktrees"


def branch_for_issue(issue: int) -> str:
    return f"issue-{issue}"


def age_display(hours: int) -> str:
    if hours >= 48:
        text = f"{hours // 24}d old"
    elif hours >= 1:
        text = f"{hours}h old"
    else:
        text = "<1h old"
    if hours > WorktreeRecord.STALE_AFTER_HOURS:
        text += " (stale)"
    return text


def link_data_dir(project_root: Path, worktree: Path, config: PipelineConfig) -> None:
    """Point <worktree>/<data_dir> at the clone's data directory.

    The data directory is excluded from git so it never shows up as
    uncommitted work in the clone or any worktree.
    """
    target = Path(project_root).resolve() / config.data_dir
    target.mkdir(parents=True, exist_ok=True)
    # No trailing slash: git does not treat the symlink as a directory
    GitManager(project_root).add_exclude(f"/{config.data_dir}")
    link = Path(worktree) / config.data_dir
    if link.is_symlink() or link.exists():
        return
    link.symlink_to(target, target_is_directory=True)


def ensure_worktree(project_root: Path, config: PipelineConfig, issue: int, branch: Optional[str] = None) -> Path:
    """Return the issue's worktree, creating it from mainline if needed."""
    git = GitManager(project_root)
    branch = branch or branch_for_issue(issue)

    for entry in git.list_worktrees():
        if entry.branch == branch and Path(entry.path).exists():
            link_data_dir(project_root, Path(entry.path), config)
            return Path(entry.path)

    path = worktree_base(project_root, config) / branch
    path.parent.mkdir(parents=True, exist_ok=True)
    git.fetch(config.remote, config.mainline)
    if git.rev_parse(f"refs/heads/{branch}") is None and git.fetch(config.remote, branch):
        base = f"{config.remote}/{branch}"
    else:
        base = f"{config.remote}/{config.mainline}"
    git.add_worktree(path, branch, base)
    link_data_dir(project_root, path, config)
    console.print(f"[dim]Created worktree {path} on {branch}[/dim]")
    return path


def scan_worktrees(project_root: Path, config: Optional[PipelineConfig] = None) -> list[WorktreeRecord]:
    """Describe every worktree of the clone except the clone itself.

    Uses the locally known remote refs; nothing is fetched.
    """
    config = config or PipelineConfig()
    root = Path(project_root).resolve()
    records = []
    now = now_epoch()
    mainline = f"{config.remote}/{config.mainline}"

    for entry in GitManager(root).list_worktrees():
        path = Path(entry.path)
        if path.resolve() == root or not path.is_dir():
            continue

        git = GitManager(path)
        branch = entry.branch or "unknown"
        status = git.get_status()
        # Untracked files are not counted as uncommitted work
        uncommitted = len(set(status.staged_files) | set(status.modified_files))

        unpushed = 0
        if git.rev_parse(f"refs/remotes/{config.remote}/{branch}"):
            unpushed = git.count_commits(f"{config.remote}/{branch}", "HEAD") or 0

        last_commit = git.commit_time("HEAD")
        age_hours = (now - last_commit) // 3600 if last_commit else 0

        behind = 0
        base = git.merge_base("HEAD", mainline)
        if base:
            behind = git.count_commits(base, mainline) or 0

        records.append(WorktreeRecord(
            path=str(path),
            branch=branch,
            uncommitted=uncommitted,
            unpushed=unpushed,
            age_hours=max(age_hours, 0),
            commits_behind=behind,
        ))
    return records


def remove_stale_worktrees(project_root: Path, config: Optional[PipelineConfig] = None) -> list[str]:
    """Remove stale worktrees that have no uncommitted or unpushed work."""
    config = config or PipelineConfig()
    git = GitManager(project_root)
    removed = []
    for record in scan_worktrees(project_root, config):
        if not record.is_stale:
            continue
        if record.uncommitted or record.unpushed:
            console.print(f"[yellow]Keeping stale worktree with work in it: {record.path}[/yellow]")
            continue
        if git.remove_worktree(Path(record.path)):
            removed.append(record.path)
            console.print(f"[dim]Removed stale worktree: {record.path}[/dim]")
    return removed
