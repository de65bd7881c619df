"""Interrupt handling.

Handles:
- Signal handlers for graceful shutdown (SIGINT, SIGTERM)
- File-based stop signal detection
- Committing (or offering to commit) work in progress
- Persisting a resumable snapshot and returning to the project root
"""

import os
import signal
import sys
from pathlib import Path
from typing import Any, Callable, Optional

from rich.console import Console

from ..git_manager import GitManager
from ..models import PipelineConfig, WorkflowMode
from ..protocols import GitOperations, Prompter
from ..session_tracker import SessionTracker
from ..timestamps import format_epoch, now_epoch

console = Console()

# Stop request file, relative to the data directory
STOP_REQUEST_FILE = "stop-requested"

COMMIT_WIP = "Commit work in progress"
LEAVE_UNCOMMITTED = "Leave changes uncommitted"


class InterruptHandler:
    """Turns a signal or stop file into a clean, resumable stop.

    There is no rollback: work in progress is committed (unattended) or the
    human is asked (attended), a snapshot is written through the
    SessionTracker, and the process moves back to the project root.
    """

    def __init__(
        self,
        project_root: Path,
        tracker: SessionTracker,
        config: Optional[PipelineConfig] = None,
        prompter: Optional[Prompter] = None,
        git_factory: Callable[[Path], GitOperations] = GitManager,
    ):
        self.project_root = Path(project_root)
        self.tracker = tracker
        self.config = config or PipelineConfig()
        self.prompter = prompter
        self.git_factory = git_factory

        self._shutdown_requested = False
        self._issue: Optional[int] = None
        self._worktree: Optional[Path] = None
        self._mode = WorkflowMode.ATTENDED

    @property
    def stop_file(self) -> Path:
        return self.project_root / self.config.data_dir / STOP_REQUEST_FILE

    def setup_signal_handlers(self) -> None:
        """Set up signal handlers for graceful shutdown.

        On Windows, only SIGINT (Ctrl+C) is supported.
        """
        signal.signal(signal.SIGINT, self._handle_shutdown_signal)

        if sys.platform != "win32":
            signal.signal(signal.SIGTERM, self._handle_shutdown_signal)

    def _handle_shutdown_signal(self, signum: int, frame: Any) -> None:
        signal_name = signal.Signals(signum).name
        console.print(f"\n[yellow]Shutdown signal received ({signal_name}); stopping after the current step...[/yellow]")
        self._shutdown_requested = True

    def is_shutdown_requested(self) -> bool:
        """True after a signal or when the stop request file exists."""
        if self._shutdown_requested:
            return True

        if self.stop_file.exists():
            console.print("[yellow]Stop request file detected...[/yellow]")
            self._shutdown_requested = True
            return True

        return False

    def request_stop(self, reason: str = "User requested stop") -> Path:
        """Create the stop request file picked up by a running pipeline."""
        self.stop_file.parent.mkdir(parents=True, exist_ok=True)
        self.stop_file.write_text(f"{format_epoch(now_epoch())}\n{reason}")
        return self.stop_file

    def _clear_stop_request(self) -> None:
        if self.stop_file.exists():
            try:
                self.stop_file.unlink()
                console.print("[dim]Cleared stop request file[/dim]")
            except OSError:
                pass  # Removed concurrently

    def set_current_context(
        self,
        issue: Optional[int],
        worktree: Optional[Path] = None,
        mode: WorkflowMode = WorkflowMode.ATTENDED,
    ) -> None:
        self._issue = issue
        self._worktree = Path(worktree) if worktree is not None else None
        self._mode = mode

    def _commit_wip(self, git: GitOperations) -> Optional[str]:
        if not git.is_dirty():
            return None

        if self._mode == WorkflowMode.ATTENDED and self.prompter is not None:
            choice = self.prompter.choose(
                f"Uncommitted changes in {self._worktree}.",
                [COMMIT_WIP, LEAVE_UNCOMMITTED],
                default=COMMIT_WIP,
            )
            if choice != COMMIT_WIP:
                console.print("[yellow]Leaving changes uncommitted[/yellow]")
                return None

        console.print("[yellow]Committing uncommitted changes...[/yellow]")
        git.stage_all()
        commit_hash = git.commit(
            f"wip: auto-commit interrupted work on {git.current_branch()}\n\n"
            f"Issue in progress: #{self._issue}"
        )
        if commit_hash:
            console.print(f"[green]Committed:[/green] {commit_hash[:8]}")
        return commit_hash

    def graceful_shutdown(self, reason: str = "interrupted") -> Optional[Path]:
        """Commit WIP, snapshot the issue, and return to the project root.

        Returns:
            Path of the snapshot, or None when no issue was in progress
        """
        console.print("\n[yellow]Performing graceful shutdown...[/yellow]")
        snapshot = None

        if self._worktree is not None and self._worktree.exists():
            self._commit_wip(self.git_factory(self._worktree))

        if self._issue is not None:
            snapshot = self.tracker.snapshot(self._issue, reason, self._worktree)

        os.chdir(self.project_root)
        self._clear_stop_request()
        console.print("[green]Shutdown complete.[/green]")
        return snapshot
