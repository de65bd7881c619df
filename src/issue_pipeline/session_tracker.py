"""Durable session ledger.

One JSON record per project clone at <clone>/<data_dir>/session.json,
shared with every worktree through a symlinked data directory. Writes go
through a temp file and os.replace so a reader never sees a partial record.
There is no locking: two sessions running against the same clone at the
same time are not supported.
"""

import json
import os
import stat
import tempfile
from pathlib import Path
from typing import Any, Callable, Optional

from pydantic import ValidationError
from rich.console import Console

from .git_manager import GitManager
from .models import (
    ContinueDecision, PipelineConfig, SessionRecord, SessionSnapshot, WorkflowMode
)
from .timestamps import format_epoch, now_epoch

console = Console()


def atomic_write_text(path: Path, content: str) -> None:
    """Write content to path via a temp file in the same directory."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def format_duration(seconds: int) -> str:
    hours, rest = divmod(max(seconds, 0), 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}h {minutes}m {secs}s"
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


class SessionTracker:
    """Tracks session counters, limits, approvals and notification dedup."""

    SESSION_FILE = "session.json"

    def __init__(
        self,
        project_root: Path,
        config: Optional[PipelineConfig] = None,
        clock: Callable[[], int] = now_epoch,
    ):
        self.project_root = Path(project_root)
        self.config = config or PipelineConfig()
        self.clock = clock
        self.data_dir = self.project_root / self.config.data_dir
        self.session_file = self.data_dir / self.SESSION_FILE
        self.snapshot_dir = self.data_dir / "snapshots"
        self.resume_dir = self.data_dir / "resume"

    # =========================================================================
    # Record I/O
    # =========================================================================

    def load(self) -> Optional[SessionRecord]:
        """Read the current record, or None if there is none."""
        if not self.session_file.exists():
            return None
        try:
            return SessionRecord.model_validate_json(self.session_file.read_text(encoding="utf-8"))
        except (ValidationError, ValueError) as e:
            console.print(f"[yellow]Ignoring unreadable session record {self.session_file}: {e}[/yellow]")
            return None

    def _save(self, record: SessionRecord) -> None:
        record.last_update = self.clock()
        atomic_write_text(self.session_file, record.model_dump_json(indent=2))

    def _record(self) -> SessionRecord:
        record = self.load()
        if record is None:
            record = self.init()
        return record

    def _mutate(self, change: Callable[[SessionRecord], None]) -> SessionRecord:
        record = self._record()
        change(record)
        self._save(record)
        return record

    def init(self, mode: WorkflowMode = WorkflowMode.ATTENDED) -> SessionRecord:
        """Start a new session.

        Counters and limits reset. Approved blockers and sent notifications
        are carried forward from any previous record.
        """
        previous = self.load()
        now = self.clock()
        record = SessionRecord(
            start_time=now,
            mode=mode,
            approved_blockers=previous.approved_blockers if previous else [],
            sent_notifications=previous.sent_notifications if previous else [],
            last_update=now,
        )
        self._save(record)
        return record

    def update(self, key: str, value: Any) -> SessionRecord:
        """Set one field of the record.

        Raises:
            KeyError: If key is not a session field
            ValidationError: If value does not fit the field
        """
        if key not in SessionRecord.model_fields or key == "last_update":
            raise KeyError(f"Unknown session field: {key}")
        record = self._record()
        data = record.model_dump()
        data[key] = value
        updated = SessionRecord.model_validate(data)
        self._save(updated)
        return updated

    # =========================================================================
    # Counters and current work
    # =========================================================================

    def increment_completed(self) -> int:
        def change(record: SessionRecord) -> None:
            record.issues_completed += 1
        return self._mutate(change).issues_completed

    def increment_failed(self) -> int:
        def change(record: SessionRecord) -> None:
            record.issues_failed += 1
        return self._mutate(change).issues_failed

    def set_current_issue(self, issue: Optional[int]) -> None:
        self.update("current_issue", issue)

    def set_current_worktree(self, path: Optional[Path]) -> None:
        self.update("worktree_path", str(path) if path is not None else None)

    # =========================================================================
    # Time and limits
    # =========================================================================

    def elapsed_seconds(self) -> int:
        record = self.load()
        if record is None:
            return 0
        return max(self.clock() - record.start_time, 0)

    def elapsed_hours(self) -> float:
        return self.elapsed_seconds() / 3600

    def format_elapsed(self) -> str:
        return format_duration(self.elapsed_seconds())

    def should_continue(self) -> ContinueDecision:
        """Whether another issue may be started in this session.

        Once a limit is reported it keeps being reported until the next
        init(), even if the clock or counters would now say otherwise.
        """
        record = self._record()
        if record.limit_reached is not None:
            return record.limit_reached

        decision = ContinueDecision.CONTINUE
        if record.issues_completed >= self.config.max_issues_per_session:
            decision = ContinueDecision.TOKEN_LIMIT
        elif (self.clock() - record.start_time) / 3600 >= self.config.max_session_hours:
            decision = ContinueDecision.TIME_LIMIT

        if decision != ContinueDecision.CONTINUE:
            def change(r: SessionRecord) -> None:
                r.limit_reached = decision
            self._mutate(change)
        return decision

    # =========================================================================
    # Approvals and notification dedup
    # =========================================================================

    def add_approved_blocker(self, issue: int, blocker_type: str) -> None:
        pair = (issue, str(blocker_type))

        def change(record: SessionRecord) -> None:
            if pair not in record.approved_blockers:
                record.approved_blockers.append(pair)
        self._mutate(change)

    def has_approved_blocker(self, issue: int, blocker_type: str) -> bool:
        record = self.load()
        return record is not None and (issue, str(blocker_type)) in record.approved_blockers

    def mark_notification_sent(self, issue: int, notification_type: str) -> None:
        pair = (issue, str(notification_type))

        def change(record: SessionRecord) -> None:
            if pair not in record.sent_notifications:
                record.sent_notifications.append(pair)
        self._mutate(change)

    def has_sent_notification(self, issue: int, notification_type: str) -> bool:
        record = self.load()
        return record is not None and (issue, str(notification_type)) in record.sent_notifications

    # =========================================================================
    # Interrupt snapshots
    # =========================================================================

    def snapshot_path(self, issue: int) -> Path:
        return self.snapshot_dir / f"session-state-{issue}.json"

    def snapshot(self, issue: int, reason: str, worktree: Optional[Path] = None) -> Path:
        """Persist the record plus local git state for a later resume."""
        git_status = ""
        last_commit = ""
        if worktree is not None and Path(worktree).exists():
            git = GitManager(worktree)
            git_status = git.status_short()
            last_commit = git.last_commit_oneline()

        now = self.clock()
        snapshot = SessionSnapshot(
            saved_at=now,
            saved_at_human=format_epoch(now),
            reason=reason,
            issue_number=issue,
            worktree_path=str(worktree) if worktree is not None else None,
            session=self.load(),
            git_status=git_status,
            last_commit=last_commit,
        )
        path = self.snapshot_path(issue)
        atomic_write_text(path, snapshot.model_dump_json(indent=2))
        console.print(f"[dim]Session state saved to: {path}[/dim]")
        return path

    def load_snapshot(self, issue: int) -> Optional[SessionSnapshot]:
        path = self.snapshot_path(issue)
        if not path.exists():
            return None
        try:
            return SessionSnapshot.model_validate_json(path.read_text(encoding="utf-8"))
        except (ValidationError, ValueError) as e:
            console.print(f"[yellow]Ignoring unreadable snapshot {path}: {e}[/yellow]")
            return None

    def clear_snapshot(self, issue: int) -> None:
        self.snapshot_path(issue).unlink(missing_ok=True)

    def create_resume_script(
        self,
        issue: int,
        blocker_type: str,
        worktree: Optional[Path] = None,
    ) -> Path:
        """Write an executable script that shows the saved state and resumes the issue."""
        timestamp = self.clock()
        script = self.resume_dir / f"resume-{issue}-{timestamp}.sh"
        worktree_path = str(worktree) if worktree is not None else ""
        snapshot = self.snapshot_path(issue)

        guidance = {
            "session_limit": [
                'echo "Session limit reached. Work was saved automatically."',
            ],
            "credentials_expired": [
                'echo "Credentials expired. Refresh them, then continue with this script."',
                f'echo "  Probe: {self.config.credential_probe_command}"',
            ],
        }.get(str(blocker_type), [
            'echo "Manual review required: check the changes above before continuing."',
        ])

        lines = [
            "#!/usr/bin/env bash",
            f"# Resume issue #{issue} after: {blocker_type}",
            "set -euo pipefail",
            "",
            f'WORKTREE_PATH="{worktree_path}"',
            f'SNAPSHOT="{snapshot}"',
            "",
            f'echo "Resume workflow for issue #{issue}"',
            'if [ -f "$SNAPSHOT" ]; then',
            '  echo "Saved session state:"',
            '  cat "$SNAPSHOT"',
            "fi",
            'if [ -n "$WORKTREE_PATH" ] && [ -d "$WORKTREE_PATH" ]; then',
            '  echo "Worktree status:"',
            '  git -C "$WORKTREE_PATH" status --short',
            '  echo "Last commit:"',
            '  git -C "$WORKTREE_PATH" log -1 --oneline',
            'elif [ -n "$WORKTREE_PATH" ]; then',
            '  echo "Worktree not found at: $WORKTREE_PATH"',
            "fi",
            *guidance,
            "",
            'read -r -p "Continue? (y/n) " reply',
            'if [ "$reply" != "y" ]; then',
            '  echo "Cancelled."',
            "  exit 0",
            "fi",
            f'cd "{self.project_root}"',
            f"issue-pipeline run {issue}",
            "",
        ]
        atomic_write_text(script, "\n".join(lines))
        script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        console.print(f"[dim]Resume script created: {script}[/dim]")
        return script

    # =========================================================================
    # Reporting
    # =========================================================================

    def summary(self) -> str:
        record = self.load()
        if record is None:
            return "No active session"
        total = record.issues_completed + record.issues_failed
        return "\n".join([
            f"Mode: {record.mode.value}",
            f"Duration: {self.format_elapsed()}",
            f"Issues Completed: {record.issues_completed}",
            f"Issues Failed: {record.issues_failed}",
            f"Total Processed: {total}",
        ])

    def cleanup(self) -> None:
        """Remove the session record, including approvals and notification history."""
        self.session_file.unlink(missing_ok=True)
        console.print("[green]Session cleaned up[/green]")

    def to_json(self) -> str:
        record = self.load()
        return json.dumps(record.model_dump(mode="json") if record else {}, indent=2)
