"""Runs the AI coding agent as a child process.

The agent gets a task prompt on stdin and a wall-clock timeout. While it
runs, a heartbeat task prints elapsed time. On timeout the child is killed
and the worktree is inspected: whatever the agent left behind is reported
as work in progress rather than discarded.
"""

import asyncio
import time
from pathlib import Path
from typing import Callable, Optional

from rich.console import Console

from .git_manager import GitManager
from .models import AgentRunResult, PipelineConfig
from .session_tracker import format_duration

console = Console()


class AgentRunner:
    """Runs one agent invocation in a worktree."""

    def __init__(
        self,
        config: Optional[PipelineConfig] = None,
        command: Optional[list[str]] = None,
        on_heartbeat: Optional[Callable[[float], None]] = None,
    ):
        self.config = config or PipelineConfig()
        self.command = command or [*self.config.agent_command, "--print"]
        self.on_heartbeat = on_heartbeat

    async def _heartbeat(self, started: float) -> None:
        interval = max(self.config.heartbeat_seconds, 1)
        while True:
            await asyncio.sleep(interval)
            elapsed = time.monotonic() - started
            if self.on_heartbeat is not None:
                self.on_heartbeat(elapsed)
            else:
                console.print(f"[dim]Agent still running ({format_duration(int(elapsed))})[/dim]")

    async def run(self, prompt: str, worktree: Path, timeout: Optional[int] = None) -> AgentRunResult:
        """Run the agent with prompt in worktree.

        Args:
            prompt: Task prompt, written to the child's stdin
            worktree: Working directory for the child
            timeout: Seconds before the child is killed (config default if None)
        """
        timeout = timeout if timeout is not None else self.config.agent_timeout_seconds
        started = time.monotonic()
        console.print(f"[blue]Starting agent (timeout {timeout // 60}m)[/blue]")

        process = await asyncio.create_subprocess_exec(
            *self.command,
            cwd=str(worktree),
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
        heartbeat = asyncio.create_task(self._heartbeat(started))
        timed_out = False
        try:
            await asyncio.wait_for(process.communicate(prompt.encode("utf-8")), timeout=timeout)
        except asyncio.TimeoutError:
            timed_out = True
            console.print(f"[yellow]Agent timed out after {timeout}s; stopping it[/yellow]")
            if process.returncode is None:
                process.kill()
            await process.wait()
        finally:
            heartbeat.cancel()
            try:
                await heartbeat
            except asyncio.CancelledError:
                pass

        elapsed = time.monotonic() - started
        wip = self.has_work_in_progress(worktree)
        if timed_out and wip:
            console.print("[yellow]Agent left work in progress; continuing with it[/yellow]")

        return AgentRunResult(
            exit_code=None if timed_out else process.returncode,
            timed_out=timed_out,
            elapsed_seconds=elapsed,
            has_work_in_progress=wip,
        )

    def has_work_in_progress(self, worktree: Path) -> bool:
        """Uncommitted changes, or commits not yet on the remote."""
        git = GitManager(worktree)
        if not git.is_git_repo():
            return False
        if git.is_dirty():
            return True
        branch = git.current_branch()
        if not branch:
            return False
        remote = self.config.remote
        upstream = f"refs/remotes/{remote}/{branch}"
        if git.rev_parse(upstream) is None:
            upstream = f"refs/remotes/{remote}/{self.config.mainline}"
        return bool(git.count_commits(upstream, "HEAD"))
