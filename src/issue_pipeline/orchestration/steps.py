"""Agent-backed pipeline steps.

Each step renders a prompt template and runs the AI agent in the issue's
worktree. Templates are looked up in the project first
(<data_dir>/templates/<name>.md) and then in the package.
"""

from pathlib import Path
from typing import Optional

from rich.console import Console

from ..agent_runner import AgentRunner
from ..errors import PipelineError, RemoteReadError
from ..git_manager import GitManager
from ..github_client import GitHubClient
from ..models import Issue, PipelineConfig, PullRequest
from ..notes import NotesDocument
from ..worktrees import ensure_worktree

console = Console()


class AgentPipelineSteps:
    """PipelineSteps implementation driving the `claude` CLI and `gh`."""

    def __init__(
        self,
        project_root: Path,
        config: PipelineConfig,
        host: GitHubClient,
        runner: Optional[AgentRunner] = None,
        notes: Optional[NotesDocument] = None,
    ):
        self.project_root = Path(project_root)
        self.config = config
        self.host = host
        self.runner = runner or AgentRunner(config)
        self.notes = notes or NotesDocument(self.project_root / config.data_dir)

    def _load_template(self, name: str) -> str:
        """Load a prompt template.

        Raises:
            FileNotFoundError: If template not found
        """
        local = self.project_root / self.config.data_dir / "templates" / f"{name}.md"
        if local.exists():
            return local.read_text(encoding="utf-8")

        package = Path(__file__).parent.parent / "templates" / f"{name}.md"
        if package.exists():
            return package.read_text(encoding="utf-8")

        raise FileNotFoundError(f"Prompt template not found: {name}")

    def render(self, name: str, issue: Issue, worktree: Path, **values: object) -> str:
        security = self.notes.security_context() or "None recorded."
        return self._load_template(name).format(
            issue_number=issue.number,
            issue_title=issue.title,
            issue_body=issue.body or "(no description)",
            branch=GitManager(worktree).current_branch(),
            mainline=self.config.mainline,
            review_marker=self.config.review_marker,
            assessment_marker=self.config.assessment_marker,
            security_context=security,
            **values,
        )

    async def _run(self, prompt: str, worktree: Path) -> bool:
        result = await self.runner.run(prompt, worktree)
        if result.success:
            return True
        if result.timed_out and result.has_work_in_progress:
            return True
        console.print(f"[red]Agent failed (exit code {result.exit_code})[/red]")
        return False

    def prepare_worktree(self, issue: Issue) -> Path:
        return ensure_worktree(self.project_root, self.config, issue.number)

    async def develop(self, issue: Issue, worktree: Path) -> bool:
        return await self._run(self.render("develop", issue, worktree), worktree)

    def open_pr(self, issue: Issue, worktree: Path) -> Optional[PullRequest]:
        branch = GitManager(worktree).current_branch()
        body = f"Closes #{issue.number}\n\n{issue.title}"
        try:
            number = self.host.create_pr(branch, self.config.mainline, issue.title or f"Issue #{issue.number}", body)
            pr = self.host.get_pr(number)
        except (PipelineError, RemoteReadError) as e:
            console.print(f"[red]Could not open PR for #{issue.number}: {e}[/red]")
            return None
        console.print(f"[green]Opened PR #{pr.number}[/green]")
        return pr

    async def review(self, issue: Issue, pr: PullRequest, worktree: Path, guidance: str = "") -> bool:
        prompt = self.render("review", issue, worktree, pr_number=pr.number, guidance=guidance)
        return await self._run(prompt, worktree)

    async def assess(self, issue: Issue, pr: PullRequest, worktree: Path) -> bool:
        try:
            head = self.host.get_pr_head(pr.number)
        except RemoteReadError as e:
            console.print(f"[red]Could not read head of PR #{pr.number}: {e}[/red]")
            return False
        prompt = self.render("assess", issue, worktree, pr_number=pr.number, head_sha=head)
        return await self._run(prompt, worktree)

    async def fix(self, issue: Issue, pr: PullRequest, worktree: Path, actionable: int) -> bool:
        prompt = self.render("fix", issue, worktree, pr_number=pr.number, actionable=actionable)
        return await self._run(prompt, worktree)

    def merge(self, pr: PullRequest) -> bool:
        try:
            if pr.is_draft:
                self.host.mark_ready(pr.number)
            self.host.merge_pr(pr.number)
        except PipelineError as e:
            console.print(f"[red]Merge of PR #{pr.number} failed: {e}[/red]")
            return False
        return True
