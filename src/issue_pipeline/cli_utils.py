"""Locating the external command-line tools the pipeline drives.

`git` and `gh` are expected on PATH. The `claude` CLI is often installed by
npm into a directory that is not on PATH for non-interactive shells, so a
few well-known install locations are checked as well.
"""

import os
import shutil
import sys
from pathlib import Path
from typing import Optional

from .errors import FatalPreconditionError
from .models import PipelineConfig

INSTALL_HINTS = {
    "git": "Install git from https://git-scm.com/downloads",
    "gh": "Install the GitHub CLI from https://cli.github.com and run 'gh auth login'",
    "claude": "Install with: npm install -g @anthropic-ai/claude-code",
}


def _candidate_paths(name: str) -> list[Path]:
    if sys.platform == "win32":
        roots = [
            Path(os.environ.get("APPDATA", "")) / "npm",
            Path(os.environ.get("LOCALAPPDATA", "")) / "npm",
        ]
        return [root / f"{name}.cmd" for root in roots]
    return [
        Path.home() / ".npm-global" / "bin" / name,
        Path("/usr/local/bin") / name,
        Path.home() / ".local" / "bin" / name,
        # nvm keeps a symlink to the active version
        Path.home() / ".nvm" / "current" / "bin" / name,
    ]


def find_executable(name: str) -> Optional[str]:
    """Find a CLI executable on PATH or in common install directories."""
    path = shutil.which(name)
    if path:
        return path
    if sys.platform == "win32":
        path = shutil.which(f"{name}.cmd")
        if path:
            return path
    for candidate in _candidate_paths(name):
        if candidate.exists():
            return str(candidate)
    return None


def require_tools(*names: str) -> dict[str, str]:
    """Resolve every named tool or fail before any work starts.

    Raises:
        FatalPreconditionError: If a tool is missing
    """
    found = {}
    missing = []
    for name in names:
        path = find_executable(name)
        if path is None:
            missing.append(f"{name} not found. {INSTALL_HINTS.get(name, '')}".strip())
        else:
            found[name] = path
    if missing:
        raise FatalPreconditionError("\n".join(missing))
    return found


def resolve_agent_command(config: PipelineConfig) -> list[str]:
    """The configured agent command with its executable resolved to a path."""
    command = list(config.agent_command)
    path = find_executable(command[0])
    if path is None:
        raise FatalPreconditionError(
            f"{command[0]} not found. {INSTALL_HINTS.get(command[0], '')}".strip()
        )
    command[0] = path
    return command
