"""Exception hierarchy for the issue pipeline.

Only fatal preconditions and unexpected command failures propagate to the
caller. Remote read failures and classification failures are
raised close to their source and absorbed by the component that owns the
decision (see each component's module docstring).
"""


class PipelineError(Exception):
    """Base class for all pipeline errors."""


class RemoteReadError(PipelineError):
    """A read from the code-hosting API failed or returned unusable data.

    Callers treat this as "no signal" and fall back to a conservative default.
    """


class GitCommandError(PipelineError):
    """A mutating git command failed."""

    def __init__(self, args: list[str], returncode: int, stderr: str = ""):
        self.command = args
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(
            f"git {' '.join(args)} failed (exit {returncode}): {stderr.strip()[:300]}"
        )


class ClassificationError(PipelineError):
    """The commit classification capability failed to produce an answer."""


class FatalPreconditionError(PipelineError):
    """The environment is unusable (not a repository, malformed configuration)."""


class UndoRefusedError(PipelineError):
    """The issue's work has already been merged and can only be reverted."""
