"""Orchestration components for the issue pipeline.

This package drives issues through the policy layer:
- IssuePipeline: Per-issue phase loop (develop, review, assess, fix, merge)
- BatchRunner: Runs several issues with session limits and batch-blocking
- InterruptHandler: Handles signals, WIP commits and resume snapshots
- AgentPipelineSteps: Agent- and `gh`-backed implementation of the steps
"""

from .recovery import InterruptHandler
from .pipeline import IssuePipeline
from .batch import BatchRunner
from .steps import AgentPipelineSteps

__all__ = [
    "InterruptHandler",
    "IssuePipeline",
    "BatchRunner",
    "AgentPipelineSteps",
]
