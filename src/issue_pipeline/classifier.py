"""LLM-backed commit classification.

Used only after the cheap message and ancestry heuristics in divergence.py
have failed to decide. Any failure raises ClassificationError; the caller
substitutes a mode-dependent default.
"""

import re
import subprocess
from typing import Optional

from .errors import ClassificationError
from .models import Classification, Commit

ANSWER_PATTERN = re.compile(r"\b(TRIVIAL|RELATED|UNRELATED)\b", re.IGNORECASE)

PROMPT_TEMPLATE = """You are classifying foreign commits found on a PR branch.

Issue context:
{issue_context}

Foreign commits found on remote but not on local working copy:
{commits}

Diff summary:
{diff_summary}

Classify ALL foreign commits together as ONE of these categories:
- TRIVIAL: Non-functional changes only (docs, comments, formatting, renames, dependency bumps, mainline sync). No logic changes.
- RELATED: Changes that implement, fix, or extend the same issue described above (review fixes, continuation of same work, test additions for same feature).
- UNRELATED: Changes for a different issue, feature, or unknown origin.

Answer with ONLY ONE WORD: TRIVIAL, RELATED, or UNRELATED
"""


def build_prompt(issue_context: str, commits: list[Commit], diff_summary: str) -> str:
    # Keep the tail of the diffstat, which carries the totals line
    diff_tail = "\n".join(diff_summary.strip().splitlines()[-20:])
    return PROMPT_TEMPLATE.format(
        issue_context=issue_context.strip() or "No issue context available",
        commits="\n".join(c.oneline() for c in commits) or "(none)",
        diff_summary=diff_tail or "(empty)",
    )


def parse_classification(output: str) -> Optional[Classification]:
    """First categorical answer found in the output, if any."""
    match = ANSWER_PATTERN.search(output or "")
    if not match:
        return None
    return Classification(match.group(1).upper())


class ClaudeCommitClassifier:
    """Classifies commits by asking the `claude` CLI in print mode."""

    def __init__(self, command: Optional[list[str]] = None, timeout: int = 120):
        self.command = command or ["claude"]
        self.timeout = timeout

    def classify(self, issue_context: str, commits: list[Commit], diff_summary: str) -> Classification:
        prompt = build_prompt(issue_context, commits, diff_summary)
        try:
            result = subprocess.run(
                [*self.command, "--print"],
                input=prompt,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                check=False
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            raise ClassificationError(f"Classifier did not run: {e}") from e

        if result.returncode != 0:
            raise ClassificationError(
                f"Classifier exited with {result.returncode}: {result.stderr.strip()[:200]}"
            )

        classification = parse_classification(result.stdout)
        if classification is None:
            raise ClassificationError(f"No classification in output: {result.stdout.strip()[:200]!r}")
        return classification
