"""Cross-session notes document.

A free-form markdown file shared by all worktrees next to the session
ledger. Three sections are maintained by the pipeline, each by
prepend-and-trim:

- "Current Work": at most one entry, replaced when an issue starts and
  cleared after merge
- "Recent Security Findings": findings from the last 5 merged PRs
- "Completed Work Archive": the last 20 merged PRs

Anything else in the file is left untouched.
"""

import re
from pathlib import Path
from typing import Optional

from .session_tracker import atomic_write_text
from .timestamps import format_epoch, now_epoch

CURRENT_WORK = "Current Work"
SECURITY = "Recent Security Findings (Last 5 PRs)"
ARCHIVE = "Completed Work Archive"

SECTION_LIMITS = {SECURITY: 5, ARCHIVE: 20}

NO_ACTIVE_WORK = "_No active work._"

SECURITY_LINE = re.compile(
    r"(CRITICAL|HIGH|MEDIUM).*(security|auth|tenant|validation|sql|xss|csrf|injection|leak)",
    re.IGNORECASE
)

TEMPLATE = f"""# Pipeline Notes

Working notes, security findings and development context shared across sessions.

## {CURRENT_WORK}

{NO_ACTIVE_WORK}

## {SECURITY}

## {ARCHIVE}
"""


def extract_security_findings(review_body: str, context_lines: int = 5, max_lines: int = 50) -> str:
    """Lines of a review that pair a severity with a security keyword, plus context."""
    lines = review_body.splitlines()
    keep: set[int] = set()
    for i, line in enumerate(lines):
        if SECURITY_LINE.search(line):
            keep.update(range(i, min(i + context_lines + 1, len(lines))))
    selected = [lines[i] for i in sorted(keep)][:max_lines]
    return "\n".join(selected).strip()


def escape_headings(text: str) -> str:
    """Escape markdown headings so quoted text cannot open a section or an entry."""
    return re.sub(r"^([ \t]{0,3})#", r"\1\\#", text, flags=re.MULTILINE)


class NotesDocument:
    """The shared notes file."""

    FILENAME = "scratch.md"

    def __init__(self, data_dir: Path):
        self.path = Path(data_dir) / self.FILENAME

    def read(self) -> str:
        if not self.path.exists():
            return ""
        return self.path.read_text(encoding="utf-8")

    def ensure(self) -> None:
        if not self.path.exists():
            atomic_write_text(self.path, TEMPLATE)

    # =========================================================================
    # Section parsing
    # =========================================================================

    def _split(self) -> tuple[str, list[tuple[str, str]]]:
        """Preamble and (heading, body) pairs for every "## " section."""
        self.ensure()
        content = self.read()
        parts = re.split(r"^## (.+)$", content, flags=re.MULTILINE)
        preamble = parts[0]
        sections = [(parts[i].strip(), parts[i + 1]) for i in range(1, len(parts), 2)]
        return preamble, sections

    def _join(self, preamble: str, sections: list[tuple[str, str]]) -> None:
        chunks = [preamble.rstrip("\n") + "\n\n"]
        for heading, body in sections:
            chunks.append(f"## {heading}\n\n{body.strip()}\n\n" if body.strip() else f"## {heading}\n\n")
        atomic_write_text(self.path, "".join(chunks).rstrip("\n") + "\n")

    def section(self, heading: str) -> str:
        _, sections = self._split()
        for name, body in sections:
            if name == heading:
                return body.strip()
        return ""

    def _replace(self, heading: str, body: str) -> None:
        preamble, sections = self._split()
        for i, (name, _) in enumerate(sections):
            if name == heading:
                sections[i] = (heading, body)
                break
        else:
            sections.append((heading, body))
        self._join(preamble, sections)

    def _prepend(self, heading: str, entry: str) -> None:
        """Add an entry at the top of a rolling section, dropping the oldest."""
        entries = self.entries(heading)
        entries.insert(0, entry.strip())
        limit = SECTION_LIMITS.get(heading)
        if limit is not None:
            entries = entries[:limit]
        self._replace(heading, "\n\n".join(entries))

    def entries(self, heading: str) -> list[str]:
        body = self.section(heading)
        return [e.strip() for e in re.split(r"^(?=### )", body, flags=re.MULTILINE) if e.strip().startswith("### ")]

    # =========================================================================
    # Maintained sections
    # =========================================================================

    def set_current_work(self, issue: int, title: str, details: str = "") -> None:
        body = f"### Issue #{issue}: {title}\n\nStarted: {format_epoch(now_epoch())}"
        if details:
            body += f"\n\n{escape_headings(details.strip())}"
        self._replace(CURRENT_WORK, body)

    def clear_current_work(self) -> None:
        self._replace(CURRENT_WORK, NO_ACTIVE_WORK)

    def add_security_findings(self, pr_number: int, title: str, review_body: str) -> bool:
        """Record the security findings of a merged PR's review.

        Returns:
            True if the review contained security findings
        """
        findings = extract_security_findings(review_body)
        text = escape_headings(findings) if findings else "No significant security issues found"
        self._prepend(SECURITY, f"### PR #{pr_number}: {title} ({format_epoch(now_epoch())})\n\n{text}")
        return bool(findings)

    def archive_completed(self, pr_number: int, title: str, summary: Optional[str] = None) -> None:
        entry = f"### PR #{pr_number}: {title}\n\nMerged: {format_epoch(now_epoch())}"
        if summary:
            entry += f"\n\n{escape_headings(summary.strip())}"
        self._prepend(ARCHIVE, entry)

    def security_context(self) -> str:
        """Recent findings, for inclusion in the next review's instructions."""
        return self.section(SECURITY)
