"""Tests for the cross-session notes document."""

from issue_pipeline.notes import (
    ARCHIVE, CURRENT_WORK, NO_ACTIVE_WORK, SECURITY, NotesDocument, extract_security_findings
)


class TestExtractSecurityFindings:
    """Tests for extract_security_findings."""

    def test_keeps_severity_security_lines_with_context(self):
        review = "\n".join([
            "Summary line",
            "CRITICAL: SQL injection in search endpoint",
            "  query built with string concatenation",
            "LOW: typo in README",
        ])
        findings = extract_security_findings(review, context_lines=1)
        assert "SQL injection" in findings
        assert "string concatenation" in findings
        assert "Summary line" not in findings
        assert "typo" not in findings

    def test_no_findings(self):
        assert extract_security_findings("HIGH: slow loop in parser") == ""


class TestNotesDocument:
    """Tests for the maintained sections."""

    def test_created_from_template(self, tmp_path):
        notes = NotesDocument(tmp_path)
        assert notes.section(CURRENT_WORK) == NO_ACTIVE_WORK
        assert notes.path.exists()

    def test_current_work_replaced_and_cleared(self, tmp_path):
        notes = NotesDocument(tmp_path)
        notes.set_current_work(1, "First")
        notes.set_current_work(2, "Second", "Branch: issue-2")
        current = notes.section(CURRENT_WORK)
        assert "Issue #2: Second" in current
        assert "Branch: issue-2" in current
        assert "Issue #1" not in current
        notes.clear_current_work()
        assert notes.section(CURRENT_WORK) == NO_ACTIVE_WORK

    def test_security_findings_keep_last_five(self, tmp_path):
        notes = NotesDocument(tmp_path)
        for pr in range(1, 8):
            notes.add_security_findings(pr, f"PR {pr}", "HIGH: auth bypass possible")
        entries = notes.entries(SECURITY)
        assert len(entries) == 5
        assert entries[0].startswith("### PR #7")
        assert entries[-1].startswith("### PR #3")
        assert "auth bypass" in notes.security_context()

    def test_review_headings_inside_findings_stay_in_one_entry(self, tmp_path):
        """Severity headings from the review do not split or evict entries."""
        review = "\n".join([
            "### HIGH",
            "- HIGH: missing auth check on export",
            "### MEDIUM",
            "#### something",
            "## Summary",
        ])
        notes = NotesDocument(tmp_path)
        for pr in range(1, 6):
            notes.add_security_findings(pr, f"PR {pr}", review)

        entries = notes.entries(SECURITY)
        assert len(entries) == 5
        assert [e.splitlines()[0][:9] for e in entries] == [f"### PR #{pr}" for pr in range(5, 0, -1)]
        assert "\\### MEDIUM" in entries[0]
        assert notes.section("Summary") == ""
        assert "missing auth check" in notes.security_context()

    def test_security_findings_without_matches(self, tmp_path):
        notes = NotesDocument(tmp_path)
        assert not notes.add_security_findings(1, "Docs", "LOW: wording")
        assert "No significant security issues found" in notes.section(SECURITY)

    def test_archive_keeps_last_twenty(self, tmp_path):
        notes = NotesDocument(tmp_path)
        for pr in range(1, 23):
            notes.archive_completed(pr, f"PR {pr}", "Merged cleanly")
        entries = notes.entries(ARCHIVE)
        assert len(entries) == 20
        assert entries[0].startswith("### PR #22")

    def test_user_sections_are_preserved(self, tmp_path):
        notes = NotesDocument(tmp_path)
        notes.ensure()
        notes.path.write_text(notes.read() + "\n## My Notes\n\nRemember the cache flag.\n")
        notes.archive_completed(1, "First")
        notes.set_current_work(2, "Second")
        assert notes.section("My Notes") == "Remember the cache flag."
        assert notes.read().startswith("# Pipeline Notes")
