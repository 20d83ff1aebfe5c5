"""Tests for sync reporter formatting functions.

Covers:
- format_sync_report with various result combinations
- format_progress one-liners
- format_conflict_diff with diffs and truncation
- result_to_json structure and completeness
"""

from __future__ import annotations

from datetime import datetime, timezone

from meeting_sync.errors import ErrorType
from meeting_sync.sync.models import (
    Conflict,
    ConflictResolution,
    ConflictType,
    DocumentError,
    SyncPhase,
    SyncProgress,
    SyncResult,
)
from meeting_sync.sync.reporter import (
    DIFF_PREVIEW_LINES,
    MAX_LISTED_ERRORS,
    format_conflict_diff,
    format_progress,
    format_sync_report,
    result_to_json,
)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _error(
    remote_id: str = "doc-1",
    title: str = "Weekly Sync",
    error_type: ErrorType = ErrorType.VALIDATION,
) -> DocumentError:
    return DocumentError(
        remote_id=remote_id,
        title=title,
        message="Invalid data",
        error_type=error_type,
        detail="duration must be a positive number",
        timestamp=datetime(2024, 3, 5, 10, 0, tzinfo=timezone.utc),
    )


def _conflict(**overrides) -> Conflict:
    fields = {
        "type": ConflictType.USER_MODIFIED,
        "remote_id": "doc-1",
        "local_path": "Meetings/2024-03-05 Weekly Sync.md",
        "remote_path": "Meetings/2024-03-05 Weekly Sync.md",
        "description": "Note edited locally since the last sync",
    }
    fields.update(overrides)
    return Conflict(**fields)


def _note(body: str) -> str:
    return f"---\nremote_id: doc-1\n---\n\n{body}\n"


# ---------------------------------------------------------------------------
# format_sync_report
# ---------------------------------------------------------------------------


class TestFormatSyncReport:
    def test_counts_line(self):
        result = SyncResult(
            success=True, created=3, updated=1, skipped=2, duration=1.5
        )

        text = format_sync_report(result)

        assert text.splitlines()[0] == "Sync complete"
        assert "Duration: 1.5s" in text
        assert "3 created, 1 updated, 2 skipped, 0 errors" in text
        assert "Conflicts:" not in text
        assert "Errors:" not in text

    def test_dry_run_and_incomplete_headers(self):
        assert format_sync_report(SyncResult(success=True, dry_run=True)).startswith(
            "Sync complete (DRY RUN)"
        )
        assert format_sync_report(SyncResult()).startswith("Sync incomplete")

    def test_conflicts_listed_sorted(self):
        result = SyncResult(
            success=True, conflicts={"user-modified": 2, "file-missing": 1}
        )

        lines = format_sync_report(result).splitlines()

        start = lines.index("Conflicts:")
        assert lines[start + 1 : start + 3] == [
            "  file-missing: 1",
            "  user-modified: 2",
        ]

    def test_errors_grouped_and_listed(self):
        result = SyncResult(
            success=True,
            errors=[
                _error("doc-1"),
                _error("doc-2", title=""),
                _error("doc-3", "Standup", ErrorType.FILE_SYSTEM),
            ],
        )

        text = format_sync_report(result)

        assert "Errors: 1 file_system, 2 validation" in text
        assert "  Weekly Sync: Invalid data" in text
        # Untitled documents fall back to their id.
        assert "  doc-2: Invalid data" in text

    def test_long_error_list_truncated(self):
        result = SyncResult(
            errors=[_error(f"doc-{i}", title="") for i in range(MAX_LISTED_ERRORS + 5)]
        )

        text = format_sync_report(result)

        assert f"doc-{MAX_LISTED_ERRORS - 1}:" in text
        assert f"doc-{MAX_LISTED_ERRORS}:" not in text
        assert "... and 5 more" in text

    def test_no_trailing_blank_lines(self):
        text = format_sync_report(SyncResult(success=True, conflicts={"x": 1}))
        assert not text.endswith("\n")


# ---------------------------------------------------------------------------
# format_progress
# ---------------------------------------------------------------------------


class TestFormatProgress:
    def test_idle(self):
        assert format_progress(SyncProgress()) == "idle"

    def test_with_counts_and_eta(self):
        progress = SyncProgress(
            phase=SyncPhase.APPLYING,
            current=40,
            total=120,
            estimated_seconds_remaining=12.4,
        )
        assert format_progress(progress) == "applying: 40/120 (33%), ~12s left"

    def test_phase_underscores_replaced(self):
        progress = SyncProgress(phase=SyncPhase.DETECTING_CONFLICTS, total=4)
        assert format_progress(progress) == "detecting conflicts: 0/4 (0%)"


# ---------------------------------------------------------------------------
# format_conflict_diff
# ---------------------------------------------------------------------------


class TestFormatConflictDiff:
    def test_shows_description_and_diff(self):
        conflict = _conflict(resolution=ConflictResolution.KEEP_LOCAL)

        text = format_conflict_diff(
            conflict,
            _note("Discussed the roadmap.\nMy note."),
            _note("Discussed the roadmap."),
        )

        lines = text.splitlines()
        assert lines[0] == "Conflict (user-modified): doc-1"
        assert "  Resolution: keep-local" in lines
        assert "--- local: Meetings/2024-03-05 Weekly Sync.md" in lines
        assert "+++ remote" in lines
        assert "-My note." in lines

    def test_header_differences_ignored(self):
        local = "---\nremote_id: doc-1\nstarred: true\n---\n\nSame body.\n"

        text = format_conflict_diff(_conflict(), local, _note("Same body."))

        assert text.endswith("(no textual differences)")
        assert "Resolution" not in text

    def test_missing_local_path(self):
        conflict = _conflict(type=ConflictType.METADATA_CORRUPTED, local_path=None)

        text = format_conflict_diff(conflict, _note("a"), _note("b"))

        assert "--- local: -" in text.splitlines()

    def test_long_diff_truncated(self):
        local = _note("\n".join(f"local {i}" for i in range(50)))
        remote = _note("\n".join(f"remote {i}" for i in range(50)))

        text = format_conflict_diff(_conflict(), local, remote)

        assert text.splitlines()[-1].startswith("... (")
        assert "more lines)" in text
        assert len(text.splitlines()) == 3 + DIFF_PREVIEW_LINES + 1


# ---------------------------------------------------------------------------
# result_to_json
# ---------------------------------------------------------------------------


class TestResultToJson:
    def test_structure(self):
        result = SyncResult(
            success=True,
            created=2,
            updated=1,
            skipped=4,
            duration=0.12345,
            conflicts={"user-modified": 2},
            errors=[_error()],
        )

        data = result_to_json(result)

        assert data["success"] is True
        assert data["dry_run"] is False
        assert data["duration"] == 0.123
        assert data["counts"] == {
            "created": 2,
            "updated": 1,
            "skipped": 4,
            "errors": 1,
            "conflicts": 2,
        }
        assert data["conflicts"] == {"user-modified": 2}
        assert data["errors"] == [
            {
                "remote_id": "doc-1",
                "title": "Weekly Sync",
                "type": "validation",
                "message": "Invalid data",
                "detail": "duration must be a positive number",
                "timestamp": "2024-03-05T10:00:00+00:00",
            }
        ]

    def test_conflicts_copied(self):
        result = SyncResult(conflicts={"file-missing": 1})
        data = result_to_json(result)
        data["conflicts"]["file-missing"] = 99
        assert result.conflicts == {"file-missing": 1}
