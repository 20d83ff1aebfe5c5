"""Sync result formatting functions.

Provides human-readable and machine-readable output for sync runs:

- ``format_sync_report`` -- post-sync summary with per-document errors.
- ``format_progress`` -- one-line progress for a polling caller.
- ``format_conflict_diff`` -- unified diff for reviewing a conflict before
  choosing a per-document resolution.
- ``result_to_json`` -- structured dict for JSON output.
"""

from __future__ import annotations

import difflib
from collections import defaultdict
from typing import TYPE_CHECKING

from .fingerprint import strip_header

if TYPE_CHECKING:
    from .models import Conflict, SyncProgress, SyncResult

MAX_LISTED_ERRORS = 20
DIFF_PREVIEW_LINES = 40

# ------------------------------------------------------------------
# Human-readable report
# ------------------------------------------------------------------


def format_sync_report(result: SyncResult) -> str:
    """Format a finished run as human-readable text.

    Sections are only included when they have content.  Errors are
    grouped by type; at most ``MAX_LISTED_ERRORS`` are listed.

    Args:
        result: The run's result.

    Returns:
        Multi-line formatted string.
    """
    lines: list[str] = []

    header = "Sync complete" if result.success else "Sync incomplete"
    if result.dry_run:
        header += " (DRY RUN)"
    lines.append(header)
    lines.append(f"Duration: {result.duration:.1f}s")
    lines.append("")

    lines.append(
        f"{result.created} created, {result.updated} updated, "
        f"{result.skipped} skipped, {len(result.errors)} errors"
    )
    lines.append("")

    if result.conflicts:
        lines.append("Conflicts:")
        for conflict_type, count in sorted(result.conflicts.items()):
            lines.append(f"  {conflict_type}: {count}")
        lines.append("")

    if result.errors:
        by_type: dict[str, int] = defaultdict(int)
        for error in result.errors:
            by_type[error.error_type.value] += 1
        lines.append(
            "Errors: "
            + ", ".join(f"{count} {name}" for name, count in sorted(by_type.items()))
        )
        for error in result.errors[:MAX_LISTED_ERRORS]:
            label = error.title or error.remote_id or "(unknown document)"
            lines.append(f"  {label}: {error.message}")
        hidden = len(result.errors) - MAX_LISTED_ERRORS
        if hidden > 0:
            lines.append(f"  ... and {hidden} more")
        lines.append("")

    return "\n".join(lines).rstrip()


def format_progress(progress: SyncProgress) -> str:
    """``applying: 40/120 (33%), ~12s left``"""
    text = progress.phase.value.replace("_", " ")
    if progress.total:
        percent = int(progress.current * 100 / progress.total)
        text += f": {progress.current}/{progress.total} ({percent}%)"
    if progress.estimated_seconds_remaining is not None:
        text += f", ~{progress.estimated_seconds_remaining:.0f}s left"
    return text


# ------------------------------------------------------------------
# Conflict diff
# ------------------------------------------------------------------


def format_conflict_diff(
    conflict: Conflict, local_content: str, remote_content: str
) -> str:
    """Format a conflict for review.

    Shows the conflict description and a unified diff of the note bodies
    (headers excluded), truncated to ``DIFF_PREVIEW_LINES`` lines.

    Args:
        conflict: The detected conflict.
        local_content: Current note text.
        remote_content: Freshly rendered remote text.

    Returns:
        Multi-line formatted string.
    """
    lines: list[str] = []
    lines.append(f"Conflict ({conflict.type.value}): {conflict.remote_id}")
    lines.append(f"  {conflict.description}")
    if conflict.resolution is not None:
        lines.append(f"  Resolution: {conflict.resolution.value}")
    lines.append("")

    diff = list(
        difflib.unified_diff(
            strip_header(local_content).splitlines(),
            strip_header(remote_content).splitlines(),
            fromfile=f"local: {conflict.local_path or '-'}",
            tofile="remote",
            lineterm="",
        )
    )
    if not diff:
        lines.append("(no textual differences)")
    else:
        lines.extend(diff[:DIFF_PREVIEW_LINES])
        if len(diff) > DIFF_PREVIEW_LINES:
            lines.append(f"... ({len(diff) - DIFF_PREVIEW_LINES} more lines)")

    return "\n".join(lines).rstrip()


# ------------------------------------------------------------------
# JSON output
# ------------------------------------------------------------------


def result_to_json(result: SyncResult) -> dict:
    """Convert a result to a structured dict for JSON serialisation."""
    return {
        "success": result.success,
        "dry_run": result.dry_run,
        "duration": round(result.duration, 3),
        "counts": {
            "created": result.created,
            "updated": result.updated,
            "skipped": result.skipped,
            "errors": len(result.errors),
            "conflicts": sum(result.conflicts.values()),
        },
        "conflicts": dict(result.conflicts),
        "errors": [
            {
                "remote_id": e.remote_id,
                "title": e.title,
                "type": e.error_type.value,
                "message": e.message,
                "detail": e.detail,
                "timestamp": e.timestamp.isoformat(),
            }
            for e in result.errors
        ],
    }
