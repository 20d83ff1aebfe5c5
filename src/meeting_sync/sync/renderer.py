"""Default Markdown rendering of a remote document.

A note is a YAML header followed by a Markdown body::

    ---
    remote_id: abc123
    title: Weekly sync
    date: '2024-03-05T10:00:00+00:00'
    ---

    # Weekly sync
    ...

The header carries the ``remote_id`` tag that ties a note to its remote
document.  The body depends only on the document, so rendering the same
document twice yields the same fingerprint.
"""

from __future__ import annotations

from datetime import datetime

import yaml

from meeting_sync.sync.fingerprint import HEADER_ID_KEY
from meeting_sync.sync.models import RemoteDocument


def render_header(
    document: RemoteDocument, synced_at: datetime | None = None
) -> str:
    """Render the YAML header block, delimiters included."""
    header: dict = {
        HEADER_ID_KEY: document.id,
        "title": document.title,
        "date": document.created_at.isoformat(),
    }
    if document.updated_at is not None:
        header["updated"] = document.updated_at.isoformat()
    if document.attendees:
        header["attendees"] = list(document.attendees)
    if document.tags:
        header["tags"] = list(document.tags)
    if document.duration:
        header["duration"] = document.duration
    if document.source_folder:
        header["folder"] = document.source_folder
    if synced_at is not None:
        header["synced_at"] = synced_at.isoformat()

    dumped = yaml.safe_dump(
        header, sort_keys=False, allow_unicode=True, default_flow_style=False
    )
    return f"---\n{dumped}---\n"


def render_body(document: RemoteDocument) -> str:
    lines = [f"# {document.title}", "", "## Meeting Details"]
    lines.append(f"- **Date**: {format_date(document.created_at)}")
    if document.attendees:
        lines.append(f"- **Attendees**: {', '.join(document.attendees)}")
    if document.duration:
        lines.append(f"- **Duration**: {format_duration(document.duration)}")
    lines.append("")

    if document.summary:
        lines += ["## Summary", document.summary.strip(), ""]

    if document.highlights:
        lines.append("## Key Points")
        lines += [f"- {h}" for h in document.highlights]
        lines.append("")

    for heading, text in document.sections.items():
        if text and text.strip():
            lines += [f"## {heading}", text.strip(), ""]

    if document.transcript:
        lines += ["## Transcript", document.transcript.strip(), ""]

    if document.attachments:
        lines.append("## Attachments")
        lines += [
            f"- [{a.name}]({a.url}) ({format_file_size(a.size)})"
            for a in document.attachments
        ]
        lines.append("")

    return "\n".join(lines).rstrip() + "\n"


def render_document(
    document: RemoteDocument, synced_at: datetime | None = None
) -> str:
    """Render the full note for *document*."""
    return f"{render_header(document, synced_at)}\n{render_body(document)}"


# ---------------------------------------------------------------------------
# Formatting helpers
# ---------------------------------------------------------------------------


def format_date(value: datetime) -> str:
    """``March 5, 2024 at 10:00 AM``"""
    hour = value.hour % 12 or 12
    meridiem = "AM" if value.hour < 12 else "PM"
    return (
        f"{value.strftime('%B')} {value.day}, {value.year} "
        f"at {hour}:{value.minute:02d} {meridiem}"
    )


def format_duration(minutes: float) -> str:
    total = int(round(minutes))
    hours, mins = divmod(total, 60)
    if hours and mins:
        return f"{hours}h {mins}m"
    if hours:
        return f"{hours}h"
    return f"{mins}m"


def format_file_size(size: int) -> str:
    value = float(size)
    for unit in ("B", "KB", "MB"):
        if value < 1024:
            return f"{value:.0f} {unit}" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1024
    return f"{value:.1f} GB"
