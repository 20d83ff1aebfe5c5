"""Tests for Markdown rendering of remote documents."""

from datetime import datetime, timezone

from conftest import make_document
from meeting_sync.sync.fingerprint import extract_remote_id, fingerprint, read_header
from meeting_sync.sync.models import Attachment
from meeting_sync.sync.renderer import (
    format_date,
    format_duration,
    format_file_size,
    render_body,
    render_document,
)


class TestRenderDocument:
    def test_header_carries_remote_id(self):
        content = render_document(make_document())
        assert extract_remote_id(content) == "doc-1"
        header = read_header(content)
        assert header["title"] == "Weekly Sync"
        assert header["attendees"] == ["Ada", "Grace"]

    def test_body_sections(self):
        doc = make_document(
            highlights=["Ship v2"],
            sections={"Decisions": "Go", "Empty": "  "},
            transcript="Ada: hi",
            duration=90,
        )
        body = render_body(doc)

        assert body.startswith("# Weekly Sync\n")
        assert "- **Date**: March 5, 2024 at 10:00 AM" in body
        assert "- **Attendees**: Ada, Grace" in body
        assert "- **Duration**: 1h 30m" in body
        assert "## Summary\nDiscussed the roadmap." in body
        assert "## Key Points\n- Ship v2" in body
        assert "## Decisions\nGo" in body
        assert "## Empty" not in body
        assert "## Transcript\nAda: hi" in body
        assert body.endswith("\n")

    def test_attachments(self):
        doc = make_document(
            attachments=[
                Attachment(id="a", name="Slides", url="https://x/s", size=2048)
            ]
        )
        assert "- [Slides](https://x/s) (2.0 KB)" in render_body(doc)

    def test_deterministic_fingerprint(self):
        doc = make_document()
        assert fingerprint(render_document(doc)) == fingerprint(render_document(doc))

    def test_synced_at_changes_header_only(self):
        doc = make_document()
        plain = render_document(doc)
        stamped = render_document(
            doc, synced_at=datetime(2024, 4, 1, tzinfo=timezone.utc)
        )
        assert plain != stamped
        assert "synced_at" in read_header(stamped)
        assert fingerprint(plain) == fingerprint(stamped)

    def test_unicode_title_kept(self):
        content = render_document(make_document(title="Réunion d'équipe"))
        assert read_header(content)["title"] == "Réunion d'équipe"


class TestFormatting:
    def test_format_date(self):
        assert format_date(datetime(2024, 3, 5, 0, 5)) == "March 5, 2024 at 12:05 AM"
        assert format_date(datetime(2024, 3, 5, 15, 30)) == "March 5, 2024 at 3:30 PM"

    def test_format_duration(self):
        assert format_duration(45) == "45m"
        assert format_duration(60) == "1h"
        assert format_duration(125) == "2h 5m"

    def test_format_file_size(self):
        assert format_file_size(512) == "512 B"
        assert format_file_size(1536) == "1.5 KB"
        assert format_file_size(5 * 1024 * 1024) == "5.0 MB"
        assert format_file_size(3 * 1024**3) == "3.0 GB"
