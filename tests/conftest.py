"""Shared pytest fixtures for meeting-sync tests."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import pytest
from dotenv import load_dotenv

from meeting_sync.config import Config
from meeting_sync.errors import LockTimeoutError
from meeting_sync.sync.models import DecodedDocument, RemoteDocument
from meeting_sync.sync.store import FileSystemDocumentStore, WriteOutcome

load_dotenv()

BASE_TIME = datetime(2024, 3, 5, 10, 0, tzinfo=timezone.utc)


def make_document(
    remote_id: str = "doc-1",
    title: str = "Weekly Sync",
    summary: str = "Discussed the roadmap.",
    **overrides: Any,
) -> RemoteDocument:
    """Build a valid ``RemoteDocument`` for tests."""
    fields: dict[str, Any] = {
        "id": remote_id,
        "title": title,
        "created_at": BASE_TIME,
        "summary": summary,
        "attendees": ["Ada", "Grace"],
    }
    fields.update(overrides)
    return RemoteDocument(**fields)


def make_documents(count: int, prefix: str = "doc") -> list[RemoteDocument]:
    """*count* documents with distinct ids, titles and dates."""
    return [
        make_document(
            f"{prefix}-{i}",
            title=f"Meeting {i}",
            created_at=BASE_TIME + timedelta(days=i),
            summary=f"Notes for meeting {i}.",
        )
        for i in range(count)
    ]


class FakeSource:
    """In-memory ``DocumentSource`` for engine tests.

    Attributes:
        documents: Returned by both fetch methods, in order.
        connected: Result of ``test_connection()``.
        fetch_error: Raised by the fetch methods when set.
        calls: Names of the methods called, in order.
    """

    def __init__(self, documents: list[DecodedDocument] | None = None) -> None:
        self.documents: list[DecodedDocument] = list(documents or [])
        self.connected = True
        self.fetch_error: Exception | None = None
        self.calls: list[str] = []
        self.since_values: list[Any] = []

    def test_connection(self) -> bool:
        self.calls.append("test_connection")
        return self.connected

    def fetch_all(self) -> list[DecodedDocument]:
        self.calls.append("fetch_all")
        if self.fetch_error is not None:
            raise self.fetch_error
        return list(self.documents)

    def fetch_since(self, since: Any) -> list[DecodedDocument]:
        self.calls.append("fetch_since")
        self.since_values.append(since)
        if self.fetch_error is not None:
            raise self.fetch_error
        return list(self.documents)

    def replace(self, document: RemoteDocument) -> None:
        """Swap in a new version of a document, keeping its position."""
        self.documents = [
            document if getattr(d, "id", None) == document.id else d
            for d in self.documents
        ]


class FlakyStore(FileSystemDocumentStore):
    """Vault whose writes to some paths time out waiting for the path lock.

    Attributes:
        failing: Paths whose writes fail.
        failures_left: How many more writes fail; ``None`` fails forever.
        attempts: Every path a write was attempted for, in order.
    """

    def __init__(
        self, root: Path, failing: set[str], failures_left: int | None = None
    ) -> None:
        super().__init__(root)
        self.failing = set(failing)
        self.failures_left = failures_left
        self.attempts: list[str] = []

    async def write(self, path: str, content: str) -> WriteOutcome:
        self.attempts.append(path)
        if path in self.failing and self.failures_left != 0:
            if self.failures_left is not None:
                self.failures_left -= 1
            raise LockTimeoutError(f"Timed out waiting for lock on {path}", path=path)
        return await super().write(path, content)


@pytest.fixture
def api_config() -> Config:
    return Config(
        api_url="https://api.example.com/v1",
        api_key="test-key",
        timeout=5.0,
        max_retries=2,
        retry_delay=0.5,
    )


@pytest.fixture
def vault(tmp_path) -> Path:
    root = tmp_path / "vault"
    root.mkdir()
    return root


@pytest.fixture
def source() -> FakeSource:
    return FakeSource()
