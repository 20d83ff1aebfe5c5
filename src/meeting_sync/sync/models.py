"""Pydantic models for the meeting sync engine.

Defines the data contracts shared by all sync modules:

- ``RemoteDocument`` / ``RejectedDocument``: decoded remote payloads.
- ``LocalFileMetadata``: what the state store remembers per remote id.
- ``ConflictType`` / ``ConflictResolution`` / ``Conflict``: detector and
  resolver vocabulary.
- ``BatchRecord``: one entry of the batch scheduler's history.
- ``RecoveryCheckpoint``: persisted progress of an interrupted run.
- ``DocumentError`` / ``SyncResult``: outcome of a run.
- ``SyncOptions`` / ``SyncProgress``: caller-facing run controls.

Value records are frozen; ``SyncResult`` is the one accumulator the engine
mutates while a run is in flight.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field, ValidationError

from meeting_sync.errors import (
    DocumentValidationError,
    ErrorType,
    classify_error,
    user_message,
)
from meeting_sync.validators import (
    DEFAULT_TITLE,
    parse_datetime,
    sanitize_text,
    validate_document_payload,
)

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Remote documents
# ---------------------------------------------------------------------------


class Attachment(BaseModel):
    """A file attached to a meeting on the remote side."""

    id: str
    name: str
    url: str
    mime_type: str = "application/octet-stream"
    size: int = 0

    model_config = {"frozen": True}


class RemoteDocument(BaseModel):
    """One meeting as delivered by the remote source.

    Attributes:
        id: Stable remote identifier, unique across the source.
        title: Human title; never empty after decoding.
        created_at: When the meeting happened (UTC).
        updated_at: Last remote modification, if the API reports one.
        summary: Generated summary text.
        highlights: Key points, rendered as a bullet list.
        sections: Extra titled sections (heading -> Markdown body).
        transcript: Full transcript text.
        source_folder: Folder the meeting lives in on the remote side.
        attendees: Attendee names.
        tags: Free-form tags.
        attachments: Attached files.
        duration: Length in minutes.
    """

    id: str = Field(min_length=1)
    title: str
    created_at: datetime
    updated_at: datetime | None = None
    summary: str | None = None
    highlights: list[str] = []
    sections: dict[str, str] = {}
    transcript: str | None = None
    source_folder: str | None = None
    attendees: list[str] = []
    tags: list[str] = []
    attachments: list[Attachment] = []
    duration: float | None = None

    model_config = {"frozen": True}

    @property
    def modified_at(self) -> datetime:
        """Last remote change: ``updated_at`` when known, else ``created_at``."""
        return self.updated_at or self.created_at

    @classmethod
    def from_payload(cls, payload: Any) -> RemoteDocument:
        """Decode one API payload.

        Accepts both snake_case keys and the remote API's camelCase keys
        (``createdAt``, ``updatedAt``, ``panelSections``, ``folder``).

        Raises:
            DocumentValidationError: If the payload is malformed.
        """
        errors = validate_document_payload(payload)
        remote_id = payload.get("id") if isinstance(payload, dict) else None
        if not isinstance(remote_id, str):
            remote_id = None
        if errors:
            raise DocumentValidationError(
                f"Invalid document payload: {'; '.join(errors)}",
                remote_id=remote_id,
                errors=errors,
            )

        def pick(*keys: str) -> Any:
            for key in keys:
                if payload.get(key) is not None:
                    return payload[key]
            return None

        title = sanitize_text(payload.get("title") or "").strip()
        attachments = []
        for raw in payload.get("attachments") or []:
            if not isinstance(raw, dict) or not raw.get("id") or not raw.get("url"):
                continue
            attachments.append(
                {
                    "id": str(raw["id"]),
                    "name": str(raw.get("name") or "Untitled"),
                    "url": str(raw["url"]),
                    "mime_type": str(
                        raw.get("mime_type")
                        or raw.get("type")
                        or "application/octet-stream"
                    ),
                    "size": raw.get("size") if isinstance(raw.get("size"), int) else 0,
                }
            )

        data = {
            "id": payload["id"].strip(),
            "title": title or DEFAULT_TITLE,
            "created_at": parse_datetime(pick("created_at", "createdAt", "date")),
            "updated_at": parse_datetime(pick("updated_at", "updatedAt")),
            "summary": payload.get("summary"),
            "highlights": [sanitize_text(h) for h in payload.get("highlights") or []],
            "sections": pick("sections", "panelSections") or {},
            "transcript": payload.get("transcript"),
            "source_folder": pick("source_folder", "folder", "granolaFolder"),
            "attendees": [
                sanitize_text(a).strip() for a in payload.get("attendees") or []
            ],
            "tags": [
                t.strip() for t in payload.get("tags") or [] if t.strip()
            ],
            "attachments": attachments,
            "duration": payload.get("duration"),
        }
        try:
            return cls.model_validate(data)
        except ValidationError as exc:
            messages = [
                f"{'.'.join(str(p) for p in err['loc'])} {err['msg']}"
                for err in exc.errors()
            ]
            raise DocumentValidationError(
                f"Invalid document payload: {'; '.join(messages)}",
                remote_id=remote_id,
                errors=messages,
            ) from exc


class RejectedDocument(BaseModel):
    """A remote payload that failed to decode."""

    remote_id: str | None = None
    title: str | None = None
    errors: list[str] = []

    model_config = {"frozen": True}


DecodedDocument = RemoteDocument | RejectedDocument


def decode_documents(payloads: list[Any]) -> list[DecodedDocument]:
    """Decode a page of payloads, keeping order.

    Malformed payloads become ``RejectedDocument`` entries instead of
    aborting the page.
    """
    decoded: list[DecodedDocument] = []
    for payload in payloads:
        try:
            decoded.append(RemoteDocument.from_payload(payload))
        except DocumentValidationError as exc:
            title = payload.get("title") if isinstance(payload, dict) else None
            logger.warning(
                "Rejected remote document %s: %s", exc.remote_id, exc
            )
            decoded.append(
                RejectedDocument(
                    remote_id=exc.remote_id,
                    title=title if isinstance(title, str) else None,
                    errors=exc.errors or [str(exc)],
                )
            )
    return decoded


# ---------------------------------------------------------------------------
# Local metadata
# ---------------------------------------------------------------------------


class LocalFileMetadata(BaseModel):
    """State recorded for one remote id after it was applied.

    Attributes:
        remote_id: The remote document's id.
        path: Vault-relative POSIX path of the note.
        content_hash: Fingerprint of the content last written.
        last_modified_at: File mtime (epoch seconds) right after the write.
        last_synced_at: When the document was last applied (epoch seconds).
        sync_version: Incremented on every apply.
        remote_hash: Fingerprint of the rendered remote document when it
            was last applied.  Differs from ``content_hash`` only after a
            keep-local or merge decision.
    """

    remote_id: str
    path: str
    content_hash: str
    last_modified_at: float
    last_synced_at: float
    sync_version: int = 1
    remote_hash: str | None = None

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Conflicts
# ---------------------------------------------------------------------------


class ConflictType(str, Enum):
    """Ways a local note can disagree with the recorded state."""

    USER_MODIFIED = "user-modified"
    BOTH_MODIFIED = "both-modified"
    FILE_MISSING = "file-missing"
    DUPLICATE_ID = "duplicate-id"
    PATH_CONFLICT = "path-conflict"
    METADATA_CORRUPTED = "metadata-corrupted"


class ConflictResolution(str, Enum):
    """Actions the resolver can take for a conflict."""

    KEEP_LOCAL = "keep-local"
    KEEP_REMOTE = "keep-remote"
    MERGE = "merge"
    CREATE_DUPLICATE = "create-duplicate"
    BACKUP_AND_UPDATE = "backup-and-update"
    SKIP = "skip"


class Conflict(BaseModel):
    """A detected disagreement for one remote id.  Never persisted."""

    type: ConflictType
    remote_id: str
    local_path: str | None = None
    remote_path: str | None = None
    description: str
    local_modified_at: float | None = None
    remote_modified_at: float | None = None
    resolution: ConflictResolution | None = None

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Batching and recovery
# ---------------------------------------------------------------------------


class BatchRecord(BaseModel):
    """One processed (or failed) batch: its size and wall time in seconds."""

    size: int
    duration: float
    success: bool

    model_config = {"frozen": True}


class RecoveryPhase(str, Enum):
    FETCHING = "fetching"
    PROCESSING = "processing"
    FINALIZING = "finalizing"


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


class DocumentError(BaseModel):
    """A per-document failure recorded in a ``SyncResult``.

    Attributes:
        remote_id: Id of the failing document (may be empty for payloads
            that had none).
        title: Document title, when known.
        message: Short user-facing message.
        error_type: Failure category.
        detail: Raw exception text.
        timestamp: When the failure was recorded.
    """

    remote_id: str
    title: str = ""
    message: str
    error_type: ErrorType = ErrorType.UNKNOWN
    detail: str = ""
    timestamp: datetime = Field(default_factory=_utcnow)

    model_config = {"frozen": True}

    @classmethod
    def from_exception(
        cls, exc: BaseException, remote_id: str, title: str = ""
    ) -> DocumentError:
        return cls(
            remote_id=remote_id,
            title=title,
            message=user_message(exc),
            error_type=classify_error(exc),
            detail=str(exc),
        )


class SyncResult(BaseModel):
    """Outcome of one sync run.

    Mutated by the engine while the run is in flight; callers only ever
    see the finished value.

    Attributes:
        success: ``True`` when the run committed.
        created: Notes written at a new path.
        updated: Notes rewritten in place.
        skipped: Documents left untouched (unchanged, keep-local, deleted).
        errors: Per-document failures.
        duration: Wall time in seconds.
        dry_run: Whether this was a dry run.
        conflicts: Detected conflicts counted by type value.
    """

    success: bool = False
    created: int = 0
    updated: int = 0
    skipped: int = 0
    errors: list[DocumentError] = []
    duration: float = 0.0
    dry_run: bool = False
    conflicts: dict[str, int] = {}

    def count_conflict(self, conflict_type: ConflictType) -> None:
        self.conflicts[conflict_type.value] = (
            self.conflicts.get(conflict_type.value, 0) + 1
        )

    @property
    def processed(self) -> int:
        """Documents that reached a final outcome."""
        return self.created + self.updated + self.skipped + len(self.errors)

    def summary(self) -> str:
        """Format a human-readable summary of the run.

        Returns:
            Multi-line summary string with counts.
        """
        lines = [
            "Sync result" + (" (dry run)" if self.dry_run else ""),
            f"  Created:   {self.created}",
            f"  Updated:   {self.updated}",
            f"  Skipped:   {self.skipped}",
            f"  Conflicts: {sum(self.conflicts.values())}",
            f"  Errors:    {len(self.errors)}",
            f"  Duration:  {self.duration:.2f}s",
        ]
        return "\n".join(lines)


class RecoveryCheckpoint(BaseModel):
    """Persisted progress of a run, used to resume after interruption.

    Attributes:
        id: ``recovery-<epoch ms>-<random>`` identifier.
        created_at: When tracking started.
        phase: Where the run was when last checkpointed.
        processed: Number of documents with a final outcome.
        total: Documents in the run.
        last_processed_id: Id of the most recent document.
        processed_ids: Every id with a final outcome, in order.
        partial_result: Counts and errors accumulated so far.
        metadata: Per-id metadata written during the run; replayed into
            the state store on resume.
        error: Message of the failure that stopped the run, if any.
    """

    id: str
    created_at: datetime = Field(default_factory=_utcnow)
    phase: RecoveryPhase = RecoveryPhase.FETCHING
    processed: int = 0
    total: int = 0
    last_processed_id: str | None = None
    processed_ids: list[str] = []
    partial_result: SyncResult = Field(default_factory=SyncResult)
    metadata: dict[str, LocalFileMetadata] = {}
    error: str | None = None

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Caller-facing controls
# ---------------------------------------------------------------------------


class SyncPhase(str, Enum):
    """Lifecycle states of the sync engine."""

    IDLE = "idle"
    CONNECTING = "connecting"
    FETCHING = "fetching"
    VALIDATING = "validating"
    DETECTING_CONFLICTS = "detecting_conflicts"
    RESOLVING = "resolving"
    APPLYING = "applying"
    COMMITTING = "committing"
    COMPLETE = "complete"
    ERROR = "error"
    CANCELLED = "cancelled"


class SyncOptions(BaseModel):
    """Per-run options.

    Attributes:
        dry_run: Compute counts without touching files or state.
        validate_data: Run content checks on decoded documents.
        auto_resolve_strategy: Global resolution override for every
            conflict type.
        enable_recovery: Checkpoint progress for resumption.
        max_documents: Process at most this many documents.
        full_sync: Ignore ``last_sync`` and fetch everything.
        resolutions: Per-remote-id resolution, overriding everything else.
        resume: Resume a pending checkpoint (``True``), discard it
            (``False``) or decide automatically (``None``).
    """

    dry_run: bool = False
    validate_data: bool = True
    auto_resolve_strategy: Literal["local", "remote", "backup"] | None = None
    enable_recovery: bool = True
    max_documents: int | None = Field(default=None, ge=1)
    full_sync: bool = False
    resolutions: dict[str, ConflictResolution] = {}
    resume: bool | None = None

    model_config = {"frozen": True}


class SyncProgress(BaseModel):
    """Snapshot of a running sync for progress display."""

    phase: SyncPhase = SyncPhase.IDLE
    current: int = 0
    total: int = 0
    message: str = ""
    started_at: datetime | None = None
    estimated_seconds_remaining: float | None = None

    model_config = {"frozen": True}
