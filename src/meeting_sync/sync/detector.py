"""Conflict detection between recorded sync state and the vault.

For every remote document the detector compares the state store's
``LocalFileMetadata`` with the per-run ``LocalFileIndex`` and, where
needed, the note's current content.  Checks run in a fixed order and the
first match wins:

1. no metadata, several notes tagged with the id   -> ``DUPLICATE_ID``
2. no metadata, exactly one tagged note            -> ``METADATA_CORRUPTED``
3. metadata, but no note at the recorded path      -> ``FILE_MISSING``
4. note at the recorded path tagged with another id -> ``PATH_CONFLICT``
5. fingerprint changed and mtime after last sync   -> ``BOTH_MODIFIED`` if
   the remote also changed since then, else ``USER_MODIFIED``
6. otherwise no conflict.

Detection is read-only.
"""

from __future__ import annotations

import logging

from meeting_sync.sync.fingerprint import fingerprint
from meeting_sync.sync.models import Conflict, ConflictType, LocalFileMetadata
from meeting_sync.sync.store import LocalDocumentStore, LocalFileIndex

logger = logging.getLogger(__name__)


class ConflictDetector:
    """Classify the local situation of one remote document.

    Args:
        store: Vault used to read a note's current content.
    """

    def __init__(self, store: LocalDocumentStore) -> None:
        self._store = store

    async def is_user_modified(self, metadata: LocalFileMetadata, modified_at: float) -> bool:
        """``True`` when the note's body changed after the last sync.

        Raises:
            FileSystemError: If the note cannot be read.
        """
        content = await self._store.read(metadata.path)
        if fingerprint(content) == metadata.content_hash:
            return False
        return modified_at > metadata.last_synced_at

    async def detect(
        self,
        remote_id: str,
        remote_path: str,
        remote_modified_at: float,
        metadata: LocalFileMetadata | None,
        existing: LocalFileIndex,
    ) -> list[Conflict]:
        """Detect conflicts for *remote_id*.

        Args:
            remote_id: Id of the remote document.
            remote_path: Path a new note for it would be created at.
            remote_modified_at: Remote modification time (epoch seconds).
            metadata: Recorded state, or ``None`` if untracked.
            existing: The run's vault index.

        Returns:
            Zero or one conflict.

        Raises:
            FileSystemError: If a note cannot be read.
        """
        if metadata is None:
            tagged = sorted(existing.tagged(remote_id), key=lambda f: f.path)
            if len(tagged) > 1:
                return [
                    Conflict(
                        type=ConflictType.DUPLICATE_ID,
                        remote_id=remote_id,
                        local_path=tagged[0].path,
                        remote_path=remote_path,
                        description=(
                            f"{len(tagged)} notes carry remote id {remote_id}: "
                            + ", ".join(f.path for f in tagged)
                        ),
                        remote_modified_at=remote_modified_at,
                    )
                ]
            if len(tagged) == 1:
                return [
                    Conflict(
                        type=ConflictType.METADATA_CORRUPTED,
                        remote_id=remote_id,
                        local_path=tagged[0].path,
                        remote_path=remote_path,
                        description="Note exists but is not tracked in sync state",
                        local_modified_at=tagged[0].modified_at,
                        remote_modified_at=remote_modified_at,
                    )
                ]
            return []

        local = existing.get(metadata.path)
        if local is None:
            return [
                Conflict(
                    type=ConflictType.FILE_MISSING,
                    remote_id=remote_id,
                    local_path=metadata.path,
                    remote_path=remote_path,
                    description="Local note has been deleted or moved",
                    remote_modified_at=remote_modified_at,
                )
            ]

        if local.remote_id and local.remote_id != remote_id:
            return [
                Conflict(
                    type=ConflictType.PATH_CONFLICT,
                    remote_id=remote_id,
                    local_path=metadata.path,
                    remote_path=remote_path,
                    description=(
                        f"Note at {metadata.path} carries a different remote id: "
                        f"{local.remote_id}"
                    ),
                    local_modified_at=local.modified_at,
                    remote_modified_at=remote_modified_at,
                )
            ]

        if await self.is_user_modified(metadata, local.modified_at):
            if remote_modified_at > metadata.last_synced_at:
                conflict_type = ConflictType.BOTH_MODIFIED
                description = "Both the local note and the remote document changed"
            else:
                conflict_type = ConflictType.USER_MODIFIED
                description = "The local note was edited"
            logger.debug("%s: %s", remote_id, description)
            return [
                Conflict(
                    type=conflict_type,
                    remote_id=remote_id,
                    local_path=metadata.path,
                    remote_path=remote_path,
                    description=description,
                    local_modified_at=local.modified_at,
                    remote_modified_at=remote_modified_at,
                )
            ]

        return []
