"""Conflict resolution policy for the sync engine.

Two steps, kept apart so callers can override the first:

- ``ConflictResolver.suggest()`` picks a ``ConflictResolution`` from the
  default table, or from a global strategy (``local`` / ``remote`` /
  ``backup``) that overrides the table for every conflict type.
- ``ConflictResolver.apply()`` carries a resolution out as far as it
  involves existing notes (backups, merges, choosing the target path) and
  returns a ``ResolutionOutcome``.  The engine performs the final write
  and records metadata.

``merge_content()`` is a length heuristic, not a semantic merge: the
longer body wins and the other one is kept verbatim in a marked block,
so nothing is lost when the heuristic picks wrong.
"""

from __future__ import annotations

import logging
import time
from pathlib import PurePosixPath
from typing import Callable, Literal

from pydantic import BaseModel

from meeting_sync.sync.fingerprint import split_header
from meeting_sync.sync.locks import PathLockManager
from meeting_sync.sync.models import Conflict, ConflictResolution, ConflictType
from meeting_sync.sync.paths import PathGenerator
from meeting_sync.sync.store import LocalDocumentStore

logger = logging.getLogger(__name__)

STRATEGY_RESOLUTIONS: dict[str, ConflictResolution] = {
    "local": ConflictResolution.KEEP_LOCAL,
    "remote": ConflictResolution.KEEP_REMOTE,
    "backup": ConflictResolution.BACKUP_AND_UPDATE,
}


class ResolutionOutcome(BaseModel):
    """What the engine must do after ``apply()``.

    Attributes:
        kind: ``write`` (write *content* at *path*), ``keep`` (leave the
            note at *path* alone but refresh its metadata) or ``skip``
            (nothing, no metadata update).
        path: Target or kept note path.
        content: Content to write, for ``write``.
        backup_path: Where the previous note was copied, if it was.
        merged: ``True`` when *content* is a merge of both versions.
    """

    kind: Literal["write", "keep", "skip"]
    path: str | None = None
    content: str | None = None
    backup_path: str | None = None
    merged: bool = False

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Merge heuristic
# ---------------------------------------------------------------------------


def _discarded_block(label: str, body: str) -> str:
    return (
        f"<!-- BEGIN DISCARDED {label} VERSION -->\n"
        f"{body}\n"
        f"<!-- END DISCARDED {label} VERSION -->"
    )


def merge_content(local: str, remote: str) -> str:
    """Merge a local note with freshly rendered remote content.

    The remote header is kept (the remote side owns metadata).  The
    longer body becomes the base; when both bodies are non-empty and
    differ, the other body is appended inside a ``DISCARDED LOCAL`` or
    ``DISCARDED REMOTE`` block.
    """
    _, local_body = split_header(local)
    remote_header, remote_body = split_header(remote)
    local_body = local_body.strip()
    remote_body = remote_body.strip()

    if len(local_body) > len(remote_body):
        base, other, label = local_body, remote_body, "REMOTE"
    else:
        base, other, label = remote_body, local_body, "LOCAL"

    merged = base
    if local_body != remote_body and local_body and remote_body:
        merged = f"{base}\n\n{_discarded_block(label, other)}"

    header = f"---\n{remote_header}\n---\n\n" if remote_header is not None else ""
    return f"{header}{merged}\n"


# ---------------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------------


class ConflictResolver:
    """Suggest and apply conflict resolutions.

    Args:
        store: Vault the backups and merges read from and write to.
        locks: Lock manager guarding every backup.
        prefer_local_changes: Default for ``USER_MODIFIED``: keep the
            local note (``True``) or back it up and update (``False``).
    """

    def __init__(
        self,
        store: LocalDocumentStore,
        locks: PathLockManager,
        prefer_local_changes: bool = True,
    ) -> None:
        self._store = store
        self._locks = locks
        self.prefer_local_changes = prefer_local_changes

    # ------------------------------------------------------------------
    # Suggestion
    # ------------------------------------------------------------------

    def suggest(
        self, conflict: Conflict, strategy: str | None = None
    ) -> ConflictResolution:
        """Return the resolution for *conflict*.

        Args:
            conflict: The detected conflict.
            strategy: Optional global override: ``local``, ``remote`` or
                ``backup``.
        """
        if strategy is not None:
            try:
                return STRATEGY_RESOLUTIONS[strategy]
            except KeyError:
                raise ValueError(
                    f"Unknown resolution strategy {strategy!r}; "
                    f"expected one of {sorted(STRATEGY_RESOLUTIONS)}"
                ) from None

        match conflict.type:
            case ConflictType.USER_MODIFIED:
                return (
                    ConflictResolution.KEEP_LOCAL
                    if self.prefer_local_changes
                    else ConflictResolution.BACKUP_AND_UPDATE
                )
            case ConflictType.BOTH_MODIFIED:
                return ConflictResolution.BACKUP_AND_UPDATE
            case ConflictType.FILE_MISSING | ConflictType.METADATA_CORRUPTED:
                return ConflictResolution.KEEP_REMOTE
            case ConflictType.DUPLICATE_ID | ConflictType.PATH_CONFLICT:
                return ConflictResolution.CREATE_DUPLICATE
            case _:
                return ConflictResolution.SKIP

    # ------------------------------------------------------------------
    # Application
    # ------------------------------------------------------------------

    async def apply(
        self,
        conflict: Conflict,
        resolution: ConflictResolution,
        rendered: str,
        dry_run: bool = False,
        is_taken: Callable[[str], bool] | None = None,
        backup: bool = True,
    ) -> ResolutionOutcome:
        """Carry out *resolution* for *conflict*.

        Args:
            conflict: The detected conflict.
            resolution: Chosen resolution.
            rendered: Freshly rendered remote content.
            dry_run: Compute the outcome without creating backups.
            is_taken: Predicate telling whether a path is already used;
                consulted when a duplicate needs a fresh path.
            backup: Copy the local note aside before overwriting it.
                False when an earlier attempt already made the copy.

        Raises:
            FileSystemError: If reading, copying or locking fails.
        """
        local_exists = bool(conflict.local_path) and await self._store.exists(
            conflict.local_path
        )
        target = conflict.local_path if local_exists else conflict.remote_path

        match resolution:
            case ConflictResolution.SKIP:
                return ResolutionOutcome(kind="skip")

            case ConflictResolution.KEEP_LOCAL:
                if not local_exists or conflict.type is ConflictType.PATH_CONFLICT:
                    # Nothing of ours to keep.
                    return ResolutionOutcome(kind="skip")
                return ResolutionOutcome(kind="keep", path=conflict.local_path)

            case ConflictResolution.KEEP_REMOTE:
                return ResolutionOutcome(kind="write", path=target, content=rendered)

            case ConflictResolution.BACKUP_AND_UPDATE:
                backup_path = None
                if local_exists and backup and not dry_run:
                    backup_path = await self.create_backup(conflict.local_path)
                return ResolutionOutcome(
                    kind="write",
                    path=target,
                    content=rendered,
                    backup_path=backup_path,
                )

            case ConflictResolution.MERGE:
                if not local_exists:
                    return ResolutionOutcome(kind="write", path=target, content=rendered)
                local = await self._store.read(conflict.local_path)
                return ResolutionOutcome(
                    kind="write",
                    path=target,
                    content=merge_content(local, rendered),
                    merged=True,
                )

            case ConflictResolution.CREATE_DUPLICATE:
                base = conflict.remote_path or conflict.local_path
                taken = is_taken or (lambda p: p == conflict.local_path)
                path = PathGenerator.unique(base, taken)
                logger.info(
                    "Writing %s to new path %s (%s)",
                    conflict.remote_id,
                    path,
                    conflict.type.value,
                )
                return ResolutionOutcome(kind="write", path=path, content=rendered)

        raise ValueError(f"Unsupported resolution {resolution!r}")

    # ------------------------------------------------------------------
    # Backups
    # ------------------------------------------------------------------

    async def backup_path_for(self, path: str) -> str:
        """``<stem>.backup-<epoch ms><suffix>`` next to *path*, made unique
        with ``-N`` if that name is taken."""
        p = PurePosixPath(path)
        stamp = int(time.time() * 1000)
        candidate = p.with_name(f"{p.stem}.backup-{stamp}{p.suffix}")
        n = 1
        while await self._store.exists(str(candidate)):
            candidate = p.with_name(f"{p.stem}.backup-{stamp}-{n}{p.suffix}")
            n += 1
        return str(candidate)

    async def create_backup(self, path: str) -> str:
        """Copy the note at *path* byte for byte to a fresh backup path.

        Returns:
            The backup path.

        Raises:
            FileSystemError: If the copy fails.
        """
        async with self._locks.lock(path):
            backup_path = await self.backup_path_for(path)
            async with self._locks.lock(backup_path):
                await self._store.copy(path, backup_path)
        logger.info("Created backup: %s", backup_path)
        return backup_path
