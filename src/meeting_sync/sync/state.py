"""Transactional sync state persistence layer.

Manages the JSON record that maps remote ids to local notes, stored as
``sync_state.json`` in the state directory (``.meeting_sync/`` inside the
vault by default).  The record holds:

* ``version`` -- schema version (currently 2).
* ``files`` -- remote id -> ``LocalFileMetadata``.
* ``deleted_ids`` -- ids the user deleted locally; never recreated.
* ``last_sync`` -- ISO 8601 timestamp of the last committed run.
* ``checksum`` -- SHA-256 over ``files``, ``deleted_ids`` and ``last_sync``.
* ``recovery`` -- the single in-flight ``RecoveryCheckpoint``, or null.
* ``needs_rebuild`` -- true until a rebuilt mapping has been committed.

Key design choices:

* **Atomic writes** -- every save writes to a temp file then calls
  ``os.replace()`` so readers never see partial data.
* **Transactions** -- mutations made between ``begin_transaction()`` and
  ``commit_transaction()`` stay in memory; ``rollback_transaction()``
  restores the snapshot taken at begin.  Rollback never touches notes.
* **Committed view on disk** -- checkpoint saves write the last committed
  mapping, so a crash mid-run never persists half a transaction.
* **Soft failure on load** -- an unreadable, tampered or unknown-version
  record starts empty with ``needs_rebuild`` set instead of raising.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import tempfile
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable

from pydantic import ValidationError

from meeting_sync.errors import StateInvariantError, StateTransactionError
from meeting_sync.file_handler import normalize_relative_path
from meeting_sync.sync.models import LocalFileMetadata, RecoveryCheckpoint

logger = logging.getLogger(__name__)

STATE_VERSION = 2
STATE_FILENAME = "sync_state.json"
BACKUP_DIRNAME = "backups"
MAX_BACKUPS = 5


@dataclass
class _Snapshot:
    files: dict[str, LocalFileMetadata] = field(default_factory=dict)
    deleted_ids: set[str] = field(default_factory=set)
    last_sync: str | None = None

    def copy(self) -> _Snapshot:
        return _Snapshot(dict(self.files), set(self.deleted_ids), self.last_sync)


@dataclass
class _Transaction:
    id: str
    started_at: float
    snapshot: _Snapshot
    needs_rebuild: bool = False
    operations: list[tuple[str, str]] = field(default_factory=list)


def compute_checksum(
    files: dict, deleted_ids: list[str], last_sync: str | None
) -> str:
    """SHA-256 over the serialised mapping, deleted ids and last sync."""
    payload = json.dumps(
        {"files": files, "deleted_ids": deleted_ids, "last_sync": last_sync},
        sort_keys=True,
        separators=(",", ":"),
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class StateStore:
    """Load, mutate transactionally, and persist sync state.

    Args:
        state_dir: Directory holding ``sync_state.json`` and its backups.
    """

    def __init__(self, state_dir: Path) -> None:
        self._state_dir = Path(state_dir)
        self._current = _Snapshot()
        self._committed = _Snapshot()
        self._path_index: dict[str, str] = {}
        self._checkpoint: RecoveryCheckpoint | None = None
        self._transaction: _Transaction | None = None
        self._pending_conflicts: set[str] = set()
        self.needs_rebuild = False
        # Whether the committed record still awaits a rebuild.
        self._rebuild_pending = False

    @property
    def path(self) -> Path:
        return self._state_dir / STATE_FILENAME

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def load(self) -> None:
        """Load state from disk.

        A missing file yields empty state.  A malformed, tampered or
        unknown-version record falls back to the newest valid backup, or
        to empty state with ``needs_rebuild`` set.
        """
        self._transaction = None
        self._pending_conflicts.clear()
        self.needs_rebuild = False
        self._rebuild_pending = False

        if not self.path.exists():
            self._restore(_Snapshot())
            self._committed = _Snapshot()
            self._checkpoint = None
            return

        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
            self._apply_record(raw)
            return
        except _LegacyRecord as legacy:
            logger.info("Migrating v1 sync state; local notes will be rescanned")
            self._restore(legacy.snapshot)
            self._committed = legacy.snapshot.copy()
            self._checkpoint = None
            self.needs_rebuild = self._rebuild_pending = True
            return
        except (OSError, ValueError, _CorruptRecord) as exc:
            logger.error("Sync state at %s is unusable: %s", self.path, exc)

        for backup in self._list_backups():
            try:
                raw = json.loads(backup.read_text(encoding="utf-8"))
                self._apply_record(raw)
            except (OSError, ValueError, _CorruptRecord, _LegacyRecord):
                continue
            logger.warning("Restored sync state from backup %s", backup.name)
            return

        self._restore(_Snapshot())
        self._committed = _Snapshot()
        self._checkpoint = None
        self.needs_rebuild = self._rebuild_pending = True

    def _apply_record(self, raw: object) -> None:
        if not isinstance(raw, dict):
            raise _CorruptRecord("state record is not an object")

        version = raw.get("version")
        if version == 1 or (version is None and "file_index" in raw):
            raise _LegacyRecord(
                _Snapshot(
                    deleted_ids=set(raw.get("deleted_ids") or raw.get("deletedIds") or []),
                    last_sync=raw.get("last_sync") or raw.get("lastSync") or None,
                )
            )
        if version != STATE_VERSION:
            raise _CorruptRecord(f"unsupported state version {version!r}")

        files_raw = raw.get("files") or {}
        deleted_raw = raw.get("deleted_ids") or []
        last_sync = raw.get("last_sync")
        expected = raw.get("checksum")
        if expected != compute_checksum(files_raw, deleted_raw, last_sync):
            raise _CorruptRecord("checksum mismatch")

        try:
            files = {
                rid: LocalFileMetadata.model_validate(entry)
                for rid, entry in files_raw.items()
            }
        except ValidationError as exc:
            raise _CorruptRecord(f"invalid file entry: {exc}") from exc

        paths = [m.path for m in files.values()]
        if len(paths) != len(set(paths)):
            raise _CorruptRecord("two remote ids share one path")

        checkpoint = None
        if raw.get("recovery"):
            try:
                checkpoint = RecoveryCheckpoint.model_validate(raw["recovery"])
            except ValidationError as exc:
                logger.warning("Discarding unreadable recovery checkpoint: %s", exc)

        snapshot = _Snapshot(files, set(deleted_raw), last_sync)
        self._restore(snapshot)
        self._committed = snapshot.copy()
        self._checkpoint = checkpoint
        if raw.get("needs_rebuild") is True:
            self.needs_rebuild = self._rebuild_pending = True

    def _serialize(self, snapshot: _Snapshot) -> dict:
        files = {
            rid: meta.model_dump(mode="json")
            for rid, meta in sorted(snapshot.files.items())
        }
        deleted = sorted(snapshot.deleted_ids)
        return {
            "version": STATE_VERSION,
            "files": files,
            "deleted_ids": deleted,
            "last_sync": snapshot.last_sync,
            "checksum": compute_checksum(files, deleted, snapshot.last_sync),
            "needs_rebuild": self._rebuild_pending,
            "recovery": (
                self._checkpoint.model_dump(mode="json")
                if self._checkpoint is not None
                else None
            ),
        }

    def _persist(self, target: Path | None = None) -> None:
        """Write the committed mapping and checkpoint atomically."""
        self._state_dir.mkdir(parents=True, exist_ok=True)
        target = target or self.path
        fd, tmp_path = tempfile.mkstemp(
            dir=str(self._state_dir), suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(self._serialize(self._committed), fh, indent=2)
            os.replace(tmp_path, target)
        except BaseException:
            # Clean up temp file on any failure.
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise

    def save(self) -> None:
        """Persist the current mapping.

        Raises:
            StateTransactionError: If a transaction is open; use
                ``commit_transaction()`` instead.
        """
        if self._transaction is not None:
            raise StateTransactionError(
                "Cannot save while a transaction is open"
            )
        self._committed = self._current.copy()
        self._rebuild_pending = self.needs_rebuild
        self._persist()

    # ------------------------------------------------------------------
    # Backups
    # ------------------------------------------------------------------

    def _backup_dir(self) -> Path:
        return self._state_dir / BACKUP_DIRNAME

    def _list_backups(self) -> list[Path]:
        """Backups newest first."""
        if not self._backup_dir().is_dir():
            return []
        return sorted(self._backup_dir().glob("sync_state.*.json"), reverse=True)

    def _backup_current_file(self) -> None:
        if not self.path.exists():
            return
        backup_dir = self._backup_dir()
        backup_dir.mkdir(parents=True, exist_ok=True)
        stamp = int(time.time() * 1000)
        # Names sort oldest first, including several backups in one ms.
        n = 0
        target = backup_dir / f"sync_state.{stamp:015d}-{n:03d}.json"
        while target.exists():
            n += 1
            target = backup_dir / f"sync_state.{stamp:015d}-{n:03d}.json"
        target.write_bytes(self.path.read_bytes())
        for old in self._list_backups()[MAX_BACKUPS:]:
            old.unlink(missing_ok=True)

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @property
    def in_transaction(self) -> bool:
        return self._transaction is not None

    def begin_transaction(self, transaction_id: str) -> None:
        """Open a transaction, snapshotting the current mapping.

        Raises:
            StateTransactionError: If a transaction is already open.
        """
        if self._transaction is not None:
            raise StateTransactionError(
                f"Transaction {self._transaction.id} already in progress"
            )
        self._transaction = _Transaction(
            id=transaction_id,
            started_at=time.time(),
            snapshot=self._current.copy(),
            needs_rebuild=self.needs_rebuild,
        )
        logger.debug("Began state transaction %s", transaction_id)

    def commit_transaction(self) -> None:
        """Persist all mutations since ``begin_transaction()``.

        The previous state file is kept as one of up to five backups.

        Raises:
            StateTransactionError: If no transaction is open, or the
                record cannot be written (the transaction stays open so
                the caller can roll back).
        """
        if self._transaction is None:
            raise StateTransactionError("No transaction in progress")

        previous = self._committed, self._rebuild_pending
        self._committed = self._current.copy()
        self._rebuild_pending = self.needs_rebuild
        try:
            self._backup_current_file()
            self._persist()
        except OSError as exc:
            self._committed, self._rebuild_pending = previous
            raise StateTransactionError(
                f"Failed to commit transaction {self._transaction.id}: {exc}"
            ) from exc

        logger.debug(
            "Committed state transaction %s (%d operations)",
            self._transaction.id,
            len(self._transaction.operations),
        )
        self._transaction = None
        self._pending_conflicts.clear()

    def rollback_transaction(self) -> None:
        """Discard mutations since ``begin_transaction()``.

        Raises:
            StateTransactionError: If no transaction is open.
        """
        if self._transaction is None:
            raise StateTransactionError("No transaction in progress")
        self._restore(self._transaction.snapshot)
        self.needs_rebuild = self._transaction.needs_rebuild
        logger.debug(
            "Rolled back state transaction %s (%d operations discarded)",
            self._transaction.id,
            len(self._transaction.operations),
        )
        self._transaction = None
        self._pending_conflicts.clear()

    def _restore(self, snapshot: _Snapshot) -> None:
        self._current = snapshot.copy()
        self._path_index = {m.path: rid for rid, m in self._current.files.items()}

    def _record(self, op: str, remote_id: str) -> None:
        if self._transaction is not None:
            self._transaction.operations.append((op, remote_id))

    # ------------------------------------------------------------------
    # Mapping
    # ------------------------------------------------------------------

    def get(self, remote_id: str) -> LocalFileMetadata | None:
        return self._current.files.get(remote_id)

    def all_files(self) -> dict[str, LocalFileMetadata]:
        return dict(self._current.files)

    def owner_of(self, path: str) -> str | None:
        """Return the remote id mapped to *path*, if any."""
        return self._path_index.get(normalize_relative_path(path))

    def add_or_update(
        self,
        remote_id: str,
        path: str,
        content_hash: str,
        sync_version: int,
        last_modified_at: float | None = None,
        last_synced_at: float | None = None,
        remote_hash: str | None = None,
    ) -> LocalFileMetadata:
        """Record that *remote_id* now lives at *path* with *content_hash*.

        *remote_hash* defaults to *content_hash*.  Also clears any deleted
        flag for the id.

        Raises:
            StateInvariantError: If another remote id owns *path*.
        """
        key = normalize_relative_path(path)
        owner = self._path_index.get(key)
        if owner is not None and owner != remote_id:
            raise StateInvariantError(
                f"Path {key} is already mapped to {owner}"
            )

        now = time.time()
        metadata = LocalFileMetadata(
            remote_id=remote_id,
            path=key,
            content_hash=content_hash,
            last_modified_at=last_modified_at if last_modified_at is not None else now,
            last_synced_at=last_synced_at if last_synced_at is not None else now,
            sync_version=sync_version,
            remote_hash=remote_hash or content_hash,
        )
        previous = self._current.files.get(remote_id)
        if previous is not None and previous.path != key:
            self._path_index.pop(previous.path, None)
        self._current.files[remote_id] = metadata
        self._path_index[key] = remote_id
        self._current.deleted_ids.discard(remote_id)
        self._record("update" if previous else "add", remote_id)
        return metadata

    def put(self, metadata: LocalFileMetadata) -> LocalFileMetadata:
        """Store an existing metadata record unchanged (used for replay)."""
        return self.add_or_update(
            metadata.remote_id,
            metadata.path,
            metadata.content_hash,
            metadata.sync_version,
            last_modified_at=metadata.last_modified_at,
            last_synced_at=metadata.last_synced_at,
            remote_hash=metadata.remote_hash,
        )

    def remove(self, remote_id: str) -> bool:
        metadata = self._current.files.pop(remote_id, None)
        if metadata is None:
            return False
        self._path_index.pop(metadata.path, None)
        self._record("delete", remote_id)
        return True

    def replace_all(self, entries: Iterable[LocalFileMetadata]) -> None:
        """Replace the whole mapping (state rebuild).  Deleted ids survive."""
        files: dict[str, LocalFileMetadata] = {}
        seen: set[str] = set()
        for meta in entries:
            if meta.path in seen:
                raise StateInvariantError(f"Path {meta.path} listed twice")
            seen.add(meta.path)
            files[meta.remote_id] = meta
        self._restore(
            _Snapshot(files, set(self._current.deleted_ids), self._current.last_sync)
        )
        for rid in files:
            self._current.deleted_ids.discard(rid)
        self.needs_rebuild = False
        self._record("rebuild", "*")

    # ------------------------------------------------------------------
    # Deleted ids and last sync
    # ------------------------------------------------------------------

    def mark_deleted(self, remote_id: str) -> None:
        """Forget *remote_id*'s mapping and never recreate it."""
        self.remove(remote_id)
        self._current.deleted_ids.add(remote_id)
        self._record("mark_deleted", remote_id)

    def handle_delete(self, path: str) -> str | None:
        """The user deleted the note at *path*: stop syncing its id.

        Returns:
            The remote id now marked deleted, or ``None`` if *path* was
            not tracked.
        """
        remote_id = self.owner_of(path)
        if remote_id is None:
            return None
        self.mark_deleted(remote_id)
        logger.info("Note %s deleted locally; %s will not be recreated", path, remote_id)
        return remote_id

    def handle_rename(self, old_path: str, new_path: str) -> LocalFileMetadata | None:
        """The user moved the note at *old_path* to *new_path*.

        Returns:
            The updated metadata, or ``None`` if *old_path* was not tracked.

        Raises:
            StateInvariantError: If another remote id owns *new_path*.
        """
        remote_id = self.owner_of(old_path)
        if remote_id is None:
            return None
        metadata = self._current.files[remote_id]
        moved = self.put(
            metadata.model_copy(update={"path": normalize_relative_path(new_path)})
        )
        logger.info("Following %s from %s to %s", remote_id, old_path, moved.path)
        return moved

    def is_deleted(self, remote_id: str) -> bool:
        return remote_id in self._current.deleted_ids

    def clear_deleted(self, remote_id: str) -> None:
        self._current.deleted_ids.discard(remote_id)

    @property
    def deleted_ids(self) -> frozenset[str]:
        return frozenset(self._current.deleted_ids)

    @property
    def last_sync(self) -> str | None:
        return self._current.last_sync

    @last_sync.setter
    def last_sync(self, value: str | datetime | None) -> None:
        if isinstance(value, datetime):
            value = value.astimezone(timezone.utc).isoformat()
        self._current.last_sync = value

    # ------------------------------------------------------------------
    # Pending conflicts and orphans
    # ------------------------------------------------------------------

    def add_pending_conflict(self, remote_id: str) -> None:
        self._pending_conflicts.add(remote_id)

    def resolve_pending_conflict(self, remote_id: str) -> None:
        self._pending_conflicts.discard(remote_id)

    @property
    def pending_conflicts(self) -> frozenset[str]:
        return frozenset(self._pending_conflicts)

    def cleanup_orphans(self, existing_paths: Iterable[str]) -> int:
        """Remove entries whose path is not in *existing_paths*.

        While a transaction is open, ids with pending conflicts are kept.

        Returns:
            Number of entries removed.
        """
        existing = {normalize_relative_path(p) for p in existing_paths}
        cleaned = 0
        for remote_id, metadata in list(self._current.files.items()):
            if metadata.path in existing:
                continue
            if self.in_transaction and remote_id in self._pending_conflicts:
                logger.debug(
                    "Keeping %s: conflict still pending", remote_id
                )
                continue
            self.remove(remote_id)
            cleaned += 1
        if cleaned:
            logger.info("Cleaned up %d orphaned entries", cleaned)
        return cleaned

    # ------------------------------------------------------------------
    # Recovery checkpoint
    # ------------------------------------------------------------------

    def save_checkpoint(self, checkpoint: RecoveryCheckpoint | None) -> None:
        """Store (or clear, with ``None``) the recovery checkpoint.

        Writes the last committed mapping, never in-flight mutations.
        """
        self._checkpoint = checkpoint
        self._persist()

    def load_checkpoint(self) -> RecoveryCheckpoint | None:
        return self._checkpoint

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    def get_stats(self, existing_paths: Iterable[str] | None = None) -> dict:
        """Return counts for diagnostics.

        ``orphaned_files`` is only computed when *existing_paths* is given.
        """
        stats = {
            "total_files": len(self._current.files),
            "deleted_files": len(self._current.deleted_ids),
            "pending_conflicts": len(self._pending_conflicts),
            "in_transaction": self.in_transaction,
            "needs_rebuild": self.needs_rebuild,
            "backups": len(self._list_backups()),
            "last_sync": self._current.last_sync,
        }
        if existing_paths is not None:
            existing = {normalize_relative_path(p) for p in existing_paths}
            stats["orphaned_files"] = sum(
                1 for m in self._current.files.values() if m.path not in existing
            )
        return stats


class _CorruptRecord(Exception):
    pass


class _LegacyRecord(Exception):
    def __init__(self, snapshot: _Snapshot) -> None:
        self.snapshot = snapshot
        super().__init__("v1 state record")
