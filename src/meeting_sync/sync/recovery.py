"""Crash and interruption recovery for sync runs.

While a run is in flight the ``RecoveryManager`` keeps exactly one
``RecoveryCheckpoint`` in the state record, overwritten after every
processed document.  If the process dies, the next run finds the
checkpoint, and resuming it skips every id already processed and
continues the partial result.

Checkpoint lifecycle::

    start_recovery_tracking -> update_progress* -> complete_recovery
                                                \\-> handle_failure (kept)
"""

from __future__ import annotations

import logging
import secrets
import string
import time
from collections import deque
from datetime import datetime, timedelta, timezone

from meeting_sync.errors import FileSystemError
from meeting_sync.sync.fingerprint import fingerprint
from meeting_sync.sync.models import (
    LocalFileMetadata,
    RecoveryCheckpoint,
    RecoveryPhase,
    SyncResult,
)
from meeting_sync.sync.state import StateStore
from meeting_sync.sync.store import LocalDocumentStore

logger = logging.getLogger(__name__)

_ID_ALPHABET = string.ascii_lowercase + string.digits
HISTORY_LIMIT = 10
BACKUP_MARKER = ".backup-"


def new_recovery_id() -> str:
    """``recovery-<epoch ms>-<9 random base36 chars>``"""
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(9))
    return f"recovery-{int(time.time() * 1000)}-{suffix}"


class RecoveryManager:
    """Track run progress and decide whether an interrupted run can resume.

    Args:
        state_store: Store holding the persisted checkpoint.
        max_age: Checkpoints older than this are discarded on discovery.
    """

    def __init__(
        self,
        state_store: StateStore,
        max_age: timedelta = timedelta(hours=24),
    ) -> None:
        self._state = state_store
        self.max_age = max_age
        self._current: RecoveryCheckpoint | None = None
        self._history: deque[RecoveryCheckpoint] = deque(maxlen=HISTORY_LIMIT)

    @property
    def current(self) -> RecoveryCheckpoint | None:
        return self._current

    def _save(self) -> None:
        self._state.save_checkpoint(self._current)

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    def check_recovery(self) -> RecoveryCheckpoint | None:
        """Return the pending checkpoint, discarding it if too old."""
        checkpoint = self._state.load_checkpoint()
        if checkpoint is None:
            return None

        age = datetime.now(timezone.utc) - checkpoint.created_at
        if age > self.max_age:
            logger.info(
                "Recovery point %s too old (%s), discarding",
                checkpoint.id,
                age,
            )
            self.discard_recovery()
            return None
        return checkpoint

    def attempt_recovery(self, checkpoint: RecoveryCheckpoint) -> bool:
        """Decide whether *checkpoint* can be resumed.

        Returns:
            ``True`` when the run got past fetching and processed at
            least one document.  A fetching checkpoint with nothing
            processed is discarded (a fresh run is equivalent).
        """
        logger.info(
            "Attempting recovery %s (phase=%s, %d/%d processed)",
            checkpoint.id,
            checkpoint.phase.value,
            checkpoint.processed,
            checkpoint.total,
        )
        if (
            checkpoint.phase in (RecoveryPhase.PROCESSING, RecoveryPhase.FINALIZING)
            and checkpoint.processed_ids
        ):
            return True
        if checkpoint.phase is RecoveryPhase.FETCHING and checkpoint.processed == 0:
            logger.info("Nothing was processed; retrying the whole sync")
            self.discard_recovery()
            return False
        logger.warning("No recovery strategy applies to %s", checkpoint.id)
        return False

    def discard_recovery(self) -> None:
        self._current = None
        self._state.save_checkpoint(None)

    # ------------------------------------------------------------------
    # Tracking
    # ------------------------------------------------------------------

    def start_recovery_tracking(
        self, total: int, resume_from: RecoveryCheckpoint | None = None
    ) -> str:
        """Start (or, with *resume_from*, continue) tracking a run.

        A resumed run keeps the checkpoint's id, processed ids, partial
        result and metadata.

        Returns:
            The recovery id.
        """
        if resume_from is not None:
            self._current = resume_from.model_copy(
                update={
                    "total": max(total, resume_from.processed),
                    "error": None,
                }
            )
            logger.info(
                "Resuming recovery %s at %d/%d",
                self._current.id,
                self._current.processed,
                self._current.total,
            )
        else:
            self._current = RecoveryCheckpoint(id=new_recovery_id(), total=total)
            logger.info(
                "Started recovery tracking %s (%d items)", self._current.id, total
            )
        self._save()
        return self._current.id

    def update_progress(
        self,
        processed: int,
        last_id: str | None = None,
        partial_result: SyncResult | None = None,
        metadata: dict[str, LocalFileMetadata] | None = None,
    ) -> None:
        """Overwrite the checkpoint with the latest progress.

        No-op when no run is being tracked.
        """
        if self._current is None:
            return

        update: dict = {"processed": processed}
        if last_id is not None:
            update["last_processed_id"] = last_id
            if last_id not in self._current.processed_ids:
                update["processed_ids"] = [*self._current.processed_ids, last_id]
        if partial_result is not None:
            update["partial_result"] = partial_result.model_copy(deep=True)
        if metadata:
            update["metadata"] = {**self._current.metadata, **metadata}

        phase = self._current.phase
        if processed > 0 and phase is RecoveryPhase.FETCHING:
            phase = RecoveryPhase.PROCESSING
        if self._current.total and processed >= self._current.total:
            phase = RecoveryPhase.FINALIZING
        update["phase"] = phase

        self._current = self._current.model_copy(update=update)
        self._save()

    def complete_recovery(self, result: SyncResult) -> None:
        """Clear the checkpoint after a successful run."""
        if self._current is None:
            return
        self._history.append(
            self._current.model_copy(update={"partial_result": result})
        )
        logger.info(
            "Recovery tracking %s completed (created=%d updated=%d skipped=%d errors=%d)",
            self._current.id,
            result.created,
            result.updated,
            result.skipped,
            len(result.errors),
        )
        self._current = None
        self._state.save_checkpoint(None)

    def handle_failure(self, error: BaseException) -> None:
        """Keep the checkpoint, recording *error*, so the run can resume."""
        if self._current is None:
            return
        self._current = self._current.model_copy(update={"error": str(error)})
        self._save()
        logger.error(
            "Sync failed, recovery point %s saved (phase=%s, %d/%d)",
            self._current.id,
            self._current.phase.value,
            self._current.processed,
            self._current.total,
        )

    # ------------------------------------------------------------------
    # Rebuild
    # ------------------------------------------------------------------

    async def rebuild_state(self, local_store: LocalDocumentStore) -> int:
        """Rebuild the id -> note mapping from tagged notes in the vault.

        When several notes carry the same id, the one the state already
        maps (else the first non-backup note by path) wins; the others
        are left alone and will surface as duplicate-id conflicts.

        Returns:
            Number of entries in the rebuilt mapping.
        """
        # Backups carry the same tag as the note they were copied from.
        files = sorted(
            await local_store.list_all(),
            key=lambda f: (BACKUP_MARKER in f.path, f.path),
        )
        entries: dict[str, LocalFileMetadata] = {}
        now = time.time()

        for info in files:
            if not info.remote_id:
                continue
            existing = self._state.get(info.remote_id)
            if info.remote_id in entries:
                if existing is None or existing.path != info.path:
                    logger.warning(
                        "Note %s also claims %s; keeping %s",
                        info.path,
                        info.remote_id,
                        entries[info.remote_id].path,
                    )
                    continue
            try:
                content = await local_store.read(info.path)
            except FileSystemError as exc:
                logger.warning("Skipping %s during rebuild: %s", info.path, exc)
                continue
            entries[info.remote_id] = LocalFileMetadata(
                remote_id=info.remote_id,
                path=info.path,
                content_hash=fingerprint(content),
                last_modified_at=info.modified_at,
                last_synced_at=existing.last_synced_at if existing else now,
                sync_version=existing.sync_version if existing else 1,
            )

        self._state.replace_all(entries.values())
        logger.info("Rebuilt sync state from %d tagged notes", len(entries))
        return len(entries)

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    def get_recovery_stats(self) -> dict:
        current = self._current
        return {
            "active": current is not None,
            "recovery_id": current.id if current else None,
            "phase": current.phase.value if current else None,
            "processed": current.processed if current else 0,
            "total": current.total if current else 0,
            "history": len(self._history),
            "last_completed": self._history[-1].id if self._history else None,
        }
