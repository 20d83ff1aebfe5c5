"""Sync engine that orchestrates one reconciliation run.

The ``SyncEngine`` ties together the state store, conflict detector,
resolver, batch scheduler and recovery manager.  One run:

1. Tests the connection to the remote source.
2. Decides whether to resume an interrupted run.
3. Opens a state transaction (rebuilding the mapping first if the state
   record was unusable).
4. Fetches documents (everything, or what changed since the last sync).
5. Validates them.
6. Scans the vault once and, per document in fetch order, follows a
   note the user moved, detects conflicts, resolves them and applies
   the write.
7. Checkpoints after every document.
8. Cleans up orphans, advances ``last_sync`` and commits.

Error handling is per document: a single failure is recorded in the
result and does not abort the run.  Connection, fetch and commit
failures roll the transaction back and propagate.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING, Callable, Iterable

from meeting_sync.config_schema import SyncConfig, UnifiedConfig
from meeting_sync.core.async_utils import CancellationToken, run_sync
from meeting_sync.errors import (
    DocumentValidationError,
    NetworkError,
    StateInvariantError,
    SyncBusyError,
    SyncCancelledError,
    is_retryable,
)
from meeting_sync.sync.batcher import AdaptiveBatcher
from meeting_sync.sync.detector import ConflictDetector
from meeting_sync.sync.fingerprint import fingerprint
from meeting_sync.sync.locks import PathLockManager
from meeting_sync.sync.models import (
    Conflict,
    DecodedDocument,
    DocumentError,
    LocalFileMetadata,
    RecoveryCheckpoint,
    RejectedDocument,
    RemoteDocument,
    SyncOptions,
    SyncPhase,
    SyncProgress,
    SyncResult,
)
from meeting_sync.sync.paths import PathGenerator
from meeting_sync.sync.recovery import BACKUP_MARKER, RecoveryManager
from meeting_sync.sync.renderer import render_document
from meeting_sync.sync.resolver import ConflictResolver, ResolutionOutcome
from meeting_sync.sync.state import StateStore
from meeting_sync.sync.store import (
    FileSystemDocumentStore,
    LocalDocumentStore,
    LocalFileIndex,
    WriteOutcome,
)
from meeting_sync.validators import check_document

if TYPE_CHECKING:
    from meeting_sync.config import Config
    from meeting_sync.core.client import DocumentSource

logger = logging.getLogger(__name__)


@dataclass
class _WorkItem:
    """One fetched document and, if it failed validation, why."""

    index: int
    document: DecodedDocument
    error: DocumentError | None = None

    @property
    def remote_id(self) -> str | None:
        if isinstance(self.document, RemoteDocument):
            return self.document.id
        return self.document.remote_id


class _RunContext:
    """Mutable state of one run, shared by the per-document steps."""

    def __init__(
        self,
        options: SyncOptions,
        result: SyncResult,
        index: LocalFileIndex,
    ) -> None:
        self.options = options
        self.result = result
        self.index = index
        self.claimed: dict[str, str] = {}
        self.done: set[int] = set()
        self.current: _WorkItem | None = None
        # Remote ids whose conflict was counted or whose note was backed up
        # by an earlier attempt of a retried batch.
        self.conflicted: set[str] = set()
        self.backed_up: set[str] = set()
        self.total = 0
        self.truncated = False


class SyncEngine:
    """Run sync passes from a remote source into a local vault.

    Only one run may be active at a time; a second ``sync()`` call while
    one is in flight raises ``SyncBusyError``.

    Args:
        source: Remote document source.
        local_store: The vault.
        state_store: Loaded sync state.
        recovery: Recovery manager bound to *state_store*.
        detector: Conflict detector bound to *local_store*.
        resolver: Conflict resolver bound to *local_store*.
        batcher: Adaptive batch scheduler.
        path_generator: Paths for new notes.
        renderer: Turns a ``RemoteDocument`` into note text.
        locks: Per-path lock manager shared with *resolver*.
        settings: The ``sync`` config section.
    """

    def __init__(
        self,
        source: DocumentSource,
        local_store: LocalDocumentStore,
        state_store: StateStore,
        *,
        recovery: RecoveryManager | None = None,
        detector: ConflictDetector | None = None,
        resolver: ConflictResolver | None = None,
        batcher: AdaptiveBatcher | None = None,
        path_generator: PathGenerator | None = None,
        renderer: Callable[[RemoteDocument], str] = render_document,
        locks: PathLockManager | None = None,
        settings: SyncConfig | None = None,
    ) -> None:
        self.settings = settings or SyncConfig()
        self.source = source
        self.local_store = local_store
        self.state = state_store
        self.locks = locks or PathLockManager(timeout=self.settings.lock_timeout)
        self.recovery = recovery or RecoveryManager(
            state_store,
            max_age=timedelta(hours=self.settings.recovery_max_age_hours),
        )
        self.detector = detector or ConflictDetector(local_store)
        self.resolver = resolver or ConflictResolver(
            local_store,
            self.locks,
            prefer_local_changes=self.settings.prefer_local_changes,
        )
        self.batcher = batcher or AdaptiveBatcher()
        self.path_generator = path_generator or PathGenerator()
        self.renderer = renderer

        self._running = False
        self._cancel = CancellationToken()
        self._progress = SyncProgress()
        self._started: float | None = None
        self._result = SyncResult()

    # ------------------------------------------------------------------
    # Caller-facing controls
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._running

    def cancel(self) -> None:
        """Request cooperative cancellation of the active run."""
        if self._running:
            self._cancel.cancel()

    def get_progress(self) -> SyncProgress:
        return self._progress

    def check_recovery(self) -> RecoveryCheckpoint | None:
        """Return the checkpoint of an interrupted run, if one is pending."""
        return self.recovery.check_recovery()

    def handle_local_delete(self, path: str) -> str | None:
        """Record that the user deleted the note at *path*.

        Its remote id is skipped by later runs instead of being recreated.

        Returns:
            The remote id now marked deleted, or ``None`` if *path* was
            not a synced note.

        Raises:
            SyncBusyError: If a run is active.
        """
        self._ensure_idle()
        remote_id = self.state.handle_delete(path)
        if remote_id is not None:
            self.state.save()
        return remote_id

    def handle_local_rename(
        self, old_path: str, new_path: str
    ) -> LocalFileMetadata | None:
        """Record that the user moved the note at *old_path* to *new_path*.

        Raises:
            SyncBusyError: If a run is active.
            StateInvariantError: If another remote id owns *new_path*.
        """
        self._ensure_idle()
        moved = self.state.handle_rename(old_path, new_path)
        if moved is not None:
            self.state.save()
        return moved

    def _ensure_idle(self) -> None:
        if self._running:
            raise SyncBusyError("A sync is in progress")

    def _set_phase(
        self,
        phase: SyncPhase,
        message: str = "",
        current: int | None = None,
        total: int | None = None,
    ) -> None:
        current = self._progress.current if current is None else current
        total = self._progress.total if total is None else total
        eta = None
        if self._started is not None and 0 < current < total:
            elapsed = time.monotonic() - self._started
            eta = elapsed / current * (total - current)
        self._progress = self._progress.model_copy(
            update={
                "phase": phase,
                "message": message or self._progress.message,
                "current": current,
                "total": total,
                "estimated_seconds_remaining": eta,
            }
        )
        logger.debug("Sync phase %s: %s", phase.value, message)

    # ------------------------------------------------------------------
    # Main entry point
    # ------------------------------------------------------------------

    async def sync(self, options: SyncOptions | None = None) -> SyncResult:
        """Execute one sync run.

        Args:
            options: Per-run options; defaults from ``settings``.

        Returns:
            The run's ``SyncResult``.

        Raises:
            SyncBusyError: If another run is active.
            SyncCancelledError: If the run was cancelled; ``result``
                carries the partial counts.
            NetworkError: If the connection test fails.
            MeetingSyncError: Any other run-level failure.
        """
        if self._running:
            raise SyncBusyError("A sync is already in progress")

        options = options or self._default_options()
        self._running = True
        self._cancel = CancellationToken()
        self._started = time.monotonic()
        self._progress = SyncProgress(started_at=datetime.now(timezone.utc))
        tracking = (
            options.enable_recovery
            and self.settings.enable_recovery
            and not options.dry_run
        )
        self._result = SyncResult(dry_run=options.dry_run)

        try:
            return await self._run(options, tracking)
        except SyncCancelledError as exc:
            partial = exc.result or self._result
            partial.duration = time.monotonic() - self._started
            self._abort(exc, tracking)
            self._set_phase(SyncPhase.CANCELLED, "Sync cancelled")
            logger.warning("Sync cancelled: %s", partial.summary())
            raise SyncCancelledError(str(exc), result=partial) from None
        except Exception as exc:
            self._abort(exc, tracking)
            self._set_phase(SyncPhase.ERROR, str(exc))
            logger.error("Sync failed: %s", exc)
            raise
        finally:
            if self.state.in_transaction:
                self.state.rollback_transaction()
            self._running = False

    def _default_options(self) -> SyncOptions:
        return SyncOptions(
            validate_data=self.settings.validate_data,
            auto_resolve_strategy=self.settings.auto_resolve_strategy,
            enable_recovery=self.settings.enable_recovery,
            max_documents=self.settings.max_documents,
        )

    def _abort(self, exc: BaseException, tracking: bool) -> None:
        if self.state.in_transaction:
            self.state.rollback_transaction()
        if tracking:
            self.recovery.handle_failure(exc)

    async def _run(self, options: SyncOptions, tracking: bool) -> SyncResult:
        # Step a: connect
        self._set_phase(SyncPhase.CONNECTING, "Testing connection")
        if not await run_sync(self.source.test_connection):
            raise NetworkError("Could not connect to the remote document source")

        # Step b: decide on recovery
        checkpoint = self._pending_checkpoint(options)

        # Step c: open the transaction
        self.state.begin_transaction(f"sync-{int(time.time() * 1000)}")
        if self.state.needs_rebuild:
            logger.warning("Sync state unusable; rebuilding from local notes")
            await self.recovery.rebuild_state(self.local_store)

        result = SyncResult(dry_run=options.dry_run)
        processed_ids: set[str] = set()
        if checkpoint is not None:
            result = checkpoint.partial_result.model_copy(
                deep=True, update={"dry_run": options.dry_run}
            )
            processed_ids = set(checkpoint.processed_ids)
            self._replay(checkpoint.metadata.values())
        self._result = result

        # Step d: fetch
        self._cancel.raise_if_cancelled()
        self._set_phase(SyncPhase.FETCHING, "Fetching documents")
        fetch_started = datetime.now(timezone.utc)
        last_sync = self.state.last_sync
        if options.full_sync or last_sync is None:
            documents = await run_sync(self.source.fetch_all)
        else:
            documents = await run_sync(self.source.fetch_since, last_sync)

        # Step e: validate
        self._cancel.raise_if_cancelled()
        self._set_phase(
            SyncPhase.VALIDATING, f"Validating {len(documents)} documents"
        )
        work = self._validate(documents, options.validate_data)
        work = [w for w in work if w.remote_id not in processed_ids]
        limit = options.max_documents or self.settings.max_documents
        truncated = limit is not None and len(work) > limit
        if truncated:
            logger.info("Limiting run to %d of %d documents", limit, len(work))
            work = work[:limit]

        if tracking:
            self.recovery.start_recovery_tracking(
                len(work) + len(processed_ids), resume_from=checkpoint
            )

        # Step f: scan the vault once
        self._set_phase(
            SyncPhase.DETECTING_CONFLICTS,
            "Scanning local notes",
            current=result.processed,
            total=result.processed + len(work),
        )
        index = await LocalFileIndex.scan(self.local_store)
        ctx = _RunContext(options, result, index)
        ctx.total = result.processed + len(work)
        ctx.truncated = truncated

        # Step g: process in adaptive batches
        async def process_batch(batch: list[_WorkItem]) -> list[None]:
            for item in batch:
                if item.index in ctx.done:
                    continue
                self._cancel.raise_if_cancelled()
                ctx.current = item
                await self._process_item(item, ctx, tracking)
                ctx.current = None
            return []

        def on_abandon(batch: list[_WorkItem], exc: BaseException) -> int | None:
            # Only the document that kept failing is given up on; the rest
            # of its batch is scheduled again.
            failed = ctx.current
            ctx.current = None
            for position, item in enumerate(batch):
                if item is failed:
                    self._record_error(item, exc, ctx)
                    self._finish_item(item, ctx, tracking)
                    return position + 1
            for item in batch:
                if item.index not in ctx.done:
                    self._record_error(item, exc, ctx)
                    self._finish_item(item, ctx, tracking)
            return None

        self.batcher.reset()
        await self.batcher.process_batches(
            work,
            process_batch,
            cancel=self._cancel,
            on_abandon=on_abandon,
        )
        self._cancel.raise_if_cancelled()

        # Step h: finalize and commit
        self._set_phase(SyncPhase.COMMITTING, "Saving sync state")
        if not options.dry_run:
            self.state.cleanup_orphans(index.paths())
            if not result.errors and not truncated:
                self.state.last_sync = fetch_started
            else:
                logger.info(
                    "Keeping last sync time; %s will be fetched again",
                    "failed documents" if result.errors else "remaining documents",
                )

        result.duration = time.monotonic() - self._started
        result.success = True
        if options.dry_run:
            self.state.rollback_transaction()
        else:
            self.state.commit_transaction()
        if tracking:
            self.recovery.complete_recovery(result)

        self._set_phase(SyncPhase.COMPLETE, "Sync complete")
        logger.info(
            "Sync complete: created=%d updated=%d skipped=%d errors=%d (%.2fs)",
            result.created,
            result.updated,
            result.skipped,
            len(result.errors),
            result.duration,
        )
        return result

    # ------------------------------------------------------------------
    # Run setup
    # ------------------------------------------------------------------

    def _pending_checkpoint(self, options: SyncOptions) -> RecoveryCheckpoint | None:
        if not (options.enable_recovery and self.settings.enable_recovery):
            return None
        if options.dry_run:
            return None
        pending = self.recovery.check_recovery()
        if pending is None:
            return None

        if options.resume is False:
            logger.info("Discarding recovery point %s", pending.id)
            self.recovery.discard_recovery()
            return None
        if options.resume is None and not self.recovery.attempt_recovery(pending):
            return None
        logger.info(
            "Resuming interrupted sync %s (%d already processed)",
            pending.id,
            len(pending.processed_ids),
        )
        return pending

    def _replay(self, entries: Iterable[LocalFileMetadata]) -> None:
        """Re-apply metadata recorded by an interrupted run."""
        for metadata in entries:
            try:
                self.state.put(metadata)
            except StateInvariantError as exc:
                logger.warning(
                    "Not replaying %s from recovery point: %s",
                    metadata.remote_id,
                    exc,
                )

    def _validate(
        self, documents: list[DecodedDocument], validate_data: bool
    ) -> list[_WorkItem]:
        work: list[_WorkItem] = []
        for i, document in enumerate(documents):
            item = _WorkItem(index=i, document=document)
            if isinstance(document, RejectedDocument):
                item.error = DocumentError.from_exception(
                    DocumentValidationError(
                        "; ".join(document.errors) or "Malformed document",
                        remote_id=document.remote_id,
                        errors=document.errors,
                    ),
                    remote_id=document.remote_id or "",
                    title=document.title or "",
                )
            elif validate_data:
                errors, warnings = check_document(document)
                for warning in warnings:
                    logger.warning("%s: %s", document.id, warning)
                if errors:
                    item.error = DocumentError.from_exception(
                        DocumentValidationError(
                            "; ".join(errors), remote_id=document.id, errors=errors
                        ),
                        remote_id=document.id,
                        title=document.title,
                    )
            work.append(item)
        return work

    # ------------------------------------------------------------------
    # Per-document processing
    # ------------------------------------------------------------------

    async def _process_item(
        self, item: _WorkItem, ctx: _RunContext, tracking: bool
    ) -> None:
        """Process one work item.

        Non-retryable failures are recorded against the document.
        Retryable ones propagate so the batcher can retry the batch.
        """
        written: LocalFileMetadata | None = None
        if item.error is not None:
            ctx.result.errors.append(item.error)
            logger.warning(
                "Skipping invalid document %s: %s", item.remote_id, item.error.detail
            )
        else:
            try:
                written = await self._sync_document(item.document, ctx)
            except SyncCancelledError:
                raise
            except Exception as exc:
                if is_retryable(exc):
                    raise
                self._record_error(item, exc, ctx)
        self._finish_item(item, ctx, tracking, written)

    def _record_error(
        self, item: _WorkItem, exc: BaseException, ctx: _RunContext
    ) -> None:
        title = getattr(item.document, "title", None) or ""
        logger.error("Error syncing %s (%s): %s", item.remote_id, title, exc)
        ctx.result.errors.append(
            DocumentError.from_exception(exc, item.remote_id or "", title)
        )

    def _finish_item(
        self,
        item: _WorkItem,
        ctx: _RunContext,
        tracking: bool,
        written: LocalFileMetadata | None = None,
    ) -> None:
        ctx.done.add(item.index)
        if tracking:
            self.recovery.update_progress(
                ctx.result.processed,
                last_id=item.remote_id,
                partial_result=ctx.result,
                metadata={written.remote_id: written} if written else None,
            )
        self._set_phase(
            SyncPhase.APPLYING,
            f"Processed {ctx.result.processed} of {ctx.total}",
            current=ctx.result.processed,
            total=ctx.total,
        )

    async def _sync_document(
        self, document: RemoteDocument, ctx: _RunContext
    ) -> LocalFileMetadata | None:
        """Detect, resolve and apply one document.

        Returns:
            The metadata recorded for it, if any.
        """
        result = ctx.result

        if self.state.is_deleted(document.id):
            logger.debug("Skipping %s: deleted locally", document.id)
            result.skipped += 1
            return None

        metadata = self.state.get(document.id)
        if metadata is not None and ctx.index.get(metadata.path) is None:
            metadata = self._follow_move(document.id, metadata, ctx)
        rendered = self.renderer(document)
        remote_hash = fingerprint(rendered)
        remote_path = (
            metadata.path
            if metadata is not None
            else self._claim_path(document, ctx)
        )

        self._set_phase(SyncPhase.DETECTING_CONFLICTS, f"Checking {document.title}")
        conflicts = await self.detector.detect(
            document.id,
            remote_path,
            document.modified_at.timestamp(),
            metadata,
            ctx.index,
        )

        if conflicts:
            return await self._resolve(
                conflicts[0], document, metadata, rendered, remote_hash, ctx
            )

        self._set_phase(SyncPhase.APPLYING, f"Applying {document.title}")
        if metadata is None:
            outcome = await self._write(document.id, remote_path, rendered, ctx)
            self._count_write(outcome, result)
            return self._record(
                document.id, remote_path, rendered, remote_hash, outcome, None, ctx
            )

        if remote_hash in (metadata.content_hash, metadata.remote_hash):
            logger.debug("Skipping %s: unchanged", document.id)
            result.skipped += 1
            return None

        if metadata.remote_hash and metadata.content_hash != metadata.remote_hash:
            # A kept local version is never overwritten without a backup.
            if not ctx.options.dry_run and document.id not in ctx.backed_up:
                backup = await self.resolver.create_backup(metadata.path)
                ctx.backed_up.add(document.id)
                ctx.index.record(backup, document.id, time.time())

        outcome = await self._write(document.id, metadata.path, rendered, ctx)
        self._count_write(outcome, result)
        return self._record(
            document.id, metadata.path, rendered, remote_hash, outcome, metadata, ctx
        )

    async def _resolve(
        self,
        conflict: Conflict,
        document: RemoteDocument,
        metadata: LocalFileMetadata | None,
        rendered: str,
        remote_hash: str,
        ctx: _RunContext,
    ) -> LocalFileMetadata | None:
        options = ctx.options
        result = ctx.result
        if document.id not in ctx.conflicted:
            ctx.conflicted.add(document.id)
            result.count_conflict(conflict.type)
        self.state.add_pending_conflict(document.id)

        self._set_phase(SyncPhase.RESOLVING, f"Resolving {conflict.type.value}")
        resolution = options.resolutions.get(document.id) or self.resolver.suggest(
            conflict,
            options.auto_resolve_strategy or self.settings.auto_resolve_strategy,
        )
        conflict = conflict.model_copy(update={"resolution": resolution})
        logger.info(
            "Conflict on %s (%s): %s -> %s",
            document.id,
            conflict.type.value,
            conflict.description,
            resolution.value,
        )
        outcome: ResolutionOutcome = await self.resolver.apply(
            conflict,
            resolution,
            rendered,
            dry_run=options.dry_run,
            is_taken=lambda p: self._is_occupied(p, document.id, ctx),
            backup=document.id not in ctx.backed_up,
        )
        if outcome.backup_path:
            ctx.backed_up.add(document.id)
            ctx.index.record(outcome.backup_path, document.id, time.time())
        if (
            outcome.path != conflict.remote_path
            and ctx.claimed.get(conflict.remote_path) == document.id
        ):
            # The generated path was never used.
            del ctx.claimed[conflict.remote_path]

        match outcome.kind:
            case "skip":
                result.skipped += 1
                return None

            case "keep":
                result.skipped += 1
                if options.dry_run:
                    return None
                return await self._keep_local(
                    document.id, outcome.path, remote_hash, metadata
                )

            case _:
                self._set_phase(SyncPhase.APPLYING, f"Applying {document.title}")
                write = await self._write(
                    document.id, outcome.path, outcome.content, ctx
                )
                self._count_write(write, result)
                return self._record(
                    document.id,
                    outcome.path,
                    outcome.content,
                    remote_hash,
                    write,
                    metadata,
                    ctx,
                )

    async def _keep_local(
        self,
        remote_id: str,
        path: str,
        remote_hash: str,
        metadata: LocalFileMetadata | None,
    ) -> LocalFileMetadata:
        """Adopt the local note as the synced version of *remote_id*."""
        content = await self.local_store.read(path)
        modified_at = await self.local_store.modified_at(path) or time.time()
        self._ensure_owner(path, remote_id)
        recorded = self.state.add_or_update(
            remote_id,
            path,
            fingerprint(content),
            (metadata.sync_version + 1) if metadata else 1,
            last_modified_at=modified_at,
            last_synced_at=max(time.time(), modified_at),
            remote_hash=remote_hash,
        )
        self.state.resolve_pending_conflict(remote_id)
        return recorded

    # ------------------------------------------------------------------
    # Paths and writes
    # ------------------------------------------------------------------

    def _follow_move(
        self, remote_id: str, metadata: LocalFileMetadata, ctx: _RunContext
    ) -> LocalFileMetadata:
        """Adopt the one other note tagged *remote_id* as the moved note."""
        moved = [
            f.path
            for f in ctx.index.tagged(remote_id)
            if BACKUP_MARKER not in f.path
            and self.state.owner_of(f.path) in (None, remote_id)
        ]
        if len(moved) != 1:
            return metadata
        return self.state.handle_rename(metadata.path, moved[0]) or metadata

    def _is_occupied(self, path: str, remote_id: str, ctx: _RunContext) -> bool:
        """Any note on disk, or a path owned or claimed by another id."""
        return (
            ctx.index.get(path) is not None
            or self.state.owner_of(path) not in (None, remote_id)
            or ctx.claimed.get(path) not in (None, remote_id)
        )

    def _claim_path(self, document: RemoteDocument, ctx: _RunContext) -> str:
        """Pick a path for a new note, numbering it if another id owns it."""

        def taken(path: str) -> bool:
            owner = self.state.owner_of(path)
            if owner is not None and owner != document.id:
                return True
            claimant = ctx.claimed.get(path)
            if claimant is not None and claimant != document.id:
                return True
            local = ctx.index.get(path)
            return local is not None and local.remote_id != document.id

        path = PathGenerator.unique(self.path_generator.generate(document), taken)
        ctx.claimed[path] = document.id
        return path

    def _ensure_owner(self, path: str, remote_id: str) -> None:
        owner = self.state.owner_of(path)
        if owner is not None and owner != remote_id:
            raise StateInvariantError(f"Path {path} is already mapped to {owner}")

    async def _write(
        self, remote_id: str, path: str, content: str, ctx: _RunContext
    ) -> WriteOutcome:
        """Write *content* at *path* under the path lock (no-op in dry run)."""
        self._ensure_owner(path, remote_id)
        ctx.claimed[path] = remote_id
        if ctx.options.dry_run:
            return WriteOutcome(
                created=ctx.index.get(path) is None, modified_at=time.time()
            )

        async with self.locks.lock(path):
            parent = PurePosixPath(path).parent
            if str(parent) not in ("", "."):
                await self.local_store.ensure_folder(str(parent))
            outcome = await self.local_store.write(path, content)
        ctx.index.record(path, remote_id, outcome.modified_at)
        return outcome

    @staticmethod
    def _count_write(outcome: WriteOutcome, result: SyncResult) -> None:
        if outcome.created:
            result.created += 1
        else:
            result.updated += 1

    def _record(
        self,
        remote_id: str,
        path: str,
        content: str,
        remote_hash: str,
        outcome: WriteOutcome,
        previous: LocalFileMetadata | None,
        ctx: _RunContext,
    ) -> LocalFileMetadata | None:
        if ctx.options.dry_run:
            return None
        recorded = self.state.add_or_update(
            remote_id,
            path,
            fingerprint(content),
            (previous.sync_version + 1) if previous else 1,
            last_modified_at=outcome.modified_at,
            last_synced_at=max(time.time(), outcome.modified_at),
            remote_hash=remote_hash,
        )
        self.state.resolve_pending_conflict(remote_id)
        return recorded


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def build_engine(
    config: UnifiedConfig,
    vault_root: Path,
    source: DocumentSource | None = None,
    api_config: Config | None = None,
) -> SyncEngine:
    """Wire a ``SyncEngine`` for *vault_root* from a unified config.

    Args:
        config: Unified configuration.
        vault_root: Vault directory.
        source: Remote source; defaults to a ``DocumentApiClient`` built
            from *api_config* or ``load_config()``.
        api_config: Explicit API credentials.

    Raises:
        ValueError: If no source is given and no API key can be found.
    """
    if source is None:
        from meeting_sync.config import load_config
        from meeting_sync.core.client import DocumentApiClient

        if api_config is None:
            api_config = load_config(
                yaml_fallbacks=config.api.model_dump(exclude_none=True)
            )
        source = DocumentApiClient(api_config)

    vault_root = Path(vault_root)
    state_dir = Path(config.sync.state_dir)
    if not state_dir.is_absolute():
        state_dir = vault_root / state_dir

    local_store = FileSystemDocumentStore(
        vault_root, extension=config.output.file_extension
    )
    state_store = StateStore(state_dir)
    state_store.load()
    locks = PathLockManager(timeout=config.sync.lock_timeout)

    return SyncEngine(
        source,
        local_store,
        state_store,
        recovery=RecoveryManager(
            state_store,
            max_age=timedelta(hours=config.sync.recovery_max_age_hours),
        ),
        detector=ConflictDetector(local_store),
        resolver=ConflictResolver(
            local_store,
            locks,
            prefer_local_changes=config.sync.prefer_local_changes,
        ),
        batcher=AdaptiveBatcher(config.batching),
        path_generator=PathGenerator(config.output),
        locks=locks,
        settings=config.sync,
    )
