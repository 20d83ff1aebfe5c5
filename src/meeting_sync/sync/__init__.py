"""Meeting document sync core.

Public API for reconciling remote meeting documents into a folder of
editable Markdown notes over repeated, unattended runs.

Architecture
------------
Every note carries a YAML header with its ``remote_id``.  The state store
remembers, per remote id, the note's path and the fingerprint (SHA-256 of
the body, header excluded) of what was last written.  On each run a
changed fingerprint plus a newer file mtime means the user edited the
note; the conflict detector classifies that and the resolver decides
whether to keep, back up, merge or duplicate.

Modules:

- ``models``      -- data contracts (``RemoteDocument``, ``Conflict``,
  ``SyncResult``, ...).
- ``fingerprint`` -- content hashing and header parsing.
- ``store``       -- ``FileSystemDocumentStore`` and the per-run
  ``LocalFileIndex``.
- ``locks``       -- ``PathLockManager``: per-path async locks.
- ``state``       -- ``StateStore``: transactional JSON sync state.
- ``recovery``    -- ``RecoveryManager``: checkpoints and resumption.
- ``detector``    -- ``ConflictDetector``: the conflict taxonomy.
- ``resolver``    -- ``ConflictResolver``: resolution policy, backups,
  merges.
- ``batcher``     -- ``AdaptiveBatcher``: duration-targeted batching.
- ``paths``       -- ``PathGenerator``: config-driven note paths.
- ``renderer``    -- Markdown rendering of a ``RemoteDocument``.
- ``engine``      -- ``SyncEngine``: orchestrates one run.
- ``reporter``    -- human-readable and JSON result formatting.

Usage example
-------------
::

    import asyncio
    from pathlib import Path
    from meeting_sync.config_loader import load_hierarchical_config
    from meeting_sync.config_schema import build_config
    from meeting_sync.sync import SyncOptions, build_engine, format_sync_report

    config = build_config(load_hierarchical_config())
    engine = build_engine(config, Path("~/Notes").expanduser())

    # Dry-run first to preview changes
    preview = asyncio.run(engine.sync(SyncOptions(dry_run=True)))
    print(format_sync_report(preview))

    result = asyncio.run(engine.sync())
    print(format_sync_report(result))
"""

from .models import (
    Conflict,
    ConflictResolution,
    ConflictType,
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
from .fingerprint import fingerprint
from .store import FileSystemDocumentStore, LocalFileIndex
from .locks import PathLockManager
from .state import StateStore
from .recovery import RecoveryManager
from .detector import ConflictDetector
from .resolver import ConflictResolver, merge_content
from .batcher import AdaptiveBatcher
from .paths import PathGenerator
from .renderer import render_document
from .engine import SyncEngine, build_engine
from .reporter import (
    format_conflict_diff,
    format_progress,
    format_sync_report,
    result_to_json,
)

__all__ = [
    "AdaptiveBatcher",
    "Conflict",
    "ConflictDetector",
    "ConflictResolution",
    "ConflictResolver",
    "ConflictType",
    "DocumentError",
    "FileSystemDocumentStore",
    "LocalFileIndex",
    "LocalFileMetadata",
    "PathGenerator",
    "PathLockManager",
    "RecoveryCheckpoint",
    "RecoveryManager",
    "RejectedDocument",
    "RemoteDocument",
    "StateStore",
    "SyncEngine",
    "SyncOptions",
    "SyncPhase",
    "SyncProgress",
    "SyncResult",
    "build_engine",
    "fingerprint",
    "format_conflict_diff",
    "format_progress",
    "format_sync_report",
    "merge_content",
    "render_document",
    "result_to_json",
]
