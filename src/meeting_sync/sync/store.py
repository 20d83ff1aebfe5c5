"""Local document store: the vault side of a sync.

``LocalDocumentStore`` is the protocol the engine, detector and resolver
depend on.  ``FileSystemDocumentStore`` implements it over a directory;
tests substitute it freely.

``LocalFileIndex`` is the per-run snapshot of the vault.  It is built
once from ``list_all()`` at the start of a run and afterwards changes
only through ``record()``, called for writes the engine performs itself.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Iterable, Protocol

from pydantic import BaseModel

from meeting_sync.core.async_utils import run_sync
from meeting_sync.errors import FileSystemError
from meeting_sync.file_handler import (
    copy_file,
    normalize_relative_path,
    read_file_with_encoding,
    resolve_under,
    write_file,
)
from meeting_sync.sync.fingerprint import extract_remote_id

logger = logging.getLogger(__name__)


class LocalFileInfo(BaseModel):
    """One note found in the vault.

    Attributes:
        path: Vault-relative POSIX path.
        remote_id: Id from the note's header, if tagged.
        modified_at: File mtime in epoch seconds.
    """

    path: str
    remote_id: str | None = None
    modified_at: float

    model_config = {"frozen": True}


class WriteOutcome(BaseModel):
    """Result of ``LocalDocumentStore.write``."""

    created: bool
    modified_at: float

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------


class LocalDocumentStore(Protocol):
    """Protocol every vault implementation must satisfy."""

    async def exists(self, path: str) -> bool: ...  # pragma: no cover

    async def read(self, path: str) -> str: ...  # pragma: no cover

    async def write(self, path: str, content: str) -> WriteOutcome: ...  # pragma: no cover

    async def copy(self, source: str, target: str) -> None: ...  # pragma: no cover

    async def ensure_folder(self, path: str) -> None: ...  # pragma: no cover

    async def list_all(self) -> list[LocalFileInfo]: ...  # pragma: no cover

    async def modified_at(self, path: str) -> float | None: ...  # pragma: no cover


# ---------------------------------------------------------------------------
# File system implementation
# ---------------------------------------------------------------------------


class FileSystemDocumentStore:
    """Vault rooted at a directory on disk.

    All paths are vault-relative and confined to *root*.  Hidden
    directories (state, editor metadata) are not listed.

    Args:
        root: Vault directory.
        extension: Extension of notes returned by ``list_all()``.
    """

    def __init__(self, root: Path, extension: str = ".md") -> None:
        self.root = Path(root)
        self.extension = extension

    def _resolve(self, path: str) -> Path:
        try:
            return resolve_under(self.root, path)
        except ValueError as exc:
            raise FileSystemError(str(exc), path=path) from exc

    async def exists(self, path: str) -> bool:
        return await run_sync(self._resolve(path).is_file)

    async def read(self, path: str) -> str:
        target = self._resolve(path)
        try:
            content, _encoding = await run_sync(read_file_with_encoding, target)
        except FileNotFoundError as exc:
            raise FileSystemError(f"File not found: {path}", path=path) from exc
        except OSError as exc:
            raise FileSystemError(f"Cannot read {path}: {exc}", path=path) from exc
        return content

    async def write(self, path: str, content: str) -> WriteOutcome:
        target = self._resolve(path)

        def _write() -> WriteOutcome:
            created = not target.exists()
            write_file(target, content)
            return WriteOutcome(
                created=created, modified_at=target.stat().st_mtime
            )

        try:
            outcome = await run_sync(_write)
        except OSError as exc:
            raise FileSystemError(f"Cannot write {path}: {exc}", path=path) from exc
        logger.debug(
            "%s %s", "Created" if outcome.created else "Updated", path
        )
        return outcome

    async def copy(self, source: str, target: str) -> None:
        src = self._resolve(source)
        dst = self._resolve(target)
        try:
            await run_sync(copy_file, src, dst)
        except FileExistsError as exc:
            raise FileSystemError(
                f"Refusing to overwrite existing file: {target}", path=target
            ) from exc
        except OSError as exc:
            raise FileSystemError(
                f"Cannot copy {source} to {target}: {exc}", path=source
            ) from exc

    async def ensure_folder(self, path: str) -> None:
        target = self._resolve(path)
        try:
            await run_sync(target.mkdir, parents=True, exist_ok=True)
        except OSError as exc:
            raise FileSystemError(
                f"Cannot create folder {path}: {exc}", path=path
            ) from exc

    async def modified_at(self, path: str) -> float | None:
        target = self._resolve(path)

        def _mtime() -> float | None:
            try:
                return target.stat().st_mtime
            except FileNotFoundError:
                return None

        return await run_sync(_mtime)

    async def list_all(self) -> list[LocalFileInfo]:
        return await run_sync(self._scan)

    def _scan(self) -> list[LocalFileInfo]:
        if not self.root.is_dir():
            return []

        found: list[LocalFileInfo] = []
        for dirpath, dirnames, filenames in os.walk(self.root):
            dirnames[:] = sorted(d for d in dirnames if not d.startswith("."))
            for name in sorted(filenames):
                if not name.endswith(self.extension) or name.startswith("."):
                    continue
                full = Path(dirpath) / name
                rel = full.relative_to(self.root).as_posix()
                try:
                    content, _ = read_file_with_encoding(full)
                    mtime = full.stat().st_mtime
                except OSError as exc:
                    logger.warning("Skipping unreadable note %s: %s", rel, exc)
                    continue
                found.append(
                    LocalFileInfo(
                        path=rel,
                        remote_id=extract_remote_id(content),
                        modified_at=mtime,
                    )
                )
        logger.debug("Scanned %d notes under %s", len(found), self.root)
        return found


# ---------------------------------------------------------------------------
# Per-run index
# ---------------------------------------------------------------------------


class LocalFileIndex:
    """Snapshot of the vault taken once per run.

    Attributes:
        by_path: Normalised path -> file info.
        by_remote_id: Remote id -> every file tagged with it.
    """

    def __init__(self, files: Iterable[LocalFileInfo] = ()) -> None:
        self.by_path: dict[str, LocalFileInfo] = {}
        self.by_remote_id: dict[str, list[LocalFileInfo]] = {}
        for info in files:
            self._add(info)

    @classmethod
    async def scan(cls, store: LocalDocumentStore) -> LocalFileIndex:
        return cls(await store.list_all())

    def _add(self, info: LocalFileInfo) -> None:
        key = normalize_relative_path(info.path)
        self.discard(key)
        info = info.model_copy(update={"path": key})
        self.by_path[key] = info
        if info.remote_id:
            self.by_remote_id.setdefault(info.remote_id, []).append(info)

    def get(self, path: str) -> LocalFileInfo | None:
        return self.by_path.get(normalize_relative_path(path))

    def tagged(self, remote_id: str) -> list[LocalFileInfo]:
        return list(self.by_remote_id.get(remote_id, []))

    def paths(self) -> set[str]:
        return set(self.by_path)

    def record(
        self, path: str, remote_id: str | None, modified_at: float
    ) -> None:
        """Reflect a write the engine just performed."""
        self._add(
            LocalFileInfo(path=path, remote_id=remote_id, modified_at=modified_at)
        )

    def discard(self, path: str) -> None:
        key = normalize_relative_path(path)
        old = self.by_path.pop(key, None)
        if old is not None and old.remote_id:
            remaining = [
                i for i in self.by_remote_id.get(old.remote_id, []) if i.path != key
            ]
            if remaining:
                self.by_remote_id[old.remote_id] = remaining
            else:
                self.by_remote_id.pop(old.remote_id, None)

    def __len__(self) -> int:
        return len(self.by_path)
