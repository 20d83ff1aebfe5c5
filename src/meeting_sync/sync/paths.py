"""Config-driven path generator for synced notes.

Maps a ``RemoteDocument`` to the vault-relative path its note should be
created at, using the ``output`` section of the config.

Path resolution:

1. **Target folder** -- every note lives under ``target_folder``.
2. **Organisation** -- ``flat`` adds nothing; ``by-date`` adds a daily
   (``2024-03-05``) or ISO-weekly (``2024-W10``) folder; ``mirror-remote``
   adds the document's sanitised remote folder.
3. **Filename** -- the sanitised title, optionally prefixed with the
   meeting date in ``date_format``.
4. **Length** -- the filename is truncated so the whole path fits in
   255 characters.

The generated path is only where a *new* note goes; tracked documents
keep the path recorded in sync state.
"""

from __future__ import annotations

import logging
from pathlib import PurePosixPath
from typing import Callable

from meeting_sync.config_schema import OutputConfig
from meeting_sync.file_handler import normalize_relative_path
from meeting_sync.sync.models import RemoteDocument
from meeting_sync.validators import (
    fit_path_length,
    sanitize_folder_path,
    sanitize_title,
)

logger = logging.getLogger(__name__)


class PathGenerator:
    """Generate note paths for remote documents.

    Args:
        output: The output configuration section.
    """

    def __init__(self, output: OutputConfig | None = None) -> None:
        self._output = output or OutputConfig()

    # ------------------------------------------------------------------
    # Document -> path
    # ------------------------------------------------------------------

    def generate(self, document: RemoteDocument) -> str:
        """Return the vault-relative path for a new note of *document*."""
        parts = [p for p in self._output.target_folder.split("/") if p]
        sub = self._subfolder(document)
        if sub:
            parts.append(sub)
        folder = sanitize_folder_path("/".join(parts)) if parts else ""

        stem = sanitize_title(document.title)
        if self._output.include_date_in_filename:
            stamp = document.created_at.strftime(self._output.date_format)
            stem = f"{sanitize_title(stamp)} {stem}"

        return normalize_relative_path(
            fit_path_length(folder, f"{stem}{self._output.file_extension}")
        )

    def _subfolder(self, document: RemoteDocument) -> str | None:
        match self._output.folder_organization:
            case "by-date":
                if self._output.date_folder_format == "weekly":
                    year, week, _ = document.created_at.isocalendar()
                    return f"{year}-W{week:02d}"
                return document.created_at.strftime("%Y-%m-%d")
            case "mirror-remote":
                if not document.source_folder:
                    return None
                try:
                    return sanitize_folder_path(document.source_folder)
                except ValueError as exc:
                    logger.warning(
                        "Ignoring remote folder %r of %s: %s",
                        document.source_folder,
                        document.id,
                        exc,
                    )
                    return None
            case _:
                return None

    # ------------------------------------------------------------------
    # Collision handling
    # ------------------------------------------------------------------

    @staticmethod
    def numbered(path: str, n: int) -> str:
        """Return the ``Title (n).md`` sibling of *path*."""
        p = PurePosixPath(path)
        return str(p.with_name(f"{p.stem} ({n}){p.suffix}"))

    @classmethod
    def unique(cls, path: str, is_taken: Callable[[str], bool]) -> str:
        """Return *path*, or its first numbered sibling (from 2) that is
        not taken."""
        if not is_taken(path):
            return path
        n = 2
        while is_taken(cls.numbered(path, n)):
            n += 1
        return cls.numbered(path, n)
