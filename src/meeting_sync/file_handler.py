"""File handler module: path confinement and encoding-aware read/write.

Provides the file I/O primitives used by ``sync.store``.  All functions
here are synchronous; the store runs them through ``run_sync()``.
"""

import os
import shutil
import tempfile
from pathlib import Path, PurePosixPath

from charset_normalizer import from_bytes

# =============================================================================
# Path Validation
# =============================================================================


def normalize_relative_path(path_str: str) -> str:
    """Normalise a vault-relative path to POSIX form.

    Backslashes become slashes, duplicate separators and ``.`` segments
    are removed, leading ``/`` is dropped.

    Raises:
        ValueError: If the path is empty or climbs out with ``..``.
    """
    cleaned = path_str.replace("\\", "/").strip()
    parts = [p for p in PurePosixPath(cleaned).parts if p not in ("/", ".")]
    if not parts:
        raise ValueError(f"Path cannot be empty: {path_str!r}")
    if ".." in parts:
        raise ValueError(f"Path cannot contain '..': {path_str}")
    return "/".join(parts)


def resolve_under(root: Path, path_str: str) -> Path:
    """Resolve a vault-relative path against *root*, refusing escapes.

    Raises:
        ValueError: If the resolved path is outside *root*.
    """
    relative = normalize_relative_path(path_str)
    root_resolved = root.resolve()
    resolved = (root_resolved / relative).resolve()
    if not resolved.is_relative_to(root_resolved):
        raise ValueError(
            f"Path is outside the vault: {resolved} not under {root_resolved}"
        )
    return resolved


# =============================================================================
# File Read/Write
# =============================================================================


def read_file_with_encoding(path: Path) -> tuple[str, str]:
    """Read a file with automatic encoding detection.

    Reads raw bytes first, then uses charset-normalizer to detect encoding.
    Defaults to UTF-8 for empty files or when detection fails.

    Args:
        path: Path to the file to read.

    Returns:
        Tuple of (content_string, detected_encoding).
    """
    raw = path.read_bytes()
    if not raw:
        return ("", "utf-8")

    try:
        return (raw.decode("utf-8"), "utf-8")
    except UnicodeDecodeError:
        pass

    result = from_bytes(raw).best()
    if result is None:
        encoding = "utf-8"
        content = raw.decode(encoding, errors="replace")
    else:
        encoding = result.encoding
        content = str(result)
    return (content, encoding)


def write_file(
    path: Path, content: str, encoding: str = "utf-8"
) -> int:
    """Write content atomically, creating parent directories as needed.

    The bytes go to a temporary sibling first and replace the target with
    ``os.replace()``, so readers never observe a torn note.

    Returns:
        Number of bytes written.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    encoded = content.encode(encoding)
    fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as fh:
            fh.write(encoded)
        os.replace(tmp_path, path)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise
    return len(encoded)


def copy_file(source: Path, target: Path) -> None:
    """Copy *source* to *target* byte for byte, refusing to overwrite.

    Raises:
        FileExistsError: If *target* already exists.
    """
    target.parent.mkdir(parents=True, exist_ok=True)
    with open(source, "rb") as src, open(target, "xb") as dst:
        shutil.copyfileobj(src, dst)
    shutil.copystat(source, target)
