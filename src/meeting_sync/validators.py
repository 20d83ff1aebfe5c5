"""
Input validation functions for meeting_sync.

Provides validation and sanitisation for remote meeting payloads, note
titles, folder paths and API keys before anything reaches the vault.
"""

import re
from datetime import datetime, timedelta, timezone
from typing import Any

MAX_TITLE_LENGTH = 200
MAX_PATH_LENGTH = 255
MAX_TRANSCRIPT_SIZE = 10 * 1024 * 1024
DEFAULT_TITLE = "Untitled Meeting"

_INVALID_PATH_CHARS = re.compile(r'[<>:"|?*\\/]')
_WINDOWS_RESERVED = re.compile(r"^(CON|PRN|AUX|NUL|COM[0-9]|LPT[0-9])$", re.I)
_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f-\x9f]")
_API_KEY_PATTERN = re.compile(r"^[A-Za-z0-9\-_]+$")

_SUSPICIOUS_PATTERNS = [
    re.compile(p, re.I)
    for p in (
        r"<script[\s>]",
        r"<iframe[\s>]",
        r"javascript:",
        r"data:text/html",
        r"vbscript:",
        r"onload\s*=",
        r"onerror\s*=",
        r"<embed[\s>]",
        r"<object[\s>]",
    )
]


# ---------------------------------------------------------------------------
# Error message formatting helpers
# ---------------------------------------------------------------------------


def format_validation_error(field_name: str, reason: str) -> str:
    """
    Generate consistent error message for validation failures.

    Args:
        field_name: Field name as it appears in the payload (e.g., "title")
        reason: Description of validation failure (e.g., "cannot be empty")

    Returns:
        Formatted error message string
    """
    return f"{field_name} {reason}"


# ---------------------------------------------------------------------------
# Title and path sanitisation
# ---------------------------------------------------------------------------


def sanitize_title(title: str | None) -> str:
    """
    Turn a meeting title into a safe filename stem.

    Path separators and reserved characters become `` - ``, runs of
    spaced separators and whitespace collapse, leading dots are neutralised,
    trailing dots/spaces dropped, Windows reserved names prefixed with
    ``_``, and the result truncated to 200 characters.  An empty result
    falls back to ``"Untitled Meeting"``.
    """
    if not title or not title.strip():
        return DEFAULT_TITLE

    safe = _INVALID_PATH_CHARS.sub(" - ", title)
    # Hyphens inside words ("2024-03-05") are kept.
    safe = re.sub(r"\s+-(?:\s+-)*\s+", " - ", safe)
    safe = re.sub(r"\s+", " ", safe).strip()
    safe = re.sub(r"^(?:-\s*)+", "", safe)
    safe = re.sub(r"(?:\s*-)+$", "", safe).strip()

    if safe.startswith(".."):
        safe = "_" + safe
    elif safe.startswith("."):
        safe = "_" + safe[1:]

    safe = re.sub(r"[\s.]+$", "", safe)

    if _WINDOWS_RESERVED.match(safe):
        safe = "_" + safe

    safe = _CONTROL_CHARS.sub("", safe)
    safe = safe[:MAX_TITLE_LENGTH]

    return safe.strip() or DEFAULT_TITLE


def validate_folder_path(path: str) -> tuple[bool, str]:
    """
    Validate a vault folder path.

    Returns:
        Tuple of (is_valid, error_message).
        Returns (True, "") if valid, (False, reason) if invalid.

    Validation rules:
        - Cannot contain '..' (path traversal protection)
        - Cannot be absolute
    """
    if ".." in path:
        return (
            False,
            format_validation_error("Folder path", "cannot contain '..'"),
        )
    if path.startswith("/") or re.match(r"^[A-Za-z]:", path):
        return (
            False,
            format_validation_error("Folder path", "cannot be absolute"),
        )
    return (True, "")


def sanitize_folder_path(path: str) -> str:
    """Apply ``sanitize_title`` to every segment of a folder path.

    Raises:
        ValueError: If the path fails ``validate_folder_path``.
    """
    ok, reason = validate_folder_path(path)
    if not ok:
        raise ValueError(reason)
    segments = [s for s in path.replace("\\", "/").split("/") if s]
    return "/".join(sanitize_title(s) for s in segments)


def fit_path_length(
    folder: str, filename: str, max_length: int = MAX_PATH_LENGTH
) -> str:
    """Join *folder* and *filename*, truncating the filename stem so the
    whole path stays within *max_length* characters.

    Raises:
        ValueError: If *folder* leaves fewer than 20 characters for the
            filename.
    """
    stem, dot, ext = filename.rpartition(".")
    if not dot:
        stem, ext = filename, ""
    suffix = f".{ext}" if ext else ""
    prefix = f"{folder}/" if folder else ""

    available = max_length - len(prefix) - len(suffix)
    if available < 20:
        raise ValueError(
            "Base path too long, insufficient space for filename"
        )
    return f"{prefix}{stem[:available].rstrip()}{suffix}"


def sanitize_text(value: str) -> str:
    """Strip NUL and control characters, keeping newlines and tabs."""
    return re.sub(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]", "", value)


def contains_suspicious_content(content: str) -> bool:
    """Return ``True`` if *content* looks like embedded script/HTML."""
    if not content:
        return False
    return any(p.search(content) for p in _SUSPICIOUS_PATTERNS)


# ---------------------------------------------------------------------------
# Payload validation
# ---------------------------------------------------------------------------


def parse_datetime(value: Any) -> datetime | None:
    """Parse an ISO 8601 string, epoch milliseconds or datetime.

    Naive values are taken as UTC.  Returns ``None`` when unparseable.
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        # Epoch milliseconds, the remote API's numeric form.
        parsed = datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    elif isinstance(value, str) and value.strip():
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _first_present(payload: dict, *keys: str) -> Any:
    for key in keys:
        if payload.get(key) is not None:
            return payload[key]
    return None


def validate_document_payload(payload: Any) -> list[str]:
    """
    Check the shape of a raw meeting payload from the remote API.

    Args:
        payload: Decoded JSON object for one meeting.

    Returns:
        List of error messages; empty when the payload can be decoded.
    """
    if not isinstance(payload, dict):
        return [format_validation_error("Document", "must be an object")]

    errors: list[str] = []

    doc_id = payload.get("id")
    if not isinstance(doc_id, str) or not doc_id.strip():
        errors.append(
            format_validation_error("id", "is required and must be a string")
        )

    title = payload.get("title")
    if title is not None and not isinstance(title, str):
        errors.append(format_validation_error("title", "must be a string"))

    raw_date = (
        payload.get("created_at")
        or payload.get("createdAt")
        or payload.get("date")
    )
    if raw_date is None:
        errors.append(format_validation_error("created_at", "is required"))
    elif parse_datetime(raw_date) is None:
        errors.append(
            format_validation_error("created_at", "has an invalid date format")
        )

    raw_updated = payload.get("updated_at") or payload.get("updatedAt")
    if raw_updated is not None and parse_datetime(raw_updated) is None:
        errors.append(
            format_validation_error("updated_at", "has an invalid date format")
        )

    for field in ("summary", "transcript"):
        value = payload.get(field)
        if value is not None and not isinstance(value, str):
            errors.append(format_validation_error(field, "must be a string"))

    for field in ("attendees", "highlights", "tags"):
        value = payload.get(field)
        if value is None:
            continue
        if not isinstance(value, list):
            errors.append(format_validation_error(field, "must be an array"))
            continue
        for index, item in enumerate(value):
            if not isinstance(item, str):
                errors.append(
                    format_validation_error(
                        f"{field}[{index}]", "must be a string"
                    )
                )

    # Unusable attachment entries are dropped on decode; the list itself
    # must still be a list.
    attachments = payload.get("attachments")
    if attachments is not None and not isinstance(attachments, list):
        errors.append(format_validation_error("attachments", "must be an array"))

    sections = _first_present(payload, "sections", "panelSections")
    if sections is not None:
        if not isinstance(sections, dict):
            errors.append(format_validation_error("sections", "must be an object"))
        else:
            for heading, body in sections.items():
                if not isinstance(body, str):
                    errors.append(
                        format_validation_error(
                            f"sections[{heading}]", "must be a string"
                        )
                    )

    folder = _first_present(payload, "source_folder", "folder", "granolaFolder")
    if folder is not None and not isinstance(folder, str):
        errors.append(format_validation_error("source_folder", "must be a string"))

    duration = payload.get("duration")
    if duration is not None and (
        not isinstance(duration, (int, float)) or isinstance(duration, bool)
    ):
        errors.append(format_validation_error("duration", "must be a number"))

    return errors


def check_document(document: Any) -> tuple[list[str], list[str]]:
    """
    Content checks for a decoded ``RemoteDocument``.

    Returns:
        Tuple of (errors, warnings).  A document with errors is not
        applied; warnings are only logged.
    """
    errors: list[str] = []
    warnings: list[str] = []

    if not document.title.strip():
        warnings.append(format_validation_error("title", "is empty"))

    if document.created_at > datetime.now(timezone.utc) + timedelta(days=1):
        warnings.append(format_validation_error("created_at", "is in the future"))

    if document.transcript and len(document.transcript) > MAX_TRANSCRIPT_SIZE:
        errors.append(
            format_validation_error("transcript", "exceeds the 10MB limit")
        )

    if document.duration is not None:
        if document.duration < 0:
            errors.append(
                format_validation_error("duration", "must be a positive number")
            )
        elif document.duration > 480:
            warnings.append(
                format_validation_error(
                    "duration", "seems unusually long (> 8 hours)"
                )
            )

    text = " ".join(
        v
        for v in (
            document.title,
            document.summary,
            document.transcript,
            *document.highlights,
            *document.attendees,
        )
        if v
    )
    if contains_suspicious_content(text):
        warnings.append(
            format_validation_error(
                "content", "contains potentially suspicious patterns"
            )
        )

    return (errors, warnings)


def validate_api_key(api_key: str) -> tuple[bool, str]:
    """
    Validate API key format.

    Validation rules:
        - At least 8 characters after trimming
        - Only letters, digits, '-' and '_'
    """
    trimmed = (api_key or "").strip()
    if len(trimmed) < 8:
        return (
            False,
            format_validation_error("API key", "must be at least 8 characters"),
        )
    if not _API_KEY_PATTERN.match(trimmed):
        return (
            False,
            format_validation_error(
                "API key", "may only contain letters, digits, '-' and '_'"
            ),
        )
    return (True, "")
