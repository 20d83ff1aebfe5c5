"""Content fingerprints for change detection.

A fingerprint is the SHA-256 of a note's *body*: the YAML header is
ignored, so rewriting header-only fields (sync timestamps, tags order)
never counts as a content change.

Normalisation steps (applied in order):

1. Strip BOM (``\\ufeff``).
2. Replace ``\\r\\n`` with ``\\n``.
3. Right-strip each line.
4. Strip trailing empty lines.
5. Remove a leading ``---\\n...\\n---\\n`` header block.
6. Trim surrounding whitespace.

Fingerprints detect accidental change only; they are not a security
primitive.
"""

from __future__ import annotations

import hashlib
import logging
import re

import yaml

logger = logging.getLogger(__name__)

HEADER_ID_KEY = "remote_id"

_HEADER_PATTERN = re.compile(r"\A---\n(.*?)\n---(?:\n|\Z)", re.DOTALL)


def normalize(content: str) -> str:
    """Apply the line-level normalisation (steps 1-4)."""
    text = content.lstrip("\ufeff")
    text = text.replace("\r\n", "\n")
    lines = [line.rstrip() for line in text.split("\n")]
    while lines and lines[-1] == "":
        lines.pop()
    return "\n".join(lines)


def split_header(content: str) -> tuple[str | None, str]:
    """Split normalised *content* into ``(header_text, body)``.

    ``header_text`` is ``None`` when the content has no header block.
    """
    text = normalize(content)
    match = _HEADER_PATTERN.match(text)
    if match is None:
        return None, text
    return match.group(1), text[match.end():]


def strip_header(content: str) -> str:
    """Return the trimmed body of *content* without its header block."""
    return split_header(content)[1].strip()


def fingerprint(content: str) -> str:
    """Compute the body fingerprint of *content* as a hex digest."""
    body = strip_header(content)
    return hashlib.sha256(body.encode("utf-8")).hexdigest()


def read_header(content: str) -> dict:
    """Parse the YAML header of *content*.

    Returns ``{}`` when there is no header, when it is not a mapping, or
    when it is malformed.
    """
    header, _ = split_header(content)
    if header is None:
        return {}
    try:
        data = yaml.safe_load(header)
    except yaml.YAMLError as exc:
        logger.debug("Ignoring malformed note header: %s", exc)
        return {}
    return data if isinstance(data, dict) else {}


def extract_remote_id(content: str) -> str | None:
    """Return the remote id a note is tagged with, if any."""
    value = read_header(content).get(HEADER_ID_KEY)
    if value is None:
        return None
    value = str(value).strip()
    return value or None
