"""Name handling for files, folders and link slugs.

File names are sanitized before any collision check, then de-duplicated with
Windows-style numbering: ``report.pdf`` -> ``report (1).pdf`` -> ``report (2).pdf``.
"""

from __future__ import annotations

import re
from collections.abc import Iterator

from quay.errors import InvalidNameError

MAX_NAME_LENGTH = 255

_DANGEROUS_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1f]')
_WINDOWS_RESERVED = frozenset(
    ["CON", "PRN", "AUX", "NUL"]
    + [f"COM{i}" for i in range(1, 10)]
    + [f"LPT{i}" for i in range(1, 10)]
)
_SLUG_PATTERN = re.compile(r"^[a-z0-9](?:[a-z0-9-]{0,98}[a-z0-9])?$")
_RESERVED_SLUGS = frozenset(["admin", "api", "health", "public", "v1", "settings", "dashboard"])


def split_extension(name: str) -> tuple[str, str]:
    """Split a name into (stem, extension-with-dot).

    A leading dot (``.env``) or trailing dot is not an extension.

    Examples:
        >>> split_extension("report.pdf")
        ('report', '.pdf')
        >>> split_extension("archive.tar.gz")
        ('archive.tar', '.gz')
        >>> split_extension(".env")
        ('.env', '')
    """
    index = name.rfind(".")
    if index <= 0 or index == len(name) - 1:
        return name, ""
    return name[:index], name[index:]


def _with_suffix(name: str, suffix: str) -> str:
    """Insert suffix before the extension, shortening the stem to fit MAX_NAME_LENGTH."""
    stem, ext = split_extension(name)
    room = MAX_NAME_LENGTH - len(suffix) - len(ext)
    if room < 1:
        stem, ext = name, ""
        room = MAX_NAME_LENGTH - len(suffix)
    return f"{stem[:room]}{suffix}{ext}"


def numbered_name(name: str, counter: int) -> str:
    """``name (counter).ext``"""
    return _with_suffix(name, f" ({counter})")


def timestamped_name(name: str, millis: int) -> str:
    """``name-<millis>.ext``, used once numbering is exhausted."""
    return _with_suffix(name, f"-{millis}")


def candidate_names(name: str, max_attempts: int) -> Iterator[str]:
    """Yield the name itself, then ``name (1)`` .. ``name (max_attempts)``."""
    yield name
    for counter in range(1, max_attempts + 1):
        yield numbered_name(name, counter)


def sanitize_file_name(name: str) -> str:
    """Make an uploaded file name safe to store.

    Rules:
    1. Must not be empty or whitespace
    2. Path separators, reserved and control characters become ``_``
    3. Windows reserved device names get a ``file_`` prefix
    4. Truncated to 255 characters, keeping the extension
    5. Trailing dots and spaces are removed

    Raises:
        InvalidNameError: If nothing usable remains
    """
    if not name or not name.strip():
        raise InvalidNameError(
            message="File name cannot be empty",
            details={"field": "file_name", "reason": "empty_name"},
        )

    sanitized = _DANGEROUS_CHARS.sub("_", name.strip())

    stem, ext = split_extension(sanitized)
    if stem.upper() in _WINDOWS_RESERVED:
        sanitized = f"file_{sanitized}"

    if len(sanitized) > MAX_NAME_LENGTH:
        stem, ext = split_extension(sanitized)
        if len(ext) >= MAX_NAME_LENGTH:
            ext = ""
        sanitized = stem[: MAX_NAME_LENGTH - len(ext)] + ext

    sanitized = sanitized.rstrip(". ")
    if not sanitized:
        raise InvalidNameError(
            message="File name has no usable characters",
            details={"field": "file_name", "reason": "empty_after_sanitize"},
        )
    return sanitized


def validate_folder_name(name: str) -> str:
    """Validate a folder name; returns it stripped.

    Folder names are user-chosen, so bad input is rejected rather than rewritten.
    """
    stripped = (name or "").strip()
    if not stripped:
        raise InvalidNameError(
            message="Folder name cannot be empty",
            details={"field": "name", "reason": "empty_name"},
        )
    if len(stripped) > MAX_NAME_LENGTH:
        raise InvalidNameError(
            message=f"Folder name exceeds {MAX_NAME_LENGTH} characters",
            details={"field": "name", "reason": "too_long"},
        )
    if _DANGEROUS_CHARS.search(stripped) or stripped in (".", ".."):
        raise InvalidNameError(
            message="Folder name contains invalid characters",
            details={"field": "name", "reason": "invalid_characters"},
        )
    return stripped


def slugify(text: str) -> str:
    """Lowercase, collapse non-alphanumerics to single dashes."""
    slug = re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")
    return slug[:90].rstrip("-")


def validate_slug(slug: str) -> str:
    """Validate a link slug (lowercase letters, digits, inner dashes)."""
    if not slug or not _SLUG_PATTERN.match(slug):
        raise InvalidNameError(
            message="Slug must be 1-100 lowercase letters, digits or dashes",
            details={"field": "slug", "reason": "invalid_format"},
        )
    if slug in _RESERVED_SLUGS:
        raise InvalidNameError(
            message=f"Slug is reserved: {slug}",
            details={"field": "slug", "reason": "reserved"},
        )
    return slug
