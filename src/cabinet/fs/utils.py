"""Path utilities, name sanitizing, and preview/edit allow-lists."""

from __future__ import annotations

import mimetypes
import posixpath
from datetime import UTC, datetime

# =============================================================================
# Reserved Namespace
# =============================================================================

TRASH_DIR = "/.trash"
TRASH_NAME = ".trash"
META_NAME = ".meta"

# =============================================================================
# Extension Allow-Lists
# =============================================================================

TEXT_PREVIEW_EXTENSIONS = {".txt", ".php", ".js", ".html", ".csv"}

TEXT_EDIT_EXTENSIONS = {
    ".txt", ".php", ".md", ".markdown", ".html", ".htm", ".css", ".scss",
    ".less", ".js", ".jsx", ".ts", ".tsx", ".json", ".yml", ".yaml", ".xml",
    ".svg",
}

IMAGE_PREVIEW_EXTENSIONS = {".png", ".jpg", ".jpeg", ".gif", ".webp", ".bmp", ".svg"}

IMAGE_MIME_TYPES = {
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".gif": "image/gif",
    ".webp": "image/webp",
    ".bmp": "image/bmp",
    ".svg": "image/svg+xml",
}


# =============================================================================
# Path Utilities
# =============================================================================


def normalize_path(path: str | None) -> str:
    """Normalize a user-supplied virtual path.

    - Converts backslashes to forward slashes
    - Ensures leading /
    - Resolves .. and . references (excess .. is absorbed at root)
    - Removes double slashes and trailing slash (except for root)

    Never fails; anything unusable becomes "/".

    Examples:
        normalize_path("foo.txt") -> "/foo.txt"
        normalize_path("\\\\foo\\\\bar.txt") -> "/foo/bar.txt"
        normalize_path("/foo/../../bar.txt") -> "/bar.txt"
        normalize_path("") -> "/"
    """
    raw = (path or "").strip()
    if not raw:
        return "/"

    raw = raw.replace("\\", "/")
    if not raw.startswith("/"):
        raw = "/" + raw

    normalized = posixpath.normpath(raw)
    # POSIX keeps a leading "//"; the virtual namespace has a single root.
    normalized = "/" + normalized.lstrip("/")

    if not normalized.startswith("/"):
        return "/"
    return normalized


def split_path(path: str) -> tuple[str, str]:
    """Split path into (parent_dir, name).

    Examples:
        split_path("/foo/bar.txt") -> ("/foo", "bar.txt")
        split_path("/foo.txt") -> ("/", "foo.txt")
        split_path("/") -> ("/", "")
    """
    path = normalize_path(path)
    if path == "/":
        return "/", ""
    return posixpath.split(path)


def join_path(parent: str, name: str) -> str:
    """Join a normalized parent path and a single sanitized name."""
    parent = normalize_path(parent)
    return f"/{name}" if parent == "/" else f"{parent}/{name}"


def parent_of(path: str) -> str | None:
    """Return the parent virtual path, or None for the root."""
    path = normalize_path(path)
    if path == "/":
        return None
    return posixpath.dirname(path)


def sanitize_name(value: str | None) -> str | None:
    """Return a safe single path segment, or None if *value* is unusable."""
    trimmed = (value or "").strip().replace("\x00", "")
    if not trimmed:
        return None
    if "/" in trimmed or "\\" in trimmed:
        return None
    if trimmed in (".", ".."):
        return None
    return trimmed


def is_reserved_path(path: str) -> bool:
    """Check if a normalized path is the trash area or inside it."""
    return path == TRASH_DIR or path.startswith(TRASH_DIR + "/")


def is_nested(candidate: str, ancestor: str) -> bool:
    """True when *candidate* lies strictly below *ancestor* (virtual paths)."""
    if ancestor == "/":
        return candidate != "/"
    return candidate.startswith(ancestor + "/")


def is_within(candidate: str, root: str, sep: str = "/") -> bool:
    """String-prefix containment: equal to *root* or below ``root + sep``."""
    if candidate == root:
        return True
    root_with_sep = root if root.endswith(sep) else root + sep
    return candidate.startswith(root_with_sep)


# =============================================================================
# File Type Checks
# =============================================================================


def extension_of(path: str) -> str:
    return posixpath.splitext(path)[1].lower()


def is_text_previewable(path: str) -> bool:
    return extension_of(path) in TEXT_PREVIEW_EXTENSIONS


def is_text_editable(path: str) -> bool:
    return extension_of(path) in TEXT_EDIT_EXTENSIONS


def is_image_previewable(path: str) -> bool:
    return extension_of(path) in IMAGE_PREVIEW_EXTENSIONS


def guess_mime_type(filename: str) -> str:
    """Guess the MIME type of a file based on its name."""
    ext = extension_of(filename)
    if ext in IMAGE_MIME_TYPES:
        return IMAGE_MIME_TYPES[ext]
    mime_type, _ = mimetypes.guess_type(filename)
    return mime_type or "application/octet-stream"


# =============================================================================
# Time
# =============================================================================


def now_ms() -> int:
    """Current time as integer milliseconds since the epoch."""
    return int(datetime.now(UTC).timestamp() * 1000)


def to_ms(timestamp: float | datetime | None) -> int:
    """Convert a POSIX timestamp (seconds) or datetime to epoch milliseconds."""
    if timestamp is None:
        return 0
    if isinstance(timestamp, datetime):
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=UTC)
        return int(timestamp.timestamp() * 1000)
    return int(timestamp * 1000)
