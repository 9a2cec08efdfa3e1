"""Result types: DirEntry, PathInfo, FileContent, Listing, etc."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Literal

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from .permissions import Role

EntryType = Literal["file", "dir"]


@dataclass(frozen=True)
class UserContext:
    """Authenticated caller, as produced by the auth collaborator.

    ``root_ref`` is the user's confinement boundary: a canonical real
    directory (local) or an object key prefix ending in ``/`` (S3).
    """

    username: str
    role: Role
    root_ref: str


@dataclass(frozen=True)
class ResolvedLocation:
    """A normalized virtual path and its verified backend location."""

    virtual_path: str
    location: str


@dataclass(frozen=True)
class PathInfo:
    """Stat result for a file or directory."""

    type: EntryType
    size: int = 0
    mtime: int = 0

    @property
    def is_dir(self) -> bool:
        return self.type == "dir"

    @property
    def is_file(self) -> bool:
        return self.type == "file"


@dataclass(frozen=True)
class DirEntry:
    """A single directory listing entry. ``mtime`` is epoch milliseconds."""

    name: str
    type: EntryType
    size: int = 0
    mtime: int = 0


def sort_entries(entries: list[DirEntry]) -> list[DirEntry]:
    """Directories first, then case-insensitive name, then raw byte order."""
    return sorted(
        entries,
        key=lambda e: (
            e.type != "dir",
            e.name.casefold(),
            e.name.encode("utf-8", "surrogateescape"),
        ),
    )


@dataclass
class FileContent:
    """Result of a bounded read."""

    path: str
    name: str
    size: int
    mtime: int
    content: bytes = b""

    def text(self, encoding: str = "utf-8") -> str:
        return self.content.decode(encoding, errors="replace")


@dataclass
class FileStream:
    """A file opened for streaming (downloads, inline views)."""

    path: str
    name: str
    size: int
    mtime: int
    media_type: str
    chunks: AsyncIterator[bytes]


@dataclass
class Listing:
    """Result of a list directory operation, optionally paged."""

    path: str
    parent: str | None
    entries: list[DirEntry] = field(default_factory=list)
    total: int = 0
    page: int = 1
    page_size: int | None = None


@dataclass(frozen=True)
class StorageStats:
    """Byte and file totals under a user's root (trash excluded)."""

    total_bytes: int = 0
    total_files: int = 0


@dataclass(frozen=True)
class MultipartHandle:
    """Backend state for an in-progress multipart upload.

    ``upload_ref`` is a scratch directory (local) or an S3 UploadId;
    ``key`` is the destination object key (S3) or virtual path (local).
    """

    upload_ref: str
    key: str


@dataclass(frozen=True)
class ShareView:
    """Public metadata for a shared file. Never names the owner or root."""

    token: str
    name: str
    size: int
    mtime: int
    can_text_preview: bool
    can_image_preview: bool


class ArchiveFormat(str, Enum):
    ZIP = "zip"
    TARGZ = "targz"

    @property
    def extension(self) -> str:
        return ".zip" if self is ArchiveFormat.ZIP else ".tar.gz"

    @property
    def media_type(self) -> str:
        return "application/zip" if self is ArchiveFormat.ZIP else "application/gzip"


class Compression(str, Enum):
    STORE = "store"
    DEFLATE = "deflate"
    GZIP = "gzip"


@dataclass
class ArchiveStream:
    """An archive ready to be streamed to the client."""

    filename: str
    format: ArchiveFormat
    compression: Compression
    total_bytes: int
    chunks: AsyncIterator[bytes]

    @property
    def media_type(self) -> str:
        return self.format.media_type
