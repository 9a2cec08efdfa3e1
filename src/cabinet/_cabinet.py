"""Cabinet: async facade over one storage backend for many confined users."""

from __future__ import annotations

import logging
import math
from typing import TYPE_CHECKING, Any

from cabinet.config import Settings, create_backend
from cabinet.db import Database
from cabinet.events import AuditEvent, EventBus
from cabinet.fs.archive import DEFAULT_LARGE_BYTES, ArchiveBuilder, SubprocessArchiver
from cabinet.fs.exceptions import (
    InvalidNameError,
    InvalidOperationError,
    NotDirectoryError,
    NotFileError,
    PathEscapeError,
    PathNotFoundError,
    ShareNotFoundError,
    TooLargeError,
    TypeNotAllowedError,
)
from cabinet.fs.permissions import require_write
from cabinet.fs.sharing import ShareRegistry
from cabinet.fs.trash import TrashService
from cabinet.fs.types import FileStream, Listing, ShareView
from cabinet.fs.uploads import UploadCoordinator
from cabinet.fs.utils import (
    guess_mime_type,
    is_image_previewable,
    is_text_editable,
    is_text_previewable,
    join_path,
    normalize_path,
    parent_of,
    sanitize_name,
    split_path,
)

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from cabinet.fs.archive import Archiver
    from cabinet.fs.protocol import StorageBackend
    from cabinet.fs.types import (
        ArchiveFormat,
        ArchiveStream,
        FileContent,
        PathInfo,
        StorageStats,
        UserContext,
    )
    from cabinet.models import ShareLinkBase, TrashRecord, UploadSession

logger = logging.getLogger(__name__)

DEFAULT_MAX_PREVIEW_BYTES = 200 * 1024
DEFAULT_MAX_EDIT_BYTES = 1024 * 1024


class Cabinet:
    """Boundary operations for authenticated users and public share links.

    The backend is chosen once (see :func:`cabinet.config.create_backend`)
    and every call is confined to the caller's ``root_ref``. Mutations are
    refused for read-only users. Each completed operation emits an
    :class:`AuditEvent`; audit handlers can never fail the operation.

    Usage::

        cabinet = Cabinet.from_settings(Settings())
        async with cabinet:
            root = cabinet.resolve_user_root("/alice")
            user = UserContext("alice", Role.READ_WRITE, root)
            listing = await cabinet.list(user, "/")
    """

    def __init__(
        self,
        backend: StorageBackend,
        db: Database,
        *,
        events: EventBus | None = None,
        archiver: Archiver | None = None,
        max_preview_bytes: int = DEFAULT_MAX_PREVIEW_BYTES,
        max_edit_bytes: int = DEFAULT_MAX_EDIT_BYTES,
        max_search_bytes: int | None = None,
        archive_large_bytes: int = DEFAULT_LARGE_BYTES,
    ) -> None:
        self._backend = backend
        self._db = db
        self._events = events or EventBus()
        self.max_preview_bytes = max_preview_bytes
        self.max_edit_bytes = max_edit_bytes
        self.max_search_bytes = max_search_bytes or max_preview_bytes

        self._trash = TrashService(backend)
        self._uploads = UploadCoordinator(backend, db)
        self._shares = ShareRegistry(db)
        self._archives = ArchiveBuilder(
            backend, archiver or SubprocessArchiver(), large_bytes=archive_large_bytes
        )

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        *,
        events: EventBus | None = None,
        archiver: Archiver | None = None,
    ) -> Cabinet:
        settings = settings or Settings()
        return cls(
            create_backend(settings),
            Database(settings.database_url),
            events=events,
            archiver=archiver,
            max_preview_bytes=settings.max_preview_bytes,
            max_edit_bytes=settings.max_edit_bytes,
            max_search_bytes=settings.max_search_bytes,
            archive_large_bytes=settings.archive_large_bytes,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def open(self) -> None:
        await self._backend.open()
        await self._db.open()

    async def close(self) -> None:
        await self._db.close()
        await self._backend.close()

    async def __aenter__(self) -> Cabinet:
        await self.open()
        return self

    async def __aexit__(self, exc_type: object, exc_val: object, exc_tb: object) -> None:
        await self.close()

    @property
    def backend(self) -> StorageBackend:
        return self._backend

    @property
    def events(self) -> EventBus:
        return self._events

    @property
    def trash_service(self) -> TrashService:
        return self._trash

    @property
    def uploads(self) -> UploadCoordinator:
        return self._uploads

    @property
    def shares(self) -> ShareRegistry:
        return self._shares

    def resolve_user_root(self, root_path: str) -> str:
        """Compute a user's ``root_ref`` from their configured root path."""
        return self._backend.resolve_user_root(root_path)

    async def _audit(
        self,
        action: str,
        *paths: str,
        user: UserContext | None = None,
        **detail: Any,
    ) -> None:
        await self._events.emit(
            AuditEvent(
                action=action,
                paths=paths,
                username=user.username if user else None,
                detail=detail,
            )
        )

    # ------------------------------------------------------------------
    # Browse
    # ------------------------------------------------------------------

    async def list(
        self,
        user: UserContext,
        path: str = "/",
        page: int | None = None,
        page_size: int | None = None,
    ) -> Listing:
        """List a directory; with *page_size* the page is clamped to the valid range."""
        path = normalize_path(path)
        entries = await self._backend.list_dir(path, root=user.root_ref)
        total = len(entries)
        listing = Listing(path=path, parent=parent_of(path), entries=entries, total=total)

        if page_size is not None and page_size > 0:
            total_pages = max(1, math.ceil(total / page_size))
            current = min(max(page or 1, 1), total_pages)
            start = (current - 1) * page_size
            listing.entries = entries[start : start + page_size]
            listing.page = current
            listing.page_size = page_size

        await self._audit("list", path, user=user)
        return listing

    async def search(self, user: UserContext, path: str, query: str) -> list[str]:
        """Names of text files directly in *path* whose content contains *query*.

        Case-insensitive. Files larger than ``max_search_bytes`` and files
        containing a NUL byte are skipped.
        """
        needle = (query or "").strip().lower()
        if not needle:
            return []

        path = normalize_path(path)
        matches: list[str] = []
        for entry in await self._backend.list_dir(path, root=user.root_ref):
            if entry.type != "file" or entry.size > self.max_search_bytes:
                continue
            try:
                content = await self._backend.read_file(
                    join_path(path, entry.name),
                    root=user.root_ref,
                    max_bytes=self.max_search_bytes,
                )
            except (PathNotFoundError, NotFileError, TooLargeError, PathEscapeError):
                continue
            if b"\x00" in content.content:
                continue
            if needle in content.text().lower():
                matches.append(entry.name)

        await self._audit("search", path, user=user, query=query.strip(), matches=len(matches))
        return matches

    async def storage_stats(self, user: UserContext) -> StorageStats:
        return await self._backend.storage_stats(root=user.root_ref)

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    async def read(
        self, user: UserContext, path: str, max_bytes: int | None = None
    ) -> FileContent:
        content = await self._backend.read_file(path, root=user.root_ref, max_bytes=max_bytes)
        await self._audit("read", content.path, user=user)
        return content

    async def preview(self, user: UserContext, path: str) -> FileContent:
        content = await self._read_text_preview(path, root=user.root_ref)
        await self._audit("preview", content.path, user=user)
        return content

    async def open_for_edit(self, user: UserContext, path: str) -> FileContent:
        path = normalize_path(path)
        if not is_text_editable(path):
            raise TypeNotAllowedError("Editing not available for this file type.")
        content = await self._backend.read_file(
            path, root=user.root_ref, max_bytes=self.max_edit_bytes
        )
        await self._audit("edit_open", path, user=user)
        return content

    async def image(self, user: UserContext, path: str) -> FileStream:
        stream = await self._open_image(path, root=user.root_ref)
        await self._audit("image_preview", stream.path, user=user)
        return stream

    async def download(self, user: UserContext, path: str) -> FileStream:
        stream = await self._open_stream(path, root=user.root_ref)
        await self._audit("download", stream.path, user=user)
        return stream

    async def _read_text_preview(self, path: str, *, root: str) -> FileContent:
        path = normalize_path(path)
        if not is_text_previewable(path):
            raise TypeNotAllowedError("Preview not available for this file type.")
        return await self._backend.read_file(path, root=root, max_bytes=self.max_preview_bytes)

    async def _open_image(self, path: str, *, root: str) -> FileStream:
        path = normalize_path(path)
        if not is_image_previewable(path):
            raise TypeNotAllowedError("Image preview not available for this file type.")
        return await self._open_stream(path, root=root)

    async def _open_stream(self, path: str, *, root: str) -> FileStream:
        path = normalize_path(path)
        info = await self._backend.stat(path, root=root)
        if info is None:
            raise PathNotFoundError(f"Not found: {path}")
        if not info.is_file:
            raise NotFileError(f"Path is not a file: {path}")
        name = split_path(path)[1]
        return FileStream(
            path=path,
            name=name,
            size=info.size,
            mtime=info.mtime,
            media_type=guess_mime_type(name),
            chunks=self._backend.stream_file(path, root=root),
        )

    # ------------------------------------------------------------------
    # Write
    # ------------------------------------------------------------------

    def _check_editable(self, path: str, data: bytes) -> None:
        if not is_text_editable(path):
            raise TypeNotAllowedError("Editing not available for this file type.")
        if len(data) > self.max_edit_bytes:
            raise TooLargeError(
                f"Content too large ({len(data):,} bytes, limit {self.max_edit_bytes:,})"
            )

    async def write(
        self,
        user: UserContext,
        path: str,
        data: bytes | str,
        overwrite: bool = False,
    ) -> PathInfo:
        """Create (or with *overwrite* replace) an editable text file."""
        require_write(user.role)
        path = normalize_path(path)
        payload = data.encode("utf-8") if isinstance(data, str) else data
        self._check_editable(path, payload)
        info = await self._backend.write_file(
            path, payload, root=user.root_ref, overwrite=overwrite
        )
        await self._audit("write", path, user=user, size=info.size)
        return info

    async def save_edit(self, user: UserContext, path: str, text: str) -> PathInfo:
        """Replace the content of an existing editable file."""
        require_write(user.role)
        path = normalize_path(path)
        payload = text.encode("utf-8")
        self._check_editable(path, payload)

        existing = await self._backend.stat(path, root=user.root_ref)
        if existing is None:
            raise PathNotFoundError(f"File not found: {path}")
        if not existing.is_file:
            raise NotFileError(f"Path is not a file: {path}")

        info = await self._backend.write_file(path, payload, root=user.root_ref, overwrite=True)
        await self._audit("edit_save", path, user=user, size=info.size)
        return info

    async def upload(
        self,
        user: UserContext,
        directory: str,
        files: Iterable[tuple[str, bytes]],
        overwrite: bool = False,
    ) -> list[str]:
        """Write several small files into *directory*. Returns the stored names."""
        require_write(user.role)
        directory = normalize_path(directory)
        info = await self._backend.stat(directory, root=user.root_ref)
        if info is None:
            raise PathNotFoundError(f"Directory not found: {directory}")
        if not info.is_dir:
            raise NotDirectoryError(f"Not a directory: {directory}")

        batch: list[tuple[str, bytes]] = []
        for raw_name, data in files:
            name = sanitize_name(raw_name)
            if name is None:
                raise InvalidNameError(f"Invalid file name: {raw_name!r}")
            batch.append((name, data))
        if not batch:
            raise InvalidOperationError("No files provided")

        uploaded: list[str] = []
        for name, data in batch:
            await self._backend.write_file(
                join_path(directory, name), data, root=user.root_ref, overwrite=overwrite
            )
            uploaded.append(name)

        await self._audit("upload", directory, user=user, files=uploaded)
        return uploaded

    async def mkdir(self, user: UserContext, parent: str, name: str) -> str:
        require_write(user.role)
        folder = sanitize_name(name)
        if folder is None:
            raise InvalidNameError(f"Invalid folder name: {name!r}")
        path = join_path(normalize_path(parent), folder)
        await self._backend.mkdir(path, root=user.root_ref)
        await self._audit("mkdir", path, user=user)
        return path

    async def move(self, user: UserContext, src: str, dest: str) -> str:
        require_write(user.role)
        src, dest = normalize_path(src), normalize_path(dest)
        await self._backend.move(src, dest, root=user.root_ref)
        await self._audit("move", src, dest, user=user)
        return dest

    async def copy(self, user: UserContext, src: str, dest: str) -> str:
        require_write(user.role)
        src, dest = normalize_path(src), normalize_path(dest)
        await self._backend.copy(src, dest, root=user.root_ref)
        await self._audit("copy", src, dest, user=user)
        return dest

    # ------------------------------------------------------------------
    # Trash
    # ------------------------------------------------------------------

    async def trash(self, user: UserContext, path: str) -> TrashRecord:
        require_write(user.role)
        record = await self._trash.trash(path, root=user.root_ref)
        await self._audit("trash", record.original_path, user=user, id=record.id)
        return record

    async def list_trash(self, user: UserContext) -> list[TrashRecord]:
        records = await self._trash.list(root=user.root_ref)
        await self._audit("trash_list", user=user, count=len(records))
        return records

    async def restore_trash(self, user: UserContext, record_id: str) -> TrashRecord:
        require_write(user.role)
        record = await self._trash.restore(record_id, root=user.root_ref)
        await self._audit("restore", record.original_path, user=user, id=record.id)
        return record

    # ------------------------------------------------------------------
    # Chunked uploads
    # ------------------------------------------------------------------

    async def upload_init(
        self,
        user: UserContext,
        dest_dir: str,
        file_name: str,
        declared_size: int,
        total_parts: int,
        overwrite: bool = False,
    ) -> UploadSession:
        require_write(user.role)
        upload = await self._uploads.init(
            dest_dir,
            file_name,
            declared_size,
            total_parts,
            overwrite,
            root=user.root_ref,
            username=user.username,
        )
        await self._audit(
            "upload_init",
            upload.dest_path,
            user=user,
            upload_id=upload.upload_id,
            size=declared_size,
            parts=total_parts,
        )
        return upload

    async def upload_status(self, user: UserContext, upload_id: str) -> set[int]:
        return await self._uploads.status(upload_id, root=user.root_ref)

    async def upload_part(
        self, user: UserContext, upload_id: str, part_number: int, data: bytes
    ) -> None:
        require_write(user.role)
        await self._uploads.put_part(upload_id, part_number, data, root=user.root_ref)

    async def upload_complete(
        self, user: UserContext, upload_id: str, total_parts: int
    ) -> PathInfo:
        require_write(user.role)
        upload = await self._uploads.get(upload_id, root=user.root_ref)
        info = await self._uploads.complete(upload_id, total_parts, root=user.root_ref)
        await self._audit(
            "upload_complete", upload.dest_path, user=user, upload_id=upload_id, size=info.size
        )
        return info

    async def upload_abort(self, user: UserContext, upload_id: str) -> None:
        require_write(user.role)
        await self._uploads.abort(upload_id, root=user.root_ref)
        await self._audit("upload_abort", user=user, upload_id=upload_id)

    # ------------------------------------------------------------------
    # Sharing
    # ------------------------------------------------------------------

    async def _require_file(self, path: str, *, root: str) -> str:
        path = normalize_path(path)
        info = await self._backend.stat(path, root=root)
        if info is None:
            raise PathNotFoundError(f"Not found: {path}")
        if not info.is_file:
            raise NotFileError(f"Path is not a file: {path}")
        return path

    async def share_create(
        self, user: UserContext, path: str, force: bool = False
    ) -> ShareLinkBase:
        """Share a file; an existing link is reused unless *force* replaces it."""
        path = await self._require_file(path, root=user.root_ref)
        link = await self._shares.create(path, user.root_ref, force=force)
        await self._audit("share_create", path, user=user, force=force)
        return link

    async def share_lookup(self, user: UserContext, path: str) -> ShareLinkBase | None:
        path = await self._require_file(path, root=user.root_ref)
        return await self._shares.lookup(path, user.root_ref)

    async def _shared_file(self, token: str) -> tuple[ShareLinkBase, PathInfo]:
        link = await self._shares.resolve(token)
        if link is None:
            raise ShareNotFoundError("Share not found.")
        try:
            info = await self._backend.stat(link.path, root=link.root_ref)
        except (PathEscapeError, PathNotFoundError):
            info = None
        if info is None or not info.is_file:
            raise ShareNotFoundError("Share not found.")
        return link, info

    async def share_info(self, token: str) -> ShareView:
        link, info = await self._shared_file(token)
        view = ShareView(
            token=link.token,
            name=split_path(link.path)[1],
            size=info.size,
            mtime=info.mtime,
            can_text_preview=is_text_previewable(link.path),
            can_image_preview=is_image_previewable(link.path),
        )
        await self._audit("share_view", user=None, token=token)
        return view

    async def share_download(self, token: str) -> FileStream:
        link, _ = await self._shared_file(token)
        stream = await self._open_stream(link.path, root=link.root_ref)
        await self._audit("share_download", user=None, token=token)
        return stream

    async def share_file(self, token: str) -> FileStream:
        """Same bytes as :meth:`share_download`, for inline display."""
        link, _ = await self._shared_file(token)
        stream = await self._open_stream(link.path, root=link.root_ref)
        await self._audit("share_file", user=None, token=token)
        return stream

    async def share_preview(self, token: str) -> FileContent:
        link, _ = await self._shared_file(token)
        content = await self._read_text_preview(link.path, root=link.root_ref)
        await self._audit("share_preview", user=None, token=token)
        return content

    async def share_image(self, token: str) -> FileStream:
        link, _ = await self._shared_file(token)
        stream = await self._open_image(link.path, root=link.root_ref)
        await self._audit("share_image", user=None, token=token)
        return stream

    # ------------------------------------------------------------------
    # Archives
    # ------------------------------------------------------------------

    async def archive(
        self,
        user: UserContext,
        paths: Sequence[str],
        fmt: str | ArchiveFormat | None = "zip",
    ) -> ArchiveStream:
        stream = await self._archives.build(paths, fmt, root=user.root_ref)
        await self._audit(
            "archive",
            *(normalize_path(p) for p in paths),
            user=user,
            format=stream.format.value,
            compression=stream.compression.value,
        )
        return stream
