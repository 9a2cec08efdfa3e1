"""UploadCoordinator: resumable chunked uploads.

An upload is initiated once, receives numbered parts in any order (possibly
concurrently, possibly repeated), and is completed by assembling parts
``1..N`` in ascending order into the destination. Session state is a row in
``cabinet_upload_sessions``; part data lives in the backend (scratch files
locally, multipart parts on S3), so ``status`` reflects what actually
landed rather than what a client claims.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from sqlmodel import select

from cabinet.models.uploads import UploadSession

from .exceptions import (
    ConflictError,
    InvalidNameError,
    InvalidOperationError,
    NotDirectoryError,
    PathNotFoundError,
    UploadNotFoundError,
)
from .protocol import SupportsMultipart
from .types import MultipartHandle
from .utils import join_path, normalize_path, now_ms, sanitize_name

if TYPE_CHECKING:
    from datetime import timedelta

    from cabinet.db import Database

    from .protocol import StorageBackend
    from .types import PathInfo

logger = logging.getLogger(__name__)


def _handle(upload: UploadSession) -> MultipartHandle:
    return MultipartHandle(upload_ref=upload.backend_ref, key=upload.backend_key)


class UploadCoordinator:
    """Tracks upload sessions and drives the backend's multipart capability."""

    def __init__(self, backend: StorageBackend, db: Database) -> None:
        if not isinstance(backend, SupportsMultipart):
            raise TypeError(f"{type(backend).__name__} does not support multipart uploads")
        self._backend = backend
        self._db = db

    @property
    def _multipart(self) -> SupportsMultipart:
        return self._backend  # type: ignore[return-value]

    async def get(self, upload_id: str, *, root: str) -> UploadSession:
        async with self._db.session() as session:
            upload = await session.get(UploadSession, upload_id)
        if upload is None or upload.root_ref != root:
            raise UploadNotFoundError(f"Upload not found: {upload_id}")
        return upload

    async def _forget(self, upload_id: str) -> None:
        async with self._db.session() as session:
            upload = await session.get(UploadSession, upload_id)
            if upload is not None:
                await session.delete(upload)

    # ------------------------------------------------------------------
    # Init
    # ------------------------------------------------------------------

    async def init(
        self,
        dest_dir: str,
        file_name: str,
        declared_size: int,
        total_parts: int,
        overwrite: bool = False,
        *,
        root: str,
        username: str = "",
    ) -> UploadSession:
        """Validate the destination, allocate backend state, persist the session."""
        name = sanitize_name(file_name)
        if name is None:
            raise InvalidNameError(f"Invalid file name: {file_name!r}")
        if total_parts < 1:
            raise InvalidOperationError("total_parts must be at least 1")
        if declared_size < 0:
            raise InvalidOperationError("declared_size must not be negative")

        dest_dir = normalize_path(dest_dir)
        dir_info = await self._backend.stat(dest_dir, root=root)
        if dir_info is None:
            raise PathNotFoundError(f"Directory not found: {dest_dir}")
        if not dir_info.is_dir:
            raise NotDirectoryError(f"Not a directory: {dest_dir}")

        dest_path = join_path(dest_dir, name)
        existing = await self._backend.stat(dest_path, root=root)
        if existing is not None and (existing.is_dir or not overwrite):
            raise ConflictError(f"Destination already exists: {dest_path}")

        handle = await self._multipart.create_multipart(dest_path, root=root)
        upload = UploadSession(
            root_ref=root,
            dest_dir=dest_dir,
            file_name=name,
            declared_size=declared_size,
            total_parts=total_parts,
            overwrite=overwrite,
            backend_ref=handle.upload_ref,
            backend_key=handle.key,
            created_by=username,
        )
        try:
            async with self._db.session() as session:
                session.add(upload)
        except Exception:
            await self._multipart.abort_multipart(handle)
            raise

        logger.debug(
            "Upload %s started for %s (%d parts)", upload.upload_id, dest_path, total_parts
        )
        return upload

    # ------------------------------------------------------------------
    # Parts
    # ------------------------------------------------------------------

    async def status(self, upload_id: str, *, root: str) -> set[int]:
        """Part numbers already stored. Unknown ids report nothing so clients restart."""
        try:
            upload = await self.get(upload_id, root=root)
        except UploadNotFoundError:
            return set()
        return set(await self._multipart.list_parts(_handle(upload)))

    async def put_part(
        self,
        upload_id: str,
        part_number: int,
        data: bytes,
        *,
        root: str,
    ) -> None:
        """Store one part. Re-sending the same number replaces it."""
        upload = await self.get(upload_id, root=root)
        if not 1 <= part_number <= upload.total_parts:
            raise InvalidOperationError(
                f"Part number {part_number} out of range 1..{upload.total_parts}"
            )
        await self._multipart.upload_part(_handle(upload), part_number, data)

    # ------------------------------------------------------------------
    # Complete / abort
    # ------------------------------------------------------------------

    async def complete(self, upload_id: str, total_parts: int, *, root: str) -> PathInfo:
        """Assemble parts 1..total_parts in order and publish the file."""
        upload = await self.get(upload_id, root=root)
        if total_parts != upload.total_parts:
            logger.warning(
                "Upload %s completed with %d parts, initiated with %d",
                upload_id,
                total_parts,
                upload.total_parts,
            )
        if total_parts < 1:
            raise InvalidOperationError("total_parts must be at least 1")

        info = await self._multipart.complete_multipart(
            _handle(upload),
            upload.dest_path,
            root=root,
            total_parts=total_parts,
            overwrite=upload.overwrite,
        )
        if upload.declared_size and info.size != upload.declared_size:
            logger.warning(
                "Upload %s size mismatch: declared %d, assembled %d",
                upload_id,
                upload.declared_size,
                info.size,
            )

        await self._forget(upload_id)
        logger.debug("Upload %s completed at %s", upload_id, upload.dest_path)
        return info

    async def abort(self, upload_id: str, *, root: str) -> None:
        """Discard all parts and the session."""
        upload = await self.get(upload_id, root=root)
        await self._multipart.abort_multipart(_handle(upload))
        await self._forget(upload_id)

    async def sweep(self, older_than: timedelta) -> int:
        """Abort every session started more than *older_than* ago. Returns the count."""
        cutoff = now_ms() - int(older_than.total_seconds() * 1000)
        async with self._db.session() as session:
            result = await session.execute(
                select(UploadSession).where(UploadSession.created_at < cutoff)
            )
            stale = list(result.scalars().all())

        for upload in stale:
            await self._multipart.abort_multipart(_handle(upload))
            await self._forget(upload.upload_id)
        if stale:
            logger.debug("Swept %d abandoned uploads", len(stale))
        return len(stale)
