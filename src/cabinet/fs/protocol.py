"""StorageBackend protocol: runtime-checkable interfaces.

Split into a core protocol and opt-in capability protocols. The trash
service needs ``SupportsRecords``, the upload coordinator needs
``SupportsMultipart`` and the archive builder needs ``SupportsArchive``;
both shipped backends implement all three.

Every method takes the caller's ``root`` (a root_ref produced by
``resolve_user_root``) as a keyword. Backends never remember a user.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Sequence
    from contextlib import AbstractAsyncContextManager

    from .types import (
        DirEntry,
        FileContent,
        MultipartHandle,
        PathInfo,
        ResolvedLocation,
        StorageStats,
    )


@runtime_checkable
class StorageBackend(Protocol):
    """Core interface every backend must implement."""

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def open(self) -> None:
        """Called once at startup.  No-op if not needed."""
        ...

    async def close(self) -> None:
        """Called on shutdown."""
        ...

    # ------------------------------------------------------------------
    # Confinement
    # ------------------------------------------------------------------

    def resolve_user_root(self, root_path: str) -> str: ...

    def resolve(
        self,
        path: str,
        *,
        root: str,
        must_exist: bool = True,
    ) -> ResolvedLocation: ...

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    async def stat(
        self,
        path: str,
        *,
        root: str,
        allow_reserved: bool = False,
    ) -> PathInfo | None: ...

    async def list_dir(self, path: str = "/", *, root: str) -> list[DirEntry]: ...

    async def read_file(
        self,
        path: str,
        *,
        root: str,
        max_bytes: int | None = None,
    ) -> FileContent: ...

    def stream_file(
        self,
        path: str,
        *,
        root: str,
        chunk_size: int = 64 * 1024,
    ) -> AsyncIterator[bytes]: ...

    async def tree_size(self, path: str, *, root: str, limit: int | None = None) -> int: ...

    async def storage_stats(self, *, root: str) -> StorageStats: ...

    # ------------------------------------------------------------------
    # Write
    # ------------------------------------------------------------------

    async def write_file(
        self,
        path: str,
        data: bytes,
        *,
        root: str,
        overwrite: bool = False,
    ) -> PathInfo: ...

    async def mkdir(
        self,
        path: str,
        *,
        root: str,
        allow_reserved: bool = False,
        exist_ok: bool = False,
    ) -> None: ...

    async def move(
        self,
        src: str,
        dest: str,
        *,
        root: str,
        allow_reserved: bool = False,
    ) -> None: ...

    async def copy(self, src: str, dest: str, *, root: str) -> None: ...

    async def remove(self, path: str, *, root: str, allow_reserved: bool = False) -> None: ...


@runtime_checkable
class SupportsRecords(Protocol):
    """Opt-in: small JSON sidecars stored under ``/.trash/.meta`` of a root."""

    async def write_record(self, name: str, data: bytes, *, root: str) -> None: ...

    async def read_record(self, name: str, *, root: str) -> bytes | None: ...

    async def delete_record(self, name: str, *, root: str) -> None: ...

    async def list_records(self, *, root: str) -> list[bytes]: ...


@runtime_checkable
class SupportsMultipart(Protocol):
    """Opt-in: resumable multi-part uploads assembled at completion."""

    async def create_multipart(self, path: str, *, root: str) -> MultipartHandle: ...

    async def upload_part(
        self,
        handle: MultipartHandle,
        part_number: int,
        data: bytes,
    ) -> None: ...

    async def list_parts(self, handle: MultipartHandle) -> dict[int, str]: ...

    async def complete_multipart(
        self,
        handle: MultipartHandle,
        path: str,
        *,
        root: str,
        total_parts: int,
        overwrite: bool = False,
    ) -> PathInfo: ...

    async def abort_multipart(self, handle: MultipartHandle) -> None: ...


@runtime_checkable
class SupportsArchive(Protocol):
    """Opt-in: expose resolved items as a real directory tree for an archiver."""

    def materialize(
        self,
        paths: Sequence[str],
        *,
        root: str,
    ) -> AbstractAsyncContextManager[tuple[str, list[str]]]: ...
