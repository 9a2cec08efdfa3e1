"""LocalDiskBackend: direct disk access confined to per-user real directories."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import shutil
import tempfile
import uuid
from contextlib import asynccontextmanager
from pathlib import Path
from typing import TYPE_CHECKING

from .exceptions import (
    AlreadyExistsError,
    ConflictError,
    IncompleteUploadError,
    InvalidOperationError,
    NotDirectoryError,
    NotFileError,
    PathNotFoundError,
    StorageError,
    TooLargeError,
)
from .operations import require_parent_dir, validate_creation, validate_transfer, validated_name
from .resolver import resolve_local, resolve_local_user_root
from .types import DirEntry, FileContent, MultipartHandle, PathInfo, StorageStats, sort_entries
from .utils import META_NAME, TRASH_NAME, normalize_path, to_ms

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Sequence

    from .types import ResolvedLocation

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 64 * 1024
PART_SUFFIX = ".part"


def _info_from_stat(st: os.stat_result, is_dir: bool) -> PathInfo:
    if is_dir:
        return PathInfo(type="dir", size=0, mtime=to_ms(st.st_mtime))
    return PathInfo(type="file", size=st.st_size, mtime=to_ms(st.st_mtime))


def _fsync_write(fd: int, data: bytes) -> None:
    with os.fdopen(fd, "wb") as f:
        f.write(data)
        f.flush()
        os.fsync(f.fileno())


def _publish(tmp_path: str, dest: str, *, overwrite: bool) -> None:
    """Move a finished temp file into place.

    ``os.replace`` when overwriting; a hard link otherwise, which fails
    instead of clobbering a file that appeared in the meantime.
    """
    try:
        if overwrite:
            os.replace(tmp_path, dest)
        else:
            os.link(tmp_path, dest)
    except FileExistsError:
        raise ConflictError(f"Destination already exists: {dest}") from None
    finally:
        with contextlib.suppress(OSError):
            os.unlink(tmp_path)


class LocalDiskBackend:
    """Local disk storage backend.

    Every call resolves through ``resolve_local`` so the canonical real path
    is checked against the caller's root each time; nothing is cached.
    Blocking filesystem work runs on worker threads.
    """

    def __init__(
        self,
        file_root: Path | str,
        *,
        upload_tmp_dir: Path | str | None = None,
    ) -> None:
        self.file_root = Path(file_root).resolve()

        if not self.file_root.exists():
            raise FileNotFoundError(f"File root does not exist: {self.file_root}")
        if not self.file_root.is_dir():
            raise NotADirectoryError(f"File root is not a directory: {self.file_root}")

        if upload_tmp_dir is None:
            upload_tmp_dir = Path(tempfile.gettempdir()) / "cabinet-uploads"
        self.upload_tmp_dir = Path(upload_tmp_dir)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def open(self) -> None:
        await asyncio.to_thread(self.upload_tmp_dir.mkdir, parents=True, exist_ok=True)

    async def close(self) -> None:
        pass

    # =========================================================================
    # Path Resolution & Security
    # =========================================================================

    def resolve_user_root(self, root_path: str) -> str:
        return resolve_local_user_root(str(self.file_root), root_path)

    def resolve(
        self,
        path: str,
        *,
        root: str,
        must_exist: bool = True,
        allow_reserved: bool = False,
    ) -> ResolvedLocation:
        return resolve_local(
            path, root, must_exist=must_exist, allow_reserved=allow_reserved
        )

    def _failure(self, action: str, path: str, exc: OSError) -> StorageError:
        logger.error("Local %s failed for %s", action, path, exc_info=True)
        return StorageError(f"Failed to {action} {path}: {exc}")

    # =========================================================================
    # Read Operations
    # =========================================================================

    async def stat(
        self,
        path: str,
        *,
        root: str,
        allow_reserved: bool = False,
    ) -> PathInfo | None:
        try:
            loc = self.resolve(path, root=root, allow_reserved=allow_reserved)
        except PathNotFoundError:
            return None

        def _stat() -> PathInfo | None:
            try:
                st = os.stat(loc.location)
            except FileNotFoundError:
                return None
            return _info_from_stat(st, os.path.isdir(loc.location))

        try:
            return await asyncio.to_thread(_stat)
        except OSError as e:
            raise self._failure("stat", loc.virtual_path, e) from e

    async def list_dir(self, path: str = "/", *, root: str) -> list[DirEntry]:
        """List a directory. Symlinks are skipped; ``.trash`` is hidden at root."""
        loc = self.resolve(path, root=root)
        if not os.path.isdir(loc.location):
            raise NotDirectoryError(f"Not a directory: {loc.virtual_path}")
        at_root = loc.virtual_path == "/"

        def _scan() -> list[DirEntry]:
            entries: list[DirEntry] = []
            with os.scandir(loc.location) as it:
                for entry in it:
                    if at_root and entry.name == TRASH_NAME:
                        continue
                    try:
                        if entry.is_symlink():
                            continue
                        is_dir = entry.is_dir(follow_symlinks=False)
                        if not is_dir and not entry.is_file(follow_symlinks=False):
                            continue
                        st = entry.stat(follow_symlinks=False)
                    except OSError:
                        continue
                    entries.append(
                        DirEntry(
                            name=entry.name,
                            type="dir" if is_dir else "file",
                            size=0 if is_dir else st.st_size,
                            mtime=to_ms(st.st_mtime),
                        )
                    )
            return sort_entries(entries)

        try:
            return await asyncio.to_thread(_scan)
        except OSError as e:
            raise self._failure("list", loc.virtual_path, e) from e

    async def _require_file(
        self, path: str, *, root: str
    ) -> tuple[ResolvedLocation, os.stat_result]:
        loc = self.resolve(path, root=root)
        try:
            st = await asyncio.to_thread(os.stat, loc.location)
        except FileNotFoundError:
            raise PathNotFoundError(f"File not found: {loc.virtual_path}") from None
        except OSError as e:
            raise self._failure("stat", loc.virtual_path, e) from e
        if os.path.isdir(loc.location):
            raise NotFileError(f"Path is a directory, not a file: {loc.virtual_path}")
        return loc, st

    async def read_file(
        self,
        path: str,
        *,
        root: str,
        max_bytes: int | None = None,
    ) -> FileContent:
        """Read a whole file. The size guard is checked before any byte is read."""
        loc, st = await self._require_file(path, root=root)
        if max_bytes is not None and st.st_size > max_bytes:
            raise TooLargeError(
                f"File too large ({st.st_size:,} bytes, limit {max_bytes:,}): "
                f"{loc.virtual_path}"
            )

        try:
            content = await asyncio.to_thread(Path(loc.location).read_bytes)
        except FileNotFoundError:
            raise PathNotFoundError(f"File not found: {loc.virtual_path}") from None
        except OSError as e:
            raise self._failure("read", loc.virtual_path, e) from e

        return FileContent(
            path=loc.virtual_path,
            name=os.path.basename(loc.virtual_path),
            size=len(content),
            mtime=to_ms(st.st_mtime),
            content=content,
        )

    async def stream_file(
        self,
        path: str,
        *,
        root: str,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> AsyncIterator[bytes]:
        loc, _ = await self._require_file(path, root=root)
        try:
            f = await asyncio.to_thread(open, loc.location, "rb")
        except FileNotFoundError:
            raise PathNotFoundError(f"File not found: {loc.virtual_path}") from None
        try:
            while True:
                chunk = await asyncio.to_thread(f.read, chunk_size)
                if not chunk:
                    break
                yield chunk
        finally:
            f.close()

    async def tree_size(self, path: str, *, root: str, limit: int | None = None) -> int:
        """Total bytes of regular files under *path*, stopping once *limit* is reached."""
        loc = self.resolve(path, root=root)

        def _walk() -> int:
            if not os.path.isdir(loc.location):
                return os.stat(loc.location).st_size
            total = 0
            for dirpath, _, filenames in os.walk(loc.location):
                for name in filenames:
                    full = os.path.join(dirpath, name)
                    try:
                        st = os.lstat(full)
                    except OSError:
                        continue
                    if not os.path.isfile(full) or os.path.islink(full):
                        continue
                    total += st.st_size
                    if limit is not None and total >= limit:
                        return total
            return total

        try:
            return await asyncio.to_thread(_walk)
        except OSError as e:
            raise self._failure("measure", loc.virtual_path, e) from e

    async def storage_stats(self, *, root: str) -> StorageStats:
        loc = self.resolve("/", root=root)

        def _walk() -> StorageStats:
            total_bytes = 0
            total_files = 0
            for dirpath, dirnames, filenames in os.walk(loc.location):
                if dirpath == loc.location and TRASH_NAME in dirnames:
                    dirnames.remove(TRASH_NAME)
                for name in filenames:
                    full = os.path.join(dirpath, name)
                    if os.path.islink(full):
                        continue
                    try:
                        total_bytes += os.lstat(full).st_size
                    except OSError:
                        continue
                    total_files += 1
            return StorageStats(total_bytes=total_bytes, total_files=total_files)

        try:
            return await asyncio.to_thread(_walk)
        except OSError as e:
            raise self._failure("measure", "/", e) from e

    # =========================================================================
    # Write Operations
    # =========================================================================

    async def write_file(
        self,
        path: str,
        data: bytes,
        *,
        root: str,
        overwrite: bool = False,
    ) -> PathInfo:
        """Write a file atomically via tempfile + replace (or link when not overwriting)."""
        path = await validate_creation(self, path, root=root)
        existing = await self.stat(path, root=root)
        if existing is not None:
            if existing.is_dir:
                raise NotFileError(f"Path is a directory, not a file: {path}")
            if not overwrite:
                raise AlreadyExistsError(f"File already exists: {path}")

        loc = self.resolve(path, root=root, must_exist=False)

        def _write() -> PathInfo:
            fd, tmp_path = tempfile.mkstemp(
                dir=os.path.dirname(loc.location), prefix=".cabinet-", suffix=".tmp"
            )
            try:
                _fsync_write(fd, data)
            except BaseException:
                with contextlib.suppress(OSError):
                    os.unlink(tmp_path)
                raise
            try:
                _publish(tmp_path, loc.location, overwrite=overwrite)
            except ConflictError:
                raise AlreadyExistsError(f"File already exists: {path}") from None
            return _info_from_stat(os.stat(loc.location), False)

        try:
            return await asyncio.to_thread(_write)
        except OSError as e:
            raise self._failure("write", path, e) from e

    async def mkdir(
        self,
        path: str,
        *,
        root: str,
        allow_reserved: bool = False,
        exist_ok: bool = False,
    ) -> None:
        path = normalize_path(path)
        if exist_ok:
            info = await self.stat(path, root=root, allow_reserved=allow_reserved)
            if info is not None and info.is_dir:
                return
        path = await validate_creation(self, path, root=root, allow_reserved=allow_reserved)
        loc = self.resolve(path, root=root, must_exist=False, allow_reserved=allow_reserved)

        try:
            await asyncio.to_thread(os.mkdir, loc.location)
        except FileExistsError:
            if exist_ok and os.path.isdir(loc.location):
                return
            raise AlreadyExistsError(f"Path already exists: {path}") from None
        except OSError as e:
            raise self._failure("create directory", path, e) from e

    async def move(
        self,
        src: str,
        dest: str,
        *,
        root: str,
        allow_reserved: bool = False,
    ) -> None:
        """Rename within the root. Atomic for both files and directories.

        A symlink source is refused: resolution follows it, so the rename
        would move the link's target and leave the link dangling.
        """
        src, dest, _ = await validate_transfer(
            self, src, dest, root=root, allow_reserved=allow_reserved
        )
        if os.path.islink(os.path.join(root, src.lstrip("/"))):
            raise InvalidOperationError(f"Cannot move a symbolic link: {src}")
        src_loc = self.resolve(src, root=root, allow_reserved=allow_reserved)
        dest_loc = self.resolve(dest, root=root, must_exist=False, allow_reserved=allow_reserved)
        if os.path.lexists(dest_loc.location):
            raise ConflictError(f"Destination already exists: {dest}")

        try:
            await asyncio.to_thread(os.rename, src_loc.location, dest_loc.location)
        except FileNotFoundError:
            raise PathNotFoundError(f"Source not found: {src}") from None
        except OSError as e:
            raise self._failure("move", src, e) from e

    async def copy(self, src: str, dest: str, *, root: str) -> None:
        """Copy a file or a whole directory tree. Symlinks are copied as links."""
        src, dest, info = await validate_transfer(self, src, dest, root=root)
        src_loc = self.resolve(src, root=root)
        dest_loc = self.resolve(dest, root=root, must_exist=False)
        if os.path.lexists(dest_loc.location):
            raise ConflictError(f"Destination already exists: {dest}")

        def _copy() -> None:
            if info.is_dir:
                shutil.copytree(src_loc.location, dest_loc.location, symlinks=True)
            else:
                shutil.copy2(src_loc.location, dest_loc.location)

        try:
            await asyncio.to_thread(_copy)
        except FileNotFoundError:
            raise PathNotFoundError(f"Source not found: {src}") from None
        except (OSError, shutil.Error) as e:
            raise self._failure("copy", src, e) from e

    async def remove(self, path: str, *, root: str, allow_reserved: bool = False) -> None:
        """Permanently delete a file or directory tree."""
        loc = self.resolve(path, root=root, allow_reserved=allow_reserved)
        if loc.virtual_path == "/":
            raise InvalidOperationError("Cannot remove the root")

        def _delete() -> None:
            if os.path.isdir(loc.location) and not os.path.islink(loc.location):
                shutil.rmtree(loc.location)
            else:
                os.unlink(loc.location)

        try:
            await asyncio.to_thread(_delete)
        except FileNotFoundError:
            raise PathNotFoundError(f"Not found: {loc.virtual_path}") from None
        except OSError as e:
            raise self._failure("remove", loc.virtual_path, e) from e

    # =========================================================================
    # Records (trash sidecars)
    # =========================================================================

    def _meta_dir(self, root: str) -> str:
        return os.path.join(root, TRASH_NAME, META_NAME)

    async def write_record(self, name: str, data: bytes, *, root: str) -> None:
        """Durably write a sidecar; fsynced before returning."""
        meta_dir = self._meta_dir(root)
        target = os.path.join(meta_dir, validated_name(name))

        def _write() -> None:
            os.makedirs(meta_dir, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=meta_dir, prefix=".", suffix=".tmp")
            try:
                _fsync_write(fd, data)
                os.replace(tmp_path, target)
            except BaseException:
                with contextlib.suppress(OSError):
                    os.unlink(tmp_path)
                raise

        try:
            await asyncio.to_thread(_write)
        except OSError as e:
            raise self._failure("write record", name, e) from e

    async def read_record(self, name: str, *, root: str) -> bytes | None:
        target = os.path.join(self._meta_dir(root), validated_name(name))
        try:
            return await asyncio.to_thread(Path(target).read_bytes)
        except FileNotFoundError:
            return None
        except OSError as e:
            raise self._failure("read record", name, e) from e

    async def delete_record(self, name: str, *, root: str) -> None:
        target = Path(self._meta_dir(root), validated_name(name))
        try:
            await asyncio.to_thread(target.unlink, missing_ok=True)
        except OSError as e:
            raise self._failure("delete record", name, e) from e

    async def list_records(self, *, root: str) -> list[bytes]:
        meta_dir = self._meta_dir(root)

        def _read_all() -> list[bytes]:
            if not os.path.isdir(meta_dir):
                return []
            records: list[bytes] = []
            for name in sorted(os.listdir(meta_dir)):
                if not name.endswith(".json"):
                    continue
                try:
                    records.append(Path(meta_dir, name).read_bytes())
                except FileNotFoundError:
                    continue
            return records

        try:
            return await asyncio.to_thread(_read_all)
        except OSError as e:
            raise self._failure("list records", "/.trash/.meta", e) from e

    # =========================================================================
    # Multipart Uploads
    # =========================================================================

    async def create_multipart(self, path: str, *, root: str) -> MultipartHandle:
        """Allocate a scratch directory; parts land there as ``<n>.part``."""
        loc = self.resolve(path, root=root, must_exist=False)
        scratch = self.upload_tmp_dir / uuid.uuid4().hex
        try:
            await asyncio.to_thread(scratch.mkdir, parents=True)
        except OSError as e:
            raise self._failure("create upload", loc.virtual_path, e) from e
        return MultipartHandle(upload_ref=str(scratch), key=loc.virtual_path)

    async def upload_part(
        self,
        handle: MultipartHandle,
        part_number: int,
        data: bytes,
    ) -> None:
        """Write one part under a unique temp name, then rename it into place."""
        scratch = handle.upload_ref

        def _write() -> None:
            fd, tmp_path = tempfile.mkstemp(dir=scratch, prefix=".", suffix=".tmp")
            try:
                _fsync_write(fd, data)
                os.replace(tmp_path, os.path.join(scratch, f"{part_number}{PART_SUFFIX}"))
            except BaseException:
                with contextlib.suppress(OSError):
                    os.unlink(tmp_path)
                raise

        try:
            await asyncio.to_thread(_write)
        except OSError as e:
            raise self._failure("write part", handle.key, e) from e

    async def list_parts(self, handle: MultipartHandle) -> dict[int, str]:
        def _scan() -> dict[int, str]:
            parts: dict[int, str] = {}
            try:
                names = os.listdir(handle.upload_ref)
            except FileNotFoundError:
                return parts
            for name in names:
                if not name.endswith(PART_SUFFIX):
                    continue
                stem = name[: -len(PART_SUFFIX)]
                if stem.isdigit():
                    parts[int(stem)] = name
            return parts

        try:
            return await asyncio.to_thread(_scan)
        except OSError as e:
            raise self._failure("list parts", handle.key, e) from e

    async def complete_multipart(
        self,
        handle: MultipartHandle,
        path: str,
        *,
        root: str,
        total_parts: int,
        overwrite: bool = False,
    ) -> PathInfo:
        """Concatenate parts 1..N into a temp file beside the destination and publish it."""
        path = normalize_path(path)
        await require_parent_dir(self, path, root=root)
        existing = await self.stat(path, root=root)
        if existing is not None and (existing.is_dir or not overwrite):
            raise ConflictError(f"Destination already exists: {path}")

        present = await self.list_parts(handle)
        missing = [n for n in range(1, total_parts + 1) if n not in present]
        if missing:
            raise IncompleteUploadError(f"Missing parts for {path}", missing=missing)

        loc = self.resolve(path, root=root, must_exist=False)
        scratch = handle.upload_ref

        def _assemble() -> PathInfo:
            fd, tmp_path = tempfile.mkstemp(
                dir=os.path.dirname(loc.location), prefix=".cabinet-", suffix=".upload"
            )
            try:
                with os.fdopen(fd, "wb") as out:
                    for n in range(1, total_parts + 1):
                        with open(os.path.join(scratch, f"{n}{PART_SUFFIX}"), "rb") as part:
                            shutil.copyfileobj(part, out)
                    out.flush()
                    os.fsync(out.fileno())
            except BaseException:
                with contextlib.suppress(OSError):
                    os.unlink(tmp_path)
                raise
            _publish(tmp_path, loc.location, overwrite=overwrite)
            return _info_from_stat(os.stat(loc.location), False)

        try:
            info = await asyncio.to_thread(_assemble)
        except OSError as e:
            raise self._failure("assemble upload", path, e) from e

        await self.abort_multipart(handle)
        return info

    async def abort_multipart(self, handle: MultipartHandle) -> None:
        try:
            await asyncio.to_thread(shutil.rmtree, handle.upload_ref)
        except FileNotFoundError:
            pass
        except OSError:
            logger.warning("Failed to remove upload scratch %s", handle.upload_ref, exc_info=True)

    # =========================================================================
    # Archive Support
    # =========================================================================

    @asynccontextmanager
    async def materialize(
        self,
        paths: Sequence[str],
        *,
        root: str,
    ) -> AsyncIterator[tuple[str, list[str]]]:
        """Yield the real root and each item's path relative to it. Nothing is copied."""
        relative: list[str] = []
        for path in paths:
            loc = self.resolve(path, root=root)
            if loc.virtual_path == "/":
                raise InvalidOperationError("Cannot archive the root")
            relative.append(Path(os.path.relpath(loc.location, root)).as_posix())
        yield root, relative
