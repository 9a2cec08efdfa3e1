"""S3Backend: the same operations over an S3-compatible bucket.

Directories are implicit: a path is a directory when any object lives under
``key + "/"``. ``mkdir`` writes a zero-byte ``prefix/`` marker so empty
folders survive. All boto3 calls run on worker threads.
"""

from __future__ import annotations

import asyncio
import logging
import os
import posixpath
import shutil
import tempfile
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from .exceptions import (
    AlreadyExistsError,
    ConflictError,
    IncompleteUploadError,
    InvalidOperationError,
    NotDirectoryError,
    NotFileError,
    PathEscapeError,
    PathNotFoundError,
    StorageError,
    TooLargeError,
)
from .operations import require_parent_dir, validate_creation, validate_transfer, validated_name
from .resolver import (
    normalize_s3_prefix,
    resolve_s3,
    resolve_s3_user_root,
    to_key,
    to_prefix,
)
from .types import DirEntry, FileContent, MultipartHandle, PathInfo, StorageStats, sort_entries
from .utils import META_NAME, TRASH_NAME, guess_mime_type, is_within, normalize_path, to_ms

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Sequence

    from .types import ResolvedLocation

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 64 * 1024
NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound", "NoSuchUpload"}


def is_not_found(error: ClientError) -> bool:
    err = error.response.get("Error", {})
    status = error.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
    return err.get("Code") in NOT_FOUND_CODES or status == 404


class S3Backend:
    """S3 storage backend.

    ``root_ref`` values are key prefixes ending in ``/`` (or ``""`` for the
    whole bucket). A client may be injected; otherwise one is built by
    :meth:`open` from the connection settings.
    """

    def __init__(
        self,
        bucket: str,
        *,
        root_prefix: str = "",
        region: str = "us-east-1",
        endpoint_url: str | None = None,
        force_path_style: bool = False,
        access_key_id: str | None = None,
        secret_access_key: str | None = None,
        client: Any = None,
    ) -> None:
        if not bucket:
            raise ValueError("S3 bucket is required")
        self.bucket = bucket
        self.root_prefix = normalize_s3_prefix(root_prefix)
        self.region = region
        self.endpoint_url = endpoint_url
        self.force_path_style = force_path_style
        self._access_key_id = access_key_id
        self._secret_access_key = secret_access_key
        self._client = client

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def open(self) -> None:
        if self._client is not None:
            return
        config = Config(s3={"addressing_style": "path"}) if self.force_path_style else None
        self._client = boto3.client(
            "s3",
            region_name=self.region,
            endpoint_url=self.endpoint_url,
            aws_access_key_id=self._access_key_id,
            aws_secret_access_key=self._secret_access_key,
            config=config,
        )

    async def close(self) -> None:
        client, self._client = self._client, None
        if client is not None and hasattr(client, "close"):
            await asyncio.to_thread(client.close)

    @property
    def client(self) -> Any:
        if self._client is None:
            raise StorageError("S3 client is not configured.")
        return self._client

    async def _call(self, operation: str, *, missing_ok: bool = False, **kwargs: Any) -> Any:
        """Run one client call on a worker thread.

        Not-found errors return None when *missing_ok*; every other failure
        is logged and raised as ``StorageError``.
        """
        method = getattr(self.client, operation)
        try:
            return await asyncio.to_thread(method, Bucket=self.bucket, **kwargs)
        except ClientError as e:
            if missing_ok and is_not_found(e):
                return None
            logger.error("S3 %s failed", operation, exc_info=True)
            raise StorageError(f"S3 {operation} failed: {e}") from e
        except BotoCoreError as e:
            logger.error("S3 %s failed", operation, exc_info=True)
            raise StorageError(f"S3 {operation} failed: {e}") from e

    # =========================================================================
    # Path Resolution
    # =========================================================================

    def resolve_user_root(self, root_path: str) -> str:
        return resolve_s3_user_root(self.root_prefix, root_path)

    def resolve(
        self,
        path: str,
        *,
        root: str,
        must_exist: bool = True,
        allow_reserved: bool = False,
    ) -> ResolvedLocation:
        # Existence is checked by stat(); key construction never touches the store.
        return resolve_s3(path, root, allow_reserved=allow_reserved)

    # =========================================================================
    # Object Helpers
    # =========================================================================

    async def _head(self, key: str) -> dict[str, Any] | None:
        if not key or key.endswith("/"):
            return None
        return await self._call("head_object", Key=key, missing_ok=True)

    async def _prefix_exists(self, prefix: str) -> bool:
        if not prefix:
            return True
        response = await self._call("list_objects_v2", Prefix=prefix, MaxKeys=1)
        return bool(response.get("Contents"))

    async def _list_objects(self, prefix: str) -> list[dict[str, Any]]:
        """Every object under *prefix*, following continuation tokens."""
        objects: list[dict[str, Any]] = []
        token: str | None = None
        while True:
            kwargs: dict[str, Any] = {"Prefix": prefix}
            if token:
                kwargs["ContinuationToken"] = token
            response = await self._call("list_objects_v2", **kwargs)
            objects.extend(response.get("Contents", []))
            if not response.get("IsTruncated"):
                return objects
            token = response.get("NextContinuationToken")

    async def _copy_object(self, src_key: str, dest_key: str) -> None:
        await self._call(
            "copy_object",
            Key=dest_key,
            CopySource={"Bucket": self.bucket, "Key": src_key},
        )

    async def _delete_object(self, key: str) -> None:
        await self._call("delete_object", Key=key)

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
        """Classify a path: an object at the key is a file, objects under it make a dir."""
        loc = self.resolve(path, root=root, allow_reserved=allow_reserved)
        if loc.virtual_path == "/":
            return PathInfo(type="dir")

        head = await self._head(loc.location)
        if head is not None:
            return PathInfo(
                type="file",
                size=head.get("ContentLength", 0),
                mtime=to_ms(head.get("LastModified")),
            )

        if await self._prefix_exists(to_prefix(loc.virtual_path, root)):
            return PathInfo(type="dir")
        return None

    async def list_dir(self, path: str = "/", *, root: str) -> list[DirEntry]:
        """List one level using the ``/`` delimiter. ``.trash`` is hidden at root."""
        loc = self.resolve(path, root=root)
        info = await self.stat(loc.virtual_path, root=root)
        if info is None:
            raise PathNotFoundError(f"Directory not found: {loc.virtual_path}")
        if not info.is_dir:
            raise NotDirectoryError(f"Not a directory: {loc.virtual_path}")

        prefix = to_prefix(loc.virtual_path, root)
        at_root = loc.virtual_path == "/"
        entries: list[DirEntry] = []
        token: str | None = None
        while True:
            kwargs: dict[str, Any] = {"Prefix": prefix, "Delimiter": "/"}
            if token:
                kwargs["ContinuationToken"] = token
            response = await self._call("list_objects_v2", **kwargs)

            for common in response.get("CommonPrefixes", []):
                name = common.get("Prefix", "")[len(prefix):].rstrip("/")
                if not name or (at_root and name == TRASH_NAME):
                    continue
                entries.append(DirEntry(name=name, type="dir"))

            for item in response.get("Contents", []):
                key = item.get("Key", "")
                if key == prefix:
                    continue
                name = key[len(prefix):]
                if not name or name.endswith("/"):
                    continue
                entries.append(
                    DirEntry(
                        name=name,
                        type="file",
                        size=item.get("Size", 0),
                        mtime=to_ms(item.get("LastModified")),
                    )
                )

            if not response.get("IsTruncated"):
                break
            token = response.get("NextContinuationToken")

        return sort_entries(entries)

    async def _require_file(self, path: str, *, root: str) -> tuple[ResolvedLocation, PathInfo]:
        loc = self.resolve(path, root=root)
        info = await self.stat(loc.virtual_path, root=root)
        if info is None:
            raise PathNotFoundError(f"File not found: {loc.virtual_path}")
        if not info.is_file:
            raise NotFileError(f"Path is a directory, not a file: {loc.virtual_path}")
        return loc, info

    async def read_file(
        self,
        path: str,
        *,
        root: str,
        max_bytes: int | None = None,
    ) -> FileContent:
        """Read a whole object. HEAD decides the size guard before the GET."""
        loc, info = await self._require_file(path, root=root)
        if max_bytes is not None and info.size > max_bytes:
            raise TooLargeError(
                f"File too large ({info.size:,} bytes, limit {max_bytes:,}): "
                f"{loc.virtual_path}"
            )

        response = await self._call("get_object", Key=loc.location, missing_ok=True)
        if response is None:
            raise PathNotFoundError(f"File not found: {loc.virtual_path}")
        body = response["Body"]
        try:
            content = await asyncio.to_thread(body.read)
        finally:
            body.close()

        return FileContent(
            path=loc.virtual_path,
            name=os.path.basename(loc.virtual_path),
            size=len(content),
            mtime=info.mtime,
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
        response = await self._call("get_object", Key=loc.location, missing_ok=True)
        if response is None:
            raise PathNotFoundError(f"File not found: {loc.virtual_path}")
        body = response["Body"]
        try:
            while True:
                chunk = await asyncio.to_thread(body.read, chunk_size)
                if not chunk:
                    break
                yield chunk
        finally:
            body.close()

    async def tree_size(self, path: str, *, root: str, limit: int | None = None) -> int:
        loc = self.resolve(path, root=root)
        head = await self._head(loc.location)
        if head is not None:
            return head.get("ContentLength", 0)

        total = 0
        for obj in await self._list_objects(to_prefix(loc.virtual_path, root)):
            if obj["Key"].endswith("/"):
                continue
            total += obj.get("Size", 0)
            if limit is not None and total >= limit:
                break
        return total

    async def storage_stats(self, *, root: str) -> StorageStats:
        trash_prefix = f"{root}{TRASH_NAME}/"
        total_bytes = 0
        total_files = 0
        for obj in await self._list_objects(root):
            key = obj["Key"]
            if key.endswith("/") or key.startswith(trash_prefix):
                continue
            total_bytes += obj.get("Size", 0)
            total_files += 1
        return StorageStats(total_bytes=total_bytes, total_files=total_files)

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
        """Single PUT; S3 makes the new object visible atomically."""
        path = await validate_creation(self, path, root=root)
        existing = await self.stat(path, root=root)
        if existing is not None:
            if existing.is_dir:
                raise NotFileError(f"Path is a directory, not a file: {path}")
            if not overwrite:
                raise AlreadyExistsError(f"File already exists: {path}")

        key = to_key(path, root)
        await self._call(
            "put_object", Key=key, Body=data, ContentType=guess_mime_type(path)
        )
        info = await self.stat(path, root=root)
        return info or PathInfo(type="file", size=len(data))

    async def mkdir(
        self,
        path: str,
        *,
        root: str,
        allow_reserved: bool = False,
        exist_ok: bool = False,
    ) -> None:
        path = normalize_path(path)
        existing = await self.stat(path, root=root, allow_reserved=allow_reserved)
        if existing is not None:
            if exist_ok and existing.is_dir:
                return
            raise AlreadyExistsError(f"Path already exists: {path}")

        path = await validate_creation(self, path, root=root, allow_reserved=allow_reserved)
        self.resolve(path, root=root, allow_reserved=allow_reserved)
        await self._call("put_object", Key=to_prefix(path, root), Body=b"")

    async def _transfer(
        self, src: str, dest: str, info: PathInfo, *, root: str, delete: bool
    ) -> None:
        if info.is_file:
            src_key = to_key(src, root)
            await self._copy_object(src_key, to_key(dest, root))
            if delete:
                await self._delete_object(src_key)
            return

        src_prefix = to_prefix(src, root)
        dest_prefix = to_prefix(dest, root)
        objects = await self._list_objects(src_prefix)
        if not objects:
            await self._call("put_object", Key=dest_prefix, Body=b"")
            return
        for obj in objects:
            relative = obj["Key"][len(src_prefix):]
            await self._copy_object(obj["Key"], f"{dest_prefix}{relative}")
        if delete:
            for obj in objects:
                await self._delete_object(obj["Key"])

    async def move(
        self,
        src: str,
        dest: str,
        *,
        root: str,
        allow_reserved: bool = False,
    ) -> None:
        """Copy every object to the new prefix, then delete the originals.

        Not atomic for directories: a failure part way leaves both copies
        and surfaces as ``StorageError``.
        """
        src, dest, info = await validate_transfer(
            self, src, dest, root=root, allow_reserved=allow_reserved
        )
        await self._transfer(src, dest, info, root=root, delete=True)

    async def copy(self, src: str, dest: str, *, root: str) -> None:
        src, dest, info = await validate_transfer(self, src, dest, root=root)
        await self._transfer(src, dest, info, root=root, delete=False)

    async def remove(self, path: str, *, root: str, allow_reserved: bool = False) -> None:
        loc = self.resolve(path, root=root, allow_reserved=allow_reserved)
        if loc.virtual_path == "/":
            raise InvalidOperationError("Cannot remove the root")
        info = await self.stat(loc.virtual_path, root=root, allow_reserved=allow_reserved)
        if info is None:
            raise PathNotFoundError(f"Not found: {loc.virtual_path}")
        if info.is_file:
            await self._delete_object(loc.location)
            return
        for obj in await self._list_objects(to_prefix(loc.virtual_path, root)):
            await self._delete_object(obj["Key"])

    # =========================================================================
    # Records (trash sidecars)
    # =========================================================================

    def _meta_prefix(self, root: str) -> str:
        return f"{root}{TRASH_NAME}/{META_NAME}/"

    async def write_record(self, name: str, data: bytes, *, root: str) -> None:
        key = self._meta_prefix(root) + validated_name(name)
        await self._call("put_object", Key=key, Body=data, ContentType="application/json")

    async def read_record(self, name: str, *, root: str) -> bytes | None:
        key = self._meta_prefix(root) + validated_name(name)
        response = await self._call("get_object", Key=key, missing_ok=True)
        if response is None:
            return None
        body = response["Body"]
        try:
            return await asyncio.to_thread(body.read)
        finally:
            body.close()

    async def delete_record(self, name: str, *, root: str) -> None:
        key = self._meta_prefix(root) + validated_name(name)
        await self._call("delete_object", Key=key, missing_ok=True)

    async def list_records(self, *, root: str) -> list[bytes]:
        prefix = self._meta_prefix(root)
        records: list[bytes] = []
        for obj in await self._list_objects(prefix):
            name = obj["Key"][len(prefix):]
            if "/" in name or not name.endswith(".json"):
                continue
            data = await self.read_record(name, root=root)
            if data is not None:
                records.append(data)
        return records

    # =========================================================================
    # Multipart Uploads
    # =========================================================================

    async def create_multipart(self, path: str, *, root: str) -> MultipartHandle:
        loc = self.resolve(path, root=root)
        response = await self._call(
            "create_multipart_upload",
            Key=loc.location,
            ContentType=guess_mime_type(loc.virtual_path),
        )
        return MultipartHandle(upload_ref=response["UploadId"], key=loc.location)

    async def upload_part(
        self,
        handle: MultipartHandle,
        part_number: int,
        data: bytes,
    ) -> None:
        """Re-uploading a part number replaces it; S3 keeps the latest ETag."""
        await self._call(
            "upload_part",
            Key=handle.key,
            UploadId=handle.upload_ref,
            PartNumber=part_number,
            Body=data,
        )

    async def list_parts(self, handle: MultipartHandle) -> dict[int, str]:
        """Part number -> ETag. An unknown or finished upload lists nothing."""
        parts: dict[int, str] = {}
        marker: int | None = None
        while True:
            kwargs: dict[str, Any] = {"Key": handle.key, "UploadId": handle.upload_ref}
            if marker is not None:
                kwargs["PartNumberMarker"] = marker
            response = await self._call("list_parts", missing_ok=True, **kwargs)
            if response is None:
                return parts
            for part in response.get("Parts", []):
                parts[part["PartNumber"]] = part["ETag"]
            if not response.get("IsTruncated"):
                return parts
            marker = response.get("NextPartNumberMarker")

    async def complete_multipart(
        self,
        handle: MultipartHandle,
        path: str,
        *,
        root: str,
        total_parts: int,
        overwrite: bool = False,
    ) -> PathInfo:
        """Ask S3 to stitch parts 1..N together in ascending order."""
        path = normalize_path(path)
        await require_parent_dir(self, path, root=root)
        existing = await self.stat(path, root=root)
        if existing is not None and (existing.is_dir or not overwrite):
            raise ConflictError(f"Destination already exists: {path}")

        present = await self.list_parts(handle)
        missing = [n for n in range(1, total_parts + 1) if n not in present]
        if missing:
            raise IncompleteUploadError(f"Missing parts for {path}", missing=missing)

        parts = [{"PartNumber": n, "ETag": present[n]} for n in range(1, total_parts + 1)]
        await self._call(
            "complete_multipart_upload",
            Key=handle.key,
            UploadId=handle.upload_ref,
            MultipartUpload={"Parts": parts},
        )
        info = await self.stat(path, root=root)
        if info is None:
            raise StorageError(f"Completed upload is not visible: {path}")
        return info

    async def abort_multipart(self, handle: MultipartHandle) -> None:
        await self._call(
            "abort_multipart_upload",
            Key=handle.key,
            UploadId=handle.upload_ref,
            missing_ok=True,
        )

    # =========================================================================
    # Archive Support
    # =========================================================================

    async def _download(self, key: str, dest: str) -> None:
        response = await self._call("get_object", Key=key, missing_ok=True)
        if response is None:
            raise PathNotFoundError("Object vanished while archiving")
        body = response["Body"]

        def _write() -> None:
            os.makedirs(os.path.dirname(dest), exist_ok=True)
            with open(dest, "wb") as f:
                while True:
                    chunk = body.read(DEFAULT_CHUNK_SIZE)
                    if not chunk:
                        break
                    f.write(chunk)

        try:
            await asyncio.to_thread(_write)
        except OSError as e:
            logger.error("Failed to stage %s for archiving", key, exc_info=True)
            raise StorageError(f"Failed to stage object for archiving: {e}") from e
        finally:
            body.close()

    @staticmethod
    def _scratch_target(scratch: str, rel: str, key_suffix: str) -> str:
        """Local path for an object below a selected prefix, confined to *scratch*."""
        parts = key_suffix.split("/")
        if key_suffix.startswith("/") or "\\" in key_suffix or ".." in parts:
            raise PathEscapeError(f"Unsafe object key below {rel}: {key_suffix!r}")
        suffix = posixpath.normpath(key_suffix) if key_suffix.strip("/") else ""
        target = os.path.join(scratch, rel, *[p for p in suffix.split("/") if p])
        if not is_within(os.path.realpath(target), os.path.realpath(scratch), os.sep):
            raise PathEscapeError(f"Unsafe object key below {rel}: {key_suffix!r}")
        return target

    @staticmethod
    def _makedirs(path: str) -> None:
        try:
            os.makedirs(path, exist_ok=True)
        except OSError as e:
            logger.error("Failed to create archive scratch dir %s", path, exc_info=True)
            raise StorageError(f"Failed to stage directory for archiving: {e}") from e

    @asynccontextmanager
    async def materialize(
        self,
        paths: Sequence[str],
        *,
        root: str,
    ) -> AsyncIterator[tuple[str, list[str]]]:
        """Download the selected items into a scratch tree, removed on exit."""
        scratch = await asyncio.to_thread(tempfile.mkdtemp, prefix="cabinet-archive-")
        try:
            relative: list[str] = []
            for path in paths:
                loc = self.resolve(path, root=root)
                if loc.virtual_path == "/":
                    raise InvalidOperationError("Cannot archive the root")
                info = await self.stat(loc.virtual_path, root=root)
                if info is None:
                    raise PathNotFoundError(f"Not found: {loc.virtual_path}")

                rel = loc.virtual_path.lstrip("/")
                relative.append(rel)
                if info.is_file:
                    await self._download(loc.location, os.path.join(scratch, rel))
                    continue

                prefix = to_prefix(loc.virtual_path, root)
                await asyncio.to_thread(self._makedirs, os.path.join(scratch, rel))
                for obj in await self._list_objects(prefix):
                    key = obj["Key"]
                    target = self._scratch_target(scratch, rel, key[len(prefix):])
                    if key.endswith("/"):
                        await asyncio.to_thread(self._makedirs, target)
                    else:
                        await self._download(key, target)
            yield scratch, relative
        finally:
            try:
                await asyncio.to_thread(shutil.rmtree, scratch)
            except OSError:
                logger.warning("Failed to remove archive scratch %s", scratch, exc_info=True)
