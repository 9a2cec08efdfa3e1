"""Shared fixtures for Cabinet tests."""

from __future__ import annotations

import io
import uuid
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import pytest
from botocore.exceptions import ClientError

from cabinet._cabinet import Cabinet
from cabinet.db import Database
from cabinet.events import EventBus
from cabinet.fs.archive import PythonArchiver
from cabinet.fs.local_disk import LocalDiskBackend
from cabinet.fs.permissions import Role
from cabinet.fs.s3 import S3Backend
from cabinet.fs.types import UserContext

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from pathlib import Path

BUCKET = "cabinet-test"


# =========================================================================
# In-memory S3
# =========================================================================


def _client_error(code: str, operation: str, status: int = 404) -> ClientError:
    return ClientError(
        {
            "Error": {"Code": code, "Message": code},
            "ResponseMetadata": {"HTTPStatusCode": status},
        },
        operation,
    )


class FakeS3Client:
    """Just enough of the boto3 S3 client surface for S3Backend.

    ``page_size`` caps every listing page so continuation tokens and
    part-number markers get exercised.
    """

    def __init__(self, page_size: int = 1000) -> None:
        self.page_size = page_size
        self.objects: dict[str, dict[str, Any]] = {}
        self.uploads: dict[str, dict[str, Any]] = {}
        self.calls: list[str] = []

    def _store(self, key: str, data: bytes, content_type: str | None = None) -> None:
        self.objects[key] = {
            "Body": bytes(data),
            "LastModified": datetime.now(UTC),
            "ContentType": content_type or "binary/octet-stream",
        }

    def head_object(self, Bucket: str, Key: str) -> dict[str, Any]:
        self.calls.append("head_object")
        obj = self.objects.get(Key)
        if obj is None:
            raise _client_error("404", "HeadObject")
        return {
            "ContentLength": len(obj["Body"]),
            "LastModified": obj["LastModified"],
            "ContentType": obj["ContentType"],
        }

    def get_object(self, Bucket: str, Key: str) -> dict[str, Any]:
        self.calls.append("get_object")
        obj = self.objects.get(Key)
        if obj is None:
            raise _client_error("NoSuchKey", "GetObject")
        return {"Body": io.BytesIO(obj["Body"]), "ContentLength": len(obj["Body"])}

    def put_object(
        self, Bucket: str, Key: str, Body: bytes = b"", ContentType: str | None = None
    ) -> dict[str, Any]:
        self.calls.append("put_object")
        self._store(Key, Body, ContentType)
        return {"ETag": f'"{uuid.uuid4().hex}"'}

    def copy_object(self, Bucket: str, Key: str, CopySource: dict[str, str]) -> dict[str, Any]:
        self.calls.append("copy_object")
        src = self.objects.get(CopySource["Key"])
        if src is None:
            raise _client_error("NoSuchKey", "CopyObject")
        self._store(Key, src["Body"], src["ContentType"])
        return {}

    def delete_object(self, Bucket: str, Key: str) -> dict[str, Any]:
        self.calls.append("delete_object")
        self.objects.pop(Key, None)
        return {}

    def list_objects_v2(
        self,
        Bucket: str,
        Prefix: str = "",
        Delimiter: str | None = None,
        MaxKeys: int | None = None,
        ContinuationToken: str | None = None,
    ) -> dict[str, Any]:
        self.calls.append("list_objects_v2")
        items: list[tuple[str, str]] = []
        seen_prefixes: set[str] = set()
        for key in sorted(self.objects):
            if not key.startswith(Prefix):
                continue
            rest = key[len(Prefix):]
            if Delimiter and Delimiter in rest:
                common = Prefix + rest[: rest.index(Delimiter) + 1]
                if common not in seen_prefixes:
                    seen_prefixes.add(common)
                    items.append(("prefix", common))
                continue
            items.append(("key", key))

        limit = min(MaxKeys or self.page_size, self.page_size)
        start = int(ContinuationToken or 0)
        page = items[start : start + limit]
        truncated = start + limit < len(items)

        response: dict[str, Any] = {
            "Contents": [
                {
                    "Key": key,
                    "Size": len(self.objects[key]["Body"]),
                    "LastModified": self.objects[key]["LastModified"],
                }
                for kind, key in page
                if kind == "key"
            ],
            "CommonPrefixes": [{"Prefix": p} for kind, p in page if kind == "prefix"],
            "IsTruncated": truncated,
        }
        if truncated:
            response["NextContinuationToken"] = str(start + limit)
        return response

    # -- multipart ----------------------------------------------------------

    def create_multipart_upload(
        self, Bucket: str, Key: str, ContentType: str | None = None
    ) -> dict[str, Any]:
        self.calls.append("create_multipart_upload")
        upload_id = uuid.uuid4().hex
        self.uploads[upload_id] = {"Key": Key, "Parts": {}, "ContentType": ContentType}
        return {"UploadId": upload_id, "Key": Key}

    def _upload(self, upload_id: str, key: str, operation: str) -> dict[str, Any]:
        upload = self.uploads.get(upload_id)
        if upload is None or upload["Key"] != key:
            raise _client_error("NoSuchUpload", operation)
        return upload

    def upload_part(
        self, Bucket: str, Key: str, UploadId: str, PartNumber: int, Body: bytes
    ) -> dict[str, Any]:
        self.calls.append("upload_part")
        upload = self._upload(UploadId, Key, "UploadPart")
        etag = f'"{uuid.uuid4().hex}"'
        upload["Parts"][PartNumber] = {"ETag": etag, "Body": bytes(Body)}
        return {"ETag": etag}

    def list_parts(
        self,
        Bucket: str,
        Key: str,
        UploadId: str,
        PartNumberMarker: int | None = None,
    ) -> dict[str, Any]:
        self.calls.append("list_parts")
        upload = self._upload(UploadId, Key, "ListParts")
        numbers = sorted(n for n in upload["Parts"] if n > (PartNumberMarker or 0))
        page = numbers[: self.page_size]
        truncated = len(numbers) > len(page)
        response: dict[str, Any] = {
            "Parts": [
                {
                    "PartNumber": n,
                    "ETag": upload["Parts"][n]["ETag"],
                    "Size": len(upload["Parts"][n]["Body"]),
                }
                for n in page
            ],
            "IsTruncated": truncated,
        }
        if truncated:
            response["NextPartNumberMarker"] = page[-1]
        return response

    def complete_multipart_upload(
        self,
        Bucket: str,
        Key: str,
        UploadId: str,
        MultipartUpload: dict[str, Any],
    ) -> dict[str, Any]:
        self.calls.append("complete_multipart_upload")
        upload = self._upload(UploadId, Key, "CompleteMultipartUpload")
        numbers = [p["PartNumber"] for p in MultipartUpload["Parts"]]
        if numbers != sorted(numbers):
            raise _client_error("InvalidPartOrder", "CompleteMultipartUpload", 400)
        data = b""
        for part in MultipartUpload["Parts"]:
            stored = upload["Parts"].get(part["PartNumber"])
            if stored is None or stored["ETag"] != part["ETag"]:
                raise _client_error("InvalidPart", "CompleteMultipartUpload", 400)
            data += stored["Body"]
        self._store(Key, data, upload["ContentType"])
        del self.uploads[UploadId]
        return {"Key": Key}

    def abort_multipart_upload(self, Bucket: str, Key: str, UploadId: str) -> dict[str, Any]:
        self.calls.append("abort_multipart_upload")
        self._upload(UploadId, Key, "AbortMultipartUpload")
        del self.uploads[UploadId]
        return {}


# =========================================================================
# Backends
# =========================================================================


@pytest.fixture
def file_root(tmp_path: Path) -> Path:
    root = tmp_path / "files"
    root.mkdir()
    return root


@pytest.fixture
async def local_backend(tmp_path: Path, file_root: Path) -> AsyncIterator[LocalDiskBackend]:
    backend = LocalDiskBackend(file_root, upload_tmp_dir=tmp_path / "uploads")
    await backend.open()
    yield backend
    await backend.close()


@pytest.fixture
def fake_s3() -> FakeS3Client:
    return FakeS3Client(page_size=3)


@pytest.fixture
async def s3_backend(fake_s3: FakeS3Client) -> AsyncIterator[S3Backend]:
    backend = S3Backend(BUCKET, root_prefix="tenant", client=fake_s3)
    await backend.open()
    yield backend
    await backend.close()


@pytest.fixture(params=["local", "s3"])
async def backend(request: pytest.FixtureRequest, tmp_path: Path, file_root: Path):
    """Each test using this fixture runs once per storage variant."""
    if request.param == "local":
        store: Any = LocalDiskBackend(file_root, upload_tmp_dir=tmp_path / "uploads")
    else:
        store = S3Backend(BUCKET, root_prefix="tenant", client=FakeS3Client(page_size=3))
    await store.open()
    yield store
    await store.close()


@pytest.fixture
def root(backend: Any) -> str:
    """root_ref of a user confined to the whole file root."""
    return backend.resolve_user_root("/")


# =========================================================================
# Database & facade
# =========================================================================


@pytest.fixture
async def db(tmp_path: Path) -> AsyncIterator[Database]:
    database = Database.for_path(tmp_path / "cabinet.db")
    await database.open()
    yield database
    await database.close()


@pytest.fixture
async def cabinet(backend: Any, db: Database) -> AsyncIterator[Cabinet]:
    cab = Cabinet(
        backend,
        db,
        events=EventBus(),
        archiver=PythonArchiver(),
        max_preview_bytes=1024,
        max_edit_bytes=2048,
    )
    await cab.open()
    yield cab
    await cab.close()


@pytest.fixture
def writer(cabinet: Cabinet) -> UserContext:
    return UserContext("alice", Role.READ_WRITE, cabinet.resolve_user_root("/"))


@pytest.fixture
def reader(cabinet: Cabinet) -> UserContext:
    return UserContext("bob", Role.READ_ONLY, cabinet.resolve_user_root("/"))
