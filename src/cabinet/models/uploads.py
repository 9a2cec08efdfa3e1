"""UploadSession model: durable state of an in-progress chunked upload."""

from __future__ import annotations

import uuid

from sqlmodel import Field, SQLModel

from cabinet.fs.utils import join_path, now_ms


class UploadSessionBase(SQLModel):
    """Base fields for an upload session.

    ``backend_ref`` and ``backend_key`` hold the backend's multipart handle:
    a scratch directory and the destination path for local disk, an S3
    UploadId and object key for S3.
    """

    upload_id: str = Field(default_factory=lambda: uuid.uuid4().hex, primary_key=True)
    root_ref: str = Field(index=True)
    dest_dir: str
    file_name: str
    declared_size: int = Field(default=0)
    total_parts: int
    overwrite: bool = Field(default=False)
    backend_ref: str = Field(default="")
    backend_key: str = Field(default="")
    created_by: str = Field(default="")
    created_at: int = Field(default_factory=now_ms, index=True)

    @property
    def dest_path(self) -> str:
        return join_path(self.dest_dir, self.file_name)


class UploadSession(UploadSessionBase, table=True):
    """Default upload session table: ``cabinet_upload_sessions``."""

    __tablename__ = "cabinet_upload_sessions"
