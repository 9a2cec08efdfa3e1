"""Settings loaded from ``CABINET_*`` environment variables (or ``.env``)."""

from __future__ import annotations

from typing import TYPE_CHECKING, Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from cabinet.db import DEFAULT_DATABASE_URL
from cabinet.fs.archive import DEFAULT_LARGE_BYTES
from cabinet.fs.local_disk import LocalDiskBackend
from cabinet.fs.s3 import S3Backend

if TYPE_CHECKING:
    from cabinet.fs.protocol import StorageBackend

KIB = 1024
MIB = 1024 * 1024


class Settings(BaseSettings):
    """Process-wide configuration. Validation errors surface at startup."""

    model_config = SettingsConfigDict(
        env_prefix="CABINET_",
        env_file=".env",
        extra="ignore",
    )

    storage_mode: Literal["local", "s3"] | None = None
    file_root: str = "."

    s3_bucket: str = ""
    s3_region: str = "us-east-1"
    s3_endpoint: str | None = None
    s3_force_path_style: bool = False
    s3_root_prefix: str = ""
    s3_access_key_id: str | None = None
    s3_secret_access_key: str | None = None

    database_url: str = DEFAULT_DATABASE_URL
    upload_tmp_dir: str | None = None

    max_preview_bytes: int = Field(default=200 * KIB, gt=0)
    max_edit_bytes: int = Field(default=1 * MIB, gt=0)
    max_search_bytes: int | None = Field(default=None, gt=0)
    archive_large_mb: int = Field(default=DEFAULT_LARGE_BYTES // MIB, gt=0)

    @model_validator(mode="after")
    def _resolve_defaults(self) -> Settings:
        if self.storage_mode is None:
            self.storage_mode = "s3" if self.s3_bucket.strip() else "local"
        if self.storage_mode == "s3" and not self.s3_bucket.strip():
            raise ValueError("CABINET_S3_BUCKET is required when storage_mode is s3")
        if self.max_search_bytes is None:
            self.max_search_bytes = self.max_preview_bytes
        return self

    @property
    def archive_large_bytes(self) -> int:
        return self.archive_large_mb * MIB


def create_backend(settings: Settings) -> StorageBackend:
    """Pick the storage variant once, at startup."""
    if settings.storage_mode == "s3":
        return S3Backend(
            settings.s3_bucket.strip(),
            root_prefix=settings.s3_root_prefix,
            region=settings.s3_region,
            endpoint_url=settings.s3_endpoint or None,
            force_path_style=settings.s3_force_path_style,
            access_key_id=settings.s3_access_key_id,
            secret_access_key=settings.s3_secret_access_key,
        )
    return LocalDiskBackend(settings.file_root, upload_tmp_dir=settings.upload_tmp_dir)
