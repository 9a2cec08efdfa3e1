"""Storage layer: backends, path confinement, permissions, and archives."""

from cabinet.fs.archive import ArchiveBuilder, Archiver, PythonArchiver, SubprocessArchiver
from cabinet.fs.exceptions import (
    AlreadyExistsError,
    CabinetError,
    ConflictError,
    IncompleteUploadError,
    InvalidFormatError,
    InvalidNameError,
    InvalidOperationError,
    InvalidTargetError,
    NotDirectoryError,
    NotFileError,
    PathEscapeError,
    PathNotFoundError,
    ReadOnlyError,
    RootDeletionForbiddenError,
    ShareNotFoundError,
    StorageError,
    TooLargeError,
    TrashRecordNotFoundError,
    TypeNotAllowedError,
    UploadNotFoundError,
)
from cabinet.fs.local_disk import LocalDiskBackend
from cabinet.fs.permissions import Role, normalize_role, require_write
from cabinet.fs.protocol import (
    StorageBackend,
    SupportsArchive,
    SupportsMultipart,
    SupportsRecords,
)
from cabinet.fs.s3 import S3Backend
from cabinet.fs.types import (
    ArchiveFormat,
    ArchiveStream,
    Compression,
    DirEntry,
    FileContent,
    FileStream,
    Listing,
    MultipartHandle,
    PathInfo,
    ShareView,
    StorageStats,
    UserContext,
)
from cabinet.fs.utils import normalize_path, sanitize_name

__all__ = [
    "AlreadyExistsError",
    "ArchiveBuilder",
    "ArchiveFormat",
    "ArchiveStream",
    "Archiver",
    "CabinetError",
    "Compression",
    "ConflictError",
    "DirEntry",
    "FileContent",
    "FileStream",
    "IncompleteUploadError",
    "InvalidFormatError",
    "InvalidNameError",
    "InvalidOperationError",
    "InvalidTargetError",
    "Listing",
    "LocalDiskBackend",
    "MultipartHandle",
    "NotDirectoryError",
    "NotFileError",
    "PathEscapeError",
    "PathInfo",
    "PathNotFoundError",
    "PythonArchiver",
    "ReadOnlyError",
    "Role",
    "RootDeletionForbiddenError",
    "S3Backend",
    "ShareNotFoundError",
    "ShareView",
    "StorageBackend",
    "StorageError",
    "StorageStats",
    "SubprocessArchiver",
    "SupportsArchive",
    "SupportsMultipart",
    "SupportsRecords",
    "TooLargeError",
    "TrashRecordNotFoundError",
    "TypeNotAllowedError",
    "UploadNotFoundError",
    "UserContext",
    "normalize_path",
    "normalize_role",
    "require_write",
    "sanitize_name",
]
