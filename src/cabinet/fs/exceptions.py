"""Custom exception hierarchy for the Cabinet storage layer.

Every class carries a stable ``code`` so the caller layer can map failures
onto its own responses without string matching.
"""

from __future__ import annotations


class CabinetError(Exception):
    """Base exception for all Cabinet storage errors."""

    code = "error"


class PathEscapeError(CabinetError):
    """Raised when a path resolves outside the user's root or into a reserved area."""

    code = "path_escape"


class PathNotFoundError(CabinetError):
    """Raised when a file or directory path does not exist."""

    code = "not_found"


class UploadNotFoundError(PathNotFoundError):
    """Raised when an upload session id is unknown."""


class ShareNotFoundError(PathNotFoundError):
    """Raised when a share token is unknown or its file is gone."""


class TrashRecordNotFoundError(PathNotFoundError):
    """Raised when a trash record id is unknown."""


class NotDirectoryError(CabinetError):
    """Raised when a directory was required but the path is a file."""

    code = "not_a_directory"


class NotFileError(CabinetError):
    """Raised when a file was required but the path is a directory."""

    code = "not_a_file"


class ConflictError(CabinetError):
    """Raised when the destination of an operation is already occupied."""

    code = "conflict"


class AlreadyExistsError(ConflictError):
    """Raised when creating something that already exists."""

    code = "already_exists"


class TooLargeError(CabinetError):
    """Raised when content exceeds a size guard."""

    code = "too_large"


class TypeNotAllowedError(CabinetError):
    """Raised when a file extension is outside the relevant allow-list."""

    code = "type_not_allowed"


class ReadOnlyError(CabinetError):
    """Raised when a read-only user attempts a mutation."""

    code = "read_only"


class IncompleteUploadError(CabinetError):
    """Raised when an upload is completed before all parts are present."""

    code = "incomplete"

    def __init__(self, message: str, missing: list[int] | None = None) -> None:
        super().__init__(message)
        self.missing = missing or []


class InvalidOperationError(CabinetError):
    """Raised for requests that can never succeed, e.g. moving a folder into itself."""

    code = "invalid_operation"


class RootDeletionForbiddenError(InvalidOperationError):
    """Raised when trashing the virtual root."""


class InvalidNameError(InvalidOperationError):
    """Raised when a file or folder name is empty or contains separators."""


class InvalidTargetError(CabinetError):
    """Raised when a restore target location is no longer usable."""

    code = "invalid_target"


class InvalidFormatError(CabinetError):
    """Raised for unsupported archive formats."""

    code = "invalid_format"


class StorageError(CabinetError):
    """Raised on storage backend failures (disk I/O, S3 errors, etc.)."""

    code = "internal"
