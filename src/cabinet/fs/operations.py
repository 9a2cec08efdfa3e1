"""Standalone validation shared by both backends.

Each function takes the backend as a parameter and only uses its public
``stat``, so the local and S3 variants enforce the same checks in the same
order.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from .exceptions import (
    AlreadyExistsError,
    ConflictError,
    InvalidNameError,
    InvalidOperationError,
    NotDirectoryError,
    PathNotFoundError,
)
from .utils import is_nested, is_reserved_path, normalize_path, sanitize_name, split_path

if TYPE_CHECKING:
    from .protocol import StorageBackend
    from .types import PathInfo


def validated_name(name: str) -> str:
    """Return *name* unchanged if it is a usable single segment."""
    if sanitize_name(name) != name:
        raise InvalidNameError(f"Invalid name: {name!r}")
    return name


async def require_parent_dir(
    backend: StorageBackend,
    path: str,
    *,
    root: str,
    allow_reserved: bool = False,
) -> str:
    """Check that the parent of *path* is an existing directory; return it."""
    parent, _ = split_path(path)
    info = await backend.stat(parent, root=root, allow_reserved=allow_reserved)
    if info is None:
        raise PathNotFoundError(f"Parent directory not found: {parent}")
    if not info.is_dir:
        raise NotDirectoryError(f"Not a directory: {parent}")
    return parent


async def validate_creation(
    backend: StorageBackend,
    path: str,
    *,
    root: str,
    allow_reserved: bool = False,
) -> str:
    """Validate a new file or folder path: usable name and an existing parent dir."""
    path = normalize_path(path)
    if path == "/":
        raise AlreadyExistsError("The root already exists")
    validated_name(split_path(path)[1])
    await require_parent_dir(backend, path, root=root, allow_reserved=allow_reserved)
    return path


async def validate_transfer(
    backend: StorageBackend,
    src: str,
    dest: str,
    *,
    root: str,
    allow_reserved: bool = False,
) -> tuple[str, str, PathInfo]:
    """Validate a move or copy and return ``(src, dest, src_info)``.

    Checks run in a fixed order so callers see the same error on both
    backends: source exists, source is not the root, destination is
    usable, destination differs from and is not nested in the source,
    destination parent is a directory, destination is vacant.
    """
    src = normalize_path(src)
    dest = normalize_path(dest)

    info = await backend.stat(src, root=root, allow_reserved=allow_reserved)
    if info is None:
        raise PathNotFoundError(f"Source not found: {src}")
    if src == "/":
        raise InvalidOperationError("Cannot move or copy the root")

    if dest == "/" or (not allow_reserved and is_reserved_path(dest)):
        raise InvalidOperationError(f"Invalid destination: {dest}")
    validated_name(split_path(dest)[1])

    if dest == src:
        raise InvalidOperationError("Source and destination are the same")
    if is_nested(dest, src):
        raise InvalidOperationError("Cannot move or copy a folder into itself")

    await require_parent_dir(backend, dest, root=root, allow_reserved=allow_reserved)

    if await backend.stat(dest, root=root, allow_reserved=allow_reserved) is not None:
        raise ConflictError(f"Destination already exists: {dest}")

    return src, dest, info
