"""Root confinement: map virtual paths onto a user's real directory or key prefix.

Every location a backend touches is produced here. Nothing is cached; the
mapping is recomputed per call so a symlink swapped between two requests is
re-checked on the second one.
"""

from __future__ import annotations

import os
from pathlib import Path

from .exceptions import InvalidNameError, NotDirectoryError, PathEscapeError, PathNotFoundError
from .types import ResolvedLocation
from .utils import (
    TRASH_NAME,
    is_reserved_path,
    is_within,
    normalize_path,
    split_path,
)

# =============================================================================
# Local Filesystem
# =============================================================================


def _canonical(candidate: str, virtual_path: str) -> str:
    try:
        return str(Path(candidate).resolve(strict=True))
    except (OSError, RuntimeError, ValueError):
        raise PathNotFoundError(f"Not found: {virtual_path}") from None


def resolve_local(
    path: str,
    root_real: str,
    *,
    must_exist: bool = True,
    allow_reserved: bool = False,
) -> ResolvedLocation:
    """Resolve *path* to a canonical real path inside *root_real*.

    With ``must_exist=False`` only the parent is resolved on disk and the
    final name is appended, which is what destinations of writes, mkdir,
    move and copy need.

    Raises:
        PathEscapeError: The canonical path leaves *root_real* or lands in
            the trash area without ``allow_reserved``.
        PathNotFoundError: The path (or, for destinations, its parent)
            does not exist.
        InvalidNameError: A destination name contains a NUL byte.
    """
    virtual = normalize_path(path)
    if not allow_reserved and is_reserved_path(virtual):
        raise PathEscapeError(f"Path not allowed: {virtual}")

    if must_exist or virtual == "/":
        rel = virtual.lstrip("/")
        real = _canonical(os.path.join(root_real, rel) if rel else root_real, virtual)
    else:
        parent, name = split_path(virtual)
        if "\x00" in name:
            raise InvalidNameError(f"Invalid name: {name!r}")
        parent_loc = resolve_local(
            parent, root_real, must_exist=True, allow_reserved=allow_reserved
        )
        real = os.path.join(parent_loc.location, name)

    if not is_within(real, root_real, os.sep):
        raise PathEscapeError(f"Path escapes root: {virtual}")

    if not allow_reserved and is_within(real, os.path.join(root_real, TRASH_NAME), os.sep):
        raise PathEscapeError(f"Path not allowed: {virtual}")

    return ResolvedLocation(virtual_path=virtual, location=real)


def resolve_local_user_root(file_root: str, root_path: str) -> str:
    """Turn a configured per-user root (virtual, under *file_root*) into a root_ref."""
    base = str(Path(file_root).resolve(strict=True))
    virtual = normalize_path(root_path)
    if is_reserved_path(virtual):
        raise ValueError("User root cannot be .trash")

    rel = virtual.lstrip("/")
    try:
        real = Path(os.path.join(base, rel) if rel else base).resolve(strict=True)
    except (OSError, RuntimeError, ValueError):
        raise PathNotFoundError(f"User root does not exist: {virtual}") from None

    if not is_within(str(real), base, os.sep):
        raise PathEscapeError(f"User root escapes file root: {virtual}")
    if not real.is_dir():
        raise NotDirectoryError(f"User root must be a directory: {virtual}")
    return str(real)


# =============================================================================
# S3 Keys
# =============================================================================


def normalize_s3_prefix(value: str | None) -> str:
    """Normalize a key prefix to ``"a/b/"`` form, or ``""`` for the bucket root."""
    prefix = (value or "").strip().replace("\\", "/").strip("/")
    return f"{prefix}/" if prefix else ""


def join_s3_prefix(base: str, extra: str) -> str:
    normalized_base = normalize_s3_prefix(base)
    normalized_extra = (extra or "").strip().strip("/")
    if not normalized_extra:
        return normalized_base
    return f"{normalized_base}{normalized_extra}/"


def resolve_s3_user_root(base_prefix: str, root_path: str) -> str:
    virtual = normalize_path(root_path)
    if is_reserved_path(virtual):
        raise ValueError("User root cannot be .trash")
    suffix = "" if virtual == "/" else virtual[1:]
    return join_s3_prefix(base_prefix, suffix)


def to_key(path: str, root_prefix: str) -> str:
    """Object key for a normalized path. The root maps to the prefix itself."""
    if path == "/":
        return root_prefix
    return f"{root_prefix}{path[1:]}"


def to_prefix(path: str, root_prefix: str) -> str:
    """Listing prefix for a normalized directory path (always ends in ``/``)."""
    if path == "/":
        return root_prefix
    return f"{root_prefix}{path.rstrip('/')[1:]}/"


def key_to_path(key: str, root_prefix: str) -> str:
    """Inverse of :func:`to_key`."""
    if not key.startswith(root_prefix):
        raise PathEscapeError(f"Key outside root: {key}")
    return normalize_path(key[len(root_prefix):])


def resolve_s3(
    path: str,
    root_prefix: str,
    *,
    allow_reserved: bool = False,
) -> ResolvedLocation:
    """Resolve *path* to an object key under *root_prefix*.

    Normalization already absorbs ``..`` so containment is structural; the
    prefix check is kept as an assertion that raises rather than trusts.
    """
    virtual = normalize_path(path)
    if not allow_reserved and is_reserved_path(virtual):
        raise PathEscapeError(f"Path not allowed: {virtual}")
    key = to_key(virtual, root_prefix)
    if not key.startswith(root_prefix):
        raise PathEscapeError(f"Path escapes root: {virtual}")
    return ResolvedLocation(virtual_path=virtual, location=key)
