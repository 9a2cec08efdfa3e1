"""Role enum and the write gate."""

from __future__ import annotations

from enum import Enum

from .exceptions import ReadOnlyError


class Role(str, Enum):
    """Role assigned to a user by the auth collaborator."""

    READ_ONLY = "read-only"
    READ_WRITE = "read-write"
    ADMIN = "admin"

    @property
    def can_write(self) -> bool:
        return self is not Role.READ_ONLY


def normalize_role(value: str | Role | None) -> Role:
    """Coerce a configured role string. Missing means read-write."""
    if isinstance(value, Role):
        return value
    raw = (value or Role.READ_WRITE.value).strip().lower()
    try:
        return Role(raw)
    except ValueError:
        raise ValueError(f"Invalid role: {value!r}") from None


def require_write(role: Role) -> None:
    """Raise ``ReadOnlyError`` if *role* may not mutate storage."""
    if not role.can_write:
        raise ReadOnlyError("Read-only account.")
