"""EventBus and audit events for storage operations."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from cabinet.fs.utils import now_ms

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)

ALL_ACTIONS = "*"


@dataclass(frozen=True, slots=True)
class AuditEvent:
    """Immutable record of one completed operation.

    Attributes:
        action: Operation name, e.g. ``"move"`` or ``"share_download"``.
        paths: Virtual paths involved (source first for moves and copies).
        username: Acting user, or None for public share access.
        timestamp: Epoch milliseconds.
        detail: Extra operation-specific fields (ids, counts, formats).
    """

    action: str
    paths: tuple[str, ...] = ()
    username: str | None = None
    timestamp: int = field(default_factory=now_ms)
    detail: dict[str, Any] = field(default_factory=dict)


class EventBus:
    """Dispatches audit events to registered handlers.

    Handlers are called sequentially in registration order, first those
    registered for the specific action, then those registered for ``"*"``.
    Exceptions are logged but never propagated, so a failing audit sink
    never fails the operation it describes.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, list[Callable[..., Any]]] = {}

    def register(self, action: str, handler: Callable[..., Any]) -> None:
        """Append *handler* for *action* (``"*"`` receives every event)."""
        self._handlers.setdefault(action, []).append(handler)

    def unregister(self, action: str, handler: Callable[..., Any]) -> bool:
        """Remove first occurrence of *handler*. Return True if found."""
        handlers = self._handlers.get(action, [])
        try:
            handlers.remove(handler)
            return True
        except ValueError:
            return False

    async def emit(self, event: AuditEvent) -> None:
        """Dispatch *event* to all matching handlers."""
        handlers = [*self._handlers.get(event.action, []), *self._handlers.get(ALL_ACTIONS, [])]
        for handler in handlers:
            try:
                await handler(event)
            except Exception:
                logger.warning(
                    "Audit handler %r failed for %s on %s",
                    handler,
                    event.action,
                    ", ".join(event.paths) or "-",
                    exc_info=True,
                )

    @property
    def handler_count(self) -> int:
        """Total number of registered handlers across all actions."""
        return sum(len(h) for h in self._handlers.values())

    def clear(self) -> None:
        """Remove all registered handlers."""
        self._handlers.clear()
