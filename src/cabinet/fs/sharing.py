"""ShareRegistry: durable token -> (path, root) links for public file access.

Receives the share model at construction and a ``Database`` for sessions,
so callers can use a custom SQLModel subclass with a different table name.
Every mutation commits before returning.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from sqlalchemy import delete as sa_delete
from sqlmodel import col, select

from cabinet.models.shares import ShareLink, ShareLinkBase

from .utils import normalize_path

if TYPE_CHECKING:
    from cabinet.db import Database


class ShareRegistry:
    """Creates, finds, and purges share links.

    At most one link is handed out per ``(path, root_ref)`` unless the
    caller forces a fresh one, which revokes the old tokens.
    """

    def __init__(
        self,
        db: Database,
        share_model: type[ShareLinkBase] = ShareLink,
    ) -> None:
        self._db = db
        self._share_model = share_model

    async def create(self, path: str, root_ref: str, *, force: bool = False) -> ShareLinkBase:
        """Return the existing link for the pair, or mint a new one.

        With ``force`` every existing link for the pair is deleted first.
        """
        path = normalize_path(path)
        if force:
            await self.purge(path, root_ref)
        else:
            existing = await self.lookup(path, root_ref)
            if existing is not None:
                return existing

        share = self._share_model(path=path, root_ref=root_ref)
        async with self._db.session() as session:
            session.add(share)
        return share

    async def lookup(self, path: str, root_ref: str) -> ShareLinkBase | None:
        """Newest link for ``(path, root_ref)``, if any."""
        model = self._share_model
        path = normalize_path(path)
        async with self._db.session() as session:
            result = await session.execute(
                select(model)
                .where(model.path == path, model.root_ref == root_ref)
                .order_by(col(model.created_at).desc())
                .limit(1)
            )
            return result.scalars().first()

    async def resolve(self, token: str) -> ShareLinkBase | None:
        if not token:
            return None
        async with self._db.session() as session:
            return await session.get(self._share_model, token)

    async def purge(self, path: str, root_ref: str) -> int:
        """Delete all links for ``(path, root_ref)``. Returns the number removed."""
        model = self._share_model
        path = normalize_path(path)
        async with self._db.session() as session:
            result = await session.execute(
                sa_delete(model).where(
                    model.path == path,  # type: ignore[arg-type]
                    model.root_ref == root_ref,  # type: ignore[arg-type]
                )
            )
            return result.rowcount or 0
