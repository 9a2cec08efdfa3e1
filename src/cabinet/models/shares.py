"""ShareLink model: public read-only links to a single file.

Provides ``ShareLinkBase`` (non-table) and ``ShareLink`` (concrete table).
Subclass ``ShareLinkBase`` with ``table=True`` and a custom ``__tablename__``
to use a different table name.
"""

from __future__ import annotations

import secrets

from sqlmodel import Field, SQLModel

from cabinet.fs.utils import now_ms


def new_share_token() -> str:
    """Unguessable URL-safe token (256 bits)."""
    return secrets.token_urlsafe(32)


class ShareLinkBase(SQLModel):
    """Base fields for a share link. Subclass with ``table=True`` for a concrete table."""

    token: str = Field(default_factory=new_share_token, primary_key=True)
    path: str = Field(index=True)
    root_ref: str = Field(index=True)
    created_at: int = Field(default_factory=now_ms, index=True)


class ShareLink(ShareLinkBase, table=True):
    """Default share table: ``cabinet_share_links``."""

    __tablename__ = "cabinet_share_links"
