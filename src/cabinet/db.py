"""Database: async SQLite engine for share links and upload sessions."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import TYPE_CHECKING

from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from cabinet.models import ShareLink, UploadSession

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from sqlalchemy.ext.asyncio import AsyncEngine

logger = logging.getLogger(__name__)

DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///cabinet.db"


class Database:
    """Owns the engine and hands out one session per operation.

    Tables are created on first use. Every ``session()`` block commits on
    success and rolls back on error, so a mutation is durable before the
    caller is answered.
    """

    def __init__(self, url: str = DEFAULT_DATABASE_URL, *, echo: bool = False) -> None:
        self.url = url
        self.echo = echo
        self._engine: AsyncEngine | None = None
        self._session_factory: async_sessionmaker[AsyncSession] | None = None
        self._init_lock = asyncio.Lock()

    @classmethod
    def for_path(cls, path: Path | str) -> Database:
        return cls(f"sqlite+aiosqlite:///{Path(path)}")

    async def _ensure_db(self) -> None:
        """Initialize database if needed."""
        if self._session_factory is not None:
            return
        async with self._init_lock:
            if self._session_factory is not None:
                return

            url = make_url(self.url)
            is_sqlite = url.get_backend_name() == "sqlite"
            if is_sqlite and url.database and url.database != ":memory:":
                Path(url.database).parent.mkdir(parents=True, exist_ok=True)

            self._engine = create_async_engine(self.url, echo=self.echo)

            if is_sqlite:

                @event.listens_for(self._engine.sync_engine, "connect")
                def _set_sqlite_pragma(dbapi_connection: object, connection_record: object) -> None:
                    cursor = dbapi_connection.cursor()  # type: ignore[union-attr]
                    cursor.execute("PRAGMA journal_mode=WAL")
                    result = cursor.fetchone()
                    if result[0].lower() != "wal":
                        logger.warning("WAL mode not active, got: %s", result[0])
                    cursor.execute("PRAGMA busy_timeout=5000")
                    cursor.execute("PRAGMA synchronous=FULL")
                    cursor.close()

            async with self._engine.begin() as conn:
                share_table = ShareLink.__table__  # type: ignore[unresolved-attribute]
                upload_table = UploadSession.__table__  # type: ignore[unresolved-attribute]
                await conn.run_sync(lambda c: share_table.create(c, checkfirst=True))
                await conn.run_sync(lambda c: upload_table.create(c, checkfirst=True))

            self._session_factory = async_sessionmaker(
                self._engine,
                class_=AsyncSession,
                expire_on_commit=False,
            )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def open(self) -> None:
        await self._ensure_db()

    async def close(self) -> None:
        """Dispose the engine and release connections."""
        if self._engine:
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Session scope for one operation: commit on success, rollback on error."""
        await self._ensure_db()
        assert self._session_factory is not None
        session = self._session_factory()
        try:
            yield session
            await session.commit()
        except BaseException:
            await session.rollback()
            raise
        finally:
            await session.close()
