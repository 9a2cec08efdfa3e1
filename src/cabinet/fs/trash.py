"""TrashService — move to trash, list, restore, purge, and sweep."""

from __future__ import annotations

import logging
import uuid
from typing import TYPE_CHECKING

from pydantic import ValidationError

from cabinet.models.trash import TrashRecord

from .exceptions import (
    ConflictError,
    InvalidTargetError,
    PathNotFoundError,
    RootDeletionForbiddenError,
    TrashRecordNotFoundError,
)
from .protocol import SupportsRecords
from .utils import TRASH_DIR, is_reserved_path, normalize_path, now_ms, sanitize_name, split_path

if TYPE_CHECKING:
    from datetime import timedelta

    from .protocol import StorageBackend

logger = logging.getLogger(__name__)


class TrashService:
    """Trash management over any backend that can store sidecar records.

    Trashed items stay inside the owner's root under ``/.trash`` with a
    collision-free name; each has a JSON record under ``/.trash/.meta``
    written before ``trash()`` returns. Nothing expires on its own:
    ``sweep()`` is for an operator or scheduler to call.
    """

    def __init__(self, backend: StorageBackend) -> None:
        if not isinstance(backend, SupportsRecords):
            raise TypeError(f"{type(backend).__name__} cannot store trash records")
        self._backend = backend

    @property
    def _records(self) -> SupportsRecords:
        return self._backend  # type: ignore[return-value]

    # ------------------------------------------------------------------
    # Move to trash
    # ------------------------------------------------------------------

    async def trash(self, path: str, *, root: str) -> TrashRecord:
        """Move *path* into the trash and record where it came from."""
        path = normalize_path(path)
        if path == "/":
            raise RootDeletionForbiddenError("Cannot delete the root directory")

        info = await self._backend.stat(path, root=root)
        if info is None:
            raise PathNotFoundError(f"Not found: {path}")

        name = sanitize_name(split_path(path)[1]) or "item"
        size = info.size if info.is_file else await self._backend.tree_size(path, root=root)
        deleted_at = now_ms()
        record_id = str(uuid.uuid4())
        trash_name = f"{deleted_at}-{name}-{record_id}"

        await self._backend.mkdir(TRASH_DIR, root=root, allow_reserved=True, exist_ok=True)
        record = TrashRecord(
            id=record_id,
            name=name,
            original_path=path,
            deleted_at=deleted_at,
            type=info.type,
            size=size,
            trash_name=trash_name,
        )
        await self._backend.move(path, record.trash_path, root=root, allow_reserved=True)

        try:
            await self._records.write_record(
                record.record_name, record.model_dump_json().encode("utf-8"), root=root
            )
        except Exception:
            logger.error("Failed to record trash entry for %s; moving it back", path)
            await self._backend.move(record.trash_path, path, root=root, allow_reserved=True)
            raise

        logger.debug("Trashed %s as %s", path, trash_name)
        return record

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    async def list(self, *, root: str) -> list[TrashRecord]:
        """All trash records for *root*, newest first. Unreadable records are skipped."""
        records: list[TrashRecord] = []
        for raw in await self._records.list_records(root=root):
            try:
                records.append(TrashRecord.model_validate_json(raw))
            except ValidationError:
                logger.warning("Skipping unreadable trash record", exc_info=True)
        records.sort(key=lambda r: r.deleted_at, reverse=True)
        return records

    async def get(self, record_id: str, *, root: str) -> TrashRecord:
        name = sanitize_name(record_id)
        if name is None or name != record_id:
            raise TrashRecordNotFoundError(f"Trash item not found: {record_id}")

        raw = await self._records.read_record(f"{name}.json", root=root)
        if raw is None:
            raise TrashRecordNotFoundError(f"Trash item not found: {record_id}")
        try:
            return TrashRecord.model_validate_json(raw)
        except ValidationError:
            logger.warning("Unreadable trash record %s", record_id, exc_info=True)
            raise TrashRecordNotFoundError(f"Trash item not found: {record_id}") from None

    # ------------------------------------------------------------------
    # Restore
    # ------------------------------------------------------------------

    async def restore(self, record_id: str, *, root: str) -> TrashRecord:
        """Move a trashed item back to its original path and drop its record."""
        record = await self.get(record_id, root=root)
        target = normalize_path(record.original_path)
        if target == "/" or is_reserved_path(target):
            raise InvalidTargetError(f"Invalid restore target: {target}")

        parent, _ = split_path(target)
        parent_info = await self._backend.stat(parent, root=root)
        if parent_info is None or not parent_info.is_dir:
            raise InvalidTargetError("Restore location no longer exists")

        if await self._backend.stat(target, root=root) is not None:
            raise ConflictError(f"Restore target already exists: {target}")

        if await self._backend.stat(record.trash_path, root=root, allow_reserved=True) is None:
            raise PathNotFoundError(f"Trashed item is missing: {record.name}")

        await self._backend.move(record.trash_path, target, root=root, allow_reserved=True)
        await self._records.delete_record(record.record_name, root=root)
        logger.debug("Restored %s from %s", target, record.trash_name)
        return record

    # ------------------------------------------------------------------
    # Purge
    # ------------------------------------------------------------------

    async def purge(self, record_id: str, *, root: str) -> TrashRecord:
        """Permanently delete one trashed item and its record."""
        record = await self.get(record_id, root=root)
        try:
            await self._backend.remove(record.trash_path, root=root, allow_reserved=True)
        except PathNotFoundError:
            logger.warning("Trashed item %s already gone", record.trash_name)
        await self._records.delete_record(record.record_name, root=root)
        return record

    async def sweep(self, *, root: str, older_than: timedelta) -> int:
        """Purge records deleted more than *older_than* ago. Returns the count."""
        cutoff = now_ms() - int(older_than.total_seconds() * 1000)
        purged = 0
        for record in await self.list(root=root):
            if record.deleted_at < cutoff:
                await self.purge(record.id, root=root)
                purged += 1
        return purged
