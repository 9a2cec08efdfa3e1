"""Tests for TrashService on both backends."""

from __future__ import annotations

from datetime import timedelta

import pytest

from cabinet.fs.exceptions import (
    ConflictError,
    InvalidTargetError,
    PathNotFoundError,
    RootDeletionForbiddenError,
    TrashRecordNotFoundError,
)
from cabinet.fs.trash import TrashService
from cabinet.models.trash import TrashRecord


@pytest.fixture
def trash(backend) -> TrashService:
    return TrashService(backend)


async def _seed(backend, root: str) -> None:
    await backend.mkdir("/docs", root=root)
    await backend.write_file("/docs/a.txt", b"alpha", root=root)
    await backend.write_file("/docs/b.txt", b"bravo!", root=root)
    await backend.write_file("/top.txt", b"top", root=root)


# ---------------------------------------------------------------------------
# Trash
# ---------------------------------------------------------------------------


class TestTrash:
    async def test_trash_file(self, trash, backend, root):
        await _seed(backend, root)
        record = await trash.trash("/top.txt", root=root)

        assert record.name == "top.txt"
        assert record.original_path == "/top.txt"
        assert record.type == "file"
        assert record.size == 3
        assert record.trash_name.startswith(f"{record.deleted_at}-top.txt-")
        assert await backend.stat("/top.txt", root=root) is None
        assert await backend.stat(record.trash_path, root=root, allow_reserved=True) is not None

    async def test_trash_name_carries_record_id(self, trash, backend, root):
        await _seed(backend, root)
        record = await trash.trash("/top.txt", root=root)
        assert record.trash_name == f"{record.deleted_at}-top.txt-{record.id}"
        assert record.record_name == f"{record.id}.json"

    async def test_trash_dir_records_tree_size(self, trash, backend, root):
        await _seed(backend, root)
        record = await trash.trash("/docs", root=root)
        assert record.type == "dir"
        assert record.size == 11

    async def test_trash_hidden_from_listing(self, trash, backend, root):
        await _seed(backend, root)
        await trash.trash("/top.txt", root=root)
        names = [e.name for e in await backend.list_dir("/", root=root)]
        assert names == ["docs"]

    async def test_trash_root(self, trash, root):
        with pytest.raises(RootDeletionForbiddenError):
            await trash.trash("/", root=root)

    async def test_trash_missing(self, trash, root):
        with pytest.raises(PathNotFoundError):
            await trash.trash("/nope", root=root)

    async def test_same_name_twice(self, trash, backend, root):
        await _seed(backend, root)
        first = await trash.trash("/top.txt", root=root)
        await backend.write_file("/top.txt", b"again", root=root)
        second = await trash.trash("/top.txt", root=root)
        assert first.trash_name != second.trash_name
        assert len(await trash.list(root=root)) == 2

    async def test_record_write_failure_moves_back(self, trash, backend, root, monkeypatch):
        await _seed(backend, root)

        async def _broken(name, data, *, root):
            raise OSError("disk full")

        monkeypatch.setattr(backend, "write_record", _broken)
        with pytest.raises(OSError):
            await trash.trash("/top.txt", root=root)
        assert (await backend.read_file("/top.txt", root=root)).content == b"top"


# ---------------------------------------------------------------------------
# List / get
# ---------------------------------------------------------------------------


class TestList:
    async def test_newest_first(self, trash, backend, root):
        await _seed(backend, root)
        older = await trash.trash("/top.txt", root=root)
        newer = await trash.trash("/docs/a.txt", root=root)
        if newer.deleted_at == older.deleted_at:
            pytest.skip("clock did not advance")
        ids = [r.id for r in await trash.list(root=root)]
        assert ids == [newer.id, older.id]

    async def test_empty(self, trash, root):
        assert await trash.list(root=root) == []

    async def test_unreadable_record_skipped(self, trash, backend, root):
        await _seed(backend, root)
        record = await trash.trash("/top.txt", root=root)
        await backend.write_record("broken.json", b"{not json", root=root)
        assert [r.id for r in await trash.list(root=root)] == [record.id]

    async def test_get_unknown(self, trash, root):
        with pytest.raises(TrashRecordNotFoundError):
            await trash.get("nope", root=root)

    async def test_get_rejects_path_like_ids(self, trash, root):
        with pytest.raises(TrashRecordNotFoundError):
            await trash.get("../../etc/passwd", root=root)

    def test_record_json_round_trip(self):
        record = TrashRecord(
            name="a.txt",
            original_path="/a.txt",
            deleted_at=1,
            type="file",
            size=2,
            trash_name="1-a.txt-x",
        )
        assert TrashRecord.model_validate_json(record.model_dump_json()) == record
        assert record.record_name == f"{record.id}.json"
        assert record.trash_path == "/.trash/1-a.txt-x"


# ---------------------------------------------------------------------------
# Restore
# ---------------------------------------------------------------------------


class TestRestore:
    async def test_restore_file(self, trash, backend, root):
        await _seed(backend, root)
        record = await trash.trash("/docs/a.txt", root=root)
        restored = await trash.restore(record.id, root=root)
        assert restored.id == record.id
        assert (await backend.read_file("/docs/a.txt", root=root)).content == b"alpha"
        assert await trash.list(root=root) == []

    async def test_restore_dir(self, trash, backend, root):
        await _seed(backend, root)
        record = await trash.trash("/docs", root=root)
        await trash.restore(record.id, root=root)
        assert (await backend.read_file("/docs/b.txt", root=root)).content == b"bravo!"

    async def test_restore_conflict(self, trash, backend, root):
        await _seed(backend, root)
        record = await trash.trash("/top.txt", root=root)
        await backend.write_file("/top.txt", b"new", root=root)
        with pytest.raises(ConflictError):
            await trash.restore(record.id, root=root)
        assert len(await trash.list(root=root)) == 1

    async def test_restore_parent_gone(self, trash, backend, root):
        await _seed(backend, root)
        record = await trash.trash("/docs/a.txt", root=root)
        await backend.remove("/docs", root=root)
        with pytest.raises(InvalidTargetError, match="no longer exists"):
            await trash.restore(record.id, root=root)

    async def test_restore_unknown(self, trash, root):
        with pytest.raises(TrashRecordNotFoundError):
            await trash.restore("missing", root=root)

    async def test_restore_tampered_target(self, trash, backend, root):
        await _seed(backend, root)
        record = await trash.trash("/top.txt", root=root)
        tampered = record.model_copy(update={"original_path": "/.trash/x"})
        await backend.write_record(
            tampered.record_name, tampered.model_dump_json().encode(), root=root
        )
        with pytest.raises(InvalidTargetError):
            await trash.restore(record.id, root=root)

    async def test_restore_item_missing(self, trash, backend, root):
        await _seed(backend, root)
        record = await trash.trash("/top.txt", root=root)
        await backend.remove(record.trash_path, root=root, allow_reserved=True)
        with pytest.raises(PathNotFoundError):
            await trash.restore(record.id, root=root)


# ---------------------------------------------------------------------------
# Purge / sweep
# ---------------------------------------------------------------------------


class TestPurge:
    async def test_purge(self, trash, backend, root):
        await _seed(backend, root)
        record = await trash.trash("/top.txt", root=root)
        await trash.purge(record.id, root=root)
        assert await trash.list(root=root) == []
        assert await backend.stat(record.trash_path, root=root, allow_reserved=True) is None

    async def test_sweep_only_old(self, trash, backend, root):
        await _seed(backend, root)
        record = await trash.trash("/top.txt", root=root)
        old = record.model_copy(update={"deleted_at": record.deleted_at - 10 * 86_400_000})
        await backend.write_record(old.record_name, old.model_dump_json().encode(), root=root)
        await trash.trash("/docs/a.txt", root=root)

        purged = await trash.sweep(root=root, older_than=timedelta(days=7))
        assert purged == 1
        assert [r.name for r in await trash.list(root=root)] == ["a.txt"]

    def test_requires_records_capability(self):
        with pytest.raises(TypeError):
            TrashService(object())  # type: ignore[arg-type]
