"""Tests for LocalDiskBackend: behavior specific to direct disk access."""

from __future__ import annotations

import os

import pytest

from cabinet.fs.exceptions import (
    AlreadyExistsError,
    InvalidNameError,
    InvalidOperationError,
    PathEscapeError,
    PathNotFoundError,
)
from cabinet.fs.local_disk import LocalDiskBackend
from cabinet.fs.trash import TrashService


@pytest.fixture
def disk(local_backend) -> LocalDiskBackend:
    return local_backend


@pytest.fixture
def root(disk) -> str:
    return disk.resolve_user_root("/")


# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------


class TestConstruction:
    def test_nonexistent_dir(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            LocalDiskBackend(tmp_path / "nope")

    def test_file_not_dir(self, tmp_path):
        f = tmp_path / "file.txt"
        f.write_text("hi")
        with pytest.raises(NotADirectoryError):
            LocalDiskBackend(f)

    async def test_open_creates_upload_dir(self, tmp_path, file_root):
        scratch = tmp_path / "deep" / "scratch"
        backend = LocalDiskBackend(file_root, upload_tmp_dir=scratch)
        await backend.open()
        assert scratch.is_dir()

    def test_user_root_under_file_root(self, disk, file_root):
        (file_root / "alice").mkdir()
        assert disk.resolve_user_root("/alice") == str((file_root / "alice").resolve())


# ---------------------------------------------------------------------------
# Symlinks
# ---------------------------------------------------------------------------


class TestSymlinks:
    async def test_listing_skips_symlinks(self, disk, root, file_root):
        (file_root / "real.txt").write_text("r")
        os.symlink(file_root / "real.txt", file_root / "alias.txt")
        names = [e.name for e in await disk.list_dir("/", root=root)]
        assert names == ["real.txt"]

    async def test_read_through_escaping_symlink(self, disk, root, file_root, tmp_path):
        (tmp_path / "secret").write_text("s")
        os.symlink(tmp_path / "secret", file_root / "leak")
        with pytest.raises(PathEscapeError):
            await disk.read_file("/leak", root=root)

    async def test_write_through_escaping_dir_symlink(self, disk, root, file_root, tmp_path):
        outside = tmp_path / "outside"
        outside.mkdir()
        os.symlink(outside, file_root / "out")
        with pytest.raises(PathEscapeError):
            await disk.write_file("/out/x.txt", b"x", root=root)
        assert not (outside / "x.txt").exists()

    async def test_dangling_symlink_is_missing(self, disk, root, file_root):
        os.symlink(file_root / "gone", file_root / "dangling")
        assert await disk.stat("/dangling", root=root) is None

    async def test_copy_keeps_links_as_links(self, disk, root, file_root):
        (file_root / "d").mkdir()
        (file_root / "d" / "t.txt").write_text("t")
        os.symlink("t.txt", file_root / "d" / "l.txt")
        await disk.copy("/d", "/e", root=root)
        assert os.path.islink(file_root / "e" / "l.txt")

    async def test_sizes_ignore_symlinks(self, disk, root, file_root):
        (file_root / "big.bin").write_bytes(b"x" * 100)
        os.symlink(file_root / "big.bin", file_root / "alias.bin")
        stats = await disk.storage_stats(root=root)
        assert stats.total_files == 1
        assert stats.total_bytes == 100

    async def test_move_refuses_symlink_source(self, disk, root, file_root):
        (file_root / "real.txt").write_text("r")
        os.symlink(file_root / "real.txt", file_root / "alias.txt")
        with pytest.raises(InvalidOperationError):
            await disk.move("/alias.txt", "/moved.txt", root=root)
        assert (file_root / "real.txt").read_text() == "r"
        assert os.path.islink(file_root / "alias.txt")

    async def test_trash_refuses_symlink(self, disk, root, file_root):
        (file_root / "real.txt").write_text("r")
        os.symlink(file_root / "real.txt", file_root / "alias.txt")
        with pytest.raises(InvalidOperationError):
            await TrashService(disk).trash("/alias.txt", root=root)
        assert (file_root / "real.txt").exists()
        assert await TrashService(disk).list(root=root) == []

    async def test_move_through_linked_parent(self, disk, root, file_root):
        (file_root / "docs").mkdir()
        (file_root / "docs" / "a.txt").write_text("a")
        os.symlink(file_root / "docs", file_root / "shortcut")
        await disk.move("/shortcut/a.txt", "/b.txt", root=root)
        assert (file_root / "b.txt").read_text() == "a"


# ---------------------------------------------------------------------------
# NUL bytes
# ---------------------------------------------------------------------------


class TestNulBytes:
    async def test_stat_is_missing(self, disk, root):
        assert await disk.stat("/a\x00b.txt", root=root) is None

    async def test_list_and_read_not_found(self, disk, root):
        with pytest.raises(PathNotFoundError):
            await disk.list_dir("/a\x00b", root=root)
        with pytest.raises(PathNotFoundError):
            await disk.read_file("/a\x00b.txt", root=root)

    async def test_move_not_found(self, disk, root, file_root):
        (file_root / "a.txt").write_text("a")
        with pytest.raises(PathNotFoundError):
            await disk.move("/a\x00.txt", "/b.txt", root=root)

    async def test_write_invalid_name(self, disk, root, file_root):
        with pytest.raises(InvalidNameError):
            await disk.write_file("/new\x00.txt", b"x", root=root)
        assert os.listdir(file_root) == []


# ---------------------------------------------------------------------------
# Durability
# ---------------------------------------------------------------------------


class TestAtomicWrites:
    async def test_no_temp_files_left(self, disk, root, file_root):
        await disk.write_file("/a.txt", b"one", root=root)
        await disk.write_file("/a.txt", b"two", root=root, overwrite=True)
        assert sorted(os.listdir(file_root)) == ["a.txt"]

    async def test_failed_no_clobber_leaves_no_temp(self, disk, root, file_root):
        (file_root / "a.txt").write_bytes(b"one")
        with pytest.raises(AlreadyExistsError):
            await disk.write_file("/a.txt", b"two", root=root)
        assert sorted(os.listdir(file_root)) == ["a.txt"]
        assert (file_root / "a.txt").read_bytes() == b"one"

    async def test_records_are_under_trash_meta(self, disk, root, file_root):
        await disk.write_record("r.json", b"{}", root=root)
        assert (file_root / ".trash" / ".meta" / "r.json").read_bytes() == b"{}"


# ---------------------------------------------------------------------------
# Multipart scratch
# ---------------------------------------------------------------------------


class TestMultipartScratch:
    async def test_parts_live_outside_root(self, disk, root, file_root, tmp_path):
        handle = await disk.create_multipart("/f.bin", root=root)
        await disk.upload_part(handle, 1, b"abc")
        assert handle.upload_ref.startswith(str(tmp_path / "uploads"))
        assert os.listdir(file_root) == []
        assert os.listdir(handle.upload_ref) == ["1.part"]

    async def test_scratch_removed_after_complete(self, disk, root):
        handle = await disk.create_multipart("/f.bin", root=root)
        await disk.upload_part(handle, 1, b"abc")
        await disk.complete_multipart(handle, "/f.bin", root=root, total_parts=1)
        assert not os.path.exists(handle.upload_ref)

    async def test_create_needs_parent(self, disk, root):
        with pytest.raises(PathNotFoundError):
            await disk.create_multipart("/nope/f.bin", root=root)
