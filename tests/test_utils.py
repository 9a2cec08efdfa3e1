"""Tests for path utilities, allow-lists, and time helpers."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from cabinet.fs.exceptions import ReadOnlyError
from cabinet.fs.permissions import Role, normalize_role, require_write
from cabinet.fs.types import DirEntry, sort_entries
from cabinet.fs.utils import (
    guess_mime_type,
    is_image_previewable,
    is_nested,
    is_reserved_path,
    is_text_editable,
    is_text_previewable,
    is_within,
    join_path,
    normalize_path,
    parent_of,
    sanitize_name,
    split_path,
    to_ms,
)

# ---------------------------------------------------------------------------
# normalize_path
# ---------------------------------------------------------------------------


class TestNormalizePath:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("", "/"),
            (None, "/"),
            ("   ", "/"),
            ("/", "/"),
            ("foo.txt", "/foo.txt"),
            ("/a/b/", "/a/b"),
            ("a//b", "/a/b"),
            ("\\foo\\bar.txt", "/foo/bar.txt"),
            ("/foo/../../bar.txt", "/bar.txt"),
            ("/../../..", "/"),
            ("/a/./b", "/a/b"),
            ("//double", "/double"),
        ],
    )
    def test_cases(self, raw, expected):
        assert normalize_path(raw) == expected

    def test_idempotent(self):
        once = normalize_path("x/../y//z/")
        assert normalize_path(once) == once


class TestSplitJoin:
    def test_split_nested(self):
        assert split_path("/foo/bar.txt") == ("/foo", "bar.txt")

    def test_split_top_level(self):
        assert split_path("/foo.txt") == ("/", "foo.txt")

    def test_split_root(self):
        assert split_path("/") == ("/", "")

    def test_join_root(self):
        assert join_path("/", "a.txt") == "/a.txt"

    def test_join_nested(self):
        assert join_path("/docs", "a.txt") == "/docs/a.txt"

    def test_parent_of_root_is_none(self):
        assert parent_of("/") is None

    def test_parent_of_top_level(self):
        assert parent_of("/docs") == "/"

    def test_parent_of_nested(self):
        assert parent_of("/docs/a/b.txt") == "/docs/a"


# ---------------------------------------------------------------------------
# sanitize_name
# ---------------------------------------------------------------------------


class TestSanitizeName:
    def test_trims(self):
        assert sanitize_name("  report.txt ") == "report.txt"

    def test_strips_nul(self):
        assert sanitize_name("a\x00b") == "ab"

    @pytest.mark.parametrize("bad", ["", "   ", None, ".", "..", "a/b", "a\\b", "\x00"])
    def test_rejects(self, bad):
        assert sanitize_name(bad) is None


# ---------------------------------------------------------------------------
# Containment
# ---------------------------------------------------------------------------


class TestContainment:
    def test_reserved(self):
        assert is_reserved_path("/.trash")
        assert is_reserved_path("/.trash/x")
        assert not is_reserved_path("/.trashy")
        assert not is_reserved_path("/docs/.trash")

    def test_nested(self):
        assert is_nested("/a/b", "/a")
        assert not is_nested("/a", "/a")
        assert not is_nested("/ab", "/a")
        assert is_nested("/a", "/")

    def test_within_uses_separator_boundary(self):
        assert is_within("/srv/root", "/srv/root")
        assert is_within("/srv/root/a", "/srv/root")
        assert not is_within("/srv/root2", "/srv/root")


# ---------------------------------------------------------------------------
# Allow-lists
# ---------------------------------------------------------------------------


class TestAllowLists:
    def test_preview(self):
        assert is_text_previewable("/a.TXT")
        assert is_text_previewable("/a.csv")
        assert not is_text_previewable("/a.md")
        assert not is_text_previewable("/a.png")

    def test_edit(self):
        assert is_text_editable("/README.md")
        assert is_text_editable("/x.svg")
        assert not is_text_editable("/x.csv")
        assert not is_text_editable("/x.exe")

    def test_image(self):
        assert is_image_previewable("/p.JPEG")
        assert not is_image_previewable("/p.tiff")

    def test_mime(self):
        assert guess_mime_type("p.svg") == "image/svg+xml"
        assert guess_mime_type("p.png") == "image/png"
        assert guess_mime_type("unknown.zzz") == "application/octet-stream"


# ---------------------------------------------------------------------------
# Sorting, time, roles
# ---------------------------------------------------------------------------


class TestSortEntries:
    def test_dirs_first_then_case_insensitive(self):
        entries = [
            DirEntry("b.txt", "file"),
            DirEntry("Zeta", "dir"),
            DirEntry("A.txt", "file"),
            DirEntry("alpha", "dir"),
        ]
        assert [e.name for e in sort_entries(entries)] == ["alpha", "Zeta", "A.txt", "b.txt"]


class TestToMs:
    def test_none(self):
        assert to_ms(None) == 0

    def test_seconds(self):
        assert to_ms(1.5) == 1500

    def test_naive_datetime_is_utc(self):
        assert to_ms(datetime(1970, 1, 1, 0, 0, 1)) == 1000

    def test_aware_datetime(self):
        assert to_ms(datetime(1970, 1, 1, 0, 0, 2, tzinfo=UTC)) == 2000


class TestRoles:
    def test_default_is_read_write(self):
        assert normalize_role(None) is Role.READ_WRITE

    def test_parse(self):
        assert normalize_role(" Read-Only ") is Role.READ_ONLY
        assert normalize_role("admin") is Role.ADMIN

    def test_invalid(self):
        with pytest.raises(ValueError):
            normalize_role("superuser")

    def test_write_gate(self):
        require_write(Role.READ_WRITE)
        require_write(Role.ADMIN)
        with pytest.raises(ReadOnlyError):
            require_write(Role.READ_ONLY)
