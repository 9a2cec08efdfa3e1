"""ArchiveBuilder — validate a selection and stream it as a zip or tar.gz.

The builder owns validation, the compression decision and the archive name.
Producing the bytes is delegated to an ``Archiver``; two are provided:
``SubprocessArchiver`` drives the ``zip`` / ``tar`` command line tools and
``PythonArchiver`` uses ``zipfile`` / ``tarfile``.
"""

from __future__ import annotations

import asyncio
import logging
import os
import tarfile
import tempfile
import zipfile
from contextlib import aclosing
from datetime import UTC, datetime
from typing import IO, TYPE_CHECKING, Protocol, runtime_checkable

from .exceptions import InvalidFormatError, InvalidOperationError, PathNotFoundError, StorageError
from .protocol import SupportsArchive
from .types import ArchiveFormat, ArchiveStream, Compression
from .utils import normalize_path, split_path

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Sequence

    from .protocol import StorageBackend

logger = logging.getLogger(__name__)

DEFAULT_LARGE_BYTES = 100 * 1024 * 1024
CHUNK_SIZE = 64 * 1024

_FORMAT_ALIASES = {
    "zip": ArchiveFormat.ZIP,
    "targz": ArchiveFormat.TARGZ,
    "tar.gz": ArchiveFormat.TARGZ,
    "tgz": ArchiveFormat.TARGZ,
}


def parse_format(raw: str | ArchiveFormat | None) -> ArchiveFormat:
    """Map a user-supplied format name to an ``ArchiveFormat``. Missing means zip."""
    if isinstance(raw, ArchiveFormat):
        return raw
    key = (raw or "zip").strip().lower()
    try:
        return _FORMAT_ALIASES[key]
    except KeyError:
        raise InvalidFormatError(f"Invalid archive format: {raw!r}") from None


def archive_filename(
    paths: Sequence[str], fmt: ArchiveFormat, *, now: datetime | None = None
) -> str:
    """Single item: its base name. Several: ``bundle-YYYY-MM-DD-HH-MM-SS``."""
    if len(paths) == 1:
        base = split_path(paths[0])[1]
    else:
        stamp = (now or datetime.now(UTC)).strftime("%Y-%m-%d-%H-%M-%S")
        base = f"bundle-{stamp}"
    base = base.replace("\r", "").replace("\n", "").replace('"', "") or "bundle"
    return f"{base}{fmt.extension}"


# =============================================================================
# Archivers
# =============================================================================


@runtime_checkable
class Archiver(Protocol):
    """Turns items under a real directory into archive bytes."""

    def stream(
        self,
        working_dir: str,
        relative_paths: Sequence[str],
        fmt: ArchiveFormat,
        compression: Compression,
    ) -> AsyncIterator[bytes]: ...


class SubprocessArchiver:
    """Pipe the output of ``zip -q -r -y [-0] -`` or ``tar -czf -``."""

    def __init__(self, chunk_size: int = CHUNK_SIZE) -> None:
        self.chunk_size = chunk_size

    @staticmethod
    def command(
        relative_paths: Sequence[str], fmt: ArchiveFormat, compression: Compression
    ) -> list[str]:
        # A leading "-" would be read as an option.
        items = [f"./{p}" if p.startswith("-") else p for p in relative_paths]
        if fmt is ArchiveFormat.ZIP:
            level = ["-0"] if compression is Compression.STORE else []
            return ["zip", "-q", "-r", "-y", *level, "-", *items]
        return ["tar", "-czf", "-", *items]

    async def stream(
        self,
        working_dir: str,
        relative_paths: Sequence[str],
        fmt: ArchiveFormat,
        compression: Compression,
    ) -> AsyncIterator[bytes]:
        cmd = self.command(relative_paths, fmt, compression)
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=working_dir,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise StorageError("Archive tool is not available") from e

        assert proc.stdout is not None
        assert proc.stderr is not None
        try:
            while True:
                chunk = await proc.stdout.read(self.chunk_size)
                if not chunk:
                    break
                yield chunk
            stderr = await proc.stderr.read()
            code = await proc.wait()
            if code != 0:
                logger.error(
                    "Archive failed (%s exit %d): %s",
                    cmd[0],
                    code,
                    stderr.decode(errors="replace").strip(),
                )
                raise StorageError(f"Archive tool exited with status {code}")
        finally:
            if proc.returncode is None:
                proc.kill()
                await proc.wait()


class PythonArchiver:
    """Build the archive with the standard library into a temporary file, then stream it."""

    def __init__(self, chunk_size: int = CHUNK_SIZE) -> None:
        self.chunk_size = chunk_size

    @staticmethod
    def _write_zip(
        spool: IO[bytes],
        working_dir: str,
        relative_paths: Sequence[str],
        compression: Compression,
    ) -> None:
        method = zipfile.ZIP_STORED if compression is Compression.STORE else zipfile.ZIP_DEFLATED
        with zipfile.ZipFile(spool, "w", compression=method) as zf:
            for rel in relative_paths:
                full = os.path.join(working_dir, rel)
                if not os.path.isdir(full):
                    zf.write(full, rel)
                    continue
                zf.write(full, rel)
                for dirpath, dirnames, filenames in os.walk(full):
                    dirnames.sort()
                    for name in dirnames:
                        path = os.path.join(dirpath, name)
                        zf.write(path, os.path.relpath(path, working_dir))
                    for name in sorted(filenames):
                        path = os.path.join(dirpath, name)
                        if os.path.islink(path):
                            continue
                        zf.write(path, os.path.relpath(path, working_dir))

    @staticmethod
    def _write_targz(spool: IO[bytes], working_dir: str, relative_paths: Sequence[str]) -> None:
        with tarfile.open(fileobj=spool, mode="w:gz") as tf:
            for rel in relative_paths:
                tf.add(os.path.join(working_dir, rel), arcname=rel)

    def _build(
        self,
        working_dir: str,
        relative_paths: Sequence[str],
        fmt: ArchiveFormat,
        compression: Compression,
    ) -> IO[bytes]:
        spool = tempfile.TemporaryFile()
        try:
            if fmt is ArchiveFormat.ZIP:
                self._write_zip(spool, working_dir, relative_paths, compression)
            else:
                self._write_targz(spool, working_dir, relative_paths)
            spool.seek(0)
        except BaseException:
            spool.close()
            raise
        return spool

    async def stream(
        self,
        working_dir: str,
        relative_paths: Sequence[str],
        fmt: ArchiveFormat,
        compression: Compression,
    ) -> AsyncIterator[bytes]:
        try:
            spool = await asyncio.to_thread(
                self._build, working_dir, relative_paths, fmt, compression
            )
        except OSError as e:
            logger.error("Archive build failed in %s", working_dir, exc_info=True)
            raise StorageError(f"Archive build failed: {e}") from e
        try:
            while True:
                chunk = await asyncio.to_thread(spool.read, self.chunk_size)
                if not chunk:
                    break
                yield chunk
        finally:
            spool.close()


# =============================================================================
# Builder
# =============================================================================


class ArchiveBuilder:
    """Validates a selection up front and returns a lazily produced archive.

    Nothing is materialized until the returned ``chunks`` iterator is
    consumed; any scratch tree is removed when it finishes, fails, or is
    closed.
    """

    def __init__(
        self,
        backend: StorageBackend,
        archiver: Archiver | None = None,
        *,
        large_bytes: int = DEFAULT_LARGE_BYTES,
    ) -> None:
        if not isinstance(backend, SupportsArchive):
            raise TypeError(f"{type(backend).__name__} cannot materialize archives")
        self._backend = backend
        self._archiver = archiver or SubprocessArchiver()
        self.large_bytes = large_bytes

    async def build(
        self,
        paths: Sequence[str],
        fmt: str | ArchiveFormat | None = ArchiveFormat.ZIP,
        *,
        root: str,
    ) -> ArchiveStream:
        """Validate every item, choose compression, and return the stream."""
        archive_format = parse_format(fmt)
        if not paths:
            raise InvalidOperationError("No paths provided")

        selected: list[str] = []
        for raw in paths:
            path = normalize_path(raw)
            if path == "/":
                raise InvalidOperationError("Cannot archive the root")
            if await self._backend.stat(path, root=root) is None:
                raise PathNotFoundError(f"Not found: {path}")
            if path not in selected:
                selected.append(path)

        total = 0
        if archive_format is ArchiveFormat.ZIP:
            for path in selected:
                total += await self._backend.tree_size(
                    path, root=root, limit=self.large_bytes - total
                )
                if total >= self.large_bytes:
                    break
            compression = Compression.STORE if total >= self.large_bytes else Compression.DEFLATE
        else:
            compression = Compression.GZIP
        logger.debug(
            "Archiving %d items as %s (%s)",
            len(selected),
            archive_format.value,
            compression.value,
        )

        return ArchiveStream(
            filename=archive_filename(selected, archive_format),
            format=archive_format,
            compression=compression,
            total_bytes=total,
            chunks=self._produce(selected, archive_format, compression, root=root),
        )

    async def _produce(
        self,
        paths: list[str],
        fmt: ArchiveFormat,
        compression: Compression,
        *,
        root: str,
    ) -> AsyncIterator[bytes]:
        materialize = self._backend.materialize  # type: ignore[attr-defined]
        async with materialize(paths, root=root) as (working_dir, relative):
            stream = self._archiver.stream(working_dir, relative, fmt, compression)
            async with aclosing(stream) as chunks:
                async for chunk in chunks:
                    yield chunk
