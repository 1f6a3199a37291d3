"""Streamed zip export of a project tree.

The archive is written to a non-seekable sink, so zipfile emits data
descriptors and each compressed block can be handed to the caller as soon
as it is produced; memory use is bounded by one block, not the project size.
"""

from __future__ import annotations

import io
import logging
import os
import zipfile
from collections.abc import Iterator

from termide.errors import NotFoundError
from termide.sandbox_files.project_fs import ProjectFs

logger = logging.getLogger(__name__)

ZIP_MEDIA_TYPE = "application/zip"
_READ_BLOCK = 64 * 1024


class _ChunkSink(io.RawIOBase):
    def __init__(self) -> None:
        self._chunks: list[bytes] = []

    def writable(self) -> bool:
        return True

    def write(self, b) -> int:  # type: ignore[override]
        data = bytes(b)
        if data:
            self._chunks.append(data)
        return len(data)

    def drain(self) -> bytes:
        out = b"".join(self._chunks)
        self._chunks.clear()
        return out


def _iter_zip(fs: ProjectFs) -> Iterator[bytes]:
    sink = _ChunkSink()
    with zipfile.ZipFile(sink, mode="w", compression=zipfile.ZIP_DEFLATED) as zf:
        for rel in fs.iter_files():
            full = os.path.join(fs.root, *rel.split("/"))
            try:
                zinfo = zipfile.ZipInfo.from_file(full, arcname=rel)
                zinfo.compress_type = zipfile.ZIP_DEFLATED
                with open(full, "rb") as src, zf.open(zinfo, mode="w") as dest:
                    while True:
                        block = src.read(_READ_BLOCK)
                        if not block:
                            break
                        dest.write(block)
                        chunk = sink.drain()
                        if chunk:
                            yield chunk
            except OSError:
                # The response is already partially sent; abort it.
                logger.exception("archive aborted while adding %s", rel)
                raise
            chunk = sink.drain()
            if chunk:
                yield chunk
    # Central directory is written on close.
    tail = sink.drain()
    if tail:
        yield tail


def stream_project_zip(fs: ProjectFs) -> Iterator[bytes]:
    """Return an iterator of zip bytes for every file under ``fs.root``.

    Raises NotFoundError immediately (before any bytes) if the root is missing.
    Entry names are relative to the root.
    """
    if not fs.exists():
        raise NotFoundError(f"project not found: {fs.root}")
    return _iter_zip(fs)


def archive_filename(project_name: str) -> str:
    return f"{project_name}.zip"
