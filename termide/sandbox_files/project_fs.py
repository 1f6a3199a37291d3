from __future__ import annotations

import logging
import os
import shutil
from collections.abc import Iterator
from contextlib import suppress

from termide.errors import IOFailure, NotFoundError, PathEscapeError
from termide.sandbox_files.policy import (
    project_root,
    require_file_target,
    resolve_under,
)

logger = logging.getLogger(__name__)


def _upload_basename(filename: str) -> str:
    # Browsers may send "C:\\dir\\file.txt"; only the final segment is kept.
    name = os.path.basename(str(filename or "").replace("\\", "/"))
    if not name or name in (".", ".."):
        raise PathEscapeError(f"invalid upload filename: {filename!r}")
    return name


class ProjectFs:
    """File operations confined to one project root.

    Paths passed to the public methods are caller-supplied relative paths;
    each is resolved through the sandbox guard before any I/O happens.
    """

    def __init__(self, root: str) -> None:
        self._root = os.path.normpath(os.path.abspath(root))

    @classmethod
    def for_project(cls, project: str | None, *, base_dir: str | None = None) -> ProjectFs:
        return cls(project_root(project, base_dir=base_dir))

    @property
    def root(self) -> str:
        return self._root

    def exists(self) -> bool:
        return os.path.isdir(self._root)

    def resolve(self, path: str | None) -> str:
        return resolve_under(self._root, path)

    def _file_target(self, path: str | None) -> str:
        full = self.resolve(path)
        require_file_target(self._root, full)
        return full

    def ensure_root(self) -> str:
        try:
            os.makedirs(self._root, exist_ok=True)
        except OSError as exc:
            raise IOFailure(str(exc)) from exc
        return self._root

    def iter_files(self) -> Iterator[str]:
        """Yield every regular file under the root, relative and '/'-separated.

        Depth-first, entries sorted by name within a directory. Symlinks are
        followed; a directory already visited on the current walk (same device
        and inode) is skipped, which breaks symlink cycles.
        """
        if not os.path.isdir(self._root):
            return

        visited: set[tuple[int, int]] = set()

        def _walk(dir_path: str, rel_prefix: str) -> Iterator[str]:
            try:
                st = os.stat(dir_path)
            except OSError:
                return
            key = (st.st_dev, st.st_ino)
            if key in visited:
                logger.debug("skipping already visited directory %s", dir_path)
                return
            visited.add(key)

            try:
                with os.scandir(dir_path) as it:
                    entries = sorted(it, key=lambda e: e.name)
            except OSError as exc:
                raise IOFailure(str(exc)) from exc

            for entry in entries:
                rel = f"{rel_prefix}{entry.name}"
                try:
                    is_dir = entry.is_dir(follow_symlinks=True)
                    is_file = not is_dir and entry.is_file(follow_symlinks=True)
                except OSError:
                    # Dangling symlink or entry removed mid-walk.
                    continue
                if is_dir:
                    yield from _walk(entry.path, rel + "/")
                elif is_file:
                    yield rel

        yield from _walk(self._root, "")

    def ls(self) -> list[str]:
        return list(self.iter_files())

    def read(self, path: str) -> bytes:
        full = self._file_target(path)
        try:
            with open(full, "rb") as f:
                return f.read()
        except (FileNotFoundError, NotADirectoryError) as exc:
            raise NotFoundError(f"not found: {path}") from exc
        except OSError as exc:
            raise IOFailure(str(exc)) from exc

    def write(self, path: str, content: bytes | str | None) -> str:
        full = self._file_target(path)
        payload = content if isinstance(content, (bytes, bytearray)) else (content or "").encode("utf-8")
        try:
            os.makedirs(os.path.dirname(full), exist_ok=True)
            with open(full, "wb") as f:
                f.write(payload)
        except OSError as exc:
            raise IOFailure(str(exc)) from exc
        return full

    def rm(self, path: str) -> None:
        full = self._file_target(path)
        try:
            os.unlink(full)
        except (FileNotFoundError, NotADirectoryError) as exc:
            raise NotFoundError(f"not found: {path}") from exc
        except OSError as exc:
            raise IOFailure(str(exc)) from exc

    def upload_target(self, filename: str) -> str:
        return self._file_target(_upload_basename(filename))

    def place_upload(self, filename: str, source_path: str) -> str:
        """Move an already-received temp file into the root under its base name."""
        dest = self.upload_target(filename)
        self.ensure_root()
        try:
            os.rename(source_path, dest)
            return dest
        except OSError as exc:
            # Typically EXDEV when the upload dir is on another filesystem.
            logger.info("upload rename failed (%s); copying instead", exc)

        try:
            shutil.copyfile(source_path, dest)
        except OSError as exc:
            raise IOFailure(str(exc)) from exc
        with suppress(FileNotFoundError):
            os.unlink(source_path)
        return dest
