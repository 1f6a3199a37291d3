"""Path guard mapping untrusted (project, relative path) pairs onto a project root.

Every operation that accepts a caller-supplied path goes through ``resolve``;
the check is pure path algebra and never touches the filesystem.
"""

from __future__ import annotations

import os
import re

from termide.config import projects_dir
from termide.errors import PathEscapeError

DEFAULT_PROJECT = "default"

_UNSAFE_CHARS_RE = re.compile(r"[^A-Za-z0-9_.-]")
_SUBSTITUTE = "-"


def sanitize_project_id(project: str | None) -> str:
    """Replace every character outside ``[A-Za-z0-9_.-]`` with ``-``.

    Distinct inputs may collapse onto the same name ("a b" and "a/b" both map
    to "a-b"); they then share one project root.
    """
    raw = "" if project is None else str(project)
    if not raw:
        return DEFAULT_PROJECT
    name = _UNSAFE_CHARS_RE.sub(_SUBSTITUTE, raw)
    # "." and ".." would name the projects directory or its parent.
    if not name.strip("."):
        name = _SUBSTITUTE * len(name)
    return name


def _contains(root: str, candidate: str) -> bool:
    return candidate == root or candidate.startswith(root.rstrip(os.sep) + os.sep)


def project_root(project: str | None, *, base_dir: str | None = None) -> str:
    base = os.path.normpath(os.path.abspath(base_dir or projects_dir()))
    root = os.path.normpath(os.path.join(base, sanitize_project_id(project)))
    if root == base or not _contains(base, root):
        raise PathEscapeError(f"project escapes projects dir: {project!r}")
    return root


def resolve_under(root: str, relative_path: str | None) -> str:
    raw = "" if relative_path is None else str(relative_path)
    if "\x00" in raw:
        raise PathEscapeError("invalid path")

    # Leading separators are treated as relative to the project root.
    rel = raw.lstrip("/")
    norm_root = os.path.normpath(root)
    full = os.path.normpath(os.path.join(norm_root, rel))
    if not _contains(norm_root, full):
        raise PathEscapeError(f"path escapes project root: {raw!r}")
    return full


def resolve(
    project: str | None,
    relative_path: str | None,
    *,
    base_dir: str | None = None,
) -> str:
    """Return the absolute path for ``relative_path`` inside ``project``.

    Raises PathEscapeError if the normalized result would leave the project root.
    """
    return resolve_under(project_root(project, base_dir=base_dir), relative_path)


def require_file_target(root: str, full: str) -> None:
    # File operations never act on the project root itself.
    if os.path.normpath(full) == os.path.normpath(root):
        raise PathEscapeError("refusing to use project root as a file")
