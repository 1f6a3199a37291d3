from __future__ import annotations

import json
import logging
import os
import threading
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from typing import Any

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Project:
    name: str
    username: str
    created_at: str


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


def _project_from_row(row: Any) -> Project | None:
    if not isinstance(row, dict):
        return None
    name = row.get("name")
    if not isinstance(name, str) or not name:
        return None
    return Project(
        name=name,
        username=str(row.get("username") or "anonymous"),
        created_at=str(row.get("created_at") or row.get("createdAt") or ""),
    )


class ProjectsDb:
    """Project metadata persisted as a JSON document.

    Loaded once with ``load()``; every mutation rewrites the file
    (write-to-temp then rename). Callers share one instance by reference.
    """

    def __init__(self, path: str) -> None:
        self._path = path
        self._lock = threading.Lock()
        self._projects: list[Project] = []
        self._loaded = False

    @property
    def path(self) -> str:
        return self._path

    def load(self) -> None:
        with self._lock:
            self._projects = self._read_file()
            self._loaded = True

    def _read_file(self) -> list[Project]:
        try:
            with open(self._path, encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return []
        except (OSError, ValueError):
            logger.warning("projects db %s unreadable; starting empty", self._path)
            return []
        rows = data.get("projects") if isinstance(data, dict) else None
        if not isinstance(rows, list):
            return []
        out: list[Project] = []
        for row in rows:
            p = _project_from_row(row)
            if p is not None:
                out.append(p)
        return out

    def _ensure_loaded(self) -> None:
        if not self._loaded:
            self._projects = self._read_file()
            self._loaded = True

    def _flush_locked(self) -> None:
        payload = {"projects": [asdict(p) for p in self._projects]}
        parent = os.path.dirname(self._path)
        if parent:
            os.makedirs(parent, exist_ok=True)
        tmp = f"{self._path}.tmp"
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(payload, f, indent=2)
        os.replace(tmp, self._path)

    def flush(self) -> None:
        with self._lock:
            self._ensure_loaded()
            self._flush_locked()

    def list_projects(self) -> list[Project]:
        with self._lock:
            self._ensure_loaded()
            return list(self._projects)

    def get_project(self, name: str, *, username: str | None = None) -> Project | None:
        with self._lock:
            self._ensure_loaded()
            for p in self._projects:
                if p.name == name and (username is None or p.username == username):
                    return p
        return None

    def add_project(self, name: str, *, username: str | None = None) -> Project:
        """Record a project; idempotent on (name, username)."""
        user = (username or "").strip() or "anonymous"
        with self._lock:
            self._ensure_loaded()
            for p in self._projects:
                if p.name == name and p.username == user:
                    return p
            project = Project(name=name, username=user, created_at=_now_iso())
            self._projects.append(project)
            self._flush_locked()
            logger.info("project recorded: %s (user=%s)", name, user)
            return project
