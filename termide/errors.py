from __future__ import annotations

from typing import Any


class SandboxError(Exception):
    code = "sandbox_error"


class PathEscapeError(SandboxError, ValueError):
    code = "invalid_path"


class NotFoundError(SandboxError, FileNotFoundError):
    code = "not_found"


class UnsupportedKindError(SandboxError, ValueError):
    code = "unsupported_kind"


class IOFailure(SandboxError, OSError):
    code = "io_failure"


class SpawnError(SandboxError):
    code = "spawn_failed"

    def __init__(self, message: str, *, run_id: str | None = None):
        super().__init__(message)
        self.run_id = run_id


class RemoteCreateError(SandboxError):
    code = "remote_create_failed"

    def __init__(self, message: str, *, status_code: int | None = None, payload: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload
