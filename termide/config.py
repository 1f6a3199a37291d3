from __future__ import annotations

import os
import sys


def _env_bool(name: str, *, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    v = raw.strip().lower()
    if v in ("1", "true", "yes", "on"):
        return True
    if v in ("0", "false", "no", "off"):
        return False
    return default


def _env_int(name: str, default: int) -> int:
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return int(default)
    try:
        return int(raw)
    except Exception:
        return int(default)


def _env_float(name: str, default: float) -> float:
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return float(default)
    try:
        return float(raw)
    except Exception:
        return float(default)


def server_host() -> str:
    return (os.environ.get("TERMIDE_HOST") or "0.0.0.0").strip() or "0.0.0.0"


def server_port() -> int:
    return max(1, _env_int("TERMIDE_PORT", 3000))


def log_level() -> str:
    return (os.environ.get("TERMIDE_LOG_LEVEL") or "INFO").strip().upper() or "INFO"


def data_dir() -> str:
    return os.path.abspath((os.environ.get("TERMIDE_DATA_DIR") or "").strip() or os.getcwd())


def projects_dir() -> str:
    raw = (os.environ.get("TERMIDE_PROJECTS_DIR") or "").strip()
    return os.path.abspath(raw or os.path.join(data_dir(), "projects"))


def uploads_dir() -> str:
    raw = (os.environ.get("TERMIDE_UPLOADS_DIR") or "").strip()
    return os.path.abspath(raw or os.path.join(data_dir(), "uploads"))


def db_file() -> str:
    raw = (os.environ.get("TERMIDE_DB_FILE") or "").strip()
    return os.path.abspath(raw or os.path.join(data_dir(), "db.json"))


def python_interpreter() -> str:
    return (os.environ.get("TERMIDE_PYTHON") or "").strip() or sys.executable or "python3"


def node_interpreter() -> str:
    return (os.environ.get("TERMIDE_NODE") or "node").strip() or "node"


def shell_interpreter() -> str:
    return (os.environ.get("TERMIDE_SHELL") or "/bin/sh").strip() or "/bin/sh"


def run_timeout_s() -> float:
    # 0 disables the timeout; a hung run then stays Running until killed.
    return max(0.0, _env_float("TERMIDE_RUN_TIMEOUT_S", 0))


def kill_grace_s() -> float:
    return max(0.0, _env_float("TERMIDE_KILL_GRACE_S", 2))


def max_upload_bytes() -> int:
    return max(1, _env_int("TERMIDE_MAX_UPLOAD_BYTES", 50 * 1024 * 1024))


def debug_endpoints_enabled() -> bool:
    return _env_bool("TERMIDE_DEBUG_ENDPOINTS", default=True)


def github_api_url() -> str:
    return (
        (os.environ.get("GITHUB_API_URL") or "https://api.github.com")
        .strip()
        .rstrip("/")
    )


def backup_commit_message() -> str:
    return (
        os.environ.get("TERMIDE_BACKUP_COMMIT_MESSAGE") or "Backup from termide"
    ).strip() or "Backup from termide"


def git_commit_author_name() -> str:
    return (
        os.environ.get("TERMIDE_GIT_AUTHOR_NAME") or "termide"
    ).strip() or "termide"


def git_commit_author_email() -> str:
    return (
        os.environ.get("TERMIDE_GIT_AUTHOR_EMAIL") or "termide@localhost"
    ).strip() or "termide@localhost"
