"""Best-effort backup of a project tree to a new private GitHub repository.

Only repository creation is fatal. The local git steps that follow each
produce a StepResult; a failed step is logged and recorded, and the pipeline
moves on to the next one.
"""

from __future__ import annotations

import logging
import os
import subprocess
from dataclasses import asdict, dataclass, field
from typing import Any, Protocol

from termide.config import (
    backup_commit_message,
    git_commit_author_email,
    git_commit_author_name,
)
from termide.errors import RemoteCreateError
from termide.github.client import GitHubClient, GitHubError
from termide.sandbox_files.policy import sanitize_project_id

logger = logging.getLogger(__name__)

REMOTE_NAME = "origin"


class CommandRunner(Protocol):
    def run(
        self,
        args: list[str],
        *,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]: ...


@dataclass
class SubprocessRunner:
    def run(
        self,
        args: list[str],
        *,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        return subprocess.run(
            args,
            cwd=cwd,
            env=env,
            text=True,
            capture_output=True,
            check=check,
        )


@dataclass(frozen=True)
class StepResult:
    name: str
    ok: bool
    detail: str | None = None


@dataclass(frozen=True)
class BackupResult:
    ok: bool
    remote_url: str
    clone_url: str
    steps: list[StepResult] = field(default_factory=list)

    def warnings(self) -> list[StepResult]:
        return [s for s in self.steps if not s.ok]

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "remote_url": self.remote_url,
            "clone_url": self.clone_url,
            "steps": [asdict(s) for s in self.steps],
        }


def auth_remote_url(clone_url: str, token: str) -> str:
    """Embed ``token`` in the authority of an https URL for non-interactive push."""
    if not token or not clone_url.startswith("https://"):
        return clone_url
    return clone_url.replace("https://", f"https://{token}@", 1)


def _redact(text: str, token: str) -> str:
    if token:
        text = text.replace(token, "***")
    return text


def _git_env() -> dict[str, str]:
    env = os.environ.copy()
    env["GIT_TERMINAL_PROMPT"] = "0"
    return env


class _Steps:
    def __init__(self, runner: CommandRunner, *, cwd: str, token: str) -> None:
        self._runner = runner
        self._cwd = cwd
        self._token = token
        self._env = _git_env()
        self.results: list[StepResult] = []

    def attempt(self, args: list[str]) -> tuple[bool, str]:
        try:
            cp = self._runner.run(args, cwd=self._cwd, env=self._env, check=False)
        except (OSError, subprocess.SubprocessError) as exc:
            return False, _redact(str(exc), self._token)
        out = (cp.stderr or "").strip() or (cp.stdout or "").strip()
        return cp.returncode == 0, _redact(out, self._token)

    def record(self, name: str, ok: bool, detail: str | None) -> bool:
        if not ok:
            logger.warning("backup step %s failed: %s", name, detail)
        self.results.append(StepResult(name=name, ok=ok, detail=detail or None))
        return ok

    def run(self, name: str, args: list[str]) -> bool:
        ok, detail = self.attempt(args)
        return self.record(name, ok, detail)


def backup_project(
    root: str,
    *,
    project: str,
    token: str,
    client: GitHubClient | None = None,
    runner: CommandRunner | None = None,
    commit_message: str | None = None,
) -> BackupResult:
    """Create ``<project>`` on GitHub, commit ``root`` and push it.

    Raises RemoteCreateError when the repository cannot be created; no local
    git command runs in that case.
    """
    repo_name = sanitize_project_id(project)
    try:
        gh = client or GitHubClient.from_token(token)
        repo = gh.create_repo(
            name=repo_name,
            private=True,
            description=f"Backup from termide: {project}",
        )
    except GitHubError as exc:
        logger.warning("github create repo failed for %s: %s", repo_name, exc)
        raise RemoteCreateError(
            "github create repo failed",
            status_code=exc.status_code,
            payload=exc.payload,
        ) from exc

    steps = _Steps(runner or SubprocessRunner(), cwd=root, token=token)
    steps.record("remote_create", True, repo.html_url)

    # `git init` on an existing repository only reinitializes it.
    steps.run("init", ["git", "init"])
    steps.run("add", ["git", "add", "-A"])
    # Commit fails when nothing changed since the last backup; that is fine.
    steps.run(
        "commit",
        [
            "git",
            "-c",
            f"user.name={git_commit_author_name()}",
            "-c",
            f"user.email={git_commit_author_email()}",
            "commit",
            "-m",
            commit_message or backup_commit_message(),
        ],
    )

    push_url = auth_remote_url(repo.clone_url, token)
    ok, detail = steps.attempt(["git", "remote", "add", REMOTE_NAME, push_url])
    if not ok:
        ok, detail = steps.attempt(["git", "remote", "set-url", REMOTE_NAME, push_url])
    steps.record("remote", ok, detail)

    steps.run("push", ["git", "push", "-u", REMOTE_NAME, "HEAD"])

    logger.info(
        "backup of %s to %s finished with %d warning(s)",
        project,
        repo.html_url,
        sum(1 for s in steps.results if not s.ok),
    )
    return BackupResult(
        ok=True,
        remote_url=repo.html_url,
        clone_url=repo.clone_url,
        steps=steps.results,
    )
