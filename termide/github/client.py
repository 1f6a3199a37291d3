from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import requests

from termide.config import github_api_url


class GitHubError(RuntimeError):
    def __init__(self, message: str, *, status_code: int | None = None, payload: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload


@dataclass(frozen=True)
class GitHubRepo:
    id: int
    name: str
    full_name: str
    html_url: str
    clone_url: str
    private: bool


class GitHubClient:
    def __init__(self, *, base_url: str, token: str, session: requests.Session | None = None) -> None:
        self._base = base_url.rstrip("/")
        self._token = token
        self._http = session or requests.Session()

    @classmethod
    def from_token(cls, token: str, *, session: requests.Session | None = None) -> GitHubClient:
        tok = (token or "").strip()
        if not tok:
            raise GitHubError("GitHub token is required")
        return cls(base_url=github_api_url(), token=tok, session=session)

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"token {self._token}",
            "Accept": "application/vnd.github+json",
            "User-Agent": "termide",
        }

    def _url(self, path: str) -> str:
        return f"{self._base}{path}"

    def _request(
        self, method: str, path: str, *, payload: dict[str, Any] | None = None
    ) -> Any:
        try:
            res = self._http.request(
                method,
                self._url(path),
                headers=self._headers(),
                json=payload,
                timeout=30,
            )
        except requests.RequestException as exc:
            raise GitHubError(
                f"GitHub request failed for {method} {path}: {exc}",
                payload={"error": str(exc)},
            ) from exc
        if res.status_code >= 400:
            payload_out: Any
            try:
                payload_out = res.json()
            except Exception:
                payload_out = {"raw": res.text}
            raise GitHubError(
                f"GitHub API error {res.status_code} for {method} {path}",
                status_code=res.status_code,
                payload=payload_out,
            )
        try:
            return res.json()
        except Exception:
            return {}

    def create_repo(
        self,
        *,
        name: str,
        private: bool = True,
        description: str | None = None,
    ) -> GitHubRepo:
        """Create a repository owned by the authenticated user."""
        body: dict[str, Any] = {"name": name, "private": private}
        if description:
            body["description"] = description
        data = self._request("POST", "/user/repos", payload=body)
        return self._parse_repo(data)

    @staticmethod
    def _parse_repo(data: Any) -> GitHubRepo:
        if not isinstance(data, dict):
            raise GitHubError("Unexpected GitHub repo response", payload=data)
        try:
            return GitHubRepo(
                id=int(data["id"]),
                name=str(data.get("name") or ""),
                full_name=str(data.get("full_name") or ""),
                html_url=str(data.get("html_url") or ""),
                clone_url=str(data.get("clone_url") or ""),
                private=bool(data.get("private", True)),
            )
        except Exception as exc:
            raise GitHubError(
                "Failed to parse GitHub repo payload",
                payload={"data": data, "error": str(exc)},
            ) from exc
