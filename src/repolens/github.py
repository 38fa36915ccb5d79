"""GitHub REST client for repository metadata lookups."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from .config import GITHUB_API_URL

logger = logging.getLogger(__name__)


class GitHubError(Exception):
    """Error talking to the GitHub API (other than the repository being absent)."""


class GitHubClient:
    """Minimal client for ``GET /repos/{owner}/{repo}``."""

    def __init__(self, api_url: str = GITHUB_API_URL, token: str | None = None, timeout: float = 10):
        self.api_url = api_url.rstrip("/")
        headers = {
            "Accept": "application/vnd.github+json",
            "User-Agent": "repolens",
        }
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.Client(timeout=timeout, headers=headers)

    def repository_metadata(self, owner: str, repo: str) -> dict[str, Any] | None:
        """Return metadata for ``owner/repo``, or None if it does not exist.

        Raises GitHubError on transport failures, rate limiting and other
        non-404 error responses.
        """
        try:
            resp = self._client.get(f"{self.api_url}/repos/{owner}/{repo}")
        except httpx.HTTPError as e:
            raise GitHubError(f"Cannot reach GitHub API: {e}")

        if resp.status_code == 404:
            return None
        if resp.status_code != 200:
            raise GitHubError(f"GitHub API returned {resp.status_code}: {resp.text[:200]}")

        try:
            data = resp.json()
        except ValueError:
            raise GitHubError("GitHub API returned invalid JSON")

        return {
            "name": data.get("name"),
            "full_name": data.get("full_name"),
            "description": data.get("description"),
            "stars": data.get("stargazers_count", 0),
            "forks": data.get("forks_count", 0),
            "open_issues": data.get("open_issues_count", 0),
            "language": data.get("language"),
            "size": data.get("size", 0),
            "default_branch": data.get("default_branch"),
            "created_at": data.get("created_at"),
            "updated_at": data.get("updated_at"),
        }

    def close(self) -> None:
        self._client.close()
