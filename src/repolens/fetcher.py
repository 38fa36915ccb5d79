"""Repository fetcher - shallow git clones under a timeout.

A failed clone with an explicit branch is retried once without ``--branch``
so repositories whose default branch is not ``main`` still work. There is no
further retry and no backoff.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path

from .config import CLONE_TIMEOUT
from .errors import CloneFailure

logger = logging.getLogger(__name__)

PLATFORM_PATTERNS = {
    "github": re.compile(r"github\.com[/:]([^/]+)/([^/\s#?]+)"),
    "gitlab": re.compile(r"gitlab\.com[/:]([^/]+)/([^/\s#?]+)"),
    "bitbucket": re.compile(r"bitbucket\.org[/:]([^/]+)/([^/\s#?]+)"),
}


@dataclass
class RepoInfo:
    """Hosting details parsed from a repository URL."""

    url: str
    platform: str = "other"
    owner: str | None = None
    repo: str | None = None

    def to_dict(self) -> dict:
        return {k: v for k, v in self.__dict__.items() if v is not None}


def parse_repo_url(url: str) -> RepoInfo:
    """Identify the hosting platform, owner and repository name of ``url``."""
    for platform, pattern in PLATFORM_PATTERNS.items():
        match = pattern.search(url)
        if match:
            repo = match.group(2)
            if repo.endswith(".git"):
                repo = repo[: -len(".git")]
            return RepoInfo(url=url, platform=platform, owner=match.group(1), repo=repo)
    return RepoInfo(url=url)


@dataclass
class CloneResult:
    path: Path
    branch: str | None
    used_fallback: bool = False


class RepositoryFetcher:
    """Runs ``git clone`` against a URL, branch and depth."""

    def __init__(self, timeout: float = CLONE_TIMEOUT, git: str = "git"):
        self.timeout = timeout
        self.git = git

    def clone(self, url: str, dest: Path, branch: str | None = None, depth: int = 1) -> CloneResult:
        """Clone ``url`` into ``dest``; raise CloneFailure if both attempts fail."""
        ok, diagnostic = self._run_clone(url, dest, branch, depth)
        if ok:
            logger.info(f"Cloned {url} ({branch or 'default branch'}) to {dest}")
            return CloneResult(path=dest, branch=branch)

        if not branch:
            raise CloneFailure("Failed to clone repository", diagnostic)

        logger.warning(f"Clone of branch {branch!r} failed for {url}, retrying with default branch")
        ok, diagnostic = self._run_clone(url, dest, None, depth)
        if ok:
            logger.info(f"Cloned {url} (default branch) to {dest}")
            return CloneResult(path=dest, branch=None, used_fallback=True)

        raise CloneFailure("Failed to clone repository", diagnostic)

    def is_reachable(self, url: str) -> bool:
        """Check that ``url`` answers ``git ls-remote`` without cloning it."""
        try:
            result = subprocess.run(
                [self.git, "ls-remote", "--heads", url],
                capture_output=True, text=True, timeout=self.timeout,
                env=_git_env(),
            )
        except (subprocess.TimeoutExpired, FileNotFoundError) as e:
            logger.warning(f"Reachability check failed for {url}: {e}")
            return False
        return result.returncode == 0

    def _run_clone(self, url: str, dest: Path, branch: str | None, depth: int) -> tuple[bool, str]:
        _clear_dir(dest)
        cmd = [self.git, "clone", "--depth", str(depth)]
        if branch:
            cmd += ["--branch", branch]
        cmd += [url, str(dest)]

        try:
            result = subprocess.run(
                cmd, capture_output=True, text=True, timeout=self.timeout,
                env=_git_env(),
            )
        except subprocess.TimeoutExpired:
            return False, f"git clone timed out after {self.timeout}s"
        except FileNotFoundError:
            return False, "git is not installed or not in PATH"

        if result.returncode != 0:
            return False, result.stderr.strip()[:500] or f"git clone exited with {result.returncode}"
        return True, ""


def _git_env() -> dict:
    env = dict(os.environ)
    # Never block on a credentials prompt
    env["GIT_TERMINAL_PROMPT"] = "0"
    return env


def _clear_dir(dest: Path) -> None:
    """git refuses to clone into a non-empty directory left by a failed attempt."""
    if dest.exists():
        shutil.rmtree(dest, ignore_errors=True)
    dest.parent.mkdir(parents=True, exist_ok=True)
