"""Runtime configuration.

All options live on :class:`Settings` with their defaults. ``from_env`` reads
``REPOLENS_*`` environment variables; CLI flags override single fields with
``dataclasses.replace``.
"""

from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass, field

ENV_PREFIX = "REPOLENS_"

DEFAULT_MODEL = "qwen2.5-coder:7b"
OLLAMA_BASE_URL = "http://localhost:11434"
GITHUB_API_URL = "https://api.github.com"

CLONE_TIMEOUT = 120  # seconds, per git invocation
ENRICHMENT_TIMEOUT = 30  # seconds for the whole enrichment step

MIN_DEPTH = 1
MAX_DEPTH = 10
DEFAULT_DEPTH = 3
DEFAULT_BRANCH = "main"


def _env(name: str, default: str | None = None) -> str | None:
    value = os.getenv(ENV_PREFIX + name)
    if value is None or value.strip() == "":
        return default
    return value.strip()


def _env_bool(name: str, default: bool) -> bool:
    value = _env(name)
    if value is None:
        return default
    return value.lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    value = _env(name)
    return int(value) if value is not None else default


def _env_float(name: str, default: float) -> float:
    value = _env(name)
    return float(value) if value is not None else default


@dataclass
class Settings:
    """Every recognised RepoLens option and its default."""

    database_url: str = "sqlite:///repolens.db"
    workspace_root: str = field(default_factory=tempfile.gettempdir)
    clone_timeout: float = CLONE_TIMEOUT

    enrichment_enabled: bool = True
    enrichment_timeout: float = ENRICHMENT_TIMEOUT
    ollama_url: str = OLLAMA_BASE_URL
    ollama_model: str = DEFAULT_MODEL

    max_concurrent_analyses: int = 2
    progress_grace_period: float = 5.0
    allow_local_urls: bool = False  # file:// clones, CLI only

    github_api_url: str = GITHUB_API_URL
    github_token: str | None = None

    debug: bool = False
    log_level: str = "INFO"
    host: str = "127.0.0.1"
    port: int = 8420

    @classmethod
    def from_env(cls) -> "Settings":
        defaults = cls()
        return cls(
            database_url=_env("DATABASE_URL", defaults.database_url),
            workspace_root=_env("WORKSPACE_ROOT", defaults.workspace_root),
            clone_timeout=_env_float("CLONE_TIMEOUT", defaults.clone_timeout),
            enrichment_enabled=_env_bool("ENRICHMENT_ENABLED", defaults.enrichment_enabled),
            enrichment_timeout=_env_float("ENRICHMENT_TIMEOUT", defaults.enrichment_timeout),
            ollama_url=_env("OLLAMA_URL", defaults.ollama_url),
            ollama_model=_env("OLLAMA_MODEL", defaults.ollama_model),
            max_concurrent_analyses=_env_int("MAX_CONCURRENT", defaults.max_concurrent_analyses),
            progress_grace_period=_env_float("PROGRESS_GRACE", defaults.progress_grace_period),
            allow_local_urls=_env_bool("ALLOW_LOCAL_URLS", defaults.allow_local_urls),
            github_api_url=_env("GITHUB_API_URL", defaults.github_api_url),
            github_token=_env("GITHUB_TOKEN") or os.getenv("GITHUB_TOKEN") or None,
            debug=_env_bool("DEBUG", defaults.debug),
            log_level=_env("LOG_LEVEL", defaults.log_level),
            host=_env("HOST", defaults.host),
            port=_env_int("PORT", defaults.port),
        )
