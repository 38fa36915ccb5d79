"""Analysis service: the facade used by the HTTP surface and the CLI.

Owns the bounded worker pool that caps simultaneous runs, and keeps a
reference to every in-flight run so shutdown can wait for them.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Callable, Optional

from .analyzer import RepoAnalysis
from .broadcaster import ProgressBroadcaster
from .config import Settings
from .enrichment import EnrichmentAdapter
from .errors import ValidationError
from .fetcher import RepositoryFetcher, parse_repo_url
from .github import GitHubClient, GitHubError
from .model import OllamaClient
from .models import STATUS_COMPLETED
from .pipeline import AnalysisOptions, AnalysisPipeline
from .prompts import FACET_PROMPTS
from .store import AnalysisStore, Database
from .workspace import WorkspaceManager

if TYPE_CHECKING:
    from .schemas import FileInfo
    from .store import AnalysisRecord

logger = logging.getLogger(__name__)

FILE_TYPES = ("all", "file", "directory")
DEFAULT_ASPECTS = ("security", "performance", "devops")


class AnalysisService:
    def __init__(
        self,
        store: "AnalysisStore",
        broadcaster: "ProgressBroadcaster",
        pipeline: AnalysisPipeline,
        fetcher: "RepositoryFetcher",
        github: Optional["GitHubClient"] = None,
        max_concurrent: int = 2,
        allow_local_urls: bool = False,
    ):
        self.store = store
        self.broadcaster = broadcaster
        self.pipeline = pipeline
        self.fetcher = fetcher
        self.github = github
        self.max_concurrent = max(1, max_concurrent)
        self.allow_local_urls = allow_local_urls
        self._semaphore: asyncio.Semaphore | None = None
        self._tasks: set[asyncio.Task] = set()
        self._closers: list[Callable[[], None]] = []

    @property
    def semaphore(self) -> asyncio.Semaphore:
        # Created on first use so it binds to the running loop
        if self._semaphore is None:
            self._semaphore = asyncio.Semaphore(self.max_concurrent)
        return self._semaphore

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    async def start(self, owner_id: str, options: AnalysisOptions, wait: bool = True) -> "AnalysisRecord":
        """Validate, create the pending record and schedule the run.

        With ``wait`` the returned record is the terminal one; otherwise it
        is the pending record and the run continues in the background.
        """
        options.validate(allow_local=self.allow_local_urls)
        record = await asyncio.to_thread(self.store.create, owner_id, options)

        task = asyncio.create_task(self._run(record.id, options), name=f"analysis-{record.id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

        if not wait:
            return record
        await asyncio.shield(task)
        return await asyncio.to_thread(self.store.get, record.id, owner_id)

    async def _run(self, analysis_id: str, options: AnalysisOptions) -> str:
        async with self.semaphore:
            return await self.pipeline.run(analysis_id, options)

    async def get(self, analysis_id: str, owner_id: str) -> "AnalysisRecord":
        return await asyncio.to_thread(self.store.get, analysis_id, owner_id)

    async def list(self, owner_id: str, **filters: Any) -> tuple[list["AnalysisRecord"], int]:
        return await asyncio.to_thread(self.store.list, owner_id, **filters)

    async def stats(self, owner_id: str) -> dict[str, Any]:
        return await asyncio.to_thread(self.store.stats, owner_id)

    async def delete(self, analysis_id: str, owner_id: str) -> None:
        await asyncio.to_thread(self.store.delete, analysis_id, owner_id)

    async def files(
        self, analysis_id: str, owner_id: str, path: str = "", file_type: str = "all"
    ) -> list["FileInfo"]:
        """Files of a completed analysis, filtered by path prefix and entry type."""
        if file_type not in FILE_TYPES:
            raise ValidationError(f"type must be one of {', '.join(FILE_TYPES)}")
        record = await self.get(analysis_id, owner_id)
        if record.analysis_data is None:
            return []

        prefix = path.strip("/")
        files = []
        for f in record.analysis_data.files:
            if prefix and not (f.path == prefix or f.path.startswith(prefix + "/")):
                continue
            if file_type == "file" and f.is_directory:
                continue
            if file_type == "directory" and not f.is_directory:
                continue
            files.append(f)
        return files

    async def progress_snapshot(self, analysis_id: str, owner_id: str) -> dict[str, Any]:
        """Current status of an analysis: live from the broadcaster, else from the store."""
        record = await self.get(analysis_id, owner_id)
        snapshot = self.broadcaster.snapshot(analysis_id)
        if snapshot is not None:
            return snapshot
        return {
            "analysis_id": record.id,
            "status": record.status,
            "stage": None,
            "percent": 100 if record.is_terminal else 0,
            "message": record.error,
            "updated_at": record.updated_at,
        }

    async def suggestions(
        self, analysis_id: str, owner_id: str, aspects: list[str] | None = None
    ) -> dict[str, Any]:
        """Fresh recommendations for ``aspects`` of a completed analysis.

        Answers come from the stored surface data, so the workspace is not
        needed, and the stored record is never changed. Unknown aspects and
        unfinished analyses raise ValidationError.
        """
        record = await self.get(analysis_id, owner_id)
        aspects = list(dict.fromkeys(aspects or DEFAULT_ASPECTS))
        unknown = [a for a in aspects if a not in FACET_PROMPTS]
        if unknown:
            raise ValidationError(
                f"Unknown aspects: {', '.join(unknown)}",
                f"Known aspects: {', '.join(FACET_PROMPTS)}",
            )
        if record.status != STATUS_COMPLETED or record.analysis_data is None:
            raise ValidationError("Analysis not completed yet")

        data = record.analysis_data
        name = data.repository.repo or record.repository_url.rstrip("/").rsplit("/", 1)[-1].removesuffix(".git")
        analysis = RepoAnalysis.from_dict(name, data.model_dump())
        answers, source = await self.pipeline.enrichment.suggest(analysis, aspects)
        logger.info(f"Generated {', '.join(aspects)} suggestions for {analysis_id} ({source})")
        return {"analysis_id": record.id, "aspects": aspects, "suggestions": answers, "source": source}

    async def validate(self, url: str) -> dict[str, Any]:
        """Check that ``url`` names a reachable repository.

        GitHub URLs are looked up through the REST API when a client is
        configured; everything else (and API errors) falls back to a
        ``git ls-remote`` reachability check.
        """
        try:
            AnalysisOptions(url=url).validate(allow_local=self.allow_local_urls)
        except ValidationError as e:
            return {"valid": False, "error": e.message}

        info = parse_repo_url(url.strip())
        if self.github is not None and info.platform == "github":
            try:
                metadata = await asyncio.to_thread(self.github.repository_metadata, info.owner, info.repo)
            except GitHubError as e:
                logger.warning(f"GitHub lookup failed for {url}, checking with git: {e}")
            else:
                if metadata is None:
                    return {"valid": False, "repository": info.to_dict(), "error": "Repository not found"}
                return {"valid": True, "repository": info.to_dict(), "metadata": metadata}

        reachable = await asyncio.to_thread(self.fetcher.is_reachable, url.strip())
        if not reachable:
            return {"valid": False, "repository": info.to_dict(), "error": "Repository is not accessible"}
        return {"valid": True, "repository": info.to_dict()}

    async def shutdown(self) -> None:
        """Wait for every in-flight run to reach a terminal state."""
        if self._tasks:
            logger.info(f"Waiting for {len(self._tasks)} running analyses")
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def add_closer(self, closer: Callable[[], None]) -> None:
        self._closers.append(closer)

    def close(self) -> None:
        """Release clients and connections registered with ``add_closer``."""
        self.broadcaster.close()
        for closer in reversed(self._closers):
            try:
                closer()
            except Exception as e:
                logger.warning(f"Error while closing service resource: {e}")
        self._closers.clear()


def _model_ready(model: OllamaClient, settings: Settings) -> bool:
    if not model.is_ollama_running():
        logger.warning(f"Ollama is not reachable at {settings.ollama_url}, using fallback insights")
        return False
    if not model.is_model_available():
        logger.warning(
            f"Model {settings.ollama_model} is not available "
            f"(run: ollama pull {settings.ollama_model}), using fallback insights"
        )
        return False
    return True


def build_service(
    settings: Settings,
    fetcher: RepositoryFetcher | None = None,
    model: Any = None,
) -> AnalysisService:
    """Wire every collaborator from ``settings``; explicit arguments win."""
    db = Database(settings.database_url)
    db.init_db()
    store = AnalysisStore(db)

    fetcher = fetcher or RepositoryFetcher(timeout=settings.clone_timeout)
    owns_model = model is None and settings.enrichment_enabled
    if owns_model:
        model = OllamaClient(
            model=settings.ollama_model,
            base_url=settings.ollama_url,
            timeout=settings.enrichment_timeout,
        )
        if not _model_ready(model, settings):
            model.close()
            model = None
            owns_model = False
    enrichment = EnrichmentAdapter(model, timeout=settings.enrichment_timeout)
    github = GitHubClient(settings.github_api_url, settings.github_token)

    broadcaster = ProgressBroadcaster(grace_period=settings.progress_grace_period)
    pipeline = AnalysisPipeline(
        store=store,
        broadcaster=broadcaster,
        workspaces=WorkspaceManager(settings.workspace_root),
        fetcher=fetcher,
        enrichment=enrichment,
        debug=settings.debug,
    )
    service = AnalysisService(
        store=store,
        broadcaster=broadcaster,
        pipeline=pipeline,
        fetcher=fetcher,
        github=github,
        max_concurrent=settings.max_concurrent_analyses,
        allow_local_urls=settings.allow_local_urls,
    )
    service.add_closer(db.dispose)
    service.add_closer(github.close)
    if owns_model:
        service.add_closer(model.close)
    logger.info(f"Analysis service ready (database {settings.database_url}, enrichment {'on' if model else 'off'})")
    return service
