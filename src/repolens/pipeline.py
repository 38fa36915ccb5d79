"""One analysis run, from clone to cleanup.

Stage order is fixed: fetch, walk, {detect, extract, metrics}, enrich,
persist, release. Blocking work runs in worker threads; the three
extraction steps run concurrently. A progress event is published at every
stage boundary and the workspace is released on every exit path.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from collections import Counter
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Protocol
from urllib.parse import urlparse

from . import events
from .analyzer import (
    EXT_LANG,
    FileEntry,
    RepoAnalysis,
    detect_languages,
    find_config_files,
    walk_structure,
)
from .config import DEFAULT_BRANCH, DEFAULT_DEPTH, MAX_DEPTH, MIN_DEPTH
from .dependencies import extract_dependencies
from .errors import CloneFailure, RepoLensError, StorageFailure, ValidationError, WalkFailure
from .fetcher import CloneResult, parse_repo_url
from .metrics import calculate_metrics
from .models import STATUS_COMPLETED, STATUS_FAILED
from .schemas import AnalysisData, AnalysisMetrics, Summary

if TYPE_CHECKING:
    from .broadcaster import ProgressBroadcaster
    from .enrichment import EnrichmentAdapter, Insights
    from .store import AnalysisStore
    from .workspace import WorkspaceManager

logger = logging.getLogger(__name__)

ALLOWED_SCHEMES = {"http", "https", "git", "ssh"}
# Clones from the local filesystem; only trusted callers enable these
LOCAL_SCHEMES = {"file"}
# git@host:owner/repo.git
SCP_LIKE_URL = re.compile(r"^[\w.-]+@[\w.-]+:[\w./~-]+$")
BRANCH_NAME = re.compile(r"^[^\s~^:?*\[\\-][^\s~^:?*\[\\]*$")

INTERNAL_ERROR = "Analysis failed due to an internal error"


class Fetcher(Protocol):
    def clone(self, url: str, dest: Path, branch: str | None = None, depth: int = 1) -> CloneResult: ...


@dataclass
class AnalysisOptions:
    """Every recognised analysis option and its default."""

    url: str
    branch: str = DEFAULT_BRANCH
    depth: int = DEFAULT_DEPTH
    include_dependencies: bool = True

    def validate(self, allow_local: bool = False) -> None:
        """Raise ValidationError for input the pipeline must never see.

        ``file://`` URLs are rejected unless ``allow_local`` is set.
        """
        url = (self.url or "").strip()
        if not url:
            raise ValidationError("Repository URL is required")
        if not SCP_LIKE_URL.match(url):
            parsed = urlparse(url)
            if parsed.scheme in LOCAL_SCHEMES and not allow_local:
                raise ValidationError("Invalid repository URL", "Local repositories are not allowed")
            if parsed.scheme not in ALLOWED_SCHEMES | LOCAL_SCHEMES:
                raise ValidationError("Invalid repository URL", f"Unsupported scheme: {parsed.scheme!r}")
            if parsed.scheme not in LOCAL_SCHEMES and not parsed.netloc:
                raise ValidationError("Invalid repository URL", "Missing host")
        self.url = url

        if isinstance(self.depth, bool) or not isinstance(self.depth, int):
            raise ValidationError(f"Depth must be an integer between {MIN_DEPTH} and {MAX_DEPTH}")
        if not MIN_DEPTH <= self.depth <= MAX_DEPTH:
            raise ValidationError(f"Depth must be between {MIN_DEPTH} and {MAX_DEPTH}")

        if not self.branch or not BRANCH_NAME.match(self.branch):
            raise ValidationError("Invalid branch name")


# --- Derived figures ---

def complexity_rating(total_lines: int, max_depth: int, largest_file_lines: int) -> str:
    """Coarse surface complexity from size and nesting."""
    if total_lines >= 50_000 or max_depth > 8 or largest_file_lines >= 2_000:
        return "high"
    if total_lines >= 5_000 or max_depth > 5 or largest_file_lines >= 500:
        return "medium"
    return "low"


def quality_score(suggestions: int) -> int:
    return max(0, min(100, 80 + 2 * suggestions))


def language_distribution(files: list[FileEntry]) -> dict[str, int]:
    counts = Counter(
        EXT_LANG[f.extension] for f in files
        if not f.is_directory and f.extension in EXT_LANG
    )
    return dict(sorted(counts.items()))


def build_summary(analysis: RepoAnalysis, insights: "Insights") -> dict:
    m = analysis.code_metrics
    return {
        "total_files": m.total_files,
        "total_lines": m.total_lines,
        "languages": sorted(analysis.languages),
        "dependencies": len(analysis.dependencies),
        "complexity": complexity_rating(m.total_lines, analysis.structure.max_depth, m.largest_file["lines"]),
        "quality_score": quality_score(insights.suggestion_count),
    }


def build_records(
    analysis: RepoAnalysis,
    options: AnalysisOptions,
    clone: CloneResult,
    insights: "Insights",
    source: str,
    duration: float,
) -> tuple[AnalysisData, AnalysisMetrics]:
    """Assemble the validated records persisted for a completed run."""
    summary = build_summary(analysis, insights)
    data = AnalysisData.model_validate({
        **analysis.to_dict(),
        "repository": parse_repo_url(options.url).to_dict(),
        "branch": clone.branch or "HEAD",
        "insights": insights.to_dict(),
        "enrichment_source": source,
        "summary": summary,
    })
    m = analysis.code_metrics
    metrics = AnalysisMetrics(
        analysis_duration=round(duration, 3),
        total_lines=m.total_lines,
        total_files=m.total_files,
        language_distribution=language_distribution(analysis.files),
        dependency_count=len(analysis.dependencies),
        complexity={
            "max_depth": analysis.structure.max_depth,
            "avg_lines_per_file": m.avg_lines_per_file,
            "largest_file_lines": m.largest_file["lines"],
            "rating": summary["complexity"],
        },
    )
    return data, metrics


class AnalysisPipeline:
    """Drives one pending analysis record to a terminal state."""

    def __init__(
        self,
        store: "AnalysisStore",
        broadcaster: "ProgressBroadcaster",
        workspaces: "WorkspaceManager",
        fetcher: Fetcher,
        enrichment: "EnrichmentAdapter",
        clock: Callable[[], float] = time.monotonic,
        debug: bool = False,
    ):
        self.store = store
        self.broadcaster = broadcaster
        self.workspaces = workspaces
        self.fetcher = fetcher
        self.enrichment = enrichment
        self.clock = clock
        self.debug = debug

    async def run(self, analysis_id: str, options: AnalysisOptions) -> str:
        """Run the analysis and return its terminal status. Never raises."""
        try:
            await asyncio.to_thread(self.store.mark_analyzing, analysis_id)
        except RepoLensError as e:
            logger.error(f"Cannot start analysis {analysis_id}: {e.message} {e.diagnostic}")
            await self._fail(analysis_id, INTERNAL_ERROR)
            return STATUS_FAILED

        self.broadcaster.open(analysis_id)
        self.broadcaster.publish(events.started(analysis_id, options.url))
        logger.info(f"Analysis {analysis_id} started for {options.url}")

        started_at = self.clock()
        try:
            summary = await self._execute(analysis_id, options, started_at)
        except (CloneFailure, WalkFailure) as e:
            logger.error(f"Analysis {analysis_id} failed: {e.message} ({e.diagnostic})")
            await self._fail(analysis_id, e.public_message(self.debug))
            return STATUS_FAILED
        except StorageFailure as e:
            logger.error(f"Analysis {analysis_id} could not be stored: {e.diagnostic or e.message}")
            await self._fail(analysis_id, INTERNAL_ERROR)
            return STATUS_FAILED
        except Exception as e:
            logger.error(f"Analysis {analysis_id} failed unexpectedly: {e}", exc_info=True)
            message = f"{INTERNAL_ERROR}: {e}" if self.debug else INTERNAL_ERROR
            await self._fail(analysis_id, message)
            return STATUS_FAILED

        logger.info(
            f"Analysis {analysis_id} completed in {self.clock() - started_at:.1f}s "
            f"({summary.total_files} files, {summary.total_lines} lines)"
        )
        self.broadcaster.publish(events.completed(analysis_id, summary.model_dump(by_alias=True)))
        return STATUS_COMPLETED

    async def _execute(self, analysis_id: str, options: AnalysisOptions, started_at: float) -> Summary:
        handle = await asyncio.to_thread(self.workspaces.acquire)
        try:
            self._stage(analysis_id, "fetching", f"Cloning {options.url}")
            clone = await asyncio.to_thread(
                self.fetcher.clone, options.url, handle.repo_dir, options.branch, options.depth
            )

            self._stage(analysis_id, "walking", "Analyzing repository structure")
            structure, files = await asyncio.to_thread(walk_structure, clone.path)

            self._stage(analysis_id, "extracting", "Detecting languages, dependencies and metrics")
            config_files = find_config_files(files)
            languages, dependencies, code_metrics = await asyncio.gather(
                asyncio.to_thread(detect_languages, files),
                asyncio.to_thread(self._dependencies, clone.path, config_files, options),
                asyncio.to_thread(calculate_metrics, clone.path, files),
            )
            analysis = RepoAnalysis(
                path=str(clone.path),
                name=parse_repo_url(options.url).repo or Path(options.url.rstrip("/")).name,
                structure=structure,
                files=files,
                languages=languages,
                config_files=config_files,
                dependencies=dependencies,
                code_metrics=code_metrics,
            )

            self._stage(analysis_id, "enriching", "Generating insights")
            insights, source = await self.enrichment.enrich(analysis)

            self._stage(analysis_id, "persisting", "Saving results")
            data, metrics = build_records(
                analysis, options, clone, insights, source, self.clock() - started_at
            )
            await asyncio.to_thread(self.store.mark_completed, analysis_id, data, metrics)
            return data.summary
        finally:
            await asyncio.to_thread(self.workspaces.release, handle)

    @staticmethod
    def _dependencies(root, config_files, options: AnalysisOptions):
        if not options.include_dependencies:
            return []
        return extract_dependencies(root, config_files)

    def _stage(self, analysis_id: str, stage: str, message: str) -> None:
        logger.info(f"Analysis {analysis_id}: {stage}")
        self.broadcaster.publish(events.progress(analysis_id, stage, message))

    async def _fail(self, analysis_id: str, message: str) -> None:
        """Record and announce a failure. Storage errors here are logged only."""
        try:
            await asyncio.to_thread(self.store.mark_failed, analysis_id, message)
        except RepoLensError as e:
            logger.error(f"Could not mark analysis {analysis_id} failed: {e.message} {e.diagnostic}")
        self.broadcaster.publish(events.failed(analysis_id, message))
