"""Pydantic schemas: the persisted analysis record and the HTTP API models.

Fields are snake_case in Python and in the database, camelCase on the wire.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .config import DEFAULT_BRANCH, DEFAULT_DEPTH


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# --- Persisted analysis data ---

class RepositoryRef(CamelModel):
    url: str
    platform: str = "other"
    owner: Optional[str] = None
    repo: Optional[str] = None


class StructureInfo(CamelModel):
    directories: int = 0
    files: int = 0
    by_type: dict[str, int] = Field(default_factory=dict)
    max_depth: int = 0


class ConfigFileInfo(CamelModel):
    name: str
    path: str
    size: int


class DependencyInfo(CamelModel):
    name: str
    version: str
    type: Literal["runtime", "dev"]
    manager: str
    manifest: str


class FileInfo(CamelModel):
    name: str
    path: str
    is_directory: bool
    size: int
    extension: str
    is_symlink: bool = False


class LargestFile(CamelModel):
    path: str = ""
    lines: int = 0


class CodeMetricsInfo(CamelModel):
    total_lines: int = 0
    total_files: int = 0
    avg_lines_per_file: int = 0
    largest_file: LargestFile = Field(default_factory=LargestFile)


class InsightsInfo(CamelModel):
    architecture: str
    quality: str
    performance: list[str]
    security: list[str]
    devops: list[str]


class Summary(CamelModel):
    total_files: int
    total_lines: int
    languages: list[str]
    dependencies: int
    complexity: Literal["low", "medium", "high"]
    quality_score: int = Field(ge=0, le=100)


class AnalysisData(CamelModel):
    """Everything a completed run produced, validated before it is stored."""

    repository: RepositoryRef
    branch: str
    structure: StructureInfo
    languages: list[str]
    config_files: list[ConfigFileInfo] = Field(default_factory=list)
    dependencies: list[DependencyInfo] = Field(default_factory=list)
    files: list[FileInfo] = Field(default_factory=list)
    code_metrics: CodeMetricsInfo
    insights: InsightsInfo
    enrichment_source: Literal["model", "fallback"]
    summary: Summary
    # Reserved for forward-compatible additions
    extra: dict[str, Any] = Field(default_factory=dict)


class Complexity(CamelModel):
    max_depth: int
    avg_lines_per_file: int
    largest_file_lines: int
    rating: Literal["low", "medium", "high"]


class AnalysisMetrics(CamelModel):
    analysis_duration: float = Field(ge=0)
    total_lines: int
    total_files: int
    language_distribution: dict[str, int] = Field(default_factory=dict)
    dependency_count: int
    complexity: Complexity


# --- API requests ---

class AnalyzeRequest(CamelModel):
    url: str = Field(..., description="Repository URL to clone")
    branch: str = Field(DEFAULT_BRANCH, description="Branch to analyze")
    depth: int = Field(DEFAULT_DEPTH, description="Clone history depth (1-10)")
    include_dependencies: bool = Field(True, description="Extract dependencies from manifests")
    wait: bool = Field(True, description="Block until the run reaches a terminal state")


class ValidateRequest(CamelModel):
    url: str = Field(..., description="Repository URL to check")


class SuggestionsRequest(CamelModel):
    aspects: Optional[list[str]] = Field(
        None, description="Insight facets to answer (default: security, performance, devops)"
    )


# --- API responses ---

class AnalysisResponse(CamelModel):
    analysis_id: str
    repository_url: str
    branch: str
    depth: int
    include_dependencies: bool
    status: str
    summary: Optional[Summary] = None
    insights: Optional[InsightsInfo] = None
    metrics: Optional[AnalysisMetrics] = None
    analysis_data: Optional[AnalysisData] = None
    error: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class Pagination(CamelModel):
    page: int
    limit: int
    total: int
    pages: int


class AnalysisList(CamelModel):
    analyses: list[AnalysisResponse]
    pagination: Pagination


class AnalysisStats(CamelModel):
    total: int = 0
    completed: int = 0
    failed: int = 0
    average_duration: float = 0.0
    total_lines: int = 0
    total_files: int = 0


class FileList(CamelModel):
    analysis_id: str
    files: list[FileInfo]
    total: int


class ProgressSnapshot(CamelModel):
    analysis_id: str
    status: str
    stage: Optional[str] = None
    percent: Optional[int] = None
    message: Optional[str] = None
    updated_at: Optional[datetime] = None


class RepositoryMetadata(CamelModel):
    name: Optional[str] = None
    full_name: Optional[str] = None
    description: Optional[str] = None
    stars: int = 0
    forks: int = 0
    open_issues: int = 0
    language: Optional[str] = None
    size: int = 0
    default_branch: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class SuggestionsResponse(CamelModel):
    analysis_id: str
    aspects: list[str]
    suggestions: dict[str, Any]
    source: Literal["model", "fallback"]


class ValidateResponse(CamelModel):
    valid: bool
    repository: Optional[RepositoryRef] = None
    metadata: Optional[RepositoryMetadata] = None
    error: Optional[str] = None


class HealthResponse(CamelModel):
    status: str
    service: str = "repolens"
    version: str
