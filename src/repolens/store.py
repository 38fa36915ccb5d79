"""Analysis record store on SQLAlchemy.

Status writes only move forward (pending -> analyzing -> completed|failed,
or pending -> failed). Every read is scoped to the owning caller; a record
owned by someone else is indistinguishable from a missing one.
"""

from __future__ import annotations

import logging
import math
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any, Iterator, Optional

from pydantic import ValidationError as SchemaError
from sqlalchemy import create_engine, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from .errors import AnalysisNotFound, InvalidTransition, StorageFailure
from .models import (
    STATUS_ANALYZING,
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_PENDING,
    TERMINAL_STATUSES,
    Analysis,
    Base,
)
from .schemas import AnalysisData, AnalysisMetrics

if TYPE_CHECKING:
    from .pipeline import AnalysisOptions

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    STATUS_PENDING: {STATUS_ANALYZING, STATUS_FAILED},
    STATUS_ANALYZING: {STATUS_COMPLETED, STATUS_FAILED},
    STATUS_COMPLETED: set(),
    STATUS_FAILED: set(),
}

SORT_COLUMNS = {
    "created_at": Analysis.created_at,
    "updated_at": Analysis.updated_at,
    "repository_url": Analysis.repository_url,
}


class Database:
    """Engine and session management."""

    def __init__(self, url: str, echo: bool = False):
        self.url = url
        kwargs: dict[str, Any] = {"echo": echo}
        if url.startswith("sqlite"):
            kwargs["connect_args"] = {"check_same_thread": False}
            if url in ("sqlite://", "sqlite:///:memory:"):
                kwargs["poolclass"] = StaticPool
        self.engine = create_engine(url, **kwargs)
        self._session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)

    def init_db(self) -> None:
        """Create tables if they do not exist."""
        Base.metadata.create_all(self.engine)

    @contextmanager
    def get_session(self) -> Iterator[Session]:
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def dispose(self) -> None:
        self.engine.dispose()


@dataclass(frozen=True)
class AnalysisRecord:
    """Detached, validated view of one stored analysis."""

    id: str
    owner_id: str
    repository_url: str
    branch: str
    depth: int
    include_dependencies: bool
    status: str
    analysis_data: Optional[AnalysisData]
    metrics: Optional[AnalysisMetrics]
    error: Optional[str]
    created_at: datetime
    updated_at: datetime

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @classmethod
    def from_row(cls, row: Analysis) -> "AnalysisRecord":
        try:
            data = AnalysisData.model_validate(row.analysis_data) if row.analysis_data else None
            metrics = AnalysisMetrics.model_validate(row.metrics) if row.metrics else None
        except SchemaError as e:
            raise StorageFailure("Stored analysis is corrupt", str(e)) from e
        return cls(
            id=row.id,
            owner_id=row.owner_id,
            repository_url=row.repository_url,
            branch=row.branch,
            depth=row.depth,
            include_dependencies=row.include_dependencies,
            status=row.status,
            analysis_data=data,
            metrics=metrics,
            error=row.error,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )


class AnalysisStore:
    """Persistence operations for analyses."""

    def __init__(self, db: Database):
        self.db = db

    @contextmanager
    def _session(self, action: str) -> Iterator[Session]:
        try:
            with self.db.get_session() as session:
                yield session
        except SQLAlchemyError as e:
            logger.error(f"Database error while trying to {action}: {e}")
            raise StorageFailure(f"Could not {action}", str(e)) from e

    # --- Writes ---

    def create(self, owner_id: str, options: "AnalysisOptions") -> AnalysisRecord:
        with self._session("create analysis") as session:
            row = Analysis(
                owner_id=owner_id,
                repository_url=options.url,
                branch=options.branch,
                depth=options.depth,
                include_dependencies=options.include_dependencies,
                status=STATUS_PENDING,
            )
            session.add(row)
            session.flush()
            record = AnalysisRecord.from_row(row)
        logger.info(f"Created analysis {record.id} for {record.repository_url}")
        return record

    def mark_analyzing(self, analysis_id: str) -> None:
        with self._session("update analysis") as session:
            self._transition(session, analysis_id, STATUS_ANALYZING)

    def mark_completed(self, analysis_id: str, data: AnalysisData, metrics: AnalysisMetrics) -> None:
        with self._session("save analysis results") as session:
            row = self._transition(session, analysis_id, STATUS_COMPLETED)
            row.analysis_data = data.model_dump(mode="json")
            row.metrics = metrics.model_dump(mode="json")
            row.error = None

    def mark_failed(self, analysis_id: str, error: str) -> None:
        with self._session("update analysis") as session:
            row = self._transition(session, analysis_id, STATUS_FAILED)
            row.error = error
            row.analysis_data = None
            row.metrics = None

    def delete(self, analysis_id: str, owner_id: str) -> None:
        with self._session("delete analysis") as session:
            row = self._owned_row(session, analysis_id, owner_id)
            if row.status not in TERMINAL_STATUSES:
                raise InvalidTransition(analysis_id, row.status, "deleted")
            session.delete(row)
        logger.info(f"Deleted analysis {analysis_id}")

    def _transition(self, session: Session, analysis_id: str, target: str) -> Analysis:
        row = session.get(Analysis, analysis_id)
        if row is None:
            raise AnalysisNotFound(analysis_id)
        if target not in ALLOWED_TRANSITIONS[row.status]:
            raise InvalidTransition(analysis_id, row.status, target)
        row.status = target
        logger.debug(f"Analysis {analysis_id} -> {target}")
        return row

    # --- Reads ---

    def get(self, analysis_id: str, owner_id: str) -> AnalysisRecord:
        with self._session("load analysis") as session:
            return AnalysisRecord.from_row(self._owned_row(session, analysis_id, owner_id))

    def list(
        self,
        owner_id: str,
        status: str | None = None,
        page: int = 1,
        limit: int = 10,
        sort_by: str = "created_at",
        order: str = "desc",
    ) -> tuple[list[AnalysisRecord], int]:
        """One page of the caller's analyses plus the total matching count."""
        column = SORT_COLUMNS.get(sort_by, Analysis.created_at)
        ordering = column.asc() if order == "asc" else column.desc()

        with self._session("list analyses") as session:
            query = select(Analysis).where(Analysis.owner_id == owner_id)
            count_query = select(func.count()).select_from(Analysis).where(Analysis.owner_id == owner_id)
            if status:
                query = query.where(Analysis.status == status)
                count_query = count_query.where(Analysis.status == status)

            total = session.execute(count_query).scalar_one()
            rows = session.execute(
                query.order_by(ordering, Analysis.id).offset((page - 1) * limit).limit(limit)
            ).scalars().all()
            return [AnalysisRecord.from_row(r) for r in rows], total

    def stats(self, owner_id: str) -> dict[str, Any]:
        """Aggregate counters over the caller's analyses."""
        with self._session("compute statistics") as session:
            counts = dict(session.execute(
                select(Analysis.status, func.count())
                .where(Analysis.owner_id == owner_id)
                .group_by(Analysis.status)
            ).all())
            completed_metrics = session.execute(
                select(Analysis.metrics)
                .where(Analysis.owner_id == owner_id, Analysis.status == STATUS_COMPLETED)
            ).scalars().all()

        durations = [m.get("analysis_duration", 0) for m in completed_metrics if m]
        return {
            "total": sum(counts.values()),
            "completed": counts.get(STATUS_COMPLETED, 0),
            "failed": counts.get(STATUS_FAILED, 0),
            "average_duration": round(sum(durations) / len(durations), 3) if durations else 0.0,
            "total_lines": sum(m.get("total_lines", 0) for m in completed_metrics if m),
            "total_files": sum(m.get("total_files", 0) for m in completed_metrics if m),
        }

    def _owned_row(self, session: Session, analysis_id: str, owner_id: str) -> Analysis:
        row = session.get(Analysis, analysis_id)
        if row is None or row.owner_id != owner_id:
            raise AnalysisNotFound(analysis_id)
        return row


def page_count(total: int, limit: int) -> int:
    return math.ceil(total / limit) if limit else 0
