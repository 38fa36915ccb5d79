"""SQLAlchemy ORM model for persisted analyses."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, TIMESTAMP, Boolean, Column, Index, Integer, String, Text
from sqlalchemy.orm import declarative_base

Base = declarative_base()

STATUS_PENDING = "pending"
STATUS_ANALYZING = "analyzing"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"

TERMINAL_STATUSES = {STATUS_COMPLETED, STATUS_FAILED}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_analysis_id() -> str:
    return str(uuid.uuid4())


class Analysis(Base):
    """One analysis run of one repository, owned by one caller."""
    __tablename__ = "analyses"
    __table_args__ = (
        Index("idx_analyses_owner_created", "owner_id", "created_at"),
        Index("idx_analyses_owner_status", "owner_id", "status"),
    )

    id = Column(String(36), primary_key=True, default=new_analysis_id)
    owner_id = Column(String(255), nullable=False)

    # Input
    repository_url = Column(Text, nullable=False)
    branch = Column(String(255), nullable=False, default="main")
    depth = Column(Integer, nullable=False, default=3)
    include_dependencies = Column(Boolean, nullable=False, default=True)

    status = Column(String(20), default=STATUS_PENDING, nullable=False)  # pending|analyzing|completed|failed

    # Results, only set once completed
    analysis_data = Column(JSON, nullable=True)
    metrics = Column(JSON, nullable=True)

    # Human-readable failure reason, only set once failed
    error = Column(Text, nullable=True)

    created_at = Column(TIMESTAMP, default=_utcnow, nullable=False)
    updated_at = Column(TIMESTAMP, default=_utcnow, onupdate=_utcnow, nullable=False)

    def __repr__(self):
        return f"<Analysis(id={self.id}, status='{self.status}', url='{self.repository_url}')>"
