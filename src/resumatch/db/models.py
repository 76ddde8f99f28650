from __future__ import annotations

import enum
from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from resumatch.db.base import Base, TimestampMixin, utcnow


class QueueKind(str, enum.Enum):
    EXTRACTION = "extraction"
    ANONYMIZATION = "anonymization"
    ANALYSIS = "analysis"
    MATCH = "match"


class QueueStatus(str, enum.Enum):
    PENDING = "pending"
    RETRY_SCHEDULED = "retry_scheduled"
    DORMANT = "dormant"


class Resume(TimestampMixin, Base):
    __tablename__ = "resumes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    content_hash: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    file_name: Mapped[str] = mapped_column(String(500), nullable=False)
    file_size: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    file_type: Mapped[str] = mapped_column(String(200), default="", nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    public_resume_html: Mapped[str | None] = mapped_column(Text, nullable=True)


class JobDescription(TimestampMixin, Base):
    __tablename__ = "job_descriptions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    content_hash: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    required_skills: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)
    analyzed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class Candidate(TimestampMixin, Base):
    __tablename__ = "candidates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    resume_id: Mapped[int] = mapped_column(
        ForeignKey("resumes.id", ondelete="CASCADE"), unique=True, index=True
    )
    first_name: Mapped[str] = mapped_column(String(255), nullable=False)
    last_name: Mapped[str] = mapped_column(String(255), nullable=False)
    last_initial: Mapped[str] = mapped_column(String(10), default="", nullable=False)
    email: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    phone: Mapped[str | None] = mapped_column(String(60), nullable=True)
    skills: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)
    experience: Mapped[str | None] = mapped_column(Text, nullable=True)


class MatchResult(TimestampMixin, Base):
    __tablename__ = "match_results"
    __table_args__ = (
        UniqueConstraint("resume_content_hash", "job_content_hash", name="uq_match_hash_pair"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    resume_content_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    job_content_hash: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    job_description_id: Mapped[int] = mapped_column(
        ForeignKey("job_descriptions.id", ondelete="CASCADE"), index=True
    )
    candidate_id: Mapped[int | None] = mapped_column(
        ForeignKey("candidates.id", ondelete="SET NULL"), nullable=True
    )
    match_score: Mapped[int] = mapped_column(Integer, nullable=False)
    scorecard: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
    matching_skills: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)
    analysis: Mapped[str] = mapped_column(Text, default="", nullable=False)


class QueueItem(Base):
    __tablename__ = "retry_queue"
    __table_args__ = (
        UniqueConstraint("kind", "owner_id", "related_id", name="uq_retry_queue_unit"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    kind: Mapped[QueueKind] = mapped_column(
        Enum(QueueKind, native_enum=False, length=20, values_callable=lambda e: [m.value for m in e]),
        index=True,
    )
    # resume id (extraction, anonymization), job id (analysis) or candidate id (match)
    owner_id: Mapped[int] = mapped_column(Integer, nullable=False)
    # job id for match items, 0 otherwise
    related_id: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    status: Mapped[QueueStatus] = mapped_column(
        Enum(QueueStatus, native_enum=False, length=20, values_callable=lambda e: [m.value for m in e]),
        default=QueueStatus.PENDING,
        nullable=False,
    )
    attempt_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    next_retry_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), index=True, nullable=True
    )
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
