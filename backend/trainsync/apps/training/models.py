# backend/trainsync/apps/training/models.py

from __future__ import annotations

import enum
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from ...database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# ENUMS
# ---------------------------------------------------------------------------


class CompletionStatus(str, enum.Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


# ---------------------------------------------------------------------------
# MODELS
# ---------------------------------------------------------------------------


class Course(Base):
    __tablename__ = "courses"

    id = Column(Integer, primary_key=True, autoincrement=True)
    fullname = Column(String(255), nullable=False)
    shortname = Column(String(100), nullable=True)

    # Optional explicit due date; when absent the compliance record falls back
    # to created_at + the configured default (30 days).
    due_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    completions = relationship(
        "CompletionFact",
        back_populates="course",
        cascade="all, delete-orphan",
        lazy="noload",
    )

    def __repr__(self) -> str:
        return f"<Course id={self.id} fullname={self.fullname}>"


class CompletionFact(Base):
    """
    Source-of-truth completion status for one (user, course) pair.

    Created or updated when a completion event is observed; never deleted by
    the sync engine.
    """

    __tablename__ = "completion_facts"
    __table_args__ = (
        UniqueConstraint("user_id", "course_id", name="uq_completion_facts_user_course"),
        Index("ix_completion_facts_course_status", "course_id", "status"),
        Index("ix_completion_facts_user_status", "user_id", "status"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    course_id = Column(
        Integer,
        ForeignKey("courses.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    status = Column(
        Enum(CompletionStatus, name="completion_status_enum", native_enum=False),
        nullable=False,
        default=CompletionStatus.NOT_STARTED,
    )
    completion_date = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    course = relationship("Course", back_populates="completions")

    def __repr__(self) -> str:
        return f"<CompletionFact user={self.user_id} course={self.course_id} status={self.status}>"
