from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.orm import Session

from . import models


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def get_completion(db: Session, *, user_id: int, course_id: int) -> Optional[models.CompletionFact]:
    return (
        db.query(models.CompletionFact)
        .filter(
            models.CompletionFact.user_id == user_id,
            models.CompletionFact.course_id == course_id,
        )
        .first()
    )


def record_completion(
    db: Session,
    *,
    user_id: int,
    course_id: int,
    now: Optional[datetime] = None,
) -> tuple[models.CompletionFact, bool]:
    """
    Mark (user, course) as completed.

    Returns ``(fact, changed)``. An already-completed fact is left untouched so
    the original completion date survives repeated events.
    """
    now = now or _utcnow()
    fact = get_completion(db, user_id=user_id, course_id=course_id)
    if fact and fact.status == models.CompletionStatus.COMPLETED:
        return fact, False

    if fact is None:
        fact = models.CompletionFact(user_id=user_id, course_id=course_id, created_at=now)
        db.add(fact)
    fact.status = models.CompletionStatus.COMPLETED
    fact.completion_date = now
    fact.updated_at = now
    db.flush()
    return fact, True


def completed_course_ids(db: Session, *, user_id: int, course_ids: list[int]) -> set[int]:
    if not course_ids:
        return set()
    rows = (
        db.query(models.CompletionFact.course_id)
        .filter(
            models.CompletionFact.user_id == user_id,
            models.CompletionFact.course_id.in_(course_ids),
            models.CompletionFact.status == models.CompletionStatus.COMPLETED,
        )
        .all()
    )
    return {int(row[0]) for row in rows}
