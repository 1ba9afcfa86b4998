"""
Durable per-tenant FIFO of completions that arrived while a tenant was locked.

One pending row per (user, course, tenant): re-queuing refreshes the existing
row. ``drain`` is a single cooperative pass driven by the sweep or an
operator; there is no background consumer.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import config, models
from .schemas import DrainResult, QueueStats

logger = logging.getLogger(__name__)

ProcessFn = Callable[[models.SyncQueueItem], bool]
LockCheck = Callable[[int], bool]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _pending_item(db: Session, *, user_id: int, course_id: int, tenant_id: int) -> Optional[models.SyncQueueItem]:
    return (
        db.query(models.SyncQueueItem)
        .filter(
            models.SyncQueueItem.user_id == user_id,
            models.SyncQueueItem.course_id == course_id,
            models.SyncQueueItem.tenant_id == tenant_id,
            models.SyncQueueItem.status == models.QueueStatus.PENDING,
        )
        .first()
    )


def enqueue(
    db: Session,
    *,
    user_id: int,
    course_id: int,
    tenant_id: int,
    reason: str = "sync_locked",
    now: Optional[datetime] = None,
) -> bool:
    now = now or _utcnow()
    existing = _pending_item(db, user_id=user_id, course_id=course_id, tenant_id=tenant_id)
    if existing is not None:
        existing.reason = reason
        existing.queued_at = now
        db.commit()
        return True

    db.add(
        models.SyncQueueItem(
            user_id=user_id,
            course_id=course_id,
            tenant_id=tenant_id,
            reason=reason,
            status=models.QueueStatus.PENDING,
            attempts=0,
            queued_at=now,
        )
    )
    try:
        db.commit()
    except IntegrityError:
        # Another process queued the same triple between our read and insert.
        db.rollback()
        existing = _pending_item(db, user_id=user_id, course_id=course_id, tenant_id=tenant_id)
        if existing is None:
            raise
        existing.reason = reason
        existing.queued_at = now
        db.commit()
    return True


def pending_items(db: Session, *, tenant_id: Optional[int] = None, limit: int = 100) -> List[models.SyncQueueItem]:
    query = db.query(models.SyncQueueItem).filter(models.SyncQueueItem.status == models.QueueStatus.PENDING)
    if tenant_id is not None:
        query = query.filter(models.SyncQueueItem.tenant_id == tenant_id)
    return (
        query.order_by(models.SyncQueueItem.queued_at.asc(), models.SyncQueueItem.id.asc())
        .limit(limit)
        .all()
    )


def drain(
    db: Session,
    *,
    process: ProcessFn,
    is_locked: LockCheck,
    tenant_id: Optional[int] = None,
    limit: Optional[int] = None,
    max_attempts: Optional[int] = None,
    now: Optional[datetime] = None,
) -> DrainResult:
    """
    Run ``process`` over up to ``limit`` pending items, oldest first.

    Lock state is checked once per tenant per pass. A failed item goes back to
    pending with ``attempts`` bumped, and becomes ``failed`` once it reaches
    ``max_attempts``.
    """
    limit = config.QUEUE_DRAIN_LIMIT if limit is None else limit
    max_attempts = config.QUEUE_MAX_ATTEMPTS if max_attempts is None else max_attempts
    result = DrainResult()
    locked: Dict[int, bool] = {}

    for item in pending_items(db, tenant_id=tenant_id, limit=limit):
        if item.tenant_id not in locked:
            locked[item.tenant_id] = is_locked(item.tenant_id)
        if locked[item.tenant_id]:
            result.skipped += 1
            continue

        result.processed += 1
        error: Optional[str] = None
        try:
            ok = process(item)
        except Exception as exc:  # noqa: BLE001
            db.rollback()
            logger.exception(
                "Queued completion raised",
                extra={"tenant_id": item.tenant_id, "user_id": item.user_id, "course_id": item.course_id},
            )
            ok = False
            error = f"Exception: {exc}"

        stamp = now or _utcnow()
        if ok:
            item.status = models.QueueStatus.COMPLETED
            item.processed_at = stamp
            item.error_message = None
            result.successful += 1
        else:
            item.attempts = (item.attempts or 0) + 1
            item.error_message = error or "Sync failed"
            if item.attempts >= max_attempts:
                item.status = models.QueueStatus.FAILED
                item.processed_at = stamp
            result.failed += 1
            result.errors.append(
                f"Queue item {item.id} (user {item.user_id}, course {item.course_id}): {item.error_message}"
            )
        db.commit()

    return result


def queue_stats(db: Session, tenant_id: Optional[int] = None) -> QueueStats:
    query = db.query(models.SyncQueueItem.status, func.count(models.SyncQueueItem.id))
    if tenant_id is not None:
        query = query.filter(models.SyncQueueItem.tenant_id == tenant_id)
    counts = {status: count for status, count in query.group_by(models.SyncQueueItem.status).all()}
    return QueueStats(
        pending=counts.get(models.QueueStatus.PENDING, 0),
        completed=counts.get(models.QueueStatus.COMPLETED, 0),
        failed=counts.get(models.QueueStatus.FAILED, 0),
    )


def tenants_with_pending(db: Session) -> List[int]:
    rows = (
        db.query(models.SyncQueueItem.tenant_id)
        .filter(models.SyncQueueItem.status == models.QueueStatus.PENDING)
        .distinct()
        .order_by(models.SyncQueueItem.tenant_id.asc())
        .all()
    )
    return [int(row[0]) for row in rows]


def cleanup(db: Session, *, days: Optional[int] = None, now: Optional[datetime] = None) -> int:
    """Delete completed/failed rows processed more than ``days`` ago."""
    days = config.RETENTION_DAYS if days is None else days
    cutoff = (now or _utcnow()) - timedelta(days=days)
    deleted = (
        db.query(models.SyncQueueItem)
        .filter(
            models.SyncQueueItem.status.in_([models.QueueStatus.COMPLETED, models.QueueStatus.FAILED]),
            models.SyncQueueItem.processed_at.isnot(None),
            models.SyncQueueItem.processed_at < cutoff,
        )
        .delete(synchronize_session=False)
    )
    db.commit()
    return int(deleted or 0)
