"""
Regeneration queue: "rules changed, recompute the tenant's whole snapshot".

At most one pending request per tenant, so a burst of rule edits collapses into
one regeneration. A request that fails is parked as ``failed`` for an operator
to look at; it is not retried automatically.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from trainsync.apps.accounts import models as account_models

from . import attempt_log, config, models
from .errors import LockContended
from .schemas import DrainResult, RuleHistoryEntry

logger = logging.getLogger(__name__)

RegenerateFn = Callable[[int], bool]
AfterFn = Callable[[int], bool]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _pending_request(db: Session, tenant_id: int) -> Optional[models.RegenerationRequest]:
    return (
        db.query(models.RegenerationRequest)
        .filter(
            models.RegenerationRequest.tenant_id == tenant_id,
            models.RegenerationRequest.status == models.RegenerationStatus.PENDING,
        )
        .first()
    )


def _refresh(request: models.RegenerationRequest, reason: str, triggered_by: Optional[int], now: datetime) -> None:
    request.reason = reason
    request.queued_at = now
    request.triggered_by = triggered_by


def request_regeneration(
    db: Session,
    *,
    tenant_id: int,
    reason: str,
    triggered_by: Optional[int] = None,
    now: Optional[datetime] = None,
) -> bool:
    now = now or _utcnow()
    existing = _pending_request(db, tenant_id)
    if existing is not None:
        _refresh(existing, reason, triggered_by, now)
        db.commit()
        return True

    db.add(
        models.RegenerationRequest(
            tenant_id=tenant_id,
            reason=reason,
            status=models.RegenerationStatus.PENDING,
            queued_at=now,
            triggered_by=triggered_by,
        )
    )
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        existing = _pending_request(db, tenant_id)
        if existing is None:
            raise
        _refresh(existing, reason, triggered_by, now)
        db.commit()

    logger.info("Regeneration queued", extra={"tenant_id": tenant_id, "reason": reason})
    return True


def has_pending(db: Session, tenant_id: int) -> bool:
    return _pending_request(db, tenant_id) is not None


def status(db: Session, tenant_id: int) -> Optional[models.RegenerationRequest]:
    """Most recent request for the tenant, whatever its state."""
    return (
        db.query(models.RegenerationRequest)
        .filter(models.RegenerationRequest.tenant_id == tenant_id)
        .order_by(models.RegenerationRequest.queued_at.desc(), models.RegenerationRequest.id.desc())
        .first()
    )


def pending_requests(db: Session) -> List[models.RegenerationRequest]:
    return (
        db.query(models.RegenerationRequest)
        .filter(models.RegenerationRequest.status == models.RegenerationStatus.PENDING)
        .order_by(models.RegenerationRequest.queued_at.asc(), models.RegenerationRequest.id.asc())
        .all()
    )


def _requeue(db: Session, request: models.RegenerationRequest) -> None:
    # Another process may have queued a fresh request meanwhile; keep only one pending.
    if _pending_request(db, request.tenant_id) is not None:
        db.delete(request)
    else:
        request.status = models.RegenerationStatus.PENDING
        request.started_at = None
    db.commit()


def drain_pending(
    db: Session,
    *,
    regenerate: RegenerateFn,
    after_success: Optional[AfterFn] = None,
    is_locked: Optional[Callable[[int], bool]] = None,
    now: Optional[Callable[[], datetime]] = None,
) -> DrainResult:
    """
    Process every pending request oldest-first.

    ``regenerate(tenant_id)`` rebuilds the snapshot and manages its own lock.
    On success the request row is deleted and ``after_success(tenant_id)``
    pushes the new snapshot. On failure the row is marked ``failed``.
    Requests for tenants that are locked stay pending, including when
    ``regenerate`` raises ``LockContended`` because the lock was taken after
    the ``is_locked`` check.
    """
    clock = now or _utcnow
    result = DrainResult()

    for request in pending_requests(db):
        tenant_id = request.tenant_id
        if is_locked is not None and is_locked(tenant_id):
            result.skipped += 1
            continue
        request.status = models.RegenerationStatus.PROCESSING
        request.started_at = clock()
        db.commit()

        error: Optional[str] = None
        try:
            ok = regenerate(tenant_id)
            if not ok:
                error = "Data regeneration failed"
        except LockContended:
            db.rollback()
            _requeue(db, request)
            result.skipped += 1
            logger.info("Regeneration deferred, tenant locked", extra={"tenant_id": tenant_id})
            continue
        except Exception as exc:  # noqa: BLE001
            db.rollback()
            logger.exception("Regeneration raised", extra={"tenant_id": tenant_id})
            error = str(exc) or exc.__class__.__name__

        result.processed += 1
        if error is None:
            db.delete(request)
            db.commit()
            result.successful += 1
            logger.info("Regeneration completed", extra={"tenant_id": tenant_id})
            if after_success is not None:
                _run_after_success(db, after_success, tenant_id, result)
            continue

        request.status = models.RegenerationStatus.FAILED
        request.error_message = error
        request.completed_at = clock()
        db.commit()
        result.failed += 1
        result.errors.append(f"Tenant {tenant_id}: {error}")
        logger.error("Regeneration failed", extra={"tenant_id": tenant_id, "error": error})

    return result


def _run_after_success(db: Session, after_success: AfterFn, tenant_id: int, result: DrainResult) -> None:
    try:
        pushed = after_success(tenant_id)
    except Exception as exc:  # noqa: BLE001
        db.rollback()
        logger.exception("Push after regeneration raised", extra={"tenant_id": tenant_id})
        attempt_log.log_sync_attempt(
            db,
            tenant_id=tenant_id,
            status=models.AttemptStatus.ERROR,
            error_message=f"Push after snapshot regeneration failed: {exc}",
        )
        result.errors.append(f"Tenant {tenant_id}: {exc}")
        return
    if not pushed:
        result.errors.append(f"Tenant {tenant_id}: regenerated snapshot was not pushed")


def cleanup(db: Session, *, days: Optional[int] = None, now: Optional[datetime] = None) -> int:
    days = config.RETENTION_DAYS if days is None else days
    cutoff = (now or _utcnow()) - timedelta(days=days)
    deleted = (
        db.query(models.RegenerationRequest)
        .filter(
            models.RegenerationRequest.status.in_(
                [models.RegenerationStatus.COMPLETED, models.RegenerationStatus.FAILED]
            ),
            models.RegenerationRequest.completed_at.isnot(None),
            models.RegenerationRequest.completed_at < cutoff,
        )
        .delete(synchronize_session=False)
    )
    db.commit()
    return int(deleted or 0)


def rule_history(db: Session, tenant_id: int, *, limit: int = 50) -> List[RuleHistoryEntry]:
    rows = (
        db.query(models.RegenerationRequest, account_models.User)
        .outerjoin(account_models.User, account_models.User.id == models.RegenerationRequest.triggered_by)
        .filter(models.RegenerationRequest.tenant_id == tenant_id)
        .order_by(models.RegenerationRequest.queued_at.desc(), models.RegenerationRequest.id.desc())
        .limit(limit)
        .all()
    )
    history: List[RuleHistoryEntry] = []
    for request, user in rows:
        entry = RuleHistoryEntry.model_validate(request)
        if user is not None:
            entry.triggered_by_name = user.full_name
            entry.triggered_by_email = user.email
        history.append(entry)
    return history
