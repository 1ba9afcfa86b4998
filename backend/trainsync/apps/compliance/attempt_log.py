"""
Append-only audit trail of sync attempts.

Rows are inserted and committed immediately so operators can see them even
when the surrounding work later fails. Rows are never updated.
"""

from __future__ import annotations

import json
import logging
import re
from datetime import datetime, timezone
from typing import Any, List, Optional, Union

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from trainsync.apps.accounts import models as account_models
from trainsync.apps.training import models as training_models

from . import models

logger = logging.getLogger(__name__)

_LEVELS = {
    models.AttemptStatus.ERROR.value: logging.ERROR,
    models.AttemptStatus.WARNING.value: logging.WARNING,
    models.AttemptStatus.DEBUG.value: logging.DEBUG,
}

_RECORD_COUNT = re.compile(r"(\d+)\s+records?")

# (marker found in the message, user label, course label)
_SYSTEM_LABELS = (
    (("Batch operation",), "Batch Operation", "Multiple Courses (Batch)"),
    (("regeneration", "snapshot"), "System (Cron/Regeneration)", "All Configured Courses"),
    (("large payload", "Large payload"), "System (Large Dataset)", "Multiple Courses (Large Dataset)"),
    (("manual",), "Manual Operation", "Manual Sync Operation"),
)


def _status_value(status: Union[models.AttemptStatus, str]) -> str:
    return status.value if isinstance(status, models.AttemptStatus) else str(status)


def _as_text(payload: Any) -> str:
    if payload is None:
        return ""
    if isinstance(payload, str):
        return payload
    return json.dumps(payload, default=str)


def course_names_from_payload(request_payload: str) -> List[str]:
    """Distinct ``trainingName`` values of a push body, in first-seen order."""
    if not request_payload:
        return []
    try:
        body = json.loads(request_payload)
    except ValueError:
        return []
    if not isinstance(body, dict) or not isinstance(body.get("resources"), list):
        return []
    names: List[str] = []
    for resource in body["resources"]:
        if isinstance(resource, dict):
            name = resource.get("trainingName")
            if name and name not in names:
                names.append(name)
    return names


def system_user_label(message: str) -> str:
    for markers, user_label, _ in _SYSTEM_LABELS:
        if any(marker in message for marker in markers):
            return user_label
    return "All Users"


def system_course_label(message: str, request_payload: str) -> str:
    names = course_names_from_payload(request_payload)
    if names:
        if len(names) <= 3:
            return ", ".join(names)
        return f"{', '.join(names[:3])} and {len(names) - 3} more courses"

    for markers, _, course_label in _SYSTEM_LABELS:
        if any(marker in message for marker in markers):
            return course_label
    match = _RECORD_COUNT.search(message)
    if match:
        return f"All Courses ({match.group(1)} records)"
    return "All Courses"


def _user_label(db: Session, user_id: int, message: str) -> str:
    if not user_id:
        return system_user_label(message)
    email = db.query(account_models.User.email).filter(account_models.User.id == user_id).scalar()
    return email or f"User ID: {user_id} (not found)"


def _course_label(db: Session, course_id: int, message: str, request_payload: str) -> str:
    if not course_id:
        return system_course_label(message, request_payload)
    name = (
        db.query(training_models.Course.fullname)
        .filter(training_models.Course.id == course_id)
        .scalar()
    )
    return name or f"Course ID: {course_id} (not found)"


def log_sync_attempt(
    db: Session,
    *,
    tenant_id: Optional[int],
    status: Union[models.AttemptStatus, str],
    user_id: int = 0,
    course_id: int = 0,
    request_payload: Any = None,
    response_payload: Any = None,
    error_message: str = "",
    user_email: str = "",
    course_name: str = "",
) -> Optional[int]:
    """
    Insert one attempt row and mirror it to the module logger.

    ``user_id``/``course_id`` of 0 mark tenant-wide operations; their display
    labels are derived from the message and the request body. Returns the new
    row id, or None when the insert failed (the failure is logged, not raised).
    """
    status_value = _status_value(status)
    request_text = _as_text(request_payload)
    response_text = _as_text(response_payload) if response_payload is not None else None
    message = error_message or ""

    logger.log(
        _LEVELS.get(status_value, logging.INFO),
        "Compliance sync %s: %s",
        status_value,
        message or "-",
        extra={
            "tenant_id": tenant_id,
            "user_id": user_id,
            "course_id": course_id,
            "status": status_value,
        },
    )

    try:
        row = models.SyncAttemptLog(
            tenant_id=tenant_id,
            user_id=user_id or 0,
            course_id=course_id or 0,
            user_email=(user_email or _user_label(db, user_id, message))[:255],
            course_name=(course_name or _course_label(db, course_id, message, request_text))[:255],
            synced_at=datetime.now(timezone.utc),
            request_payload=request_text,
            response_payload=response_text,
            status=status_value,
            error_message=message or None,
        )
        db.add(row)
        db.commit()
        return row.id
    except SQLAlchemyError:
        db.rollback()
        logger.exception(
            "Failed to record compliance sync attempt",
            extra={"tenant_id": tenant_id, "status": status_value},
        )
        return None


def list_attempts(
    db: Session,
    *,
    tenant_id: Optional[int] = None,
    status: Optional[str] = None,
    limit: int = 100,
    offset: int = 0,
) -> List[models.SyncAttemptLog]:
    query = db.query(models.SyncAttemptLog)
    if tenant_id is not None:
        query = query.filter(models.SyncAttemptLog.tenant_id == tenant_id)
    if status:
        query = query.filter(models.SyncAttemptLog.status == status)
    return (
        query.order_by(models.SyncAttemptLog.synced_at.desc(), models.SyncAttemptLog.id.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )


def get_attempt(db: Session, log_id: int, *, tenant_id: Optional[int] = None) -> Optional[models.SyncAttemptLog]:
    query = db.query(models.SyncAttemptLog).filter(models.SyncAttemptLog.id == log_id)
    if tenant_id is not None:
        query = query.filter(models.SyncAttemptLog.tenant_id == tenant_id)
    return query.first()


def latest_status(db: Session, tenant_id: int) -> Optional[str]:
    row = (
        db.query(models.SyncAttemptLog.status)
        .filter(models.SyncAttemptLog.tenant_id == tenant_id)
        .order_by(models.SyncAttemptLog.synced_at.desc(), models.SyncAttemptLog.id.desc())
        .first()
    )
    return row[0] if row else None
