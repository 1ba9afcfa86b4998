"""
Sync rule management.

Each tenant has at most one rule. Edits that change which records a tenant
produces (courses or completion mode) queue a regeneration; framework and
resource-id edits do not.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Iterable, Optional

from sqlalchemy.orm import Session

from trainsync.apps.training import services as training_services

from . import credentials as credential_services
from . import models, regeneration
from .schemas import SyncRuleCreate, SyncRuleUpdate
from .snapshots import SnapshotStore

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _join_csv(values: Iterable) -> str:
    seen: list[str] = []
    for value in values:
        text = str(value).strip()
        if text and text not in seen:
            seen.append(text)
    return ",".join(seen)


def get_rule(db: Session, tenant_id: int) -> Optional[models.SyncRule]:
    return db.query(models.SyncRule).filter(models.SyncRule.tenant_id == tenant_id).first()


def _get_owned_rule(db: Session, rule_id: int, tenant_id: int) -> Optional[models.SyncRule]:
    return (
        db.query(models.SyncRule)
        .filter(models.SyncRule.id == rule_id, models.SyncRule.tenant_id == tenant_id)
        .first()
    )


def rule_affects_data(rule: models.SyncRule, changes: SyncRuleUpdate) -> bool:
    if changes.courses is not None and _join_csv(changes.courses) != _join_csv(rule.course_ids):
        return True
    if changes.completion_mode is not None and changes.completion_mode != rule.completion_mode:
        return True
    return False


def create_rule(
    db: Session,
    *,
    tenant_id: int,
    data: SyncRuleCreate,
    actor_user_id: Optional[int] = None,
) -> models.SyncRule:
    if get_rule(db, tenant_id) is not None:
        raise ValueError("Tenant already has a training sync rule.")

    credential_id = data.credential_id
    if credential_id is None:
        credential = credential_services.get_active_credentials(db, tenant_id)
        credential_id = credential.id if credential else None

    rule = models.SyncRule(
        tenant_id=tenant_id,
        credential_id=credential_id,
        resource_id=data.resource_id,
        frameworks=_join_csv(data.frameworks),
        courses=_join_csv(data.courses),
        completion_mode=data.completion_mode,
        created_by=actor_user_id,
        modified_by=actor_user_id,
    )
    db.add(rule)
    db.commit()
    db.refresh(rule)

    regeneration.request_regeneration(
        db, tenant_id=tenant_id, reason="rule_creation", triggered_by=actor_user_id
    )
    return rule


def update_rule(
    db: Session,
    rule_id: int,
    *,
    tenant_id: int,
    data: SyncRuleUpdate,
    actor_user_id: Optional[int] = None,
) -> models.SyncRule:
    rule = _get_owned_rule(db, rule_id, tenant_id)
    if rule is None:
        raise ValueError("Training sync rule not found.")

    needs_regeneration = rule_affects_data(rule, data)

    if data.resource_id is not None:
        rule.resource_id = data.resource_id
    if data.frameworks is not None:
        rule.frameworks = _join_csv(data.frameworks)
    if data.courses is not None:
        rule.courses = _join_csv(data.courses)
    if data.completion_mode is not None:
        rule.completion_mode = data.completion_mode
    rule.modified_by = actor_user_id
    rule.modified_at = _utcnow()
    db.commit()
    db.refresh(rule)

    if needs_regeneration:
        regeneration.request_regeneration(
            db, tenant_id=tenant_id, reason="rule_change", triggered_by=actor_user_id
        )
    return rule


def delete_rule(
    db: Session,
    rule_id: int,
    *,
    tenant_id: int,
    store: SnapshotStore,
    actor_user_id: Optional[int] = None,
) -> bool:
    rule = _get_owned_rule(db, rule_id, tenant_id)
    if rule is None:
        return False
    db.delete(rule)
    db.commit()

    store.write(tenant_id, [])
    regeneration.request_regeneration(
        db, tenant_id=tenant_id, reason="rule_deletion", triggered_by=actor_user_id
    )
    return True


def configuration_problem(db: Session, *, tenant_id: int, user_id: int, course_id: int) -> Optional[str]:
    """
    Why a completion of ``course_id`` by ``user_id`` should not be synced, or
    None when it should.
    """
    if credential_services.get_active_credentials(db, tenant_id) is None:
        return "No compliance API credentials configured for this tenant"

    rule = get_rule(db, tenant_id)
    if rule is None:
        return "No training sync rule configured for this tenant"

    course_ids = rule.course_ids
    if not course_ids:
        return "No courses configured in the training sync rule"
    if course_id not in course_ids:
        return "Course not included in the training sync rule"
    if not (rule.resource_id or "").strip():
        return "No resource id configured in the training sync rule"

    if rule.completion_mode == models.CompletionMode.ALL:
        done = training_services.completed_course_ids(db, user_id=user_id, course_ids=course_ids)
        if len(done) < len(course_ids):
            return (
                f"User has completed {len(done)} of {len(course_ids)} required courses. "
                "All courses must be completed as per the training sync rule."
            )
    return None
