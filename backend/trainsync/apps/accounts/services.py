from __future__ import annotations

from typing import Optional

from sqlalchemy.orm import Session

from . import models


def resolve_user_tenant_id(db: Session, user_id: int) -> Optional[int]:
    """
    Return the tenant a user belongs to, or None.

    Users attached to several tenants resolve to the lowest tenant id so the
    answer is stable between the web handler and the cron sweep.
    """
    row = (
        db.query(models.TenantMembership.tenant_id)
        .filter(models.TenantMembership.user_id == user_id)
        .order_by(models.TenantMembership.tenant_id.asc())
        .first()
    )
    return int(row[0]) if row else None


def get_tenant(db: Session, tenant_id: int) -> Optional[models.Tenant]:
    return db.query(models.Tenant).filter(models.Tenant.id == tenant_id).first()


def tenant_display_name(db: Session, tenant_id: int) -> str:
    tenant = get_tenant(db, tenant_id)
    if not tenant or not tenant.name:
        return f"Tenant ID: {tenant_id}"
    return f"{tenant.name} (ID: {tenant_id})"
