from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.orm import Session

from . import models
from .schemas import CredentialCreate, CredentialUpdate


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def get_active_credentials(db: Session, tenant_id: int) -> Optional[models.ApiCredential]:
    return (
        db.query(models.ApiCredential)
        .filter(
            models.ApiCredential.tenant_id == tenant_id,
            models.ApiCredential.status.is_(True),
            models.ApiCredential.deleted.is_(False),
        )
        .order_by(models.ApiCredential.id.asc())
        .first()
    )


def get_credentials(db: Session, credential_id: int, *, tenant_id: int) -> Optional[models.ApiCredential]:
    return (
        db.query(models.ApiCredential)
        .filter(
            models.ApiCredential.id == credential_id,
            models.ApiCredential.tenant_id == tenant_id,
        )
        .first()
    )


def save_credentials(
    db: Session,
    *,
    tenant_id: int,
    data: CredentialCreate,
    actor_user_id: Optional[int] = None,
) -> models.ApiCredential:
    if data.status and get_active_credentials(db, tenant_id) is not None:
        raise ValueError("Tenant already has active compliance API credentials.")

    credential = models.ApiCredential(
        tenant_id=tenant_id,
        name=data.name,
        client_id=data.client_id,
        client_secret=data.client_secret,
        scope=data.scope,
        grant_type=data.grant_type,
        status=data.status,
        deleted=False,
        created_by=actor_user_id,
        updated_by=actor_user_id,
    )
    db.add(credential)
    db.commit()
    db.refresh(credential)
    return credential


def update_credentials(
    db: Session,
    credential_id: int,
    *,
    tenant_id: int,
    data: CredentialUpdate,
    actor_user_id: Optional[int] = None,
) -> models.ApiCredential:
    credential = get_credentials(db, credential_id, tenant_id=tenant_id)
    if credential is None or credential.deleted:
        raise ValueError("Compliance API credentials not found.")

    changes = data.model_dump(exclude_unset=True)
    if changes.get("status") and not credential.status:
        current = get_active_credentials(db, tenant_id)
        if current is not None and current.id != credential.id:
            raise ValueError("Tenant already has active compliance API credentials.")

    for field, value in changes.items():
        setattr(credential, field, value)
    credential.updated_by = actor_user_id
    credential.updated_at = _utcnow()
    db.commit()
    db.refresh(credential)
    return credential


def delete_credentials(
    db: Session,
    credential_id: int,
    *,
    tenant_id: int,
    actor_user_id: Optional[int] = None,
) -> bool:
    """Soft delete; the row stays for audit."""
    credential = get_credentials(db, credential_id, tenant_id=tenant_id)
    if credential is None:
        return False
    credential.deleted = True
    credential.updated_by = actor_user_id
    credential.updated_at = _utcnow()
    db.commit()
    return True
