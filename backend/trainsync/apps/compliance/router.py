from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status
from sqlalchemy.orm import Session

from trainsync.apps.accounts import services as account_services
from trainsync.database import get_db

from . import attempt_log, completion_queue, regeneration, rules, schemas
from . import credentials as credential_services
from .orchestrator import Orchestrator, build_orchestrator


router = APIRouter(
    prefix="/compliance",
    tags=["compliance"],
)


def get_tenant_id(
    tenant_id: int = Header(..., alias="X-Tenant-ID"),
    db: Session = Depends(get_db),
) -> int:
    if account_services.get_tenant(db, tenant_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Tenant not found.")
    return tenant_id


def get_orchestrator(db: Session = Depends(get_db)):
    orchestrator = build_orchestrator(db)
    try:
        yield orchestrator
    finally:
        orchestrator.close()


@router.get("/status", response_model=schemas.TenantSyncStatus)
def get_status(
    tenant_id: int = Depends(get_tenant_id),
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    return orchestrator.status(tenant_id)


@router.get("/logs", response_model=List[schemas.SyncAttemptLogRead])
def list_logs(
    tenant_id: int = Depends(get_tenant_id),
    status_filter: Optional[str] = Query(None, alias="status"),
    limit: int = Query(100, ge=1, le=500),
    db: Session = Depends(get_db),
):
    return attempt_log.list_attempts(db, tenant_id=tenant_id, status=status_filter, limit=limit)


@router.get("/logs/{log_id}", response_model=schemas.SyncAttemptLogDetail)
def get_log(
    log_id: int,
    tenant_id: int = Depends(get_tenant_id),
    db: Session = Depends(get_db),
):
    row = attempt_log.get_attempt(db, log_id, tenant_id=tenant_id)
    if row is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Log entry not found.")
    return row


@router.post("/regenerate", status_code=status.HTTP_202_ACCEPTED)
def regenerate(
    force: bool = Query(False),
    tenant_id: int = Depends(get_tenant_id),
    orchestrator: Orchestrator = Depends(get_orchestrator),
    actor_user_id: Optional[int] = Header(None, alias="X-User-ID"),
):
    ok = orchestrator.trigger_regeneration(tenant_id, force_immediate=force, triggered_by=actor_user_id)
    if not ok:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Regeneration could not run; the tenant may be locked.",
        )
    return {"tenant_id": tenant_id, "forced": force, "ok": True}


@router.post("/queue/process", response_model=schemas.DrainResult)
def process_queue(
    limit: int = Query(100, ge=1, le=1000),
    tenant_id: int = Depends(get_tenant_id),
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    return orchestrator.process_queue(tenant_id, limit=limit)


@router.get("/queue", response_model=List[schemas.QueueItemRead])
def list_queue(
    limit: int = Query(100, ge=1, le=1000),
    tenant_id: int = Depends(get_tenant_id),
    db: Session = Depends(get_db),
):
    return completion_queue.pending_items(db, tenant_id=tenant_id, limit=limit)


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------


def _owned_credentials(db: Session, credential_id: int, tenant_id: int):
    credential = credential_services.get_credentials(db, credential_id, tenant_id=tenant_id)
    if credential is None or credential.deleted:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Credentials not found.")
    return credential


@router.get("/credentials", response_model=Optional[schemas.CredentialRead])
def get_active_credentials(
    tenant_id: int = Depends(get_tenant_id),
    db: Session = Depends(get_db),
):
    return credential_services.get_active_credentials(db, tenant_id)


@router.post("/credentials", response_model=schemas.CredentialRead, status_code=status.HTTP_201_CREATED)
def create_credentials(
    payload: schemas.CredentialCreate,
    tenant_id: int = Depends(get_tenant_id),
    db: Session = Depends(get_db),
    actor_user_id: Optional[int] = Header(None, alias="X-User-ID"),
):
    try:
        return credential_services.save_credentials(
            db, tenant_id=tenant_id, data=payload, actor_user_id=actor_user_id
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc


@router.patch("/credentials/{credential_id}", response_model=schemas.CredentialRead)
def update_credentials(
    credential_id: int,
    payload: schemas.CredentialUpdate,
    tenant_id: int = Depends(get_tenant_id),
    db: Session = Depends(get_db),
    actor_user_id: Optional[int] = Header(None, alias="X-User-ID"),
):
    _owned_credentials(db, credential_id, tenant_id)
    try:
        return credential_services.update_credentials(
            db, credential_id, tenant_id=tenant_id, data=payload, actor_user_id=actor_user_id
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc


@router.delete("/credentials/{credential_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_credentials(
    credential_id: int,
    tenant_id: int = Depends(get_tenant_id),
    db: Session = Depends(get_db),
    actor_user_id: Optional[int] = Header(None, alias="X-User-ID"),
):
    _owned_credentials(db, credential_id, tenant_id)
    credential_services.delete_credentials(db, credential_id, tenant_id=tenant_id, actor_user_id=actor_user_id)


# ---------------------------------------------------------------------------
# Sync rule
# ---------------------------------------------------------------------------


@router.get("/rule", response_model=Optional[schemas.SyncRuleRead])
def get_rule(
    tenant_id: int = Depends(get_tenant_id),
    db: Session = Depends(get_db),
):
    return rules.get_rule(db, tenant_id)


@router.post("/rule", response_model=schemas.SyncRuleRead, status_code=status.HTTP_201_CREATED)
def create_rule(
    payload: schemas.SyncRuleCreate,
    tenant_id: int = Depends(get_tenant_id),
    db: Session = Depends(get_db),
    actor_user_id: Optional[int] = Header(None, alias="X-User-ID"),
):
    try:
        return rules.create_rule(db, tenant_id=tenant_id, data=payload, actor_user_id=actor_user_id)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc


@router.patch("/rule/{rule_id}", response_model=schemas.SyncRuleRead)
def update_rule(
    rule_id: int,
    payload: schemas.SyncRuleUpdate,
    tenant_id: int = Depends(get_tenant_id),
    db: Session = Depends(get_db),
    actor_user_id: Optional[int] = Header(None, alias="X-User-ID"),
):
    try:
        return rules.update_rule(db, rule_id, tenant_id=tenant_id, data=payload, actor_user_id=actor_user_id)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc


@router.delete("/rule/{rule_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_rule(
    rule_id: int,
    tenant_id: int = Depends(get_tenant_id),
    orchestrator: Orchestrator = Depends(get_orchestrator),
    actor_user_id: Optional[int] = Header(None, alias="X-User-ID"),
):
    deleted = rules.delete_rule(
        orchestrator.db,
        rule_id,
        tenant_id=tenant_id,
        store=orchestrator.store,
        actor_user_id=actor_user_id,
    )
    if not deleted:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Training sync rule not found.")


@router.get("/rule/history", response_model=List[schemas.RuleHistoryEntry])
def get_rule_history(
    limit: int = Query(50, ge=1, le=500),
    tenant_id: int = Depends(get_tenant_id),
    db: Session = Depends(get_db),
):
    return regeneration.rule_history(db, tenant_id, limit=limit)
