"""
Per-tenant sync lock.

At most one live lock exists per tenant. A lock older than its TTL counts as
abandoned: the next reader deletes it and reports the tenant free, so a
crashed holder never wedges a tenant for longer than the TTL.

Two backends:

* ``DatabaseLockBackend`` (default) stores a lease row keyed by tenant id.
  The primary key makes acquisition a single atomic insert.
* ``FileLockBackend`` stores a marker file created with ``O_CREAT | O_EXCL``,
  for deployments that share a data directory but not a database.

Failing to acquire is not an error; callers enqueue the work instead.
"""

from __future__ import annotations

import json
import logging
import os
import socket
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import config, models
from .schemas import LockInfo
from .snapshots import SlugResolver, slug_resolver, tenant_slug

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _default_holder() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


class DatabaseLockBackend:
    def __init__(self, db: Session) -> None:
        self.db = db

    def read(self, tenant_id: int) -> Optional[LockInfo]:
        row = self.db.get(models.SyncLock, tenant_id, populate_existing=True)
        if row is None:
            return None
        return LockInfo(
            tenant_id=row.tenant_id,
            operation=row.operation,
            holder=row.holder,
            pid=row.pid,
            acquired_at=models.as_utc(row.acquired_at),
            expires_at=models.as_utc(row.expires_at),
        )

    def create(self, info: LockInfo) -> bool:
        self.db.add(
            models.SyncLock(
                tenant_id=info.tenant_id,
                operation=info.operation,
                holder=info.holder,
                pid=info.pid,
                acquired_at=info.acquired_at,
                expires_at=info.expires_at,
            )
        )
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            return False
        return True

    def delete(self, tenant_id: int, *, expired_before: Optional[datetime] = None) -> None:
        query = self.db.query(models.SyncLock).filter(models.SyncLock.tenant_id == tenant_id)
        if expired_before is not None:
            query = query.filter(models.SyncLock.expires_at <= expired_before)
        query.delete(synchronize_session=False)
        self.db.commit()
        self.db.expire_all()


class FileLockBackend:
    def __init__(self, data_dir: Optional[Path] = None, *, slug_for: Optional[SlugResolver] = None) -> None:
        self.data_dir = Path(data_dir) if data_dir is not None else config.DATA_DIR
        self._slug_for = slug_for or (lambda tenant_id: tenant_slug(None, tenant_id))

    def path_for(self, tenant_id: int) -> Path:
        return self.data_dir / f"sync_lock_{self._slug_for(tenant_id)}.lock"

    def read(self, tenant_id: int) -> Optional[LockInfo]:
        path = self.path_for(tenant_id)
        try:
            raw = path.read_text(encoding="utf-8")
            mtime = datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)
        except FileNotFoundError:
            return None

        try:
            body = json.loads(raw) if raw.strip() else {}
        except json.JSONDecodeError:
            body = {}

        acquired_at = mtime
        if body.get("acquired_at"):
            try:
                acquired_at = models.as_utc(datetime.fromisoformat(body["acquired_at"]))
            except ValueError:
                acquired_at = mtime
        expires_at = mtime + timedelta(seconds=config.LOCK_TTL_SEC)
        if body.get("expires_at"):
            try:
                expires_at = models.as_utc(datetime.fromisoformat(body["expires_at"]))
            except ValueError:
                pass

        return LockInfo(
            tenant_id=tenant_id,
            operation=body.get("operation") or "unknown",
            holder=body.get("holder"),
            pid=body.get("pid"),
            acquired_at=acquired_at,
            expires_at=expires_at,
        )

    def create(self, info: LockInfo) -> bool:
        path = self.path_for(info.tenant_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(
                {
                    "tenant_id": info.tenant_id,
                    "operation": info.operation,
                    "holder": info.holder,
                    "pid": info.pid,
                    "acquired_at": info.acquired_at.isoformat(),
                    "expires_at": info.expires_at.isoformat(),
                },
                f,
            )
        return True

    def delete(self, tenant_id: int, *, expired_before: Optional[datetime] = None) -> None:
        path = self.path_for(tenant_id)
        if expired_before is not None:
            current = self.read(tenant_id)
            if current is None or current.expires_at > expired_before:
                return
        path.unlink(missing_ok=True)


class SyncLockManager:
    def __init__(
        self,
        backend,
        *,
        ttl_sec: Optional[int] = None,
        now: Optional[Clock] = None,
        holder: Optional[str] = None,
    ) -> None:
        self.backend = backend
        self.ttl = timedelta(seconds=config.LOCK_TTL_SEC if ttl_sec is None else ttl_sec)
        self._now = now or _utcnow
        self.holder = holder or _default_holder()

    def _live(self, tenant_id: int) -> Optional[LockInfo]:
        info = self.backend.read(tenant_id)
        if info is None:
            return None
        now = self._now()
        if info.expires_at <= now:
            logger.warning(
                "Removing expired sync lock",
                extra={
                    "tenant_id": tenant_id,
                    "operation": info.operation,
                    "holder": info.holder,
                    "acquired_at": info.acquired_at.isoformat(),
                },
            )
            self.backend.delete(tenant_id, expired_before=now)
            return None
        return info

    def is_locked(self, tenant_id: int) -> bool:
        return self._live(tenant_id) is not None

    def lock_info(self, tenant_id: int) -> Optional[LockInfo]:
        return self._live(tenant_id)

    def try_acquire(self, tenant_id: int, operation: str = "sync") -> bool:
        if self._live(tenant_id) is not None:
            return False
        now = self._now()
        acquired = self.backend.create(
            LockInfo(
                tenant_id=tenant_id,
                operation=operation,
                holder=self.holder,
                pid=os.getpid(),
                acquired_at=now,
                expires_at=now + self.ttl,
            )
        )
        if acquired:
            logger.info("Sync lock acquired", extra={"tenant_id": tenant_id, "operation": operation})
        else:
            logger.info("Sync lock contended", extra={"tenant_id": tenant_id, "operation": operation})
        return acquired

    def release(self, tenant_id: int) -> bool:
        self.backend.delete(tenant_id)
        logger.info("Sync lock released", extra={"tenant_id": tenant_id})
        return True


def build_lock_manager(
    db: Session,
    *,
    backend_name: Optional[str] = None,
    data_dir: Optional[Path] = None,
    ttl_sec: Optional[int] = None,
    now: Optional[Clock] = None,
) -> SyncLockManager:
    name = (backend_name or config.LOCK_BACKEND).lower()
    if name == "file":
        backend = FileLockBackend(data_dir, slug_for=slug_resolver(db))
    elif name == "database":
        backend = DatabaseLockBackend(db)
    else:
        raise ValueError(f"Unknown lock backend: {name}")
    return SyncLockManager(backend, ttl_sec=ttl_sec, now=now)
