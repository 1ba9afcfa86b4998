"""
Per-tenant snapshot artifact.

A snapshot is the complete record set that should exist at the remote end for
one tenant. It is written to ``<data_dir>/compliance_data_<slug>.json`` and is
always replaced whole: the new content goes to a temp file in the same
directory, then ``os.replace`` swaps it in, so a concurrent reader sees either
the previous snapshot or the new one, never a partial file.
"""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterable, Optional

from pydantic import ValidationError
from sqlalchemy.orm import Session

from trainsync.apps.accounts import services as account_services

from . import config
from .errors import SnapshotError
from .schemas import FormattedRecord, Snapshot, SnapshotMeta

logger = logging.getLogger(__name__)

SlugResolver = Callable[[int], str]

_SLUG_STRIP = re.compile(r"[^a-z0-9_-]+")


def tenant_slug(name: Optional[str], tenant_id: int) -> str:
    """``Acme Ltd.`` with id 7 becomes ``acme_ltd_id_7``."""
    base = (name or "").strip().lower().replace(" ", "_")
    base = _SLUG_STRIP.sub("", base).strip("_-")
    if not base:
        base = "tenant"
    return f"{base}_id_{tenant_id}"


def slug_resolver(db: Session) -> SlugResolver:
    def _resolve(tenant_id: int) -> str:
        tenant = account_services.get_tenant(db, tenant_id)
        return tenant_slug(tenant.name if tenant else None, tenant_id)

    return _resolve


def _default_slug(tenant_id: int) -> str:
    return tenant_slug(None, tenant_id)


class SnapshotStore:
    def __init__(
        self,
        data_dir: Optional[Path] = None,
        *,
        slug_for: Optional[SlugResolver] = None,
    ) -> None:
        self.data_dir = Path(data_dir) if data_dir is not None else config.DATA_DIR
        self._slug_for = slug_for or _default_slug

    def path_for(self, tenant_id: int) -> Path:
        return self.data_dir / f"compliance_data_{self._slug_for(tenant_id)}.json"

    def write(
        self,
        tenant_id: int,
        records: Iterable[FormattedRecord],
        *,
        generated_at: Optional[datetime] = None,
        performance: Optional[dict] = None,
    ) -> Snapshot:
        records = list(records)
        snapshot = Snapshot(
            tenant_id=tenant_id,
            generated_at=generated_at or datetime.now(timezone.utc),
            record_count=len(records),
            records=records,
        )
        body = {
            "tenant_id": snapshot.tenant_id,
            "generated_at": snapshot.generated_at.isoformat(),
            "record_count": snapshot.record_count,
            "records": [record.to_wire() for record in records],
            "performance_info": performance or {},
        }

        path = self.path_for(tenant_id)
        path.parent.mkdir(parents=True, exist_ok=True)

        # Atomic write: temp file + replace
        fd, temp_path = tempfile.mkstemp(
            dir=path.parent,
            prefix=f".{path.stem}_",
            suffix=".json.tmp",
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(body, f, ensure_ascii=False)
                f.write("\n")
            os.replace(temp_path, path)
        except Exception:
            try:
                os.unlink(temp_path)
            except OSError:
                pass
            raise

        logger.info(
            "Snapshot written",
            extra={"tenant_id": tenant_id, "record_count": snapshot.record_count, "path": str(path)},
        )
        return snapshot

    def load(self, tenant_id: int) -> Optional[Snapshot]:
        path = self.path_for(tenant_id)
        if not path.exists():
            return None
        try:
            with path.open("r", encoding="utf-8") as f:
                body = json.load(f)
        except json.JSONDecodeError as exc:
            raise SnapshotError(f"Failed to parse {path.name}: {exc}") from exc

        try:
            records = [FormattedRecord.model_validate(item) for item in body.get("records") or []]
            return Snapshot(
                tenant_id=int(body.get("tenant_id", tenant_id)),
                generated_at=body["generated_at"],
                record_count=len(records),
                records=records,
            )
        except (KeyError, ValidationError) as exc:
            raise SnapshotError(f"Malformed snapshot {path.name}: {exc}") from exc

    def meta(self, tenant_id: int) -> Optional[SnapshotMeta]:
        path = self.path_for(tenant_id)
        if not path.exists():
            return None
        snapshot = self.load(tenant_id)
        return SnapshotMeta(
            tenant_id=tenant_id,
            generated_at=snapshot.generated_at if snapshot else None,
            record_count=snapshot.record_count if snapshot else 0,
            size_bytes=path.stat().st_size,
            path=str(path),
        )
