from __future__ import annotations

import enum
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    text,
)

from trainsync.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; everything stored here is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _enum_values(enum_cls) -> list[str]:
    return [member.value for member in enum_cls]


class CompletionMode(str, enum.Enum):
    ANY = "any"
    ALL = "all"


class QueueStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class RegenerationStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class AttemptStatus(str, enum.Enum):
    SUCCESS = "success"
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"
    DEBUG = "debug"
    QUEUED = "queued"
    SKIPPED = "skipped"


def _split_csv(raw: str | None) -> list[str]:
    seen: list[str] = []
    for part in (raw or "").split(","):
        value = part.strip()
        if value and value not in seen:
            seen.append(value)
    return seen


class ApiCredential(Base):
    """
    Client-credentials for the compliance API. Soft-deleted, never removed.
    """

    __tablename__ = "compliance_api_credentials"
    __table_args__ = (
        Index("ix_compliance_api_credentials_tenant_active", "tenant_id", "status", "deleted"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(
        Integer,
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name = Column(String(255), nullable=False, default="")
    client_id = Column(String(255), nullable=False)
    client_secret = Column(String(255), nullable=False)
    scope = Column(String(255), nullable=False, default="connectors.self:write-resource")
    grant_type = Column(String(100), nullable=False, default="client_credentials")
    status = Column(Boolean, nullable=False, default=True, index=True)
    deleted = Column(Boolean, nullable=False, default=False, index=True)

    created_by = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_by = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    def __repr__(self) -> str:
        return f"<ApiCredential id={self.id} tenant={self.tenant_id} deleted={self.deleted}>"


class SyncRule(Base):
    """
    Which courses feed a tenant's compliance resource, and how users qualify.
    At most one rule per tenant.
    """

    __tablename__ = "compliance_sync_rules"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(
        Integer,
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
        index=True,
    )
    credential_id = Column(
        Integer,
        ForeignKey("compliance_api_credentials.id", ondelete="SET NULL"),
        nullable=True,
    )
    resource_id = Column(String(255), nullable=False, default="")
    frameworks = Column(Text, nullable=True)
    courses = Column(Text, nullable=True)
    completion_mode = Column(
        SAEnum(
            CompletionMode,
            name="compliance_completion_mode",
            native_enum=False,
            values_callable=_enum_values,
        ),
        nullable=False,
        default=CompletionMode.ANY,
    )

    created_by = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    modified_by = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    modified_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    @property
    def course_ids(self) -> list[int]:
        ids: list[int] = []
        for value in _split_csv(self.courses):
            if value.isdigit():
                ids.append(int(value))
        return ids

    @property
    def framework_list(self) -> list[str]:
        return _split_csv(self.frameworks)

    def __repr__(self) -> str:
        return f"<SyncRule id={self.id} tenant={self.tenant_id} mode={self.completion_mode}>"


class SyncLock(Base):
    """
    Per-tenant lease. The primary key on tenant_id is what makes acquisition atomic:
    two concurrent inserts for the same tenant cannot both succeed.
    """

    __tablename__ = "compliance_sync_locks"

    tenant_id = Column(Integer, primary_key=True, autoincrement=False)
    operation = Column(String(64), nullable=False, default="unknown")
    holder = Column(String(128), nullable=True)
    pid = Column(Integer, nullable=True)
    acquired_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)

    def __repr__(self) -> str:
        return f"<SyncLock tenant={self.tenant_id} op={self.operation} expires={self.expires_at}>"


class SyncQueueItem(Base):
    """
    A completion that arrived while the tenant was locked.
    """

    __tablename__ = "compliance_sync_queue"
    __table_args__ = (
        Index(
            "uq_compliance_sync_queue_pending",
            "user_id",
            "course_id",
            "tenant_id",
            unique=True,
            postgresql_where=text("status = 'pending'"),
            sqlite_where=text("status = 'pending'"),
        ),
        Index("ix_compliance_sync_queue_tenant_status", "tenant_id", "status"),
        Index("ix_compliance_sync_queue_queued_at", "queued_at"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, nullable=False, index=True)
    course_id = Column(Integer, nullable=False, index=True)
    tenant_id = Column(Integer, nullable=False, index=True)
    reason = Column(String(255), nullable=True)
    status = Column(
        SAEnum(
            QueueStatus,
            name="compliance_queue_status",
            native_enum=False,
            values_callable=_enum_values,
        ),
        nullable=False,
        default=QueueStatus.PENDING,
        index=True,
    )
    attempts = Column(Integer, nullable=False, default=0)
    error_message = Column(Text, nullable=True)
    queued_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    processed_at = Column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return (
            f"<SyncQueueItem id={self.id} user={self.user_id} course={self.course_id} "
            f"tenant={self.tenant_id} status={self.status}>"
        )


class RegenerationRequest(Base):
    """
    "Rules changed, recompute everything" for one tenant. At most one pending per tenant.
    """

    __tablename__ = "compliance_regeneration_queue"
    __table_args__ = (
        Index(
            "uq_compliance_regeneration_pending",
            "tenant_id",
            unique=True,
            postgresql_where=text("status = 'pending'"),
            sqlite_where=text("status = 'pending'"),
        ),
        Index("ix_compliance_regeneration_status_queued", "status", "queued_at"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(Integer, nullable=False, index=True)
    reason = Column(String(255), nullable=True)
    status = Column(
        SAEnum(
            RegenerationStatus,
            name="compliance_regeneration_status",
            native_enum=False,
            values_callable=_enum_values,
        ),
        nullable=False,
        default=RegenerationStatus.PENDING,
        index=True,
    )
    queued_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    error_message = Column(Text, nullable=True)
    triggered_by = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    def __repr__(self) -> str:
        return f"<RegenerationRequest id={self.id} tenant={self.tenant_id} status={self.status}>"


class SyncAttemptLog(Base):
    """
    Append-only audit row for one sync attempt. Never updated after insert.
    """

    __tablename__ = "compliance_sync_logs"
    __table_args__ = (
        Index("ix_compliance_sync_logs_tenant_time", "tenant_id", "synced_at"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(Integer, nullable=True, index=True)
    user_id = Column(Integer, nullable=False, default=0, index=True)
    course_id = Column(Integer, nullable=False, default=0, index=True)
    user_email = Column(String(255), nullable=False, default="")
    course_name = Column(String(255), nullable=False, default="")
    synced_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, index=True)
    request_payload = Column(Text, nullable=False, default="")
    response_payload = Column(Text, nullable=True)
    status = Column(String(32), nullable=False, index=True)
    error_message = Column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<SyncAttemptLog id={self.id} status={self.status} user={self.user_id} course={self.course_id}>"
