from __future__ import annotations

from datetime import datetime
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, Field

from .models import AttemptStatus, CompletionMode, QueueStatus, RegenerationStatus


# ---------------------------------------------------------------------------
# Wire format
# ---------------------------------------------------------------------------


class FormattedRecord(BaseModel):
    """
    One training-status resource as the compliance API expects it.

    ``unique_id`` (``user<uid>_course<cid>``) is the natural key the remote end
    uses for full replacement.
    """

    display_name: str = Field(..., alias="displayName")
    unique_id: str = Field(..., alias="uniqueId")
    external_url: str = Field(..., alias="externalUrl")
    training_id: str = Field(..., alias="trainingId")
    training_name: str = Field(..., alias="trainingName")
    frameworks_fulfilled: List[str] = Field(..., alias="frameworksFulfilled")
    trainee_name: str = Field(..., alias="traineeFullName")
    trainee_account: str = Field(..., alias="traineeAccountName")
    trainee_email: str = Field(..., alias="traineeEmail")
    status: str = "COMPLETE"
    created_ts: str = Field(..., alias="trainingCreatedTimestamp")
    due_ts: str = Field(..., alias="trainingDueTimestamp")
    completed_ts: str = Field(..., alias="trainingCompletedTimestamp")

    class Config:
        populate_by_name = True
        frozen = True

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True)


class Snapshot(BaseModel):
    tenant_id: int
    generated_at: datetime
    record_count: int
    records: List[FormattedRecord] = Field(default_factory=list)


class SnapshotMeta(BaseModel):
    tenant_id: int
    generated_at: Optional[datetime] = None
    record_count: int = 0
    size_bytes: int = 0
    path: str


# ---------------------------------------------------------------------------
# Tagged sync payloads: the caller says which shape it is handing over.
# ---------------------------------------------------------------------------


class CompletionRef(BaseModel):
    user_id: int
    course_id: int


class FormattedBatch(BaseModel):
    kind: Literal["formatted"] = "formatted"
    records: List[FormattedRecord]


class CompletionRefBatch(BaseModel):
    kind: Literal["refs"] = "refs"
    refs: List[CompletionRef]


SyncPayload = Annotated[Union[FormattedBatch, CompletionRefBatch], Field(discriminator="kind")]


# ---------------------------------------------------------------------------
# Results / reads
# ---------------------------------------------------------------------------


class DrainResult(BaseModel):
    processed: int = 0
    successful: int = 0
    failed: int = 0
    skipped: int = 0
    errors: List[str] = Field(default_factory=list)

    def merge(self, other: "DrainResult") -> "DrainResult":
        return DrainResult(
            processed=self.processed + other.processed,
            successful=self.successful + other.successful,
            failed=self.failed + other.failed,
            skipped=self.skipped + other.skipped,
            errors=[*self.errors, *other.errors],
        )


class SweepSummary(BaseModel):
    queue: DrainResult = Field(default_factory=DrainResult)
    regeneration: DrainResult = Field(default_factory=DrainResult)
    locked_tenants: List[int] = Field(default_factory=list)
    queue_rows_removed: int = 0
    regeneration_rows_removed: int = 0


class QueueStats(BaseModel):
    pending: int = 0
    completed: int = 0
    failed: int = 0


class LockInfo(BaseModel):
    tenant_id: int
    operation: str
    holder: Optional[str] = None
    pid: Optional[int] = None
    acquired_at: datetime
    expires_at: datetime


class RegenerationRequestRead(BaseModel):
    id: int
    tenant_id: int
    reason: Optional[str] = None
    status: RegenerationStatus
    queued_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    triggered_by: Optional[int] = None

    class Config:
        from_attributes = True


class RuleHistoryEntry(RegenerationRequestRead):
    triggered_by_name: Optional[str] = None
    triggered_by_email: Optional[str] = None


class SyncRuleCreate(BaseModel):
    resource_id: str = Field(..., max_length=255)
    frameworks: List[str] = Field(default_factory=list)
    courses: List[int] = Field(default_factory=list)
    completion_mode: CompletionMode = CompletionMode.ANY
    credential_id: Optional[int] = None


class SyncRuleUpdate(BaseModel):
    resource_id: Optional[str] = Field(None, max_length=255)
    frameworks: Optional[List[str]] = None
    courses: Optional[List[int]] = None
    completion_mode: Optional[CompletionMode] = None


class SyncRuleRead(BaseModel):
    id: int
    tenant_id: int
    credential_id: Optional[int] = None
    resource_id: str
    framework_list: List[str] = Field(default_factory=list)
    course_ids: List[int] = Field(default_factory=list)
    completion_mode: CompletionMode
    created_at: datetime
    modified_at: datetime

    class Config:
        from_attributes = True


class CredentialCreate(BaseModel):
    name: str = ""
    client_id: str = Field(..., min_length=1, max_length=255)
    client_secret: str = Field(..., min_length=1, max_length=255)
    scope: str = "connectors.self:write-resource"
    grant_type: str = "client_credentials"
    status: bool = True


class CredentialUpdate(BaseModel):
    name: Optional[str] = None
    client_id: Optional[str] = Field(None, min_length=1, max_length=255)
    client_secret: Optional[str] = Field(None, min_length=1, max_length=255)
    scope: Optional[str] = None
    grant_type: Optional[str] = None
    status: Optional[bool] = None


class CredentialRead(BaseModel):
    """Credentials as shown to operators. The client secret is never returned."""

    id: int
    tenant_id: int
    name: str = ""
    client_id: str
    scope: str
    grant_type: str
    status: bool
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class SyncAttemptLogRead(BaseModel):
    id: int
    tenant_id: Optional[int] = None
    user_id: int
    course_id: int
    user_email: str
    course_name: str
    synced_at: datetime
    status: str
    error_message: Optional[str] = None

    class Config:
        from_attributes = True


class SyncAttemptLogDetail(SyncAttemptLogRead):
    request_payload: str
    response_payload: Optional[str] = None


class QueueItemRead(BaseModel):
    id: int
    user_id: int
    course_id: int
    tenant_id: int
    reason: Optional[str] = None
    status: QueueStatus
    attempts: int
    queued_at: datetime
    processed_at: Optional[datetime] = None
    error_message: Optional[str] = None

    class Config:
        from_attributes = True


class TenantSyncStatus(BaseModel):
    tenant_id: int
    locked: bool
    lock: Optional[LockInfo] = None
    queue: QueueStats
    regeneration: Optional[RegenerationRequestRead] = None
    snapshot: Optional[SnapshotMeta] = None
    last_attempt_status: Optional[AttemptStatus] = None
