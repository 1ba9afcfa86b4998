from __future__ import annotations


class ComplianceSyncError(Exception):
    """Base class for sync engine failures."""


class ConfigurationError(ComplianceSyncError):
    """Tenant has no usable credentials, rule, or resource id."""


class TenantResolutionError(ComplianceSyncError):
    """A user could not be mapped to a tenant."""


class MemoryCeilingExceeded(ComplianceSyncError):
    """Snapshot generation stayed above the memory ceiling after a GC pass."""

    def __init__(self, usage_bytes: int, limit_bytes: int):
        self.usage_bytes = usage_bytes
        self.limit_bytes = limit_bytes
        super().__init__(
            f"Memory usage too high: {usage_bytes / 1024 / 1024:.1f}MB "
            f"exceeds ceiling of {limit_bytes / 1024 / 1024:.1f}MB"
        )


class RemoteApiError(ComplianceSyncError):
    """Transport failure or rejection from the compliance API."""

    def __init__(self, message: str, *, status_code: int = 0, body: str = ""):
        self.status_code = status_code
        self.body = body
        super().__init__(message)


class SnapshotError(ComplianceSyncError):
    """The stored snapshot artifact could not be read."""


class LockContended(ComplianceSyncError):
    """Another holder took the tenant lock first. Callers leave the work queued."""

    def __init__(self, tenant_id: int):
        self.tenant_id = tenant_id
        super().__init__(f"Tenant {tenant_id} is locked by another sync operation")
