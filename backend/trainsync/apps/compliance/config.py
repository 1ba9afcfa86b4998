"""
Environment-driven settings for the compliance sync engine.

Every value here is a default; the components take keyword overrides so the
CLI and tests can inject their own.
"""

from __future__ import annotations

import os
from pathlib import Path


def _int_env(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    return int(raw) if raw else default


def _float_env(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    return float(raw) if raw else default


# -------------------------------------------------------------------
# REMOTE API
# -------------------------------------------------------------------

API_BASE_URL = os.getenv("COMPLIANCE_API_BASE_URL", "https://api.vanta.com").rstrip("/")
TOKEN_PATH = os.getenv("COMPLIANCE_TOKEN_PATH", "/oauth/token")
RESOURCE_PATH = os.getenv("COMPLIANCE_RESOURCE_PATH", "/v1/resources/user_security_training_status")
USER_AGENT = os.getenv("COMPLIANCE_USER_AGENT", "trainsync-compliance/1.0")

CONNECT_TIMEOUT_SEC = _float_env("COMPLIANCE_CONNECT_TIMEOUT_SEC", 10.0)
TOKEN_TIMEOUT_SEC = _float_env("COMPLIANCE_TOKEN_TIMEOUT_SEC", 30.0)
PUSH_TIMEOUT_SEC = _float_env("COMPLIANCE_PUSH_TIMEOUT_SEC", 120.0)
LARGE_PUSH_TIMEOUT_SEC = _float_env("COMPLIANCE_LARGE_PUSH_TIMEOUT_SEC", 300.0)

TOKEN_TTL_SEC = _int_env("COMPLIANCE_TOKEN_TTL_SEC", 3600)

LARGE_PAYLOAD_RECORDS = _int_env("COMPLIANCE_LARGE_PAYLOAD_RECORDS", 15000)
LARGE_DATASET_WARN_RECORDS = _int_env("COMPLIANCE_LARGE_DATASET_WARN_RECORDS", 10000)

# -------------------------------------------------------------------
# LOCKING / STORAGE
# -------------------------------------------------------------------

LOCK_TTL_SEC = _int_env("COMPLIANCE_LOCK_TTL_SEC", 3600)
LOCK_BACKEND = (os.getenv("COMPLIANCE_LOCK_BACKEND") or "database").strip().lower()
DATA_DIR = Path(os.getenv("COMPLIANCE_DATA_DIR", "./var/compliance"))

# -------------------------------------------------------------------
# GENERATION
# -------------------------------------------------------------------

BATCH_SIZE = _int_env("COMPLIANCE_BATCH_SIZE", 1000)
MEMORY_LIMIT_MB = _int_env("COMPLIANCE_MEMORY_LIMIT_MB", 0)   # 0 disables the guard
MEMORY_THRESHOLD = _float_env("COMPLIANCE_MEMORY_THRESHOLD", 0.8)
MEMORY_CHECK_EVERY = _int_env("COMPLIANCE_MEMORY_CHECK_EVERY", 100)  # batches

DEFAULT_FRAMEWORK = os.getenv("COMPLIANCE_DEFAULT_FRAMEWORK", "SOC2")
DEFAULT_DUE_DAYS = _int_env("COMPLIANCE_DEFAULT_DUE_DAYS", 30)
PLATFORM_BASE_URL = os.getenv("COMPLIANCE_PLATFORM_BASE_URL", "http://localhost").rstrip("/")
COURSE_URL_TEMPLATE = os.getenv(
    "COMPLIANCE_COURSE_URL_TEMPLATE",
    "{base_url}/course/view.php?id={course_id}",
)

# -------------------------------------------------------------------
# QUEUES
# -------------------------------------------------------------------

QUEUE_MAX_ATTEMPTS = _int_env("COMPLIANCE_QUEUE_MAX_ATTEMPTS", 3)
QUEUE_DRAIN_LIMIT = _int_env("COMPLIANCE_QUEUE_DRAIN_LIMIT", 100)
RETENTION_DAYS = _int_env("COMPLIANCE_RETENTION_DAYS", 30)
