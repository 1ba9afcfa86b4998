"""
Client for the remote compliance API.

The training-status resource has full-replacement semantics: every PUT carries
the tenant's entire record set, and whatever the remote end held before is
replaced. There is no incremental endpoint, so callers always hand ``push`` a
complete snapshot.

``push`` turns expected failures (no credentials, token errors, transport
errors, non-2xx, rejected body) into ``False`` plus an attempt-log row.
Anything else propagates.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import httpx
from sqlalchemy.orm import Session

from . import attempt_log, config, models
from . import credentials as credential_services
from . import rules as rule_services
from .errors import RemoteApiError
from .schemas import FormattedRecord

logger = logging.getLogger(__name__)


@dataclass
class _CachedToken:
    token: str
    expires_at: float


class TokenCache:
    """Process-local bearer tokens keyed by (tenant, client id)."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._tokens: Dict[Tuple[int, str], _CachedToken] = {}

    def get(self, tenant_id: int, client_id: str) -> Optional[str]:
        cached = self._tokens.get((tenant_id, client_id))
        if cached is None:
            return None
        if cached.expires_at <= self._clock():
            self._tokens.pop((tenant_id, client_id), None)
            return None
        return cached.token

    def put(self, tenant_id: int, client_id: str, token: str, ttl_sec: float) -> None:
        self._tokens[(tenant_id, client_id)] = _CachedToken(token=token, expires_at=self._clock() + ttl_sec)

    def invalidate(self, tenant_id: int) -> None:
        for key in [key for key in self._tokens if key[0] == tenant_id]:
            self._tokens.pop(key, None)


_token_cache = TokenCache()


def _error_detail(body: object) -> str:
    if not isinstance(body, dict) or not body.get("error"):
        return ""
    detail = str(body["error"])
    if body.get("error_description"):
        detail += f": {body['error_description']}"
    return detail


def _accepted(body: object) -> bool:
    if not isinstance(body, dict):
        return False
    return "id" in body or "resourceId" in body or body.get("success") is True


class RemoteSyncClient:
    def __init__(
        self,
        db: Session,
        *,
        http_client: Optional[httpx.Client] = None,
        base_url: Optional[str] = None,
        token_cache: Optional[TokenCache] = None,
        token_ttl_sec: Optional[int] = None,
    ) -> None:
        self.db = db
        self.base_url = (base_url or config.API_BASE_URL).rstrip("/")
        self._owns_client = http_client is None
        self._client = http_client or httpx.Client(
            follow_redirects=True,
            headers={"User-Agent": config.USER_AGENT},
        )
        self.token_cache = token_cache or _token_cache
        self.token_ttl_sec = config.TOKEN_TTL_SEC if token_ttl_sec is None else token_ttl_sec

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "RemoteSyncClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Token
    # ------------------------------------------------------------------

    def _fetch_token(self, credential: models.ApiCredential) -> Tuple[str, float]:
        payload = {
            "client_id": credential.client_id,
            "client_secret": credential.client_secret,
            "scope": credential.scope,
            "grant_type": credential.grant_type,
        }
        try:
            response = self._client.post(
                f"{self.base_url}{config.TOKEN_PATH}",
                json=payload,
                timeout=httpx.Timeout(config.TOKEN_TIMEOUT_SEC, connect=config.CONNECT_TIMEOUT_SEC),
            )
        except httpx.TimeoutException as exc:
            raise RemoteApiError(f"Token request timed out: {exc}") from exc
        except httpx.RequestError as exc:
            raise RemoteApiError(f"Transport error: {exc}") from exc

        text = response.text
        if not text.strip():
            raise RemoteApiError(
                f"Empty response received from token endpoint (HTTP {response.status_code})",
                status_code=response.status_code,
            )
        try:
            body = response.json()
        except ValueError as exc:
            raise RemoteApiError(
                f"JSON decode error: {exc}. Response: {text[:500]}",
                status_code=response.status_code,
                body=text,
            ) from exc

        if response.status_code != 200:
            message = f"HTTP error {response.status_code}"
            detail = _error_detail(body)
            if detail:
                message += f": {detail}"
            raise RemoteApiError(message, status_code=response.status_code, body=text)

        token = body.get("access_token") if isinstance(body, dict) else None
        if not token:
            raise RemoteApiError("Token response has no access_token", status_code=response.status_code, body=text)

        ttl = float(self.token_ttl_sec)
        expires_in = body.get("expires_in")
        if isinstance(expires_in, (int, float)) and expires_in > 0:
            ttl = min(ttl, float(expires_in))
        return token, ttl

    def get_access_token(self, tenant_id: int) -> Optional[str]:
        credential = credential_services.get_active_credentials(self.db, tenant_id)
        if credential is None or not credential.client_id or not credential.client_secret:
            if credential is None:
                detail = f"No credentials record found for tenant {tenant_id}"
            elif not credential.client_id:
                detail = f"Empty client_id for tenant {tenant_id}"
            else:
                detail = f"Empty client_secret for tenant {tenant_id}"
            attempt_log.log_sync_attempt(
                self.db,
                tenant_id=tenant_id,
                status=models.AttemptStatus.ERROR,
                error_message=f"Failed to obtain access token: {detail}",
            )
            return None

        cached = self.token_cache.get(tenant_id, credential.client_id)
        if cached:
            return cached

        try:
            token, ttl = self._fetch_token(credential)
        except RemoteApiError as exc:
            attempt_log.log_sync_attempt(
                self.db,
                tenant_id=tenant_id,
                status=models.AttemptStatus.ERROR,
                request_payload={"client_id": credential.client_id, "scope": credential.scope},
                response_payload=exc.body or None,
                error_message=f"Failed to obtain access token: {exc}",
            )
            return None

        self.token_cache.put(tenant_id, credential.client_id, token, ttl)
        return token

    # ------------------------------------------------------------------
    # Push
    # ------------------------------------------------------------------

    def push(
        self,
        tenant_id: int,
        records: Sequence[FormattedRecord],
        *,
        resource_id: Optional[str] = None,
        user_id: int = 0,
        course_id: int = 0,
    ) -> bool:
        """
        Replace the tenant's remote training-status resource with ``records``.
        """
        records = list(records)
        count = len(records)
        if not records:
            attempt_log.log_sync_attempt(
                self.db,
                tenant_id=tenant_id,
                status=models.AttemptStatus.ERROR,
                user_id=user_id,
                course_id=course_id,
                error_message="No completions provided to send",
            )
            return False

        if resource_id is None:
            rule = rule_services.get_rule(self.db, tenant_id)
            resource_id = rule.resource_id if rule else None
        if not resource_id:
            attempt_log.log_sync_attempt(
                self.db,
                tenant_id=tenant_id,
                status=models.AttemptStatus.ERROR,
                user_id=user_id,
                course_id=course_id,
                error_message="No resource id configured in the training sync rule",
            )
            return False

        token = self.get_access_token(tenant_id)
        if not token:
            attempt_log.log_sync_attempt(
                self.db,
                tenant_id=tenant_id,
                status=models.AttemptStatus.ERROR,
                user_id=user_id,
                course_id=course_id,
                error_message="Failed to obtain access token",
            )
            return False

        timeout = httpx.Timeout(config.PUSH_TIMEOUT_SEC, connect=config.CONNECT_TIMEOUT_SEC)
        if count > config.LARGE_DATASET_WARN_RECORDS:
            attempt_log.log_sync_attempt(
                self.db,
                tenant_id=tenant_id,
                status=models.AttemptStatus.WARNING,
                error_message=f"Large payload: {count} records in a single request",
            )
        if count > config.LARGE_PAYLOAD_RECORDS:
            timeout = httpx.Timeout(config.LARGE_PUSH_TIMEOUT_SEC, connect=config.CONNECT_TIMEOUT_SEC)
            logger.warning(
                "Sending large payload with extended timeout",
                extra={"tenant_id": tenant_id, "record_count": count},
            )

        resources: List[dict] = [record.to_wire() for record in records]
        request_body = json.dumps({"resourceId": resource_id, "resources": resources})
        operation = f"Batch operation for {count} completion(s)"

        try:
            response = self._client.put(
                f"{self.base_url}{config.RESOURCE_PATH}",
                content=request_body,
                headers={
                    "Authorization": f"Bearer {token}",
                    "Content-Type": "application/json",
                },
                timeout=timeout,
            )
        except httpx.TimeoutException as exc:
            self._log_push_failure(tenant_id, user_id, course_id, request_body, None, f"Request timed out: {exc}", operation)
            return False
        except httpx.RequestError as exc:
            self._log_push_failure(tenant_id, user_id, course_id, request_body, None, f"Transport error: {exc}", operation)
            return False

        try:
            body = response.json()
        except ValueError:
            body = None

        if response.is_success and _accepted(body):
            attempt_log.log_sync_attempt(
                self.db,
                tenant_id=tenant_id,
                status=models.AttemptStatus.SUCCESS,
                user_id=user_id,
                course_id=course_id,
                request_payload=request_body,
                response_payload=response.text,
                error_message=operation,
            )
            return True

        if response.status_code == 401:
            self.token_cache.invalidate(tenant_id)

        detail = _error_detail(body) or "Unknown error"
        if not response.is_success:
            detail = f"HTTP {response.status_code}: {detail}"
        self._log_push_failure(tenant_id, user_id, course_id, request_body, response.text, detail, operation)
        return False

    def _log_push_failure(
        self,
        tenant_id: int,
        user_id: int,
        course_id: int,
        request_body: str,
        response_text: Optional[str],
        detail: str,
        operation: str,
    ) -> None:
        attempt_log.log_sync_attempt(
            self.db,
            tenant_id=tenant_id,
            status=models.AttemptStatus.ERROR,
            user_id=user_id,
            course_id=course_id,
            request_payload=request_body,
            response_payload=response_text,
            error_message=f"{detail} ({operation})",
        )
