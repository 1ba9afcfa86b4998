from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from trainsync.apps.accounts import models as account_models
from trainsync.apps.compliance import models
from trainsync.apps.compliance.client import RemoteSyncClient, TokenCache
from trainsync.apps.compliance.generator import DataGenerator
from trainsync.apps.compliance.locks import DatabaseLockBackend, SyncLockManager
from trainsync.apps.compliance.memory import MemoryGuard
from trainsync.apps.compliance.orchestrator import Orchestrator
from trainsync.apps.compliance.snapshots import SnapshotStore, slug_resolver
from trainsync.apps.training import models as training_models

BASE_URL = "https://compliance.test"


class FakeClock:
    def __init__(self, start: datetime):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current = self.current + timedelta(**kwargs)


def _copy(response: httpx.Response) -> httpx.Response:
    return httpx.Response(response.status_code, content=response.content, headers=response.headers)


class FakeApi:
    """Stands in for the remote compliance API behind ``httpx.MockTransport``."""

    def __init__(self):
        self.token_requests = 0
        self.puts: list[dict] = []
        self.token_response = httpx.Response(200, json={"access_token": "tok-1", "expires_in": 3600})
        self.put_response = httpx.Response(200, json={"success": True})

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/oauth/token":
            self.token_requests += 1
            return _copy(self.token_response)
        if request.method == "PUT":
            self.puts.append(
                {
                    "body": json.loads(request.content),
                    "authorization": request.headers.get("Authorization"),
                }
            )
            return _copy(self.put_response)
        return httpx.Response(404, json={"error": "not_found"})

    @property
    def last_resources(self) -> list[dict]:
        return self.puts[-1]["body"]["resources"]


@pytest.fixture()
def clock():
    return FakeClock(datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc))


@pytest.fixture()
def fake_api():
    return FakeApi()


@pytest.fixture()
def http_client(fake_api):
    client = httpx.Client(transport=httpx.MockTransport(fake_api))
    try:
        yield client
    finally:
        client.close()


@pytest.fixture()
def tenant(db_session):
    row = account_models.Tenant(name="Acme Ltd")
    db_session.add(row)
    db_session.commit()
    db_session.refresh(row)
    return row


@pytest.fixture()
def make_user(db_session):
    def _make(tenant_id: int, username: str, *, first_name: str = "", last_name: str = ""):
        user = account_models.User(
            username=username,
            email=f"{username}@example.com",
            first_name=first_name or username.title(),
            last_name=last_name or "Tester",
        )
        db_session.add(user)
        db_session.flush()
        db_session.add(account_models.TenantMembership(tenant_id=tenant_id, user_id=user.id))
        db_session.commit()
        db_session.refresh(user)
        return user

    return _make


@pytest.fixture()
def make_course(db_session):
    def _make(fullname: str, *, created_at: datetime | None = None, due_at: datetime | None = None):
        course = training_models.Course(
            fullname=fullname,
            created_at=created_at or datetime(2026, 1, 1, tzinfo=timezone.utc),
            due_at=due_at,
        )
        db_session.add(course)
        db_session.commit()
        db_session.refresh(course)
        return course

    return _make


@pytest.fixture()
def complete(db_session):
    def _complete(user_id: int, course_id: int, when: datetime | None = None):
        when = when or datetime(2026, 2, 1, 12, 0, tzinfo=timezone.utc)
        fact = training_models.CompletionFact(
            user_id=user_id,
            course_id=course_id,
            status=training_models.CompletionStatus.COMPLETED,
            completion_date=when,
            created_at=when,
            updated_at=when,
        )
        db_session.add(fact)
        db_session.commit()
        return fact

    return _complete


@pytest.fixture()
def configure(db_session):
    """Give a tenant active credentials and a sync rule, without queueing anything."""

    def _configure(
        tenant_id: int,
        course_ids: list[int],
        *,
        mode: models.CompletionMode = models.CompletionMode.ANY,
        frameworks: str | None = None,
        resource_id: str = "res-1",
    ):
        credential = models.ApiCredential(
            tenant_id=tenant_id,
            name="primary",
            client_id=f"client-{tenant_id}",
            client_secret="secret",
        )
        db_session.add(credential)
        db_session.flush()
        rule = models.SyncRule(
            tenant_id=tenant_id,
            credential_id=credential.id,
            resource_id=resource_id,
            frameworks=frameworks,
            courses=",".join(str(course_id) for course_id in course_ids),
            completion_mode=mode,
        )
        db_session.add(rule)
        db_session.commit()
        db_session.refresh(rule)
        return rule

    return _configure


@pytest.fixture()
def build(db_session, tmp_path, clock, http_client):
    """Orchestrator wired to the in-memory DB, ``tmp_path`` and the fake API."""

    def _build(*, memory_guard: MemoryGuard | None = None, batch_size: int = 2) -> Orchestrator:
        locks = SyncLockManager(DatabaseLockBackend(db_session), ttl_sec=3600, now=clock, holder="test")
        store = SnapshotStore(tmp_path, slug_for=slug_resolver(db_session))
        generator = DataGenerator(
            db_session,
            batch_size=batch_size,
            memory_guard=memory_guard or MemoryGuard(limit_mb=0),
            base_url="https://lms.test",
        )
        client = RemoteSyncClient(
            db_session,
            http_client=http_client,
            base_url=BASE_URL,
            token_cache=TokenCache(),
        )
        return Orchestrator(
            db_session,
            locks=locks,
            store=store,
            generator=generator,
            client=client,
            now=clock,
        )

    return _build
