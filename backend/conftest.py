from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

ROOT = Path(__file__).resolve().parent
sys.path.append(str(ROOT))

os.environ["DATABASE_URL"] = "sqlite+pysqlite:///:memory:"
os.environ["DATABASE_WRITE_URL"] = "sqlite+pysqlite:///:memory:"

from trainsync.database import Base  # noqa: E402
from trainsync.apps.accounts import models as account_models  # noqa: E402
from trainsync.apps.training import models as training_models  # noqa: E402
from trainsync.apps.compliance import models as compliance_models  # noqa: E402
from trainsync.apps.compliance import client as compliance_client  # noqa: E402


@pytest.fixture()
def db_session():
    # One shared connection so FastAPI's worker thread sees the same in-memory DB.
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(
        bind=engine,
        tables=[
            account_models.Tenant.__table__,
            account_models.User.__table__,
            account_models.TenantMembership.__table__,
            training_models.Course.__table__,
            training_models.CompletionFact.__table__,
            compliance_models.ApiCredential.__table__,
            compliance_models.SyncRule.__table__,
            compliance_models.SyncLock.__table__,
            compliance_models.SyncQueueItem.__table__,
            compliance_models.RegenerationRequest.__table__,
            compliance_models.SyncAttemptLog.__table__,
        ],
    )
    TestingSession = sessionmaker(
        bind=engine,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
    )
    session = TestingSession()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


@pytest.fixture(autouse=True)
def _fresh_token_cache(monkeypatch):
    monkeypatch.setattr(compliance_client, "_token_cache", compliance_client.TokenCache())
