"""
Shared fixtures for DriftGuard unit tests.

database.py builds its engine at import time, so DATABASE_URL is pointed at an
in-memory SQLite database before any driftguard module is imported. Tests that
need evidence rows get their own fresh database via `session_factory`.
"""

import os

os.environ["DATABASE_URL"] = "sqlite://"

from datetime import datetime, timezone
from itertools import count

import pytest
from sqlalchemy.orm import sessionmaker

from driftguard.services.shared.audit import (
    AuditEmitter, assert_audit_context, validate_rollback_reason,
)
from driftguard.services.shared.clock import FrozenClock
from driftguard.services.shared.database import create_all_tables, make_engine
from driftguard.services.shared.models import DriftSeverity, DriftType
from driftguard.services.shared.schemas import AuditResult, DriftItem

T0 = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


class FakeAuditSink:
    """Validates like the real sink, keeps entries in memory, can be told to fail."""

    def __init__(self):
        self.entries = []
        self.fail_with = None       # str → rejected write, Exception → raised
        self._ids = count(1)

    async def append(self, entry):
        assert_audit_context(entry.context)
        validate_rollback_reason(entry.action, entry.reason)
        if isinstance(self.fail_with, Exception):
            raise self.fail_with
        if self.fail_with:
            return AuditResult(success=False, error=self.fail_with)
        self.entries.append(entry)
        return AuditResult(success=True, audit_id=f"audit-{next(self._ids)}")

    def by_dataset(self, dataset):
        return [e for e in self.entries if e.scope.dataset == dataset]


class RecordingSleep:
    """Stand-in for asyncio.sleep that records delays (seconds) and returns at once."""

    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)


def make_item(severity, drift_type=DriftType.SNAPSHOT_MISSING, message=None, **kw):
    return DriftItem(
        type=drift_type,
        severity=DriftSeverity(severity),
        message=message or f"{drift_type.value} {severity}",
        **kw,
    )


@pytest.fixture
def clock():
    return FrozenClock(T0)


@pytest.fixture
def audit_sink():
    return FakeAuditSink()


@pytest.fixture
def audit(audit_sink, clock):
    return AuditEmitter(sink=audit_sink, clock=clock)


@pytest.fixture
def no_sleep():
    return RecordingSleep()


@pytest.fixture
def db_engine():
    engine = make_engine("sqlite://")
    create_all_tables(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


def seed_compliant_workspace(db, workspace_id, now=T0, platform="meta"):
    """A workspace every check passes: fresh snapshot, one owner, all datasets ingested."""
    from datetime import timedelta

    from driftguard.services.evidence.freshness import DATASET_KEYS
    from driftguard.services.shared.models import (
        IngestionLog, ProductionSnapshot, Workspace, WorkspaceMembership,
    )

    db.add(Workspace(id=workspace_id, name=workspace_id, created_at=now))
    db.add(ProductionSnapshot(
        workspace_id=workspace_id, platform=platform, dataset="daily_metrics",
        is_active=True, created_at=now - timedelta(days=1),
    ))
    db.add(WorkspaceMembership(workspace_id=workspace_id, user_id="owner-1", role="owner", is_active=True))
    db.add(WorkspaceMembership(workspace_id=workspace_id, user_id="viewer-1", role="viewer", is_active=True))
    for dataset in DATASET_KEYS:
        db.add(IngestionLog(
            workspace_id=workspace_id, platform=platform, dataset=dataset,
            status="pass", created_at=now - timedelta(hours=1),
        ))
    db.commit()
