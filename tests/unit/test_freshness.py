"""
Unit tests for data-freshness policy resolution and status computation.
"""

from datetime import timedelta

import pytest

from conftest import T0
from driftguard.services.evidence.freshness import (
    FreshnessEvidence, compute_freshness_status, format_age, get_freshness_policy,
)
from driftguard.services.shared.models import FreshnessOverride, FreshnessState, IngestionLog
from driftguard.services.shared.schemas import FreshnessPolicy

POLICY = FreshnessPolicy(dataset="x", warn_after_minutes=60, fail_after_minutes=180, critical=True)


# ── compute_freshness_status ──────────────────────────────────────────────────

def test_never_ingested_is_fail():
    status = compute_freshness_status(None, POLICY, T0)
    assert status.status == FreshnessState.fail
    assert status.age_minutes is None
    assert status.reason == "NO_INGESTION"


@pytest.mark.parametrize("age,expected", [
    (0,   FreshnessState.fresh),
    (59,  FreshnessState.fresh),
    (60,  FreshnessState.warn),
    (179, FreshnessState.warn),
    (180, FreshnessState.fail),
])
def test_thresholds(age, expected):
    status = compute_freshness_status(T0 - timedelta(minutes=age), POLICY, T0)
    assert status.status == expected
    assert status.age_minutes == age


def test_naive_timestamps_are_utc():
    naive = (T0 - timedelta(minutes=90)).replace(tzinfo=None)
    status = compute_freshness_status(naive, POLICY, T0)
    assert status.age_minutes == 90
    assert status.last_ingested_at == T0 - timedelta(minutes=90)


@pytest.mark.parametrize("minutes,expected", [
    (None, "never"),
    (float("inf"), "never"),
    (45, "45m"),
    (180, "3h"),
    (4320, "3d"),
])
def test_format_age(minutes, expected):
    assert format_age(minutes) == expected


# ── Policy resolution ─────────────────────────────────────────────────────────

def test_default_policies():
    metrics = get_freshness_policy("daily_metrics")
    assert metrics.warn_after_minutes == 24 * 60
    assert metrics.fail_after_minutes == 72 * 60
    assert metrics.critical is True
    assert get_freshness_policy("alerts").critical is False


def test_unknown_dataset_gets_lenient_policy():
    policy = get_freshness_policy("mystery")
    assert policy.critical is False
    assert policy.fail_after_minutes == 168 * 60


def test_env_override(monkeypatch):
    monkeypatch.setenv("DRIFTGUARD_FRESHNESS_WARN_MINUTES_DAILY_METRICS", "30")
    policy = get_freshness_policy("daily_metrics")
    assert policy.warn_after_minutes == 30
    assert policy.fail_after_minutes == 72 * 60


# ── FreshnessEvidence (SQLite) ────────────────────────────────────────────────

def _log(db, dataset, status="pass", age_hours=1, promoted_hours=None, workspace_id="ws-1"):
    db.add(IngestionLog(
        workspace_id=workspace_id, platform="meta", dataset=dataset, status=status,
        created_at=T0 - timedelta(hours=age_hours),
        promoted_at=T0 - timedelta(hours=promoted_hours) if promoted_hours is not None else None,
    ))
    db.commit()


@pytest.mark.asyncio
async def test_freshness_map(session_factory, db, clock):
    _log(db, "daily_metrics", age_hours=1)
    _log(db, "campaigns", age_hours=100)      # warn at 72h
    _log(db, "ads", status="fail", age_hours=1)

    evidence = FreshnessEvidence(session_factory=session_factory, clock=clock)
    fmap = await evidence.get_workspace_freshness_map("ws-1", "meta")

    by_ds = {d.dataset: d.freshness for d in fmap.datasets}
    assert by_ds["daily_metrics"].status == FreshnessState.fresh
    assert by_ds["campaigns"].status == FreshnessState.warn
    # failed ingestion runs don't count
    assert by_ds["ads"].reason == "NO_INGESTION"
    assert fmap.summary.total == 5
    assert fmap.summary.fresh == 1
    assert fmap.summary.warn == 1
    assert fmap.summary.fail == 3
    assert fmap.summary.critical_fail == 2      # ad_sets, ads; alerts is non-critical


@pytest.mark.asyncio
async def test_promoted_at_preferred(session_factory, db, clock):
    _log(db, "daily_metrics", age_hours=200, promoted_hours=2)

    evidence = FreshnessEvidence(session_factory=session_factory, clock=clock, datasets=["daily_metrics"])
    fmap = await evidence.get_workspace_freshness_map("ws-1", "meta")

    assert fmap.datasets[0].freshness.age_minutes == 120
    assert fmap.datasets[0].freshness.status == FreshnessState.fresh


@pytest.mark.asyncio
async def test_workspace_override_wins(session_factory, db, clock, monkeypatch):
    monkeypatch.setenv("DRIFTGUARD_FRESHNESS_FAIL_MINUTES_DAILY_METRICS", "600")
    db.add(FreshnessOverride(workspace_id="ws-1", dataset="daily_metrics", fail_minutes=90))
    db.commit()
    _log(db, "daily_metrics", age_hours=2)

    evidence = FreshnessEvidence(session_factory=session_factory, clock=clock, datasets=["daily_metrics"])
    fmap = await evidence.get_workspace_freshness_map("ws-1", "meta")

    ds = fmap.datasets[0]
    assert ds.policy.fail_after_minutes == 90
    assert ds.freshness.status == FreshnessState.fail
    assert await evidence.critical_failing_datasets("ws-1", "meta") == ["daily_metrics"]


class _OverrideTableMissing:
    """Session wrapper whose freshness_overrides lookups fail, counting rollbacks."""

    def __init__(self, session):
        self._session = session
        self.rollbacks = 0

    def query(self, model):
        if model is FreshnessOverride:
            raise RuntimeError('relation "freshness_overrides" does not exist')
        return self._session.query(model)

    def rollback(self):
        self.rollbacks += 1
        self._session.rollback()

    def close(self):
        self._session.close()


@pytest.mark.asyncio
async def test_failed_override_lookup_rolls_back_and_uses_base_policy(session_factory, db, clock):
    _log(db, "daily_metrics", age_hours=1)
    _log(db, "campaigns", age_hours=100)
    sessions = []

    def factory():
        session = _OverrideTableMissing(session_factory())
        sessions.append(session)
        return session

    evidence = FreshnessEvidence(session_factory=factory, clock=clock, datasets=["daily_metrics", "campaigns"])
    fmap = await evidence.get_workspace_freshness_map("ws-1", "meta")

    by_ds = {d.dataset: d for d in fmap.datasets}
    assert by_ds["daily_metrics"].freshness.status == FreshnessState.fresh
    assert by_ds["campaigns"].freshness.status == FreshnessState.warn
    assert by_ds["campaigns"].policy == get_freshness_policy("campaigns")
    assert sessions[0].rollbacks == 2
