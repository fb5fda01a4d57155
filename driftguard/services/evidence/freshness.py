"""
Data Freshness Evidence
-----------------------
Per-dataset freshness policy and the resolver that turns ingestion logs into
a workspace freshness map.

Policy precedence: workspace override (freshness_overrides table)
                   > env override (DRIFTGUARD_FRESHNESS_{WARN,FAIL}_MINUTES_<DATASET>)
                   > defaults below.

A dataset that was never successfully ingested is always `fail` (NO_INGESTION).
"Successful" means an ingestion log with status pass|warn; promoted_at is
preferred over created_at as the ingestion time.
"""

import asyncio
import math
from datetime import datetime
from typing import Optional

import structlog
from sqlalchemy import desc

from driftguard.services.shared.clock import Clock, as_utc, utcnow
from driftguard.services.shared.config import freshness_override_minutes
from driftguard.services.shared.database import SessionLocal
from driftguard.services.shared.models import FreshnessOverride, FreshnessState, IngestionLog
from driftguard.services.shared.schemas import (
    DatasetFreshness, FreshnessPolicy, FreshnessStatus, FreshnessSummary,
    WorkspaceFreshnessMap,
)

logger = structlog.get_logger()

MINUTES_IN_HOUR = 60

DATASET_KEYS = ["daily_metrics", "campaigns", "ad_sets", "ads", "alerts"]

DEFAULT_FRESHNESS_POLICIES: dict[str, FreshnessPolicy] = {
    "daily_metrics": FreshnessPolicy(
        dataset="daily_metrics",
        warn_after_minutes=24 * MINUTES_IN_HOUR,
        fail_after_minutes=72 * MINUTES_IN_HOUR,
        critical=True,
        description="Daily performance metrics",
    ),
    "campaigns": FreshnessPolicy(
        dataset="campaigns",
        warn_after_minutes=72 * MINUTES_IN_HOUR,
        fail_after_minutes=168 * MINUTES_IN_HOUR,
        critical=True,
        description="Campaign configuration and status",
    ),
    "ad_sets": FreshnessPolicy(
        dataset="ad_sets",
        warn_after_minutes=72 * MINUTES_IN_HOUR,
        fail_after_minutes=168 * MINUTES_IN_HOUR,
        critical=True,
        description="Ad set configuration and targeting",
    ),
    "ads": FreshnessPolicy(
        dataset="ads",
        warn_after_minutes=72 * MINUTES_IN_HOUR,
        fail_after_minutes=168 * MINUTES_IN_HOUR,
        critical=True,
        description="Individual ad creatives and status",
    ),
    "alerts": FreshnessPolicy(
        dataset="alerts",
        warn_after_minutes=24 * MINUTES_IN_HOUR,
        fail_after_minutes=72 * MINUTES_IN_HOUR,
        critical=False,
        description="Alert rules and notifications",
    ),
}

_SUCCESS_STATUSES = ("pass", "warn")


# ── Pure helpers ──────────────────────────────────────────────────────────────

def get_freshness_policy(dataset: str) -> FreshnessPolicy:
    """Default policy for a dataset with env overrides applied."""
    base = DEFAULT_FRESHNESS_POLICIES.get(dataset)
    if base is None:
        return FreshnessPolicy(
            dataset=dataset,
            warn_after_minutes=72 * MINUTES_IN_HOUR,
            fail_after_minutes=168 * MINUTES_IN_HOUR,
            critical=False,
            description="Unknown dataset",
        )

    warn = freshness_override_minutes(dataset, "WARN")
    fail = freshness_override_minutes(dataset, "FAIL")
    return base.model_copy(update={
        "warn_after_minutes": warn if warn is not None else base.warn_after_minutes,
        "fail_after_minutes": fail if fail is not None else base.fail_after_minutes,
    })


def compute_freshness_status(
    last_ingested_at: Optional[datetime],
    policy: FreshnessPolicy,
    now: datetime,
) -> FreshnessStatus:
    if last_ingested_at is None:
        return FreshnessStatus(
            status=FreshnessState.fail,
            age_minutes=None,
            warn_at_minutes=policy.warn_after_minutes,
            fail_at_minutes=policy.fail_after_minutes,
            last_ingested_at=None,
            reason="NO_INGESTION",
        )

    age_minutes = math.floor((now - as_utc(last_ingested_at)).total_seconds() / 60)

    if age_minutes >= policy.fail_after_minutes:
        status = FreshnessState.fail
    elif age_minutes >= policy.warn_after_minutes:
        status = FreshnessState.warn
    else:
        status = FreshnessState.fresh

    return FreshnessStatus(
        status=status,
        age_minutes=max(0, age_minutes),
        warn_at_minutes=policy.warn_after_minutes,
        fail_at_minutes=policy.fail_after_minutes,
        last_ingested_at=as_utc(last_ingested_at),
    )


def format_age(minutes: Optional[float]) -> str:
    """45 → '45m', 180 → '3h', 4320 → '3d', None → 'never'."""
    if minutes is None or not math.isfinite(minutes):
        return "never"
    minutes = int(minutes)
    if minutes < 60:
        return f"{minutes}m"
    hours = minutes // 60
    if hours < 24:
        return f"{hours}h"
    return f"{hours // 24}d"


# ── Resolver ──────────────────────────────────────────────────────────────────

class FreshnessEvidence:
    """Reads ingestion logs + overrides and computes per-dataset freshness."""

    def __init__(self, session_factory=SessionLocal, clock: Clock = utcnow, datasets: Optional[list[str]] = None):
        self._session_factory = session_factory
        self._clock = clock
        self.datasets = datasets or list(DATASET_KEYS)

    def _last_successful_ingestion(
        self, db, workspace_id: str, platform: str, dataset: str, client_id: Optional[str],
    ) -> Optional[datetime]:
        q = (
            db.query(IngestionLog)
              .filter(
                  IngestionLog.workspace_id == workspace_id,
                  IngestionLog.platform     == platform,
                  IngestionLog.dataset      == dataset,
                  IngestionLog.status.in_(_SUCCESS_STATUSES),
              )
        )
        if client_id:
            q = q.filter(IngestionLog.client_id == client_id)
        rows = q.order_by(desc(IngestionLog.created_at)).all()
        if not rows:
            return None
        promoted = [r.promoted_at for r in rows if r.promoted_at is not None]
        if promoted:
            return max(as_utc(p) for p in promoted)
        return as_utc(rows[0].created_at)

    def _effective_policy(self, db, workspace_id: str, dataset: str) -> FreshnessPolicy:
        policy = get_freshness_policy(dataset)
        try:
            override = (
                db.query(FreshnessOverride)
                  .filter_by(workspace_id=workspace_id, dataset=dataset)
                  .first()
            )
        except Exception as exc:
            # Override lookup is advisory: fall back to the base policy and
            # clear the failed transaction so later dataset queries still run
            db.rollback()
            logger.warning("freshness_override_lookup_failed", dataset=dataset, error=str(exc))
            return policy
        if override is None:
            return policy
        update = {}
        if override.warn_minutes is not None:
            update["warn_after_minutes"] = override.warn_minutes
        if override.fail_minutes is not None:
            update["fail_after_minutes"] = override.fail_minutes
        return policy.model_copy(update=update)

    def _freshness_map(self, workspace_id: str, platform: str, client_id: Optional[str]) -> WorkspaceFreshnessMap:
        now = self._clock()
        results: list[DatasetFreshness] = []
        summary = FreshnessSummary()

        db = self._session_factory()
        try:
            for dataset in self.datasets:
                last = self._last_successful_ingestion(db, workspace_id, platform, dataset, client_id)
                policy = self._effective_policy(db, workspace_id, dataset)
                freshness = compute_freshness_status(last, policy, now)
                results.append(DatasetFreshness(
                    dataset=dataset, platform=platform, freshness=freshness, policy=policy,
                ))
        finally:
            db.close()

        summary.total = len(results)
        for r in results:
            if r.freshness.status == FreshnessState.fresh:
                summary.fresh += 1
            elif r.freshness.status == FreshnessState.warn:
                summary.warn += 1
            else:
                summary.fail += 1
                if r.policy.critical:
                    summary.critical_fail += 1

        return WorkspaceFreshnessMap(
            workspace_id=workspace_id,
            platform=platform,
            client_id=client_id,
            timestamp=now,
            datasets=results,
            summary=summary,
        )

    async def get_workspace_freshness_map(
        self, workspace_id: str, platform: str, client_id: Optional[str] = None,
    ) -> WorkspaceFreshnessMap:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._freshness_map, workspace_id, platform, client_id)

    async def critical_failing_datasets(self, workspace_id: str, platform: str) -> list[str]:
        """Datasets that are critical and failing (empty list = none)."""
        fmap = await self.get_workspace_freshness_map(workspace_id, platform)
        return [
            d.dataset for d in fmap.datasets
            if d.freshness.status == FreshnessState.fail and d.policy.critical
        ]
