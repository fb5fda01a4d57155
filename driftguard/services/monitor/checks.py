"""
Drift checks.
One coroutine per check, each returning the DriftItems it found. A check that
cannot reach its evidence source reports that as a drift item of its own type
(HIGH, or CRITICAL for the snapshot query and the audit probe) with a
check_error detail. Nothing raises out of this module.

Workspace checks, in detector order:
  snapshot → kill-switch → failure injection → membership → data freshness
Global checks (once per cycle):
  global kill-switch → audit reachability
"""

from datetime import datetime, timedelta
from typing import Optional

import structlog

from driftguard.services.evidence.freshness import FreshnessEvidence, format_age
from driftguard.services.evidence.kill_switch import KillSwitchService
from driftguard.services.evidence.store import SqlEvidenceStore
from driftguard.services.shared.audit import AuditEmitter
from driftguard.services.shared.config import SNAPSHOT_STALE_DAYS
from driftguard.services.shared.models import (
    DriftSeverity, DriftType, FreshnessState, KillSwitchScope,
)
from driftguard.services.shared.schemas import (
    CheckErrorDetails, DriftItem, FailureInjectionDetails, FreshnessFailDetails,
    FreshnessWarnDetails, KillSwitchDetails, MembershipDetails, SnapshotStaleDetails,
)

logger = structlog.get_logger()


def _check_error(
    check: str,
    drift_type: DriftType,
    severity: DriftSeverity,
    message: str,
    exc: Exception,
    workspace_id: Optional[str] = None,
) -> DriftItem:
    logger.warning("drift_check_failed", check=check, workspace_id=workspace_id, error=str(exc))
    return DriftItem(
        type=drift_type,
        severity=severity,
        message=f"{message}: {exc}",
        workspace_id=workspace_id,
        details=CheckErrorDetails(check=check, error=str(exc)),
    )


# ── Workspace checks ──────────────────────────────────────────────────────────

async def check_snapshot_drift(
    evidence: SqlEvidenceStore,
    workspace_id: str,
    now: datetime,
    stale_days: int = SNAPSHOT_STALE_DAYS,
) -> list[DriftItem]:
    try:
        snapshots = await evidence.list_active_snapshots(workspace_id)
    except Exception as exc:
        return [_check_error(
            "snapshot", DriftType.SNAPSHOT_MISSING, DriftSeverity.CRITICAL,
            "Cannot verify snapshots", exc, workspace_id,
        )]

    if not snapshots:
        return [DriftItem(
            type=DriftType.SNAPSHOT_MISSING,
            severity=DriftSeverity.HIGH,
            message="No active snapshots found for workspace",
            workspace_id=workspace_id,
        )]

    stale_before = now - timedelta(days=stale_days)
    items = []
    for snap in snapshots:
        if snap.created_at < stale_before:
            items.append(DriftItem(
                type=DriftType.SNAPSHOT_STALE,
                severity=DriftSeverity.MEDIUM,
                message=f"Snapshot for {snap.platform}/{snap.dataset} is older than {stale_days} days",
                workspace_id=workspace_id,
                snapshot_id=snap.id,
                details=SnapshotStaleDetails(
                    platform=snap.platform, dataset=snap.dataset, created_at=snap.created_at,
                ),
            ))
    return items


async def check_kill_switch_drift(kill_switches: KillSwitchService, workspace_id: str) -> list[DriftItem]:
    try:
        status = await kill_switches.is_workspace_enabled(workspace_id)
    except Exception as exc:
        return [_check_error(
            "kill_switch", DriftType.KILL_SWITCH_ACTIVE, DriftSeverity.HIGH,
            "Cannot verify kill-switch", exc, workspace_id,
        )]

    if not status.blocked:
        return []
    return [DriftItem(
        type=DriftType.KILL_SWITCH_ACTIVE,
        severity=DriftSeverity.HIGH,
        message=f"Kill-switch is active: {status.reason}",
        workspace_id=workspace_id,
        details=KillSwitchDetails(
            scope=KillSwitchScope.workspace, reason=status.reason, activated_at=status.activated_at,
        ),
    )]


async def check_failure_injection_drift(evidence: SqlEvidenceStore, workspace_id: str) -> list[DriftItem]:
    try:
        injections = await evidence.list_enabled_failure_injections(workspace_id)
    except Exception as exc:
        return [_check_error(
            "failure_injection", DriftType.FAILURE_INJECTION_ACTIVE, DriftSeverity.HIGH,
            "Cannot verify failure injections", exc, workspace_id,
        )]

    return [
        DriftItem(
            type=DriftType.FAILURE_INJECTION_ACTIVE,
            severity=DriftSeverity.CRITICAL,
            message=f"Failure injection active for {inj.action} ({inj.failure_type}, {inj.probability}%)",
            workspace_id=workspace_id,
            details=FailureInjectionDetails(
                action=inj.action,
                failure_type=inj.failure_type,
                probability=inj.probability,
                enabled_at=inj.enabled_at,
            ),
        )
        for inj in injections
    ]


async def check_membership_drift(evidence: SqlEvidenceStore, workspace_id: str) -> list[DriftItem]:
    try:
        memberships = await evidence.list_memberships(workspace_id)
    except Exception as exc:
        return [_check_error(
            "membership", DriftType.MEMBERSHIP_ANOMALY, DriftSeverity.HIGH,
            "Cannot verify memberships", exc, workspace_id,
        )]

    owners = [m for m in memberships if m.role == "owner" and m.is_active]
    if len(owners) > 1:
        return [DriftItem(
            type=DriftType.MEMBERSHIP_ANOMALY,
            severity=DriftSeverity.MEDIUM,
            message=f"Multiple active owners detected ({len(owners)})",
            workspace_id=workspace_id,
            details=MembershipDetails(owner_count=len(owners)),
        )]
    if not owners:
        return [DriftItem(
            type=DriftType.MEMBERSHIP_ANOMALY,
            severity=DriftSeverity.CRITICAL,
            message="No active owner found for workspace",
            workspace_id=workspace_id,
            details=MembershipDetails(owner_count=0),
        )]
    return []


async def check_freshness_drift(
    freshness: FreshnessEvidence,
    workspace_id: str,
    platform: str,
) -> list[DriftItem]:
    try:
        fmap = await freshness.get_workspace_freshness_map(workspace_id, platform)
    except Exception as exc:
        return [_check_error(
            "freshness", DriftType.DATA_FRESHNESS_FAIL, DriftSeverity.HIGH,
            "Cannot check data freshness", exc, workspace_id,
        )]

    items = []
    for ds in fmap.datasets:
        f, policy = ds.freshness, ds.policy

        if f.status == FreshnessState.fail:
            if f.reason == "NO_INGESTION":
                reason = "No ingestion data found"
            else:
                reason = f"Stale for {format_age(f.age_minutes)} (limit: {format_age(f.fail_at_minutes)})"
            items.append(DriftItem(
                type=DriftType.DATA_FRESHNESS_FAIL,
                severity=DriftSeverity.CRITICAL if policy.critical else DriftSeverity.HIGH,
                message=f"{ds.dataset}: {reason}{' (CRITICAL)' if policy.critical else ''}",
                workspace_id=workspace_id,
                details=FreshnessFailDetails(
                    dataset=ds.dataset,
                    age_minutes=f.age_minutes,
                    fail_at_minutes=f.fail_at_minutes,
                    last_ingested_at=f.last_ingested_at,
                    critical=policy.critical,
                    reason=f.reason,
                ),
            ))
        elif f.status == FreshnessState.warn:
            items.append(DriftItem(
                type=DriftType.DATA_FRESHNESS_WARN,
                severity=DriftSeverity.MEDIUM,
                message=(
                    f"{ds.dataset}: Approaching staleness "
                    f"({format_age(f.age_minutes)}, warn at {format_age(f.warn_at_minutes)})"
                ),
                workspace_id=workspace_id,
                details=FreshnessWarnDetails(
                    dataset=ds.dataset,
                    age_minutes=f.age_minutes or 0,
                    warn_at_minutes=f.warn_at_minutes,
                    last_ingested_at=f.last_ingested_at,
                    critical=policy.critical,
                ),
            ))
    return items


# ── Global checks ─────────────────────────────────────────────────────────────

async def check_global_kill_switch(kill_switches: KillSwitchService) -> list[DriftItem]:
    try:
        status = await kill_switches.is_global_enabled()
    except Exception as exc:
        return [_check_error(
            "global_kill_switch", DriftType.KILL_SWITCH_ACTIVE, DriftSeverity.HIGH,
            "Cannot verify global kill-switch", exc,
        )]

    if not status.blocked:
        return []
    return [DriftItem(
        type=DriftType.KILL_SWITCH_ACTIVE,
        severity=DriftSeverity.CRITICAL,
        message=f"Global kill-switch is active: {status.reason}",
        details=KillSwitchDetails(
            scope=KillSwitchScope.global_, reason=status.reason, activated_at=status.activated_at,
        ),
    )]


async def check_audit_reachability(audit: AuditEmitter) -> list[DriftItem]:
    """
    Write-probe the audit sink. Also fires when the emitter has seen a run of
    failed writes since the last cycle, even if this probe gets through.
    """
    health = audit.health()

    try:
        result = await audit.probe()
    except Exception as exc:
        return [_check_error(
            "audit", DriftType.AUDIT_UNREACHABLE, DriftSeverity.CRITICAL,
            "Audit unreachable", exc,
        )]

    if not result.success:
        return [DriftItem(
            type=DriftType.AUDIT_UNREACHABLE,
            severity=DriftSeverity.CRITICAL,
            message=f"Audit logging failed: {result.error}",
            details=CheckErrorDetails(check="audit", error=result.error or ""),
        )]

    if not health.healthy:
        return [DriftItem(
            type=DriftType.AUDIT_UNREACHABLE,
            severity=DriftSeverity.CRITICAL,
            message=(
                f"Audit writes failing: {health.consecutive_failures} consecutive failures "
                f"(last error: {health.last_error})"
            ),
            details=CheckErrorDetails(check="audit", error=health.last_error or ""),
        )]
    return []
