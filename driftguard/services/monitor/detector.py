"""
Compliance Detector
-------------------
Runs the ordered check battery for one workspace and aggregates the drift
items into a ComplianceCheckResult:

  any CRITICAL item  → FAIL / CRITICAL
  any HIGH item      → WARN / HIGH
  any other item     → WARN / severity of the first item
  no items           → PASS / None

Every workspace check emits exactly one audit event (COMPLIANCE_PASS / _WARN /
_FAIL) whether or not the tracker later escalates. The global run adds the
global kill-switch and audit-reachability checks and emits one more event.
"""

import time
from typing import Optional

import structlog

from driftguard.services.evidence.freshness import FreshnessEvidence
from driftguard.services.evidence.kill_switch import KillSwitchService
from driftguard.services.evidence.store import SqlEvidenceStore
from driftguard.services.monitor import checks
from driftguard.services.shared.audit import AuditEmitter, SYSTEM_WORKSPACE
from driftguard.services.shared.clock import Clock, utcnow
from driftguard.services.shared.config import (
    DEFAULT_PLATFORM, SNAPSHOT_STALE_DAYS, WORKSPACE_SCAN_LIMIT,
)
from driftguard.services.shared.models import ComplianceStatus, DriftSeverity, DriftType
from driftguard.services.shared.schemas import (
    CheckErrorDetails, ComplianceCheckResult, DriftItem, GlobalComplianceResult,
)

logger = structlog.get_logger()

ACTOR_ID = "compliance-monitor"


def aggregate_drift(items: list[DriftItem]) -> tuple[ComplianceStatus, Optional[DriftSeverity]]:
    """(status, overall_severity) for a list of drift items."""
    if any(d.severity == DriftSeverity.CRITICAL for d in items):
        return ComplianceStatus.FAIL, DriftSeverity.CRITICAL
    if any(d.severity == DriftSeverity.HIGH for d in items):
        return ComplianceStatus.WARN, DriftSeverity.HIGH
    if items:
        return ComplianceStatus.WARN, items[0].severity
    return ComplianceStatus.PASS, None


def aggregate_global(
    global_drift: list[DriftItem],
    workspace_results: list[ComplianceCheckResult],
) -> ComplianceStatus:
    failing = any(r.status == ComplianceStatus.FAIL for r in workspace_results)
    if failing or any(d.severity == DriftSeverity.CRITICAL for d in global_drift):
        return ComplianceStatus.FAIL
    if global_drift or any(r.status == ComplianceStatus.WARN for r in workspace_results):
        return ComplianceStatus.WARN
    return ComplianceStatus.PASS


def _event_name(status: ComplianceStatus) -> str:
    return f"COMPLIANCE_{status.value}"


class ComplianceDetector:

    def __init__(
        self,
        evidence: Optional[SqlEvidenceStore] = None,
        kill_switches: Optional[KillSwitchService] = None,
        freshness: Optional[FreshnessEvidence] = None,
        audit: Optional[AuditEmitter] = None,
        clock: Clock = utcnow,
        stale_days: int = SNAPSHOT_STALE_DAYS,
        scan_limit: int = WORKSPACE_SCAN_LIMIT,
        default_platform: str = DEFAULT_PLATFORM,
    ):
        self.evidence = evidence or SqlEvidenceStore()
        self.audit = audit or AuditEmitter(clock=clock)
        self.kill_switches = kill_switches or KillSwitchService(audit=self.audit, clock=clock)
        self.freshness = freshness or FreshnessEvidence(clock=clock)
        self._clock = clock
        self.stale_days = stale_days
        self.scan_limit = scan_limit
        self.default_platform = default_platform

    async def check_workspace_compliance(
        self, workspace_id: str, platform: Optional[str] = None,
    ) -> ComplianceCheckResult:
        platform = platform or self.default_platform
        started = time.monotonic()
        now = self._clock()

        items: list[DriftItem] = []
        items += await checks.check_snapshot_drift(self.evidence, workspace_id, now, self.stale_days)
        items += await checks.check_kill_switch_drift(self.kill_switches, workspace_id)
        items += await checks.check_failure_injection_drift(self.evidence, workspace_id)
        items += await checks.check_membership_drift(self.evidence, workspace_id)
        items += await checks.check_freshness_drift(self.freshness, workspace_id, platform)

        status, severity = aggregate_drift(items)
        result = ComplianceCheckResult(
            status=status,
            overall_severity=severity,
            drift_items=tuple(items),
            timestamp=self._clock(),
            workspace_id=workspace_id,
            check_duration_ms=int((time.monotonic() - started) * 1000),
        )

        logger.info(
            "compliance_checked",
            workspace_id=workspace_id,
            status=status.value,
            severity=severity.value if severity else None,
            drift_count=len(items),
        )
        await self.audit.emit(
            workspace_id=workspace_id,
            actor_id=ACTOR_ID,
            entity_id="compliance-result",
            dataset="compliance",
            metadata={
                "compliance_event":  _event_name(status),
                "status":            status.value,
                "severity":          severity.value if severity else None,
                "drift_count":       len(items),
                "drift_types":       [d.type.value for d in items],
                "check_duration_ms": result.check_duration_ms,
                "timestamp":         result.timestamp.isoformat(),
            },
        )
        return result

    async def run_global_checks(self) -> list[DriftItem]:
        items: list[DriftItem] = []
        items += await checks.check_global_kill_switch(self.kill_switches)
        items += await checks.check_audit_reachability(self.audit)
        return items

    async def run_global_compliance_check(self) -> GlobalComplianceResult:
        global_drift = await self.run_global_checks()

        try:
            workspace_ids = await self.evidence.list_workspace_ids(self.scan_limit)
        except Exception as exc:
            # Every workspace is unverified this cycle
            logger.error("workspace_scan_failed", error=str(exc))
            workspace_ids = []
            global_drift.append(DriftItem(
                type=DriftType.SNAPSHOT_MISSING,
                severity=DriftSeverity.HIGH,
                message=f"Cannot list workspaces: {exc}",
                details=CheckErrorDetails(check="workspace_scan", error=str(exc)),
            ))

        workspace_results = []
        for workspace_id in workspace_ids:
            workspace_results.append(await self.check_workspace_compliance(workspace_id))

        status = aggregate_global(global_drift, workspace_results)
        result = GlobalComplianceResult(
            status=status,
            workspace_results=workspace_results,
            global_drift=global_drift,
            timestamp=self._clock(),
            total_workspaces=len(workspace_results),
            passing_workspaces=sum(1 for r in workspace_results if r.status == ComplianceStatus.PASS),
            failing_workspaces=sum(1 for r in workspace_results if r.status == ComplianceStatus.FAIL),
        )

        logger.info(
            "global_compliance_checked",
            status=status.value,
            total=result.total_workspaces,
            failing=result.failing_workspaces,
            global_drift=len(global_drift),
        )
        await self.audit.emit(
            workspace_id=SYSTEM_WORKSPACE,
            actor_id=ACTOR_ID,
            entity_id="global-compliance-result",
            dataset="compliance",
            metadata={
                "compliance_event":    _event_name(status),
                "scope":               "global",
                "status":              status.value,
                "total_workspaces":    result.total_workspaces,
                "passing_workspaces":  result.passing_workspaces,
                "failing_workspaces":  result.failing_workspaces,
                "global_drift_count":  len(global_drift),
                "global_drift_types":  [d.type.value for d in global_drift],
                "timestamp":           result.timestamp.isoformat(),
            },
        )
        return result
