"""
Drift Tracker & Escalation State Machine
----------------------------------------
One open DriftRecord per workspace. Persistence alone raises urgency:

  status FAIL:
      severity CRITICAL and age >= critical_threshold → CRITICAL
      age >= fail_threshold                           → PAGED
      otherwise                                       → NOTIFIED
  status WARN:
      age >= warn_threshold → NOTIFIED, else NONE
  otherwise NONE

Levels only rise (NONE < NOTIFIED < PAGED < CRITICAL) while the drift is open.
The level is written before the alert goes out; a failed alert never rolls it
back. Rises to PAGED / CRITICAL are alerted, every real transition is audited.

All reads and writes for one workspace run under that workspace's lock, so
overlapping cycles cannot escalate twice or touch a record that was resolved
in the meantime.
"""

import itertools
from datetime import datetime
from typing import Optional

import structlog

from driftguard.services.monitor.alerts import AlertDispatcher
from driftguard.services.shared.audit import AuditEmitter
from driftguard.services.shared.clock import Clock, epoch_ms, utcnow
from driftguard.services.shared.config import (
    CRITICAL_ESCALATION_MINUTES, ESCALATION_ENABLED,
    FAIL_ESCALATION_MINUTES, WARN_ESCALATION_MINUTES,
)
from driftguard.services.shared.models import (
    AlertSeverity, ComplianceStatus, DriftSeverity, ESCALATION_ORDER,
    EscalationLevel, is_higher_level,
)
from driftguard.services.shared.schemas import (
    AlertPayload, ComplianceCheckResult, DriftItem, DriftRecord, DriftStats,
    EscalationConfig, EscalationResult, EscalationSLA,
)
from driftguard.services.shared.stores import InMemoryKeyedStore

logger = structlog.get_logger()

ESCALATION_SOURCE = "DriftGuard Drift Escalation"


def default_escalation_config() -> EscalationConfig:
    return EscalationConfig(
        sla=EscalationSLA(
            warn_threshold_minutes=WARN_ESCALATION_MINUTES,
            fail_threshold_minutes=FAIL_ESCALATION_MINUTES,
            critical_threshold_minutes=CRITICAL_ESCALATION_MINUTES,
        ),
        enabled=ESCALATION_ENABLED,
    )


def drift_age_minutes(record: DriftRecord, now: datetime) -> float:
    return (now - record.detected_at).total_seconds() / 60


def calculate_required_level(
    status: ComplianceStatus,
    severity: Optional[DriftSeverity],
    age_minutes: float,
    sla: EscalationSLA,
) -> EscalationLevel:
    if status == ComplianceStatus.FAIL:
        if severity == DriftSeverity.CRITICAL and age_minutes >= sla.critical_threshold_minutes:
            return EscalationLevel.CRITICAL
        if age_minutes >= sla.fail_threshold_minutes:
            return EscalationLevel.PAGED
        return EscalationLevel.NOTIFIED

    if status == ComplianceStatus.WARN:
        if age_minutes >= sla.warn_threshold_minutes:
            return EscalationLevel.NOTIFIED
        return EscalationLevel.NONE

    return EscalationLevel.NONE


class DriftTracker:

    def __init__(
        self,
        store: Optional[InMemoryKeyedStore[DriftRecord]] = None,
        dispatcher: Optional[AlertDispatcher] = None,
        audit: Optional[AuditEmitter] = None,
        clock: Clock = utcnow,
        config: Optional[EscalationConfig] = None,
    ):
        self._store = store if store is not None else InMemoryKeyedStore()
        self.dispatcher = dispatcher
        self.audit = audit
        self._clock = clock
        self._config = config or default_escalation_config()
        self._counter = itertools.count(1)

    # ── Config ────────────────────────────────────────────────────────────────

    def get_config(self) -> EscalationConfig:
        return self._config.model_copy(deep=True)

    def set_config(self, enabled: Optional[bool] = None, **sla_overrides: float) -> EscalationConfig:
        """Partial update: SLA thresholds are merged, not replaced."""
        sla = self._config.sla.model_copy(update=sla_overrides)
        self._config = EscalationConfig(
            sla=sla,
            enabled=self._config.enabled if enabled is None else enabled,
        )
        return self.get_config()

    def reset_config(self) -> EscalationConfig:
        self._config = default_escalation_config()
        return self.get_config()

    # ── Records ───────────────────────────────────────────────────────────────

    def _new_id(self) -> str:
        return f"DRIFT-{epoch_ms(self._clock())}-{next(self._counter)}"

    def _record_locked(
        self,
        workspace_id: str,
        status: ComplianceStatus,
        severity: Optional[DriftSeverity],
        drift_items: list[DriftItem],
    ) -> DriftRecord:
        now = self._clock()
        existing = self._store.get(workspace_id)
        if existing is not None:
            existing.status = status
            existing.severity = severity
            existing.drift_items = list(drift_items)
            existing.last_checked_at = now
            return existing

        record = DriftRecord(
            id=self._new_id(),
            workspace_id=workspace_id,
            status=status,
            severity=severity,
            drift_items=list(drift_items),
            detected_at=now,
            last_checked_at=now,
        )
        self._store.set(workspace_id, record)
        logger.info("drift_recorded", workspace_id=workspace_id, drift_id=record.id, status=status.value)
        return record

    def _resolve_locked(self, workspace_id: str) -> bool:
        removed = self._store.delete(workspace_id)
        if removed:
            logger.info("drift_resolved", workspace_id=workspace_id)
        return removed

    async def record_drift(
        self,
        workspace_id: str,
        status: ComplianceStatus,
        severity: Optional[DriftSeverity],
        drift_items: list[DriftItem],
    ) -> DriftRecord:
        """Create or update the open record. Never changes escalation_level."""
        async with self._store.lock(workspace_id):
            return self._record_locked(workspace_id, status, severity, drift_items)

    async def resolve_drift(self, workspace_id: str) -> bool:
        async with self._store.lock(workspace_id):
            return self._resolve_locked(workspace_id)

    def get_drift(self, workspace_id: str) -> Optional[DriftRecord]:
        return self._store.get(workspace_id)

    def get_all_active_drifts(self) -> list[DriftRecord]:
        return self._store.values()

    async def link_drift_to_incident(self, workspace_id: str, incident_id: str) -> bool:
        async with self._store.lock(workspace_id):
            record = self._store.get(workspace_id)
            if record is None:
                return False
            record.incident_id = incident_id
            return True

    def get_drift_stats(self) -> DriftStats:
        records = self._store.values()
        by_level = {level: 0 for level in ESCALATION_ORDER}
        by_status = {status: 0 for status in ComplianceStatus}
        for r in records:
            by_level[r.escalation_level] += 1
            by_status[r.status] += 1
        return DriftStats(total=len(records), by_level=by_level, by_status=by_status)

    def clear(self) -> None:
        self._store.clear()
        self._counter = itertools.count(1)

    # ── Escalation ────────────────────────────────────────────────────────────

    async def _escalate_locked(self, record: DriftRecord) -> EscalationResult:
        previous = record.escalation_level

        def unchanged(reason: Optional[str] = None) -> EscalationResult:
            return EscalationResult(
                drift_id=record.id,
                workspace_id=record.workspace_id,
                previous_level=previous,
                new_level=previous,
                escalated=False,
                reason=reason,
            )

        if not self._config.enabled:
            return unchanged("Escalation disabled")
        if self._store.get(record.workspace_id) is not record:
            return unchanged("Drift no longer open")

        now = self._clock()
        age = drift_age_minutes(record, now)
        required = calculate_required_level(record.status, record.severity, age, self._config.sla)
        if not is_higher_level(required, previous):
            return unchanged()

        record.escalation_level = required
        record.escalated_at = now
        logger.warning(
            "drift_escalated",
            workspace_id=record.workspace_id,
            drift_id=record.id,
            previous_level=previous.value,
            new_level=required.value,
            age_minutes=round(age),
        )

        alert_sent: Optional[bool] = None
        delivery = None
        if required in (EscalationLevel.PAGED, EscalationLevel.CRITICAL) and self.dispatcher is not None:
            alert = AlertPayload(
                id=f"ESC-{record.id}",
                severity=AlertSeverity.CRITICAL if required == EscalationLevel.CRITICAL else AlertSeverity.WARN,
                title=f"ESCALATION: Drift SLA Breached ({required.value})",
                message=f"Drift has been unresolved for {round(age)} minutes. Level: {required.value}",
                source=ESCALATION_SOURCE,
                timestamp=now,
                workspace_id=record.workspace_id,
                incident_id=record.incident_id,
                drift_items=list(record.drift_items),
            )
            try:
                delivery = await self.dispatcher.send_alert(alert)
                alert_sent = True
            except Exception as exc:
                alert_sent = False
                logger.error("escalation_alert_failed", drift_id=record.id, error=str(exc))

        await self._audit_escalation(record, previous, required, age)

        return EscalationResult(
            drift_id=record.id,
            workspace_id=record.workspace_id,
            previous_level=previous,
            new_level=required,
            escalated=True,
            reason=f"SLA breach: {round(age)} minutes",
            alert_sent=alert_sent,
            delivery=delivery,
        )

    async def check_and_escalate(self, record: DriftRecord) -> EscalationResult:
        async with self._store.lock(record.workspace_id):
            return await self._escalate_locked(record)

    async def check_all_escalations(self) -> list[EscalationResult]:
        """Escalated results only."""
        results = []
        for record in self._store.values():
            result = await self.check_and_escalate(record)
            if result.escalated:
                results.append(result)
        return results

    async def process_result(self, result: ComplianceCheckResult) -> Optional[EscalationResult]:
        """
        One cycle's outcome for a workspace: PASS resolves the open drift,
        anything else records it and escalates, all under the workspace lock.
        """
        async with self._store.lock(result.workspace_id):
            if result.status == ComplianceStatus.PASS:
                self._resolve_locked(result.workspace_id)
                return None
            record = self._record_locked(
                result.workspace_id, result.status, result.overall_severity, list(result.drift_items),
            )
            return await self._escalate_locked(record)

    async def _audit_escalation(
        self,
        record: DriftRecord,
        previous: EscalationLevel,
        new_level: EscalationLevel,
        age_minutes: float,
    ) -> None:
        if self.audit is None:
            return
        await self.audit.emit(
            workspace_id=record.workspace_id,
            actor_id="drift-escalation",
            entity_id=record.id,
            dataset="drift_escalation",
            metadata={
                "escalation_triggered": True,
                "drift_id":             record.id,
                "previous_level":       previous.value,
                "new_level":            new_level.value,
                "drift_age_minutes":    round(age_minutes),
                "status":               record.status.value,
                "severity":             record.severity.value if record.severity else None,
                "drift_count":          len(record.drift_items),
                "incident_id":          record.incident_id,
                "timestamp":            self._clock().isoformat(),
            },
        )
