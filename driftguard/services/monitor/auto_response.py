"""
Auto-Response Executor
----------------------
Playbook for COMPLIANCE_FAIL + CRITICAL, at most once per workspace per
cooldown window (default 5 minutes):

  1. ENABLE_KILL_SWITCH  - workspace scope, idempotent
  2. SEND_NOTIFICATION   - direct POST to the on-call webhook, no retry
                           (no URL configured = success, skipped)
  3. OPEN_INCIDENT       - IncidentRecord holding all three action records

Steps fail independently; errors are collected, the incident is always opened.
The cooldown is claimed with compare_and_set before any step runs, so two
concurrent CRITICAL cycles cannot both run the playbook.

Incidents then move forward only, by human action with a reason:
  OPEN → ACKNOWLEDGED → RESOLVED   (OPEN → RESOLVED allowed)
"""

import itertools
from datetime import timedelta
from typing import Optional

import httpx
import structlog

from driftguard.services.evidence.kill_switch import KillSwitchService
from driftguard.services.shared.audit import AuditEmitter
from driftguard.services.shared.clock import Clock, epoch_ms, utcnow
from driftguard.services.shared.config import (
    AUTO_RESPONSE_COOLDOWN_SECONDS, HTTP_TIMEOUT_SECONDS, ONCALL_WEBHOOK_URL,
)
from driftguard.services.shared.models import (
    AutoActionType, ComplianceStatus, DriftSeverity, IncidentStatus,
)
from driftguard.services.shared.schemas import (
    AutoActionRecord, AutoResponseResult, ComplianceCheckResult, IncidentRecord,
)
from driftguard.services.shared.stores import InMemoryKeyedStore

logger = structlog.get_logger()

ACTOR_ID = "auto-response-system"
NOTIFICATION_SOURCE = "DriftGuard Compliance Monitor"

_STATUS_ORDER = [IncidentStatus.OPEN, IncidentStatus.ACKNOWLEDGED, IncidentStatus.RESOLVED]


class IncidentTransitionError(ValueError):
    """Requested status is not ahead of the incident's current status."""


class AutoResponseExecutor:

    def __init__(
        self,
        kill_switches: Optional[KillSwitchService] = None,
        audit: Optional[AuditEmitter] = None,
        tracker=None,
        incidents: Optional[InMemoryKeyedStore[IncidentRecord]] = None,
        cooldowns: Optional[InMemoryKeyedStore] = None,
        clock: Clock = utcnow,
        oncall_webhook_url: Optional[str] = ONCALL_WEBHOOK_URL,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        cooldown_seconds: int = AUTO_RESPONSE_COOLDOWN_SECONDS,
        timeout: float = HTTP_TIMEOUT_SECONDS,
    ):
        self.kill_switches = kill_switches or KillSwitchService(audit=audit, clock=clock)
        self.audit = audit
        self.tracker = tracker
        self._incidents = incidents if incidents is not None else InMemoryKeyedStore()
        self._cooldowns = cooldowns if cooldowns is not None else InMemoryKeyedStore()
        self._clock = clock
        self.oncall_webhook_url = oncall_webhook_url
        self._transport = transport
        self._cooldown = timedelta(seconds=cooldown_seconds)
        self._timeout = timeout
        self._counter = itertools.count(1)

    # ── Trigger ───────────────────────────────────────────────────────────────

    def _claim_cooldown(self, workspace_id: str) -> bool:
        now = self._clock()
        for key in self._cooldowns.keys():
            if now - self._cooldowns.get(key) >= self._cooldown:
                self._cooldowns.delete(key)
        last = self._cooldowns.get(workspace_id)
        if last is not None and now - last < self._cooldown:
            return False
        return self._cooldowns.compare_and_set(workspace_id, last, now)

    async def execute_auto_response(self, result: ComplianceCheckResult) -> AutoResponseResult:
        if result.status != ComplianceStatus.FAIL or result.overall_severity != DriftSeverity.CRITICAL:
            return AutoResponseResult(triggered=False, reason="not_critical")
        if not self._claim_cooldown(result.workspace_id):
            logger.info("auto_response_cooldown", workspace_id=result.workspace_id)
            return AutoResponseResult(triggered=False, reason="cooldown")

        incident_id = f"INC-{epoch_ms(self._clock())}-{next(self._counter)}"
        snapshot_id = next((d.snapshot_id for d in result.drift_items if d.snapshot_id), None)
        logger.warning("auto_response_triggered", workspace_id=result.workspace_id, incident_id=incident_id)

        actions: list[AutoActionRecord] = []
        errors: list[str] = []

        for step in (self._enable_kill_switch(result.workspace_id, incident_id),
                     self._send_notification(result, incident_id)):
            action = await step
            actions.append(action)
            if not action.success and action.error:
                errors.append(action.error)

        actions.append(AutoActionRecord(
            action=AutoActionType.OPEN_INCIDENT,
            success=True,
            timestamp=self._clock(),
            details={
                "incident_id":            incident_id,
                "workspace_id":           result.workspace_id,
                "snapshot_id":            snapshot_id,
                "severity":               result.overall_severity.value,
                "drift_count":            len(result.drift_items),
                "previous_actions_count": len(actions),
            },
        ))

        incident = IncidentRecord(
            id=incident_id,
            workspace_id=result.workspace_id,
            snapshot_id=snapshot_id,
            severity=result.overall_severity,
            reason="; ".join(d.message for d in result.drift_items),
            drift_items=list(result.drift_items),
            timestamp=self._clock(),
            auto_actions=actions,
        )
        self._incidents.set(incident_id, incident)

        if self.tracker is not None:
            await self.tracker.link_drift_to_incident(result.workspace_id, incident_id)

        await self._audit_auto_response(incident)

        return AutoResponseResult(triggered=True, incident=incident, actions=actions, errors=errors)

    # ── Playbook steps ────────────────────────────────────────────────────────

    async def _enable_kill_switch(self, workspace_id: str, incident_id: str) -> AutoActionRecord:
        details = {"workspace_id": workspace_id, "incident_id": incident_id}
        try:
            res = await self.kill_switches.enable_workspace_kill_switch(
                workspace_id,
                f"Auto-enabled due to critical compliance failure ({incident_id})",
                ACTOR_ID,
            )
        except Exception as exc:
            logger.error("auto_kill_switch_failed", workspace_id=workspace_id, error=str(exc))
            return AutoActionRecord(
                action=AutoActionType.ENABLE_KILL_SWITCH, success=False,
                timestamp=self._clock(), error=str(exc) or "Failed to enable kill-switch", details=details,
            )

        if res.already_enabled:
            details["already_enabled"] = True
        return AutoActionRecord(
            action=AutoActionType.ENABLE_KILL_SWITCH,
            success=res.success,
            timestamp=self._clock(),
            error=res.error,
            details=details,
        )

    async def _send_notification(self, result: ComplianceCheckResult, incident_id: str) -> AutoActionRecord:
        if not self.oncall_webhook_url:
            return AutoActionRecord(
                action=AutoActionType.SEND_NOTIFICATION,
                success=True,
                timestamp=self._clock(),
                details={"skipped": True, "reason": "No webhook URL configured"},
            )

        payload = {
            "incident_id":  incident_id,
            "severity":     result.overall_severity.value if result.overall_severity else None,
            "workspace_id": result.workspace_id,
            "status":       result.status.value,
            "drift_items": [
                {"type": d.type.value, "severity": d.severity.value, "message": d.message}
                for d in result.drift_items
            ],
            "timestamp":    self._clock().isoformat(),
            "source":       NOTIFICATION_SOURCE,
        }
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                resp = await client.post(self.oncall_webhook_url, json=payload)
        except Exception as exc:
            logger.error("oncall_notification_failed", incident_id=incident_id, error=str(exc))
            return AutoActionRecord(
                action=AutoActionType.SEND_NOTIFICATION, success=False,
                timestamp=self._clock(), error=str(exc) or "Failed to send notification",
            )

        if resp.is_success:
            return AutoActionRecord(
                action=AutoActionType.SEND_NOTIFICATION, success=True,
                timestamp=self._clock(), details={"webhook_status": resp.status_code},
            )
        return AutoActionRecord(
            action=AutoActionType.SEND_NOTIFICATION,
            success=False,
            timestamp=self._clock(),
            error=f"Webhook returned {resp.status_code}",
            details={"webhook_status": resp.status_code},
        )

    # ── Incident management ───────────────────────────────────────────────────

    def get_incident(self, incident_id: str) -> Optional[IncidentRecord]:
        return self._incidents.get(incident_id)

    def get_open_incidents(self, workspace_id: str) -> list[IncidentRecord]:
        return [
            i for i in self._incidents.values()
            if i.workspace_id == workspace_id and i.status == IncidentStatus.OPEN
        ]

    def get_all_incidents(self) -> list[IncidentRecord]:
        """Newest first."""
        return sorted(self._incidents.values(), key=lambda i: i.timestamp, reverse=True)

    async def _transition(
        self, incident_id: str, target: IncidentStatus, actor_id: str, reason: str,
    ) -> bool:
        if not reason or not reason.strip():
            raise ValueError(f"A reason is required to move an incident to {target.value}")

        async with self._incidents.lock(incident_id):
            incident = self._incidents.get(incident_id)
            if incident is None:
                return False
            if _STATUS_ORDER.index(target) <= _STATUS_ORDER.index(incident.status):
                raise IncidentTransitionError(
                    f"Incident {incident_id} is {incident.status.value}; cannot move to {target.value}"
                )

            now = self._clock()
            incident.status = target
            if target == IncidentStatus.ACKNOWLEDGED:
                incident.acknowledged_at, incident.acknowledged_by = now, actor_id
            else:
                incident.resolved_at, incident.resolved_by = now, actor_id

        logger.info("incident_transitioned", incident_id=incident_id, status=target.value, actor=actor_id)
        if self.audit is not None:
            flag = "incident_acknowledged" if target == IncidentStatus.ACKNOWLEDGED else "incident_resolved"
            await self.audit.emit(
                workspace_id=incident.workspace_id,
                actor_id=actor_id,
                entity_id=incident_id,
                dataset="incident",
                reason=reason,
                metadata={
                    flag:          True,
                    "incident_id": incident_id,
                    "reason":      reason,
                    "timestamp":   now.isoformat(),
                },
            )
        return True

    async def acknowledge_incident(self, incident_id: str, actor_id: str, reason: str) -> bool:
        return await self._transition(incident_id, IncidentStatus.ACKNOWLEDGED, actor_id, reason)

    async def resolve_incident(self, incident_id: str, actor_id: str, reason: str) -> bool:
        return await self._transition(incident_id, IncidentStatus.RESOLVED, actor_id, reason)

    def clear_cooldown(self, workspace_id: str) -> None:
        self._cooldowns.delete(workspace_id)

    def clear_incidents(self) -> None:
        self._incidents.clear()
        self._counter = itertools.count(1)

    # ── Audit ─────────────────────────────────────────────────────────────────

    async def _audit_auto_response(self, incident: IncidentRecord) -> None:
        if self.audit is None:
            return
        await self.audit.emit(
            workspace_id=incident.workspace_id,
            actor_id=ACTOR_ID,
            entity_id=incident.id,
            dataset="auto_response",
            metadata={
                "auto_response_triggered": True,
                "incident_id":   incident.id,
                "severity":      incident.severity.value,
                "snapshot_id":   incident.snapshot_id,
                "reason":        incident.reason,
                "drift_count":   len(incident.drift_items),
                "actions_executed": [
                    {"action": a.action.value, "success": a.success} for a in incident.auto_actions
                ],
                "timestamp":     incident.timestamp.isoformat(),
            },
        )
