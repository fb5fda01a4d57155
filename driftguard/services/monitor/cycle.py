"""
Compliance cycle.
ComplianceEngine owns one instance of every component and runs the per-cycle
flow the external scheduler triggers:

  detector → tracker.process_result (record + escalate, or resolve on PASS)
           → executor.execute_auto_response (FAIL + CRITICAL only)
"""

import asyncio
from typing import Optional

import httpx
import structlog
from fastapi import Request

from driftguard.services.evidence.freshness import FreshnessEvidence
from driftguard.services.evidence.kill_switch import KillSwitchService
from driftguard.services.evidence.store import SqlEvidenceStore
from driftguard.services.monitor.alerts import AlertChannels, AlertDispatcher
from driftguard.services.monitor.auto_response import AutoResponseExecutor
from driftguard.services.monitor.detector import ComplianceDetector
from driftguard.services.monitor.escalation import DriftTracker
from driftguard.services.shared.audit import AuditEmitter, SqlAuditSink
from driftguard.services.shared.clock import Clock, utcnow
from driftguard.services.shared.config import ONCALL_WEBHOOK_URL
from driftguard.services.shared.database import SessionLocal
from driftguard.services.shared.schemas import (
    ComplianceCheckResult, EscalationConfig, GlobalCycleResult, RetryConfig,
    WorkspaceCycleResult,
)

logger = structlog.get_logger()


class ComplianceEngine:

    def __init__(
        self,
        session_factory=SessionLocal,
        clock: Clock = utcnow,
        channels: Optional[AlertChannels] = None,
        retry: Optional[RetryConfig] = None,
        escalation: Optional[EscalationConfig] = None,
        oncall_webhook_url: Optional[str] = ONCALL_WEBHOOK_URL,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep=asyncio.sleep,
        audit: Optional[AuditEmitter] = None,
    ):
        self.audit = audit or AuditEmitter(SqlAuditSink(session_factory), clock=clock)
        self.kill_switches = KillSwitchService(session_factory, audit=self.audit, clock=clock)
        self.detector = ComplianceDetector(
            evidence=SqlEvidenceStore(session_factory),
            kill_switches=self.kill_switches,
            freshness=FreshnessEvidence(session_factory, clock=clock),
            audit=self.audit,
            clock=clock,
        )
        self.dispatcher = AlertDispatcher(
            channels=channels,
            retry=retry,
            audit=self.audit,
            transport=transport,
            sleep=sleep,
            clock=clock,
        )
        self.tracker = DriftTracker(
            dispatcher=self.dispatcher,
            audit=self.audit,
            clock=clock,
            config=escalation,
        )
        self.executor = AutoResponseExecutor(
            kill_switches=self.kill_switches,
            audit=self.audit,
            tracker=self.tracker,
            clock=clock,
            oncall_webhook_url=oncall_webhook_url,
            transport=transport,
        )

    async def handle_result(self, result: ComplianceCheckResult) -> WorkspaceCycleResult:
        escalation = await self.tracker.process_result(result)
        auto_response = await self.executor.execute_auto_response(result)
        return WorkspaceCycleResult(compliance=result, escalation=escalation, auto_response=auto_response)

    async def run_workspace_cycle(self, workspace_id: str, platform: Optional[str] = None) -> WorkspaceCycleResult:
        result = await self.detector.check_workspace_compliance(workspace_id, platform)
        return await self.handle_result(result)

    async def run_global_cycle(self) -> GlobalCycleResult:
        compliance = await self.detector.run_global_compliance_check()

        escalations = []
        auto_responses = []
        for result in compliance.workspace_results:
            handled = await self.handle_result(result)
            if handled.escalation is not None and handled.escalation.escalated:
                escalations.append(handled.escalation)
            if handled.auto_response.triggered:
                auto_responses.append(handled.auto_response)

        logger.info(
            "compliance_cycle_complete",
            status=compliance.status.value,
            workspaces=compliance.total_workspaces,
            escalations=len(escalations),
            auto_responses=len(auto_responses),
        )
        return GlobalCycleResult(compliance=compliance, escalations=escalations, auto_responses=auto_responses)


def get_engine(request: Request) -> ComplianceEngine:
    """FastAPI dependency: the engine created at service startup."""
    return request.app.state.engine
