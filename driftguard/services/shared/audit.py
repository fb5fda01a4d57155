"""
DriftGuard Audit Trail
----------------------
Two layers:

  SqlAuditSink.append()  - the append-only sink. Validates actor context and the
                           ROLLBACK reason (AuditValidationError), inserts one
                           AuditLog row, returns AuditResult. Never edits or deletes.

  AuditEmitter.emit()    - what the engine calls. Best-effort: a failed or invalid
                           write is logged and counted, never raised, never blocks
                           the governance action that produced it.

The emitter keeps a health record (consecutive failures, last error). The
AUDIT_UNREACHABLE drift check reads it alongside its own write-probe, so a sink
that keeps failing surfaces as a CRITICAL drift item on the next cycle.
"""

import asyncio
from datetime import datetime
from typing import Any, Optional

import structlog
from pydantic import TypeAdapter

from driftguard.services.shared.clock import Clock, utcnow
from driftguard.services.shared.config import AUDIT_FAILURE_THRESHOLD
from driftguard.services.shared.database import SessionLocal
from driftguard.services.shared.models import AuditAction, AuditLog
from driftguard.services.shared.schemas import (
    AuditContext, AuditHealth, AuditLogInput, AuditResult, AuditScope,
)

logger = structlog.get_logger()

_METADATA = TypeAdapter(dict[str, Any])

SYSTEM_WORKSPACE = "system"


class AuditValidationError(ValueError):
    """Programming error in the caller: missing actor context or ROLLBACK reason."""


# ── Validation ────────────────────────────────────────────────────────────────

def assert_audit_context(ctx: AuditContext) -> None:
    if not ctx.workspace_id:
        raise AuditValidationError("Audit context missing: workspace_id is required")
    if not ctx.actor_id:
        raise AuditValidationError("Audit context missing: actor_id is required")
    if not ctx.actor_role:
        raise AuditValidationError("Audit context missing: actor_role is required")


def validate_rollback_reason(action: AuditAction, reason: Optional[str]) -> None:
    if action == AuditAction.ROLLBACK and (not reason or not reason.strip()):
        raise AuditValidationError("Audit validation failed: reason is required for ROLLBACK actions")


# ── Sink ──────────────────────────────────────────────────────────────────────

class SqlAuditSink:
    """Append-only writer over the audit_logs table."""

    def __init__(self, session_factory=SessionLocal):
        self._session_factory = session_factory

    def _insert(self, entry: AuditLogInput) -> AuditResult:
        db = self._session_factory()
        try:
            row = AuditLog(
                workspace_id = entry.context.workspace_id,
                actor_id     = entry.context.actor_id,
                actor_role   = entry.context.actor_role,
                action       = entry.action.value,
                entity_type  = entry.entity_type,
                entity_id    = entry.entity_id,
                scope        = entry.scope.model_dump(exclude_none=True),
                reason       = entry.reason or None,
                detail       = _METADATA.dump_python(entry.metadata, mode="json") if entry.metadata else None,
            )
            db.add(row)
            db.commit()
            return AuditResult(success=True, audit_id=row.id)
        except Exception as exc:
            db.rollback()
            return AuditResult(success=False, error=str(exc))
        finally:
            db.close()

    async def append(self, entry: AuditLogInput) -> AuditResult:
        assert_audit_context(entry.context)
        validate_rollback_reason(entry.action, entry.reason)
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._insert, entry)


# ── Emitter ───────────────────────────────────────────────────────────────────

class AuditEmitter:
    """Fire-and-forget front of the audit sink, with a health metric."""

    def __init__(self, sink=None, clock: Clock = utcnow, failure_threshold: int = AUDIT_FAILURE_THRESHOLD):
        self.sink = sink if sink is not None else SqlAuditSink()
        self._clock = clock
        self._failure_threshold = failure_threshold
        self._total = 0
        self._failed = 0
        self._consecutive = 0
        self._last_error: Optional[str] = None
        self._last_failure_at: Optional[datetime] = None

    def _record_failure(self, error: str) -> None:
        self._failed += 1
        self._consecutive += 1
        self._last_error = error
        self._last_failure_at = self._clock()

    async def emit(
        self,
        *,
        workspace_id: Optional[str],
        actor_id: str,
        entity_id: str,
        dataset: str,
        metadata: Optional[dict[str, Any]] = None,
        action: AuditAction = AuditAction.VALIDATE,
        actor_role: str = "owner",
        entity_type: str = "dataset",
        platform: str = "system",
        reason: Optional[str] = None,
    ) -> AuditResult:
        entry = AuditLogInput(
            context=AuditContext(
                workspace_id=workspace_id or SYSTEM_WORKSPACE,
                actor_id=actor_id,
                actor_role=actor_role,
            ),
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            scope=AuditScope(platform=platform, dataset=dataset),
            reason=reason,
            metadata=metadata,
        )
        return await self.emit_entry(entry)

    async def emit_entry(self, entry: AuditLogInput) -> AuditResult:
        self._total += 1
        try:
            result = await self.sink.append(entry)
        except Exception as exc:
            self._record_failure(str(exc))
            logger.error(
                "audit_write_failed",
                dataset=entry.scope.dataset,
                entity_id=entry.entity_id,
                error=str(exc),
            )
            return AuditResult(success=False, error=str(exc))

        if result.success:
            self._consecutive = 0
        else:
            self._record_failure(result.error or "unknown audit error")
            logger.error(
                "audit_write_rejected",
                dataset=entry.scope.dataset,
                entity_id=entry.entity_id,
                error=result.error,
            )
        return result

    async def probe(self) -> AuditResult:
        """
        Write-probe used by the AUDIT_UNREACHABLE check. Unlike emit(), sink
        exceptions propagate so the caller can report them verbatim.
        """
        entry = AuditLogInput(
            context=AuditContext(
                workspace_id=SYSTEM_WORKSPACE,
                actor_id="compliance-monitor",
                actor_role="owner",
            ),
            action=AuditAction.VALIDATE,
            entity_type="dataset",
            entity_id="compliance-check",
            scope=AuditScope(platform="system", dataset="compliance"),
            metadata={"check_type": "COMPLIANCE_MONITOR", "timestamp": self._clock().isoformat()},
        )
        result = await self.sink.append(entry)
        if result.success:
            self._consecutive = 0
        return result

    def health(self) -> AuditHealth:
        return AuditHealth(
            healthy=self._consecutive < self._failure_threshold,
            total_writes=self._total,
            failed_writes=self._failed,
            consecutive_failures=self._consecutive,
            last_error=self._last_error,
            last_failure_at=self._last_failure_at,
        )
