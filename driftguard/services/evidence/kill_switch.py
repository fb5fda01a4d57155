"""
Kill-Switch Evidence & Control
------------------------------
When a kill-switch is ON, dangerous operations (ingest, promote, rollback, ...)
are refused for its scope. Global overrides every workspace.

Read side: status queries raise on DB errors. The compliance checks turn that
into a drift item (fail closed); the guard below lets it propagate.
Write side: enable/disable return KillSwitchResult and never raise.
enable_workspace_kill_switch() is idempotent - an already-enabled switch is a success and
its original reason/activation stamp are kept. Two enables racing on a missing row
both succeed; the one whose insert hits the unique constraint reports already_enabled.
"""

import asyncio
from typing import Optional

import structlog
from sqlalchemy.exc import IntegrityError

from driftguard.services.shared.audit import AuditEmitter
from driftguard.services.shared.clock import Clock, as_utc, utcnow
from driftguard.services.shared.database import SessionLocal
from driftguard.services.shared.models import AuditAction, KillSwitch, KillSwitchScope
from driftguard.services.shared.schemas import KillSwitchResult, KillSwitchStatus

logger = structlog.get_logger()

BLOCKABLE_ACTIONS = (
    AuditAction.INGEST,
    AuditAction.VALIDATE,
    AuditAction.PROMOTE,
    AuditAction.SNAPSHOT_ACTIVATE,
    AuditAction.SNAPSHOT_DEACTIVATE,
    AuditAction.ROLLBACK,
)


class KillSwitchActiveError(Exception):
    """Raised when a kill-switch blocks an action. Not retryable."""

    def __init__(self, scope: KillSwitchScope, reason: str, attempted_action: AuditAction,
                 workspace_id: Optional[str] = None):
        self.scope = scope
        self.reason = reason
        self.attempted_action = attempted_action
        self.workspace_id = workspace_id
        where = f"workspace ({workspace_id})" if scope == KillSwitchScope.workspace else "global"
        super().__init__(
            f"Operations temporarily disabled: {reason}. "
            f"Scope: {where}. Attempted action: {attempted_action.value}"
        )


def _status_from_row(row: Optional[KillSwitch]) -> KillSwitchStatus:
    if row is None:
        return KillSwitchStatus(blocked=False)
    return KillSwitchStatus(
        blocked=True,
        scope=row.scope,
        reason=row.reason,
        activated_at=as_utc(row.activated_at) if row.activated_at else None,
        activated_by=row.activated_by,
    )


class KillSwitchService:

    def __init__(self, session_factory=SessionLocal, audit: Optional[AuditEmitter] = None, clock: Clock = utcnow):
        self._session_factory = session_factory
        self._audit = audit
        self._clock = clock

    async def _run(self, fn, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, fn, *args)

    # ── Status ────────────────────────────────────────────────────────────────

    def _enabled_row(self, scope: KillSwitchScope, workspace_id: Optional[str]) -> KillSwitchStatus:
        db = self._session_factory()
        try:
            q = db.query(KillSwitch).filter(KillSwitch.scope == scope, KillSwitch.enabled == True)  # noqa: E712
            if workspace_id is not None:
                q = q.filter(KillSwitch.workspace_id == workspace_id)
            return _status_from_row(q.first())
        finally:
            db.close()

    async def is_global_enabled(self) -> KillSwitchStatus:
        return await self._run(self._enabled_row, KillSwitchScope.global_, None)

    async def is_workspace_enabled(self, workspace_id: str) -> KillSwitchStatus:
        return await self._run(self._enabled_row, KillSwitchScope.workspace, workspace_id)

    async def get_kill_switch_status(self, workspace_id: str) -> KillSwitchStatus:
        """Global takes precedence over the workspace switch."""
        status = await self.is_global_enabled()
        if status.blocked:
            return status
        return await self.is_workspace_enabled(workspace_id)

    async def assert_kill_switch_open(self, workspace_id: str, action: AuditAction, actor_id: str, actor_role: str) -> None:
        """Raise KillSwitchActiveError if `action` is blocked for the workspace."""
        if action not in BLOCKABLE_ACTIONS:
            return
        status = await self.get_kill_switch_status(workspace_id)
        if not status.blocked:
            return

        if self._audit is not None:
            await self._audit.emit(
                workspace_id=workspace_id,
                actor_id=actor_id,
                actor_role=actor_role,
                entity_id="global" if status.scope == KillSwitchScope.global_ else workspace_id,
                dataset="kill_switch",
                metadata={
                    "kill_switch_block": True,
                    "severity":          "CRITICAL",
                    "attempted_action":  action.value,
                    "kill_switch_scope": status.scope.value if status.scope else None,
                    "kill_switch_reason": status.reason,
                },
            )
        raise KillSwitchActiveError(
            status.scope or KillSwitchScope.workspace,
            status.reason or "",
            action,
            workspace_id if status.scope == KillSwitchScope.workspace else None,
        )

    # ── Mutations ─────────────────────────────────────────────────────────────

    def _upsert_enabled(self, db, scope: KillSwitchScope, workspace_id: Optional[str], reason: str, actor: str) -> KillSwitchResult:
        row = (
            db.query(KillSwitch)
              .filter(KillSwitch.scope == scope, KillSwitch.workspace_id == workspace_id)
              .first()
        )
        if row is not None and row.enabled:
            return KillSwitchResult(success=True, already_enabled=True)
        if row is None:
            row = KillSwitch(scope=scope, workspace_id=workspace_id)
            db.add(row)
        row.enabled = True
        row.reason = reason
        row.activated_by = actor
        row.activated_at = self._clock()
        db.commit()
        return KillSwitchResult(success=True)

    def _enable(self, scope: KillSwitchScope, workspace_id: Optional[str], reason: str, actor: str) -> KillSwitchResult:
        db = self._session_factory()
        try:
            try:
                return self._upsert_enabled(db, scope, workspace_id, reason, actor)
            except IntegrityError:
                # A concurrent enable inserted the row first; re-read it
                db.rollback()
                logger.info("kill_switch_enable_conflict", scope=scope.value, workspace_id=workspace_id)
                return self._upsert_enabled(db, scope, workspace_id, reason, actor)
        except Exception as exc:
            db.rollback()
            return KillSwitchResult(success=False, error=str(exc))
        finally:
            db.close()

    def _disable(self, scope: KillSwitchScope, workspace_id: Optional[str], actor: str) -> KillSwitchResult:
        db = self._session_factory()
        try:
            row = (
                db.query(KillSwitch)
                  .filter(KillSwitch.scope == scope, KillSwitch.workspace_id == workspace_id)
                  .first()
            )
            if row is not None and row.enabled:
                row.enabled = False
                row.deactivated_by = actor
                row.deactivated_at = self._clock()
                db.commit()
            return KillSwitchResult(success=True)
        except Exception as exc:
            db.rollback()
            return KillSwitchResult(success=False, error=str(exc))
        finally:
            db.close()

    async def enable_workspace_kill_switch(self, workspace_id: str, reason: str, actor: str) -> KillSwitchResult:
        result = await self._run(self._enable, KillSwitchScope.workspace, workspace_id, reason, actor)
        if result.success and not result.already_enabled:
            logger.warning("kill_switch_enabled", scope="workspace", workspace_id=workspace_id, actor=actor, reason=reason)
        return result

    async def disable_workspace_kill_switch(self, workspace_id: str, actor: str) -> KillSwitchResult:
        result = await self._run(self._disable, KillSwitchScope.workspace, workspace_id, actor)
        if result.success:
            logger.warning("kill_switch_disabled", scope="workspace", workspace_id=workspace_id, actor=actor)
        return result

    async def enable_global_kill_switch(self, reason: str, actor: str) -> KillSwitchResult:
        result = await self._run(self._enable, KillSwitchScope.global_, None, reason, actor)
        if result.success and not result.already_enabled:
            logger.warning("kill_switch_enabled", scope="global", actor=actor, reason=reason)
        return result

    async def disable_global_kill_switch(self, actor: str) -> KillSwitchResult:
        result = await self._run(self._disable, KillSwitchScope.global_, None, actor)
        if result.success:
            logger.warning("kill_switch_disabled", scope="global", actor=actor)
        return result
