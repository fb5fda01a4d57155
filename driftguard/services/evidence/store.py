"""
SQL evidence store.
Read-only queries the drift checks run against the evidence tables.
Each query opens its own session and runs in the default executor; DB errors
propagate to the check, which turns them into a fail-closed drift item.
"""

import asyncio

from driftguard.services.shared.clock import as_utc
from driftguard.services.shared.database import SessionLocal
from driftguard.services.shared.models import (
    FailureInjection, ProductionSnapshot, Workspace, WorkspaceMembership,
)
from driftguard.services.shared.schemas import (
    FailureInjectionFact, MembershipFact, SnapshotFact,
)


class SqlEvidenceStore:

    def __init__(self, session_factory=SessionLocal):
        self._session_factory = session_factory

    async def _run(self, fn, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, fn, *args)

    def _active_snapshots(self, workspace_id: str) -> list[SnapshotFact]:
        db = self._session_factory()
        try:
            rows = (
                db.query(ProductionSnapshot)
                  .filter_by(workspace_id=workspace_id, is_active=True)
                  .order_by(ProductionSnapshot.created_at)
                  .all()
            )
            return [
                SnapshotFact(
                    id=r.id,
                    platform=r.platform,
                    dataset=r.dataset,
                    created_at=as_utc(r.created_at),
                )
                for r in rows
            ]
        finally:
            db.close()

    def _enabled_injections(self, workspace_id: str) -> list[FailureInjectionFact]:
        db = self._session_factory()
        try:
            rows = (
                db.query(FailureInjection)
                  .filter_by(workspace_id=workspace_id, enabled=True)
                  .order_by(FailureInjection.id)
                  .all()
            )
            return [
                FailureInjectionFact(
                    action=r.action,
                    failure_type=r.failure_type,
                    probability=r.probability,
                    enabled_at=as_utc(r.enabled_at) if r.enabled_at else None,
                )
                for r in rows
            ]
        finally:
            db.close()

    def _memberships(self, workspace_id: str) -> list[MembershipFact]:
        db = self._session_factory()
        try:
            rows = db.query(WorkspaceMembership).filter_by(workspace_id=workspace_id).all()
            return [MembershipFact(user_id=r.user_id, role=r.role, is_active=r.is_active) for r in rows]
        finally:
            db.close()

    def _workspace_ids(self, limit: int) -> list[str]:
        db = self._session_factory()
        try:
            rows = db.query(Workspace.id).order_by(Workspace.created_at).limit(limit).all()
            return [r[0] for r in rows]
        finally:
            db.close()

    async def list_active_snapshots(self, workspace_id: str) -> list[SnapshotFact]:
        return await self._run(self._active_snapshots, workspace_id)

    async def list_enabled_failure_injections(self, workspace_id: str) -> list[FailureInjectionFact]:
        return await self._run(self._enabled_injections, workspace_id)

    async def list_memberships(self, workspace_id: str) -> list[MembershipFact]:
        return await self._run(self._memberships, workspace_id)

    async def list_workspace_ids(self, limit: int) -> list[str]:
        return await self._run(self._workspace_ids, limit)
