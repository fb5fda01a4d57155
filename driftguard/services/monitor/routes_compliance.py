"""
Compliance check routes.
Invoked by the external scheduler (every 5-10 minutes) and by operators.
"""

from typing import Optional

from fastapi import APIRouter, Depends

from driftguard.services.monitor.cycle import ComplianceEngine, get_engine
from driftguard.services.shared.schemas import (
    ComplianceCheckResult, GlobalCycleResult, WorkspaceCycleResult,
)

router = APIRouter()


@router.post("/compliance/workspaces/{workspace_id}/check", response_model=ComplianceCheckResult)
async def check_workspace(
    workspace_id: str,
    platform: Optional[str] = None,
    engine: ComplianceEngine = Depends(get_engine),
):
    """Detection only: run the check battery and audit the result."""
    return await engine.detector.check_workspace_compliance(workspace_id, platform)


@router.post("/compliance/workspaces/{workspace_id}/cycle", response_model=WorkspaceCycleResult)
async def run_workspace_cycle(
    workspace_id: str,
    platform: Optional[str] = None,
    engine: ComplianceEngine = Depends(get_engine),
):
    return await engine.run_workspace_cycle(workspace_id, platform)


@router.post("/compliance/run", response_model=GlobalCycleResult)
async def run_global_cycle(engine: ComplianceEngine = Depends(get_engine)):
    """
    Full cycle over every workspace (scan limit applies): global checks,
    per-workspace detection, drift tracking + escalation, auto-response.
    """
    return await engine.run_global_cycle()
