"""
Kill-switch routes.
Enabling is the auto-response playbook's job; operators read status and
disable once the incident is handled.
"""

from fastapi import APIRouter, Depends, HTTPException

from driftguard.services.monitor.cycle import ComplianceEngine, get_engine
from driftguard.services.shared.schemas import (
    KillSwitchDisableRequest, KillSwitchResult, KillSwitchStatus,
)

router = APIRouter()


@router.get("/kill-switch/{workspace_id}", response_model=KillSwitchStatus)
async def kill_switch_status(workspace_id: str, engine: ComplianceEngine = Depends(get_engine)):
    """Effective status for the workspace (global switch wins)."""
    return await engine.kill_switches.get_kill_switch_status(workspace_id)


@router.post("/kill-switch/{workspace_id}/disable", response_model=KillSwitchResult)
async def disable_kill_switch(
    workspace_id: str,
    body: KillSwitchDisableRequest,
    engine: ComplianceEngine = Depends(get_engine),
):
    if not body.actor_id.strip():
        raise HTTPException(status_code=400, detail="actor_id is required")
    result = await engine.kill_switches.disable_workspace_kill_switch(workspace_id, body.actor_id)
    if not result.success:
        raise HTTPException(status_code=500, detail=result.error or "Failed to disable kill-switch")
    return result
