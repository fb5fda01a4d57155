"""
Open drift records and escalation.
"""

from fastapi import APIRouter, Depends, HTTPException

from driftguard.services.monitor.cycle import ComplianceEngine, get_engine
from driftguard.services.shared.schemas import DriftRecord, DriftStats, EscalationResult

router = APIRouter()


@router.get("/drifts", response_model=list[DriftRecord])
def list_drifts(engine: ComplianceEngine = Depends(get_engine)):
    return engine.tracker.get_all_active_drifts()


@router.get("/drifts/stats", response_model=DriftStats)
def drift_stats(engine: ComplianceEngine = Depends(get_engine)):
    return engine.tracker.get_drift_stats()


@router.get("/drifts/{workspace_id}", response_model=DriftRecord)
def get_drift(workspace_id: str, engine: ComplianceEngine = Depends(get_engine)):
    record = engine.tracker.get_drift(workspace_id)
    if record is None:
        raise HTTPException(status_code=404, detail="No open drift for workspace")
    return record


@router.post("/drifts/escalate", response_model=list[EscalationResult])
async def escalate_all(engine: ComplianceEngine = Depends(get_engine)):
    """Re-evaluate every open drift against the SLA. Returns only the ones that escalated."""
    return await engine.tracker.check_all_escalations()
