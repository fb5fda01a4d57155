"""
Incident routes.
Acknowledge / resolve are human actions: both require a non-empty reason and
move the incident forward only.
"""

from fastapi import APIRouter, Depends, HTTPException

from driftguard.services.monitor.auto_response import IncidentTransitionError
from driftguard.services.monitor.cycle import ComplianceEngine, get_engine
from driftguard.services.shared.schemas import IncidentActionRequest, IncidentRecord

router = APIRouter()


@router.get("/incidents", response_model=list[IncidentRecord])
def list_incidents(engine: ComplianceEngine = Depends(get_engine)):
    return engine.executor.get_all_incidents()


@router.get("/incidents/open", response_model=list[IncidentRecord])
def list_open_incidents(workspace_id: str, engine: ComplianceEngine = Depends(get_engine)):
    return engine.executor.get_open_incidents(workspace_id)


@router.get("/incidents/{incident_id}", response_model=IncidentRecord)
def get_incident(incident_id: str, engine: ComplianceEngine = Depends(get_engine)):
    incident = engine.executor.get_incident(incident_id)
    if incident is None:
        raise HTTPException(status_code=404, detail="Incident not found")
    return incident


async def _transition(action, incident_id: str, body: IncidentActionRequest, engine: ComplianceEngine):
    try:
        ok = await action(incident_id, body.actor_id, body.reason)
    except IncidentTransitionError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    if not ok:
        raise HTTPException(status_code=404, detail="Incident not found")
    return engine.executor.get_incident(incident_id)


@router.post("/incidents/{incident_id}/acknowledge", response_model=IncidentRecord)
async def acknowledge_incident(
    incident_id: str,
    body: IncidentActionRequest,
    engine: ComplianceEngine = Depends(get_engine),
):
    return await _transition(engine.executor.acknowledge_incident, incident_id, body, engine)


@router.post("/incidents/{incident_id}/resolve", response_model=IncidentRecord)
async def resolve_incident(
    incident_id: str,
    body: IncidentActionRequest,
    engine: ComplianceEngine = Depends(get_engine),
):
    return await _transition(engine.executor.resolve_incident, incident_id, body, engine)
