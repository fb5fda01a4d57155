"""
Alert integration routes.
"""

from fastapi import APIRouter, Depends

from driftguard.services.monitor.cycle import ComplianceEngine, get_engine
from driftguard.services.shared.clock import epoch_ms, utcnow
from driftguard.services.shared.schemas import (
    AlertDeliveryResult, AlertPayload, AlertTestRequest, IntegrationHealth,
)

router = APIRouter()


@router.get("/alerts/integrations", response_model=list[IntegrationHealth])
def integration_health(engine: ComplianceEngine = Depends(get_engine)):
    """Which channels are configured. Secrets are never echoed."""
    return engine.dispatcher.get_integration_health()


@router.post("/alerts/test", response_model=AlertDeliveryResult)
async def send_test_alert(body: AlertTestRequest, engine: ComplianceEngine = Depends(get_engine)):
    now = utcnow()
    alert = AlertPayload(
        id=f"TEST-{epoch_ms(now)}",
        severity=body.severity,
        title=f"TEST: {body.severity.value} alert",
        message=body.message,
        source="DriftGuard Alert Test",
        timestamp=now,
        workspace_id=body.workspace_id,
    )
    return await engine.dispatcher.send_alert(alert)
