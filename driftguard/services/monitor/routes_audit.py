"""
AuditLog query routes.
Provides read-only access to the append-only audit trail.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from driftguard.services.shared.database import get_db
from driftguard.services.shared.models import AuditLog
from driftguard.services.shared.schemas import AuditLogOut

router = APIRouter()


@router.get("/audit", response_model=list[AuditLogOut])
def list_audit_logs(
    workspace_id: Optional[str] = None,
    dataset: Optional[str] = None,
    entity_id: Optional[str] = None,
    limit: int = Query(default=50, le=500),
    offset: int = 0,
    db=Depends(get_db),
):
    """
    Query the audit log, newest first.
    dataset filters on the event family (e.g. "compliance", "drift_escalation",
    "alert_delivery", "auto_response", "incident").
    """
    q = db.query(AuditLog)
    if workspace_id:
        q = q.filter(AuditLog.workspace_id == workspace_id)
    if entity_id:
        q = q.filter(AuditLog.entity_id == entity_id)
    if dataset:
        q = q.filter(AuditLog.scope["dataset"].as_string() == dataset)
    rows = q.order_by(AuditLog.created_at.desc()).offset(offset).limit(limit).all()
    return [AuditLogOut.model_validate(r) for r in rows]
