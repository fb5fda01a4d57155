"""
Pydantic schemas for the DriftGuard compliance engine.
Domain objects passed between detector, tracker, dispatcher and executor,
plus the request/response bodies of the monitor service API.
"""

from datetime import datetime
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from driftguard.services.shared.models import (
    AlertSeverity, AuditAction, AutoActionType, ComplianceStatus,
    DeliveryStatus, DriftSeverity, DriftType, EscalationLevel,
    FinalDeliveryStatus, FreshnessState, IncidentStatus, IntegrationType,
    KillSwitchScope,
)


# ── Drift item details (one variant per check) ────────────────────────────────

class SnapshotStaleDetails(BaseModel):
    kind: Literal["snapshot_stale"] = "snapshot_stale"
    platform:   str
    dataset:    str
    created_at: datetime


class KillSwitchDetails(BaseModel):
    kind: Literal["kill_switch"] = "kill_switch"
    scope:        KillSwitchScope
    reason:       Optional[str] = None
    activated_at: Optional[datetime] = None


class FailureInjectionDetails(BaseModel):
    kind: Literal["failure_injection"] = "failure_injection"
    action:       str
    failure_type: str
    probability:  int
    enabled_at:   Optional[datetime] = None


class MembershipDetails(BaseModel):
    kind: Literal["membership"] = "membership"
    owner_count: int


class FreshnessFailDetails(BaseModel):
    kind: Literal["freshness_fail"] = "freshness_fail"
    dataset:          str
    age_minutes:      Optional[int]      # None = never ingested
    fail_at_minutes:  int
    last_ingested_at: Optional[datetime] = None
    critical:         bool
    reason:           Optional[str] = None


class FreshnessWarnDetails(BaseModel):
    kind: Literal["freshness_warn"] = "freshness_warn"
    dataset:          str
    age_minutes:      int
    warn_at_minutes:  int
    last_ingested_at: Optional[datetime] = None
    critical:         bool


class CheckErrorDetails(BaseModel):
    """Synthetic item: the check could not reach its evidence source."""
    kind: Literal["check_error"] = "check_error"
    check: str
    error: str


DriftDetails = Annotated[
    Union[
        SnapshotStaleDetails,
        KillSwitchDetails,
        FailureInjectionDetails,
        MembershipDetails,
        FreshnessFailDetails,
        FreshnessWarnDetails,
        CheckErrorDetails,
    ],
    Field(discriminator="kind"),
]


# ── Detection results ─────────────────────────────────────────────────────────

class DriftItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    type:         DriftType
    severity:     DriftSeverity
    message:      str
    workspace_id: Optional[str] = None
    snapshot_id:  Optional[str] = None
    details:      Optional[DriftDetails] = None


class ComplianceCheckResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    status:            ComplianceStatus
    overall_severity:  Optional[DriftSeverity] = None
    drift_items:       tuple[DriftItem, ...] = ()
    timestamp:         datetime
    workspace_id:      str
    check_duration_ms: int = 0


class GlobalComplianceResult(BaseModel):
    status:             ComplianceStatus
    workspace_results:  list[ComplianceCheckResult]
    global_drift:       list[DriftItem]
    timestamp:          datetime
    total_workspaces:   int
    passing_workspaces: int
    failing_workspaces: int


# ── Escalation ────────────────────────────────────────────────────────────────

class EscalationSLA(BaseModel):
    warn_threshold_minutes:     float = 30
    fail_threshold_minutes:     float = 10
    critical_threshold_minutes: float = 5


class EscalationConfig(BaseModel):
    sla:     EscalationSLA = Field(default_factory=EscalationSLA)
    enabled: bool = True


class DriftRecord(BaseModel):
    id:               str
    workspace_id:     str
    status:           ComplianceStatus
    severity:         Optional[DriftSeverity] = None
    drift_items:      list[DriftItem] = []
    detected_at:      datetime
    last_checked_at:  datetime
    escalation_level: EscalationLevel = EscalationLevel.NONE
    escalated_at:     Optional[datetime] = None
    incident_id:      Optional[str] = None


class DriftStats(BaseModel):
    total:     int
    by_level:  dict[EscalationLevel, int]
    by_status: dict[ComplianceStatus, int]


# ── Alerts ────────────────────────────────────────────────────────────────────

class AlertPayload(BaseModel):
    id:           str
    severity:     AlertSeverity
    title:        str
    message:      str
    source:       str
    timestamp:    datetime
    workspace_id: Optional[str] = None
    incident_id:  Optional[str] = None
    drift_items:  Optional[list[DriftItem]] = None
    metadata:     Optional[dict[str, Any]] = None


class DeliveryAttempt(BaseModel):
    integration: IntegrationType
    timestamp:   datetime
    status:      DeliveryStatus
    status_code: Optional[int] = None
    error:       Optional[str] = None
    retry_count: int = 0


class AlertDeliveryResult(BaseModel):
    alert_id:                str
    attempts:                list[DeliveryAttempt]
    final_status:            FinalDeliveryStatus
    successful_integrations: list[IntegrationType]
    failed_integrations:     list[IntegrationType]


class RetryConfig(BaseModel):
    max_retries:   int = 3
    base_delay_ms: int = 1000
    max_delay_ms:  int = 30000


class FetchResult(BaseModel):
    ok:      bool
    status:  int = 0
    error:   Optional[str] = None
    retries: int = 0


class IntegrationHealth(BaseModel):
    integration: IntegrationType
    configured:  bool
    url:         Optional[str] = None


class EscalationResult(BaseModel):
    drift_id:       str
    workspace_id:   str
    previous_level: EscalationLevel
    new_level:      EscalationLevel
    escalated:      bool
    reason:         Optional[str] = None
    alert_sent:     Optional[bool] = None
    delivery:       Optional[AlertDeliveryResult] = None


# ── Auto-response / incidents ─────────────────────────────────────────────────

class AutoActionRecord(BaseModel):
    action:    AutoActionType
    success:   bool
    timestamp: datetime
    details:   Optional[dict[str, Any]] = None
    error:     Optional[str] = None


class IncidentRecord(BaseModel):
    id:              str
    workspace_id:    str
    snapshot_id:     Optional[str] = None
    severity:        DriftSeverity
    reason:          str
    drift_items:     list[DriftItem]
    timestamp:       datetime
    auto_actions:    list[AutoActionRecord]
    status:          IncidentStatus = IncidentStatus.OPEN
    acknowledged_at: Optional[datetime] = None
    acknowledged_by: Optional[str] = None
    resolved_at:     Optional[datetime] = None
    resolved_by:     Optional[str] = None


class AutoResponseResult(BaseModel):
    triggered: bool
    reason:    Optional[str] = None
    incident:  Optional[IncidentRecord] = None
    actions:   list[AutoActionRecord] = []
    errors:    list[str] = []


class IncidentActionRequest(BaseModel):
    actor_id: str
    reason:   str


# ── Audit ─────────────────────────────────────────────────────────────────────

class AuditContext(BaseModel):
    workspace_id: str = ""
    actor_id:     str = ""
    actor_role:   str = ""


class AuditScope(BaseModel):
    platform:  str
    dataset:   str
    client_id: Optional[str] = None


class AuditLogInput(BaseModel):
    context:     AuditContext
    action:      AuditAction
    entity_type: str
    entity_id:   str
    scope:       AuditScope
    reason:      Optional[str] = None
    metadata:    Optional[dict[str, Any]] = None


class AuditResult(BaseModel):
    success:  bool
    audit_id: Optional[str] = None
    error:    Optional[str] = None


class AuditLogOut(BaseModel):
    id:           str
    workspace_id: str
    actor_id:     str
    actor_role:   str
    action:       str
    entity_type:  str
    entity_id:    str
    scope:        dict[str, Any]
    reason:       Optional[str]
    detail:       Optional[dict[str, Any]]
    created_at:   datetime

    class Config:
        from_attributes = True


class AuditHealth(BaseModel):
    healthy:              bool
    total_writes:         int
    failed_writes:        int
    consecutive_failures: int
    last_error:           Optional[str] = None
    last_failure_at:      Optional[datetime] = None


# ── Evidence facts ────────────────────────────────────────────────────────────

class SnapshotFact(BaseModel):
    id:         str
    platform:   str
    dataset:    str
    created_at: datetime


class KillSwitchStatus(BaseModel):
    blocked:      bool
    scope:        Optional[KillSwitchScope] = None
    reason:       Optional[str] = None
    activated_at: Optional[datetime] = None
    activated_by: Optional[str] = None


class KillSwitchResult(BaseModel):
    success:         bool
    already_enabled: bool = False
    error:           Optional[str] = None


class FailureInjectionFact(BaseModel):
    action:       str
    failure_type: str
    probability:  int
    enabled_at:   Optional[datetime] = None


class MembershipFact(BaseModel):
    user_id:   str
    role:      str
    is_active: bool


class FreshnessPolicy(BaseModel):
    dataset:            str
    warn_after_minutes: int
    fail_after_minutes: int
    critical:           bool
    description:        str = ""


class FreshnessStatus(BaseModel):
    status:           FreshnessState
    age_minutes:      Optional[int]      # None = never ingested / unparseable
    warn_at_minutes:  int
    fail_at_minutes:  int
    last_ingested_at: Optional[datetime] = None
    reason:           Optional[str] = None


class DatasetFreshness(BaseModel):
    dataset:   str
    platform:  str
    freshness: FreshnessStatus
    policy:    FreshnessPolicy


class FreshnessSummary(BaseModel):
    total:         int = 0
    fresh:         int = 0
    warn:          int = 0
    fail:          int = 0
    critical_fail: int = 0


class WorkspaceFreshnessMap(BaseModel):
    workspace_id: str
    platform:     str
    client_id:    Optional[str] = None
    timestamp:    datetime
    datasets:     list[DatasetFreshness]
    summary:      FreshnessSummary


class KillSwitchDisableRequest(BaseModel):
    actor_id: str


# ── Cycle results ─────────────────────────────────────────────────────────────

class WorkspaceCycleResult(BaseModel):
    compliance:    ComplianceCheckResult
    escalation:    Optional[EscalationResult] = None     # None = drift resolved (PASS)
    auto_response: AutoResponseResult


class GlobalCycleResult(BaseModel):
    compliance:     GlobalComplianceResult
    escalations:    list[EscalationResult]
    auto_responses: list[AutoResponseResult]


class AlertTestRequest(BaseModel):
    severity:     AlertSeverity = AlertSeverity.INFO
    workspace_id: Optional[str] = None
    message:      str = "Test alert from the compliance monitor"
