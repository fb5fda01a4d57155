"""
DriftGuard enumerations and SQLAlchemy ORM models - all in one file.
Uses SQLAlchemy 2.0 Mapped + mapped_column for full type-checker support.

Tables are the evidence the compliance engine reads:
  Workspace, ProductionSnapshot, KillSwitch, FailureInjection,
  WorkspaceMembership, IngestionLog, FreshnessOverride
plus the append-only AuditLog the engine writes to.

Engine state (drift records, incidents, cooldowns) is NOT persisted here.
It lives in the keyed stores (shared/stores.py) and is rebuilt by the next cycle.
"""

import enum
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    Boolean, DateTime, Enum as SAEnum, Index, Integer, JSON, String, Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from driftguard.services.shared.database import Base


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _uuid() -> str:
    return str(uuid.uuid4())


# ── Enumerations ──────────────────────────────────────────────────────────────

class ComplianceStatus(str, enum.Enum):
    PASS = "PASS"
    WARN = "WARN"
    FAIL = "FAIL"


class DriftSeverity(str, enum.Enum):
    CRITICAL = "CRITICAL"
    HIGH     = "HIGH"
    MEDIUM   = "MEDIUM"
    LOW      = "LOW"


class DriftType(str, enum.Enum):
    SNAPSHOT_MISSING         = "SNAPSHOT_MISSING"
    SNAPSHOT_STALE           = "SNAPSHOT_STALE"
    SNAPSHOT_MISMATCH        = "SNAPSHOT_MISMATCH"
    KILL_SWITCH_ACTIVE       = "KILL_SWITCH_ACTIVE"
    FAILURE_INJECTION_ACTIVE = "FAILURE_INJECTION_ACTIVE"
    PERMISSION_ANOMALY       = "PERMISSION_ANOMALY"
    MEMBERSHIP_ANOMALY       = "MEMBERSHIP_ANOMALY"
    ANALYTICS_DRIFT          = "ANALYTICS_DRIFT"
    AUDIT_UNREACHABLE        = "AUDIT_UNREACHABLE"
    DATA_FRESHNESS_WARN      = "DATA_FRESHNESS_WARN"
    DATA_FRESHNESS_FAIL      = "DATA_FRESHNESS_FAIL"


class EscalationLevel(str, enum.Enum):
    NONE     = "NONE"
    NOTIFIED = "NOTIFIED"
    PAGED    = "PAGED"
    CRITICAL = "CRITICAL"


class AlertSeverity(str, enum.Enum):
    INFO     = "INFO"
    WARN     = "WARN"
    CRITICAL = "CRITICAL"


class IntegrationType(str, enum.Enum):
    slack     = "slack"
    pagerduty = "pagerduty"
    webhook   = "webhook"


class DeliveryStatus(str, enum.Enum):
    PENDING  = "PENDING"     # transient, never returned
    SENT     = "SENT"
    FAILED   = "FAILED"
    RETRYING = "RETRYING"    # transient, never returned


class FinalDeliveryStatus(str, enum.Enum):
    SUCCESS = "SUCCESS"
    PARTIAL = "PARTIAL"
    FAILED  = "FAILED"


class AutoActionType(str, enum.Enum):
    ENABLE_KILL_SWITCH = "ENABLE_KILL_SWITCH"
    SEND_NOTIFICATION  = "SEND_NOTIFICATION"
    OPEN_INCIDENT      = "OPEN_INCIDENT"


class IncidentStatus(str, enum.Enum):
    OPEN         = "OPEN"
    ACKNOWLEDGED = "ACKNOWLEDGED"
    RESOLVED     = "RESOLVED"


class KillSwitchScope(str, enum.Enum):
    global_   = "global"
    workspace = "workspace"


class AuditAction(str, enum.Enum):
    PROMOTE             = "PROMOTE"
    ROLLBACK            = "ROLLBACK"
    SNAPSHOT_ACTIVATE   = "SNAPSHOT_ACTIVATE"
    SNAPSHOT_DEACTIVATE = "SNAPSHOT_DEACTIVATE"
    VALIDATE            = "VALIDATE"
    INGEST              = "INGEST"
    CREATE              = "CREATE"
    DELETE              = "DELETE"
    EXPORT              = "EXPORT"


class FreshnessState(str, enum.Enum):
    fresh = "fresh"
    warn  = "warn"
    fail  = "fail"


# ── Ordering helpers ──────────────────────────────────────────────────────────

SEVERITY_ORDER = [DriftSeverity.LOW, DriftSeverity.MEDIUM, DriftSeverity.HIGH, DriftSeverity.CRITICAL]

ESCALATION_ORDER = [
    EscalationLevel.NONE,
    EscalationLevel.NOTIFIED,
    EscalationLevel.PAGED,
    EscalationLevel.CRITICAL,
]


def severity_rank(severity: DriftSeverity) -> int:
    return SEVERITY_ORDER.index(severity)


def is_higher_level(new_level: EscalationLevel, current_level: EscalationLevel) -> bool:
    return ESCALATION_ORDER.index(new_level) > ESCALATION_ORDER.index(current_level)


# ── Workspaces ────────────────────────────────────────────────────────────────

class Workspace(Base):
    """A tenant workspace. The global compliance run iterates these."""
    __tablename__ = "workspaces"

    id:         Mapped[str]      = mapped_column(String(64), primary_key=True, default=_uuid)
    name:       Mapped[str]      = mapped_column(String(255), nullable=False, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now, nullable=False)


# ── Production Snapshots ──────────────────────────────────────────────────────

class ProductionSnapshot(Base):
    """
    A promoted dataset snapshot serving production analytics.
    At most one active snapshot per (workspace, platform, dataset) is expected.
    """
    __tablename__ = "production_snapshots"

    id:           Mapped[str]      = mapped_column(String(64), primary_key=True, default=_uuid)
    workspace_id: Mapped[str]      = mapped_column(String(64), nullable=False, index=True)
    platform:     Mapped[str]      = mapped_column(String(64), nullable=False)
    dataset:      Mapped[str]      = mapped_column(String(64), nullable=False)
    is_active:    Mapped[bool]     = mapped_column(Boolean, default=True, nullable=False)
    created_at:   Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now, nullable=False)

    __table_args__ = (
        Index("ix_snapshot_ws_active", "workspace_id", "is_active"),
    )


# ── Kill Switches ─────────────────────────────────────────────────────────────

class KillSwitch(Base):
    """
    Operational flag halting dangerous operations.
    scope=global → workspace_id is NULL; scope=workspace → one row per workspace.
    Rows are never deleted: disabling flips `enabled` and stamps deactivated_*.
    """
    __tablename__ = "kill_switches"

    id:             Mapped[int]                = mapped_column(Integer, primary_key=True, index=True)
    scope:          Mapped[KillSwitchScope]    = mapped_column(SAEnum(KillSwitchScope), nullable=False)
    workspace_id:   Mapped[Optional[str]]      = mapped_column(String(64), nullable=True, unique=True)
    reason:         Mapped[str]                = mapped_column(Text, nullable=False, default="")
    enabled:        Mapped[bool]               = mapped_column(Boolean, default=False, nullable=False)
    activated_by:   Mapped[Optional[str]]      = mapped_column(String(255), nullable=True)
    activated_at:   Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    deactivated_by: Mapped[Optional[str]]      = mapped_column(String(255), nullable=True)
    deactivated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at:     Mapped[datetime]           = mapped_column(DateTime(timezone=True), default=_now, onupdate=_now)


# ── Failure Injection ─────────────────────────────────────────────────────────

class FailureInjection(Base):
    """Chaos-testing configuration. Must never be enabled unnoticed in production."""
    __tablename__ = "failure_injections"

    id:           Mapped[int]                = mapped_column(Integer, primary_key=True, index=True)
    workspace_id: Mapped[str]                = mapped_column(String(64), nullable=False, index=True)
    action:       Mapped[str]                = mapped_column(String(64), nullable=False)
    failure_type: Mapped[str]                = mapped_column(String(64), nullable=False)
    probability:  Mapped[int]                = mapped_column(Integer, default=100)
    enabled:      Mapped[bool]               = mapped_column(Boolean, default=False, nullable=False)
    enabled_at:   Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


# ── Memberships ───────────────────────────────────────────────────────────────

class WorkspaceMembership(Base):
    __tablename__ = "workspace_memberships"

    id:           Mapped[int]  = mapped_column(Integer, primary_key=True, index=True)
    workspace_id: Mapped[str]  = mapped_column(String(64), nullable=False, index=True)
    user_id:      Mapped[str]  = mapped_column(String(255), nullable=False)
    role:         Mapped[str]  = mapped_column(String(32), nullable=False, default="viewer")
    is_active:    Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


# ── Ingestion / Freshness ─────────────────────────────────────────────────────

class IngestionLog(Base):
    """
    One row per ingestion run. status pass|warn counts as a successful ingestion;
    promoted_at (when set) is preferred over created_at as the freshness timestamp.
    """
    __tablename__ = "ingestion_logs"

    id:           Mapped[int]                = mapped_column(Integer, primary_key=True, index=True)
    workspace_id: Mapped[str]                = mapped_column(String(64), nullable=False, index=True)
    platform:     Mapped[str]                = mapped_column(String(64), nullable=False)
    dataset:      Mapped[str]                = mapped_column(String(64), nullable=False)
    client_id:    Mapped[Optional[str]]      = mapped_column(String(64), nullable=True)
    status:       Mapped[str]                = mapped_column(String(16), nullable=False)
    created_at:   Mapped[datetime]           = mapped_column(DateTime(timezone=True), default=_now, nullable=False)
    promoted_at:  Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_ingestion_ws_platform_dataset", "workspace_id", "platform", "dataset"),
    )


class FreshnessOverride(Base):
    """Workspace-level freshness thresholds. Take precedence over env and defaults."""
    __tablename__ = "freshness_overrides"

    id:           Mapped[int]           = mapped_column(Integer, primary_key=True, index=True)
    workspace_id: Mapped[str]           = mapped_column(String(64), nullable=False, index=True)
    dataset:      Mapped[str]           = mapped_column(String(64), nullable=False)
    warn_minutes: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    fail_minutes: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    __table_args__ = (
        UniqueConstraint("workspace_id", "dataset", name="uq_freshness_override_ws_dataset"),
    )


# ── Audit Log ─────────────────────────────────────────────────────────────────

class AuditLog(Base):
    """
    Append-only audit trail. Rows are only ever inserted by shared/audit.py.
    scope is {"platform": ..., "dataset": ...}; detail holds the event metadata.
    """
    __tablename__ = "audit_logs"

    id:           Mapped[str]                       = mapped_column(String(64), primary_key=True, default=_uuid)
    workspace_id: Mapped[str]                       = mapped_column(String(64), nullable=False, index=True)
    actor_id:     Mapped[str]                       = mapped_column(String(255), nullable=False)
    actor_role:   Mapped[str]                       = mapped_column(String(32), nullable=False)
    action:       Mapped[str]                       = mapped_column(String(32), nullable=False)
    entity_type:  Mapped[str]                       = mapped_column(String(64), nullable=False)
    entity_id:    Mapped[str]                       = mapped_column(String(255), nullable=False)
    scope:        Mapped[dict[str, Any]]            = mapped_column(JSON, default=dict)
    reason:       Mapped[Optional[str]]             = mapped_column(Text, nullable=True)
    detail:       Mapped[Optional[dict[str, Any]]]  = mapped_column(JSON, nullable=True)
    created_at:   Mapped[datetime]                  = mapped_column(DateTime(timezone=True), default=_now, index=True)

    __table_args__ = (
        Index("ix_audit_log_ws_ts", "workspace_id", "created_at"),
    )
