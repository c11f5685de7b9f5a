"""
KubeHeal SQLAlchemy ORM models - all data models in one file.
Uses SQLAlchemy 2.0 Mapped + mapped_column for full type-checker support.

  Cluster, AgentCredential, OperatorApiKey,
  TelemetryRecord, Issue, ScanRun, DetectionLease,
  Policy, ApprovalRequest, RemediationCommand,
  RateLimitHit, Notification, AuditLog

State-machine invariants:
  ApprovalRequest  pending -> approved -> executed | pending -> rejected | pending -> expired
                   at most one pending row per (cluster_id, issue_id)
  RemediationCommand pending -> executing -> completed | failed
                   retry_count <= max_retries; failed -> pending only via the retry sweep
All transitions are conditional updates on the current status.
"""

import enum
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import (
    Boolean, DateTime, Enum as SAEnum, Float, ForeignKey,
    Index, Integer, JSON, String, Text, text,
)
from sqlalchemy.orm import Mapped, mapped_column

from kubeheal.services.shared.database import Base
from kubeheal.services.shared.timeutil import utcnow


# ── Enumerations ──────────────────────────────────────────────────────────────

class Severity(str, enum.Enum):
    low      = "low"
    medium   = "medium"
    high     = "high"
    critical = "critical"


SEVERITY_ORDER: dict[Severity, int] = {
    Severity.low:      0,
    Severity.medium:   1,
    Severity.high:     2,
    Severity.critical: 3,
}


class IssueCategory(str, enum.Enum):
    anomaly  = "anomaly"
    security = "security"


class IssueStatus(str, enum.Enum):
    active         = "active"
    investigating  = "investigating"
    mitigated      = "mitigated"
    false_positive = "false_positive"


class ApprovalStatus(str, enum.Enum):
    pending  = "pending"
    approved = "approved"
    rejected = "rejected"
    executed = "executed"
    expired  = "expired"


APPROVAL_TERMINAL = {ApprovalStatus.executed, ApprovalStatus.rejected, ApprovalStatus.expired}


class ResponderChannel(str, enum.Enum):
    web       = "web"
    messaging = "messaging"
    api       = "api"


class CommandStatus(str, enum.Enum):
    pending   = "pending"
    executing = "executing"
    completed = "completed"
    failed    = "failed"


class CommandType(str, enum.Enum):
    restart_pod                 = "restart_pod"
    delete_pod                  = "delete_pod"
    scale_deployment            = "scale_deployment"
    update_deployment_image     = "update_deployment_image"
    update_deployment_resources = "update_deployment_resources"


class ScanTrigger(str, enum.Enum):
    manual    = "manual"
    scheduled = "scheduled"


class ScanStatus(str, enum.Enum):
    running   = "running"
    completed = "completed"
    failed    = "failed"


# ── Clusters and credentials ──────────────────────────────────────────────────

class Cluster(Base):
    """
    A connected Kubernetes cluster.
    last_seen and the scalar usage columns are refreshed by the ingest service.
    """
    __tablename__ = "clusters"

    id:           Mapped[int]                = mapped_column(Integer, primary_key=True, index=True)
    name:         Mapped[str]                = mapped_column(String(255), nullable=False)
    owner_id:     Mapped[str]                = mapped_column(String(255), nullable=False, index=True)
    last_seen:    Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    cpu_usage:    Mapped[Optional[float]]    = mapped_column(Float, nullable=True)
    memory_usage: Mapped[Optional[float]]    = mapped_column(Float, nullable=True)
    pod_count:    Mapped[Optional[int]]      = mapped_column(Integer, nullable=True)
    created_at:   Mapped[datetime]           = mapped_column(DateTime(timezone=True), default=utcnow)


class AgentCredential(Base):
    """
    Agent API key for one cluster. Only the bcrypt hash is stored;
    key_prefix narrows the lookup and is kept for log correlation.
    """
    __tablename__ = "agent_credentials"

    id:         Mapped[int]                = mapped_column(Integer, primary_key=True, index=True)
    cluster_id: Mapped[int]                = mapped_column(Integer, ForeignKey("clusters.id"), nullable=False, index=True)
    key_hash:   Mapped[str]                = mapped_column(String(128), nullable=False)
    key_prefix: Mapped[str]                = mapped_column(String(16), nullable=False, index=True)
    active:     Mapped[bool]               = mapped_column(Boolean, default=True)
    last_seen:  Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime]           = mapped_column(DateTime(timezone=True), default=utcnow)


class OperatorApiKey(Base):
    """Operator key for dashboard-facing endpoints. operator_id owns clusters via Cluster.owner_id."""
    __tablename__ = "operator_api_keys"

    id:          Mapped[int]           = mapped_column(Integer, primary_key=True, index=True)
    operator_id: Mapped[str]           = mapped_column(String(255), nullable=False, index=True)
    key_hash:    Mapped[str]           = mapped_column(String(128), nullable=False)
    key_prefix:  Mapped[str]           = mapped_column(String(16), nullable=False, index=True)
    description: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    active:      Mapped[bool]          = mapped_column(Boolean, default=True)
    created_at:  Mapped[datetime]      = mapped_column(DateTime(timezone=True), default=utcnow)


# ── Telemetry ─────────────────────────────────────────────────────────────────

class TelemetryRecord(Base):
    """
    One accepted telemetry record. Never mutated after insert.
    Analysed over a rolling 15 minute window, purged by the retention sweep.
    """
    __tablename__ = "telemetry_records"

    id:           Mapped[int]      = mapped_column(Integer, primary_key=True, index=True)
    cluster_id:   Mapped[int]      = mapped_column(Integer, ForeignKey("clusters.id"), nullable=False)
    kind:         Mapped[str]      = mapped_column(String(64), nullable=False)
    payload:      Mapped[Any]      = mapped_column(JSON, nullable=False)
    size_bytes:   Mapped[int]      = mapped_column(Integer, nullable=False, default=0)
    collected_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    received_at:  Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        Index("ix_telemetry_cluster_collected", "cluster_id", "collected_at"),
    )


# ── Detection ─────────────────────────────────────────────────────────────────

class Issue(Base):
    """
    A detected anomaly or security threat.
    dedup_key = "<kind>|<namespace>/<name>" suppresses re-alerting while an
    equal issue is active inside the suppression window.
    """
    __tablename__ = "issues"

    id:                Mapped[int]                = mapped_column(Integer, primary_key=True, index=True)
    cluster_id:        Mapped[int]                = mapped_column(Integer, ForeignKey("clusters.id"), nullable=False)
    category:          Mapped[IssueCategory]      = mapped_column(SAEnum(IssueCategory), nullable=False)
    kind:              Mapped[str]                = mapped_column(String(128), nullable=False)
    severity:          Mapped[Severity]           = mapped_column(SAEnum(Severity), nullable=False)
    status:            Mapped[IssueStatus]        = mapped_column(SAEnum(IssueStatus), default=IssueStatus.active, nullable=False)
    dedup_key:         Mapped[str]                = mapped_column(String(512), nullable=False)
    affected_resource: Mapped[Optional[str]]      = mapped_column(String(512), nullable=True)
    description:       Mapped[str]                = mapped_column(Text, nullable=False)
    recommendation:    Mapped[Optional[str]]      = mapped_column(Text, nullable=True)
    evidence:          Mapped[list[Any]]          = mapped_column(JSON, default=list)
    analysis:          Mapped[dict[str, Any]]     = mapped_column(JSON, default=dict)
    scan_id:           Mapped[Optional[int]]      = mapped_column(Integer, ForeignKey("scan_runs.id"), nullable=True)
    detected_at:       Mapped[datetime]           = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at:        Mapped[datetime]           = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    resolved_at:       Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_issue_cluster_dedup", "cluster_id", "dedup_key", "status"),
        Index("ix_issue_cluster_detected", "cluster_id", "detected_at"),
    )


class ScanRun(Base):
    """One detection run for a cluster. Completed runs back the recent-scan cache."""
    __tablename__ = "scan_runs"

    id:           Mapped[int]                = mapped_column(Integer, primary_key=True, index=True)
    cluster_id:   Mapped[int]                = mapped_column(Integer, ForeignKey("clusters.id"), nullable=False, index=True)
    trigger:      Mapped[ScanTrigger]        = mapped_column(SAEnum(ScanTrigger), nullable=False)
    status:       Mapped[ScanStatus]         = mapped_column(SAEnum(ScanStatus), default=ScanStatus.running)
    started_at:   Mapped[datetime]           = mapped_column(DateTime(timezone=True), default=utcnow)
    finished_at:  Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    issues_found: Mapped[int]                = mapped_column(Integer, default=0)
    new_issues:   Mapped[int]                = mapped_column(Integer, default=0)
    summary:      Mapped[Optional[str]]      = mapped_column(Text, nullable=True)
    issue_ids:    Mapped[list[Any]]          = mapped_column(JSON, default=list)
    error:        Mapped[Optional[str]]      = mapped_column(Text, nullable=True)


class DetectionLease(Base):
    """Per-cluster mutual-exclusion token; a run holds it until release or expires_at."""
    __tablename__ = "detection_leases"

    cluster_id:  Mapped[int]      = mapped_column(Integer, ForeignKey("clusters.id"), primary_key=True)
    holder:      Mapped[str]      = mapped_column(String(64), nullable=False)
    acquired_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    expires_at:  Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


# ── Policy ────────────────────────────────────────────────────────────────────

class Policy(Base):
    """
    Auto-remediation policy, one per cluster.
    Created with conservative defaults on first read; changed only by operators.
    """
    __tablename__ = "policies"

    cluster_id:               Mapped[int]             = mapped_column(Integer, ForeignKey("clusters.id"), primary_key=True)
    enabled:                  Mapped[bool]            = mapped_column(Boolean, default=False, nullable=False)
    category_auto_apply:      Mapped[dict[str, Any]]  = mapped_column(JSON, default=lambda: {"anomaly": False, "security": False})
    severity_threshold:       Mapped[Severity]        = mapped_column(SAEnum(Severity), default=Severity.high, nullable=False)
    require_approval:         Mapped[bool]            = mapped_column(Boolean, default=True, nullable=False)
    approval_timeout_minutes: Mapped[int]             = mapped_column(Integer, default=30, nullable=False)
    scan_interval_minutes:    Mapped[int]             = mapped_column(Integer, default=5, nullable=False)
    max_retries:              Mapped[int]             = mapped_column(Integer, default=3, nullable=False)
    updated_by:               Mapped[Optional[str]]   = mapped_column(String(255), nullable=True)
    created_at:               Mapped[datetime]        = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at:               Mapped[datetime]        = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


# ── Approvals ─────────────────────────────────────────────────────────────────

class ApprovalRequest(Base):
    """
    Human confirmation required before a remediation runs.
    Expiry is lazy on read and eager through the expiry sweep.
    On approval the command is created in the same transaction and command_id is set.
    """
    __tablename__ = "approval_requests"

    id:                Mapped[int]                        = mapped_column(Integer, primary_key=True, index=True)
    cluster_id:        Mapped[int]                        = mapped_column(Integer, ForeignKey("clusters.id"), nullable=False)
    issue_id:          Mapped[int]                        = mapped_column(Integer, ForeignKey("issues.id"), nullable=False)
    action_type:       Mapped[CommandType]                = mapped_column(SAEnum(CommandType), nullable=False)
    action_params:     Mapped[dict[str, Any]]             = mapped_column(JSON, default=dict)
    status:            Mapped[ApprovalStatus]             = mapped_column(SAEnum(ApprovalStatus), default=ApprovalStatus.pending, nullable=False)
    created_at:        Mapped[datetime]                   = mapped_column(DateTime(timezone=True), default=utcnow)
    expires_at:        Mapped[datetime]                   = mapped_column(DateTime(timezone=True), nullable=False)
    responded_at:      Mapped[Optional[datetime]]         = mapped_column(DateTime(timezone=True), nullable=True)
    responder_channel: Mapped[Optional[ResponderChannel]] = mapped_column(SAEnum(ResponderChannel), nullable=True)
    responded_by:      Mapped[Optional[str]]              = mapped_column(String(255), nullable=True)
    command_id:        Mapped[Optional[int]]              = mapped_column(Integer, ForeignKey("remediation_commands.id"), nullable=True)
    notification_ref:  Mapped[Optional[str]]              = mapped_column(String(255), nullable=True)

    __table_args__ = (
        Index("ix_approval_cluster_status", "cluster_id", "status"),
        Index(
            "uq_approval_one_pending",
            "cluster_id", "issue_id",
            unique=True,
            postgresql_where=text("status = 'pending'"),
            sqlite_where=text("status = 'pending'"),
        ),
    )


# ── Commands ──────────────────────────────────────────────────────────────────

class RemediationCommand(Base):
    """
    A unit of work for the in-cluster agent.
    The agent moves executing -> completed | failed; the orchestrator only creates
    pending rows and re-arms failed ones through the retry sweep.
    """
    __tablename__ = "remediation_commands"

    id:            Mapped[int]                      = mapped_column(Integer, primary_key=True, index=True)
    cluster_id:    Mapped[int]                      = mapped_column(Integer, ForeignKey("clusters.id"), nullable=False)
    issue_id:      Mapped[Optional[int]]            = mapped_column(Integer, ForeignKey("issues.id"), nullable=True)
    approval_id:   Mapped[Optional[int]]            = mapped_column(Integer, nullable=True)
    command_type:  Mapped[CommandType]              = mapped_column(SAEnum(CommandType), nullable=False)
    params:        Mapped[dict[str, Any]]           = mapped_column(JSON, default=dict)
    status:        Mapped[CommandStatus]            = mapped_column(SAEnum(CommandStatus), default=CommandStatus.pending, nullable=False)
    retry_count:   Mapped[int]                      = mapped_column(Integer, default=0, nullable=False)
    max_retries:   Mapped[int]                      = mapped_column(Integer, default=3, nullable=False)
    next_retry_at: Mapped[Optional[datetime]]       = mapped_column(DateTime(timezone=True), nullable=True)
    result:        Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)
    error_message: Mapped[Optional[str]]            = mapped_column(Text, nullable=True)
    created_at:    Mapped[datetime]                 = mapped_column(DateTime(timezone=True), default=utcnow)
    executed_at:   Mapped[Optional[datetime]]       = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at:  Mapped[Optional[datetime]]       = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_command_cluster_status", "cluster_id", "status"),
        Index("ix_command_retry", "status", "next_retry_at"),
    )


# ── Rate limiting ─────────────────────────────────────────────────────────────

class RateLimitHit(Base):
    """One counted request for the database-backed sliding window store."""
    __tablename__ = "rate_limit_hits"

    id:     Mapped[int]      = mapped_column(Integer, primary_key=True)
    key:    Mapped[str]      = mapped_column(String(255), nullable=False)
    hit_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_rate_limit_key_hit", "key", "hit_at"),
    )


# ── Notifications and audit ───────────────────────────────────────────────────

class Notification(Base):
    """User-visible notification (new high/critical issue, approval request, retry, terminal failure)."""
    __tablename__ = "notifications"

    id:          Mapped[int]           = mapped_column(Integer, primary_key=True, index=True)
    cluster_id:  Mapped[Optional[int]] = mapped_column(Integer, ForeignKey("clusters.id"), nullable=True)
    owner_id:    Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    title:       Mapped[str]           = mapped_column(String(255), nullable=False)
    message:     Mapped[str]           = mapped_column(Text, nullable=False)
    level:       Mapped[str]           = mapped_column(String(16), default="info")
    entity_type: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    entity_id:   Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    read:        Mapped[bool]          = mapped_column(Boolean, default=False)
    created_at:  Mapped[datetime]      = mapped_column(DateTime(timezone=True), default=utcnow, index=True)


class AuditLog(Base):
    """
    Immutable audit trail for operator actions (policy change, approval response, issue status).
    Resource is a short "type:id" reference (e.g. "approval:42", "policy:7").
    """
    __tablename__ = "audit_logs"

    id:         Mapped[int]            = mapped_column(Integer, primary_key=True, index=True)
    cluster_id: Mapped[Optional[int]]  = mapped_column(Integer, ForeignKey("clusters.id"), nullable=True, index=True)
    actor:      Mapped[str]            = mapped_column(String(255), nullable=False)
    action:     Mapped[str]            = mapped_column(String(255), nullable=False)
    resource:   Mapped[Optional[str]]  = mapped_column(String(255), nullable=True)
    detail:     Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    timestamp:  Mapped[datetime]       = mapped_column(DateTime(timezone=True), default=utcnow, index=True)

    __table_args__ = (
        Index("ix_audit_log_actor_ts", "actor", "timestamp"),
    )
