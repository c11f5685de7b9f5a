"""
Pydantic request/response schemas for all KubeHeal services.
All API responses use these schemas for type safety and documentation.
Datetimes are always emitted as UTC with an explicit offset.
"""

from datetime import datetime
from typing import Annotated, Any, Literal, Optional

from pydantic import AfterValidator, BaseModel, ConfigDict, Field

from kubeheal.services.shared.models import (
    ApprovalStatus, CommandStatus, CommandType, IssueCategory, IssueStatus,
    ResponderChannel, Severity,
)
from kubeheal.services.shared.timeutil import as_utc

UtcDatetime = Annotated[datetime, AfterValidator(as_utc)]


# ── Telemetry ingestion ───────────────────────────────────────────────────────

class TelemetryRecordIn(BaseModel):
    """One record of an ingestion batch. Validated individually so one bad record never fails the batch."""
    kind:         str = Field(..., min_length=1, max_length=64)
    payload:      dict[str, Any]
    collected_at: Optional[UtcDatetime] = None


class IngestTelemetryRequest(BaseModel):
    records: list[Any]


class RejectedRecord(BaseModel):
    index:  int
    kind:   Optional[str] = None
    reason: str


class IngestTelemetryResponse(BaseModel):
    accepted:         int
    rejected:         int
    rejected_details: Optional[list[RejectedRecord]] = None


# ── Agent command surface ─────────────────────────────────────────────────────

class AgentCommandOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id:           int
    command_type: CommandType
    params:       dict[str, Any]
    retry_count:  int
    created_at:   UtcDatetime


class CommandReportRequest(BaseModel):
    command_id:    int
    status:        Literal["completed", "failed"]
    result:        Optional[dict[str, Any]] = None
    error_message: Optional[str] = Field(None, max_length=4000)


class CommandOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id:            int
    cluster_id:    int
    issue_id:      Optional[int]
    approval_id:   Optional[int]
    command_type:  CommandType
    params:        dict[str, Any]
    status:        CommandStatus
    retry_count:   int
    max_retries:   int
    next_retry_at: Optional[UtcDatetime]
    result:        Optional[dict[str, Any]]
    error_message: Optional[str]
    created_at:    UtcDatetime
    executed_at:   Optional[UtcDatetime]
    completed_at:  Optional[UtcDatetime]
    terminal:      bool = False


class RetrySweepOut(BaseModel):
    retried:           int
    skipped:           int
    failed_to_requeue: int


# ── Detection ─────────────────────────────────────────────────────────────────

class AnalysisTriggerRequest(BaseModel):
    cluster_id: int
    force:      bool = False


class IssueOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id:                int
    cluster_id:        int
    category:          IssueCategory
    kind:              str
    severity:          Severity
    status:            IssueStatus
    dedup_key:         str
    affected_resource: Optional[str]
    description:       str
    recommendation:    Optional[str]
    evidence:          list[Any]
    analysis:          dict[str, Any]
    scan_id:           Optional[int]
    detected_at:       UtcDatetime
    resolved_at:       Optional[UtcDatetime]


class AnalysisResponse(BaseModel):
    scan_id:      Optional[int]
    issues_found: int
    new_issues:   int
    issues:       list[IssueOut]
    summary:      str
    cached:       bool = False


class IssueStatusUpdate(BaseModel):
    status: IssueStatus
    note:   Optional[str] = Field(None, max_length=1000)


# ── Policy ────────────────────────────────────────────────────────────────────

class PolicyOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    cluster_id:               int
    enabled:                  bool
    category_auto_apply:      dict[str, bool]
    severity_threshold:       Severity
    require_approval:         bool
    approval_timeout_minutes: int
    scan_interval_minutes:    int
    max_retries:              int
    updated_by:               Optional[str]
    updated_at:               UtcDatetime


class PolicyUpdate(BaseModel):
    enabled:                  Optional[bool]            = None
    category_auto_apply:      Optional[dict[IssueCategory, bool]] = None
    severity_threshold:       Optional[Severity]        = None
    require_approval:         Optional[bool]            = None
    approval_timeout_minutes: Optional[int]             = Field(None, ge=1, le=1440)
    scan_interval_minutes:    Optional[int]             = Field(None, ge=1, le=1440)
    max_retries:              Optional[int]             = Field(None, ge=0, le=10)


# ── Approvals ─────────────────────────────────────────────────────────────────

class ApprovalOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id:                int
    cluster_id:        int
    issue_id:          int
    action_type:       CommandType
    action_params:     dict[str, Any]
    status:            ApprovalStatus
    created_at:        UtcDatetime
    expires_at:        UtcDatetime
    responded_at:      Optional[UtcDatetime]
    responder_channel: Optional[ResponderChannel]
    responded_by:      Optional[str]
    command_id:        Optional[int]


class ApprovalDecisionRequest(BaseModel):
    approval_id:       int
    decision:          Literal["approve", "reject"]
    responder_channel: ResponderChannel = ResponderChannel.web


class ApprovalDecisionOut(BaseModel):
    approval:   ApprovalOut
    changed:    bool
    command_id: Optional[int] = None


class ApprovalSweepOut(BaseModel):
    expired: int


# ── Notifications ─────────────────────────────────────────────────────────────

class NotificationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id:          int
    cluster_id:  Optional[int]
    title:       str
    message:     str
    level:       str
    entity_type: Optional[str]
    entity_id:   Optional[int]
    read:        bool
    created_at:  UtcDatetime
