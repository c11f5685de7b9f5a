"""
Approval workflow.

  pending → approved → executed   (command created in the same transaction)
  pending → rejected
  pending → expired               (now > expires_at)

Expiry is applied lazily whenever a request is read and eagerly by
expire_stale_approvals(). Every transition is a conditional update on the
current status, so a response racing the sweep (or a second responder)
cannot move a request twice. Responding to a request that is already
terminal reports its state with changed=False.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

import structlog
from sqlalchemy.exc import IntegrityError

from kubeheal.services.shared.errors import NotFoundError
from kubeheal.services.shared.models import (
    APPROVAL_TERMINAL, ApprovalRequest, ApprovalStatus, Cluster, Issue, Policy,
    ResponderChannel,
)
from kubeheal.services.shared.notifications import emit_audit, notify
from kubeheal.services.shared.timeutil import as_utc, utcnow
from kubeheal.services.remediation.actions import PlannedAction
from kubeheal.services.remediation.dispatcher import create_command
from kubeheal.services.remediation.notifier import ApprovalNotifier
from kubeheal.services.remediation.policy import get_or_create_policy

logger = structlog.get_logger()


@dataclass
class ApprovalDecisionResult:
    approval:   ApprovalRequest
    changed:    bool
    command_id: Optional[int] = None


def is_expired(approval: ApprovalRequest, now: Optional[datetime] = None) -> bool:
    now = now or utcnow()
    return approval.status == ApprovalStatus.pending and now > as_utc(approval.expires_at)


def effective_status(approval: ApprovalRequest, now: Optional[datetime] = None) -> ApprovalStatus:
    return ApprovalStatus.expired if is_expired(approval, now) else approval.status


def _expire_one(db, approval: ApprovalRequest, now: datetime) -> None:
    moved = (
        db.query(ApprovalRequest)
        .filter(
            ApprovalRequest.id == approval.id,
            ApprovalRequest.status == ApprovalStatus.pending,
            ApprovalRequest.expires_at < now,
        )
        .update({"status": ApprovalStatus.expired}, synchronize_session=False)
    )
    db.commit()
    db.refresh(approval)
    if moved:
        logger.info("approval_expired", approval_id=approval.id, lazy=True)


def _find_pending(db, cluster_id: int, issue_id: int) -> Optional[ApprovalRequest]:
    return (
        db.query(ApprovalRequest)
        .filter_by(cluster_id=cluster_id, issue_id=issue_id, status=ApprovalStatus.pending)
        .first()
    )


def request_approval(
    db,
    issue: Issue,
    planned: PlannedAction,
    policy: Policy,
    notifier: Optional[ApprovalNotifier] = None,
    now: Optional[datetime] = None,
) -> ApprovalRequest:
    """
    Create the pending request for an issue, or return the live one that already exists.
    Commits.
    """
    now = now or utcnow()

    existing = _find_pending(db, issue.cluster_id, issue.id)
    if existing is not None:
        if not is_expired(existing, now):
            return existing
        _expire_one(db, existing, now)

    approval = ApprovalRequest(
        cluster_id=issue.cluster_id,
        issue_id=issue.id,
        action_type=planned.command_type,
        action_params=planned.params,
        status=ApprovalStatus.pending,
        created_at=now,
        expires_at=now + timedelta(minutes=policy.approval_timeout_minutes),
    )
    db.add(approval)
    try:
        db.flush()
    except IntegrityError:
        db.rollback()
        existing = _find_pending(db, issue.cluster_id, issue.id)
        if existing is None:
            raise
        logger.info("approval_already_pending", approval_id=existing.id, issue_id=issue.id)
        return existing

    notify(
        db,
        cluster_id=issue.cluster_id,
        title="Approval required",
        message=(
            f"{planned.command_type.value} for {issue.kind} "
            f"({issue.severity.value}) on {issue.affected_resource or 'cluster'}"
        ),
        level="warning",
        entity_type="approval",
        entity_id=approval.id,
    )
    emit_audit(
        db,
        cluster_id=issue.cluster_id,
        actor="orchestrator",
        action="approval_requested",
        resource=f"approval:{approval.id}",
        detail={
            "issue_id": issue.id,
            "action_type": planned.command_type.value,
            "expires_at": as_utc(approval.expires_at).isoformat(),
        },
    )
    db.commit()
    db.refresh(approval)
    logger.info(
        "approval_requested",
        approval_id=approval.id,
        cluster_id=approval.cluster_id,
        issue_id=issue.id,
        action_type=planned.command_type.value,
    )

    if notifier is not None and notifier.enabled:
        ref = notifier.send(approval, issue)
        if ref:
            approval.notification_ref = ref
            db.commit()
            db.refresh(approval)
    return approval


def get_approval(db, approval_id: int, owner_id: str, now: Optional[datetime] = None) -> ApprovalRequest:
    """Load an approval of a cluster the operator owns; stale pending rows are expired first."""
    now = now or utcnow()
    approval = (
        db.query(ApprovalRequest)
        .join(Cluster, Cluster.id == ApprovalRequest.cluster_id)
        .filter(ApprovalRequest.id == approval_id, Cluster.owner_id == owner_id)
        .first()
    )
    if approval is None:
        raise NotFoundError(f"Approval {approval_id} not found")
    if is_expired(approval, now):
        _expire_one(db, approval, now)
    return approval


def respond(
    db,
    approval_id: int,
    decision: str,
    channel: ResponderChannel,
    responder: str,
    owner_id: str,
    now: Optional[datetime] = None,
) -> ApprovalDecisionResult:
    now = now or utcnow()
    approval = get_approval(db, approval_id, owner_id, now)

    if approval.status in APPROVAL_TERMINAL or approval.status == ApprovalStatus.approved:
        logger.info(
            "approval_response_ignored",
            approval_id=approval_id,
            status=approval.status.value,
            decision=decision,
        )
        return ApprovalDecisionResult(approval, changed=False, command_id=approval.command_id)

    responded = {
        "responded_at":      now,
        "responder_channel": channel,
        "responded_by":      responder,
    }
    target = ApprovalStatus.approved if decision == "approve" else ApprovalStatus.rejected
    moved = (
        db.query(ApprovalRequest)
        .filter(
            ApprovalRequest.id == approval_id,
            ApprovalRequest.status == ApprovalStatus.pending,
            ApprovalRequest.expires_at >= now,
        )
        .update({"status": target, **responded}, synchronize_session=False)
    )
    if moved != 1:
        db.rollback()
        db.refresh(approval)
        if is_expired(approval, now):
            _expire_one(db, approval, now)
        return ApprovalDecisionResult(approval, changed=False, command_id=approval.command_id)

    db.refresh(approval)
    command_id = None

    if target == ApprovalStatus.approved:
        policy = get_or_create_policy(db, approval.cluster_id)
        command = create_command(
            db,
            cluster_id=approval.cluster_id,
            command_type=approval.action_type,
            params=dict(approval.action_params or {}),
            issue_id=approval.issue_id,
            approval_id=approval.id,
            max_retries=policy.max_retries,
        )
        command_id = command.id
        db.query(ApprovalRequest).filter(
            ApprovalRequest.id == approval_id,
            ApprovalRequest.status == ApprovalStatus.approved,
        ).update(
            {"status": ApprovalStatus.executed, "command_id": command_id},
            synchronize_session=False,
        )

    emit_audit(
        db,
        cluster_id=approval.cluster_id,
        actor=responder,
        action=f"approval_{'approved' if target == ApprovalStatus.approved else 'rejected'}",
        resource=f"approval:{approval_id}",
        detail={
            "channel": channel.value,
            "issue_id": approval.issue_id,
            "command_id": command_id,
        },
    )
    db.commit()
    db.refresh(approval)

    logger.info(
        "approval_responded",
        approval_id=approval_id,
        decision=decision,
        channel=channel.value,
        status=approval.status.value,
        command_id=command_id,
    )
    return ApprovalDecisionResult(approval, changed=True, command_id=command_id)


def expire_stale_approvals(db, now: Optional[datetime] = None, cluster_ids: Optional[list[int]] = None) -> int:
    """Eager expiry sweep, over every cluster unless cluster_ids narrows it."""
    now = now or utcnow()
    q = db.query(ApprovalRequest).filter(
        ApprovalRequest.status == ApprovalStatus.pending,
        ApprovalRequest.expires_at < now,
    )
    if cluster_ids is not None:
        q = q.filter(ApprovalRequest.cluster_id.in_(cluster_ids))
    count = (
        q.update({"status": ApprovalStatus.expired}, synchronize_session=False)
    )
    db.commit()
    if count:
        logger.info("approvals_expired", count=count)
    return count
