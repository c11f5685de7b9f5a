"""
Hand-off from detection to remediation for a newly inserted issue:
policy → decision → planned action → command or approval request.
"""

from dataclasses import dataclass
from typing import Optional

import structlog

from kubeheal.services.shared.models import Issue
from kubeheal.services.shared.notifications import emit_audit
from kubeheal.services.remediation.actions import plan_action
from kubeheal.services.remediation.approvals import request_approval
from kubeheal.services.remediation.dispatcher import create_command
from kubeheal.services.remediation.notifier import ApprovalNotifier
from kubeheal.services.remediation.policy import PolicyOutcome, evaluate, get_or_create_policy

logger = structlog.get_logger()


@dataclass
class HandoffResult:
    outcome:     PolicyOutcome
    reason:      str
    command_id:  Optional[int] = None
    approval_id: Optional[int] = None


def handle_new_issue(db, issue: Issue, notifier: Optional[ApprovalNotifier] = None) -> HandoffResult:
    policy = get_or_create_policy(db, issue.cluster_id)
    db.commit()

    decision = evaluate(issue, policy)
    log = logger.bind(issue_id=issue.id, cluster_id=issue.cluster_id, kind=issue.kind,
                      severity=issue.severity.value)

    if decision.outcome == PolicyOutcome.ignore:
        log.info("policy_ignored_issue", reason=decision.reason)
        return HandoffResult(decision.outcome, decision.reason)

    planned = plan_action(issue)
    if planned is None:
        log.info("no_action_planned", outcome=decision.outcome.value)
        return HandoffResult(PolicyOutcome.ignore, "no_action")

    if decision.outcome == PolicyOutcome.dispatch:
        command = create_command(
            db,
            cluster_id=issue.cluster_id,
            command_type=planned.command_type,
            params=planned.params,
            issue_id=issue.id,
            max_retries=policy.max_retries,
        )
        emit_audit(
            db,
            cluster_id=issue.cluster_id,
            actor="orchestrator",
            action="command_dispatched",
            resource=f"command:{command.id}",
            detail={"issue_id": issue.id, "command_type": planned.command_type.value},
        )
        db.commit()
        log.info("issue_dispatched", command_id=command.id, command_type=planned.command_type.value)
        return HandoffResult(decision.outcome, decision.reason, command_id=command.id)

    approval = request_approval(db, issue, planned, policy, notifier=notifier)
    log.info("issue_awaiting_approval", approval_id=approval.id)
    return HandoffResult(decision.outcome, decision.reason, approval_id=approval.id)
