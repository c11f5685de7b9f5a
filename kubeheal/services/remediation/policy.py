"""
Policy gate.

evaluate() is a pure function of (issue, policy): it never touches the store.
Outcomes:
  ignore            - policy_disabled | category_disabled | below_threshold | issue_not_active
  dispatch          - auto_apply
  request_approval  - approval_required
"""

import enum
from dataclasses import dataclass

import structlog

from kubeheal.services.shared.models import (
    Issue, IssueStatus, Policy, SEVERITY_ORDER, Severity,
)

logger = structlog.get_logger()

DEFAULT_CATEGORY_AUTO_APPLY = {"anomaly": False, "security": False}


class PolicyOutcome(str, enum.Enum):
    ignore           = "ignore"
    dispatch         = "dispatch"
    request_approval = "request_approval"


@dataclass(frozen=True)
class PolicyDecision:
    outcome: PolicyOutcome
    reason:  str


def severity_at_least(severity: Severity, threshold: Severity) -> bool:
    return SEVERITY_ORDER[Severity(severity)] >= SEVERITY_ORDER[Severity(threshold)]


def evaluate(issue: Issue, policy: Policy) -> PolicyDecision:
    if not policy.enabled:
        return PolicyDecision(PolicyOutcome.ignore, "policy_disabled")

    category = issue.category.value if hasattr(issue.category, "value") else str(issue.category)
    if not (policy.category_auto_apply or {}).get(category, False):
        return PolicyDecision(PolicyOutcome.ignore, "category_disabled")

    if not severity_at_least(issue.severity, policy.severity_threshold):
        return PolicyDecision(PolicyOutcome.ignore, "below_threshold")

    if issue.status != IssueStatus.active:
        return PolicyDecision(PolicyOutcome.ignore, "issue_not_active")

    if policy.require_approval:
        return PolicyDecision(PolicyOutcome.request_approval, "approval_required")
    return PolicyDecision(PolicyOutcome.dispatch, "auto_apply")


def get_or_create_policy(db, cluster_id: int) -> Policy:
    """Return the cluster policy, inserting the conservative defaults on first use."""
    policy = db.get(Policy, cluster_id)
    if policy is not None:
        return policy

    policy = Policy(
        cluster_id=cluster_id,
        enabled=False,
        category_auto_apply=dict(DEFAULT_CATEGORY_AUTO_APPLY),
        severity_threshold=Severity.high,
        require_approval=True,
        approval_timeout_minutes=30,
        scan_interval_minutes=5,
        max_retries=3,
    )
    db.add(policy)
    db.flush()
    logger.info("policy_created_with_defaults", cluster_id=cluster_id)
    return policy
