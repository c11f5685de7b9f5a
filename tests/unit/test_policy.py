"""
Unit tests for the policy gate, action planning and the detection → remediation hand-off.
"""

import pytest

from kubeheal.services.remediation.actions import DEFAULT_REPLICAS, deployment_from_pod, plan_action
from kubeheal.services.remediation.orchestrator import handle_new_issue
from kubeheal.services.remediation.policy import (
    PolicyOutcome, evaluate, get_or_create_policy, severity_at_least,
)
from kubeheal.services.shared.models import (
    ApprovalRequest, ApprovalStatus, AuditLog, CommandStatus, CommandType, Issue,
    IssueCategory, IssueStatus, Policy, RemediationCommand, Severity,
)

from factories import make_cluster, make_issue, make_policy


def _policy(**overrides) -> Policy:
    values = {
        "cluster_id": 1,
        "enabled": True,
        "category_auto_apply": {"anomaly": True, "security": True},
        "severity_threshold": Severity.high,
        "require_approval": False,
        "approval_timeout_minutes": 30,
        "scan_interval_minutes": 5,
        "max_retries": 3,
    }
    values.update(overrides)
    return Policy(**values)


def _issue(kind="crash_loop_backoff", resource="shop/api-7d9f8c6b5-x2k4p", analysis=None, **overrides) -> Issue:
    values = {
        "cluster_id": 1,
        "category": IssueCategory.anomaly,
        "kind": kind,
        "severity": Severity.critical,
        "status": IssueStatus.active,
        "dedup_key": f"{kind}|{resource}",
        "affected_resource": resource,
        "description": "test issue",
        "analysis": analysis if analysis is not None else {},
    }
    values.update(overrides)
    return Issue(**values)


@pytest.fixture
def cluster(db):
    return make_cluster(db)


# ── evaluate ───────────────────────────────────────────────────────────────────

@pytest.mark.parametrize("severity,threshold,expected", [
    (Severity.critical, Severity.high, True),
    (Severity.high, Severity.high, True),
    (Severity.medium, Severity.high, False),
    (Severity.low, Severity.low, True),
])
def test_severity_at_least(severity, threshold, expected):
    assert severity_at_least(severity, threshold) is expected


def test_evaluate_disabled_policy():
    decision = evaluate(_issue(), _policy(enabled=False))
    assert decision.outcome == PolicyOutcome.ignore
    assert decision.reason == "policy_disabled"


def test_evaluate_category_disabled():
    policy = _policy(category_auto_apply={"anomaly": False, "security": True})
    assert evaluate(_issue(), policy).reason == "category_disabled"


def test_evaluate_missing_category_counts_as_disabled():
    policy = _policy(category_auto_apply={"anomaly": True})
    issue = _issue(category=IssueCategory.security)
    assert evaluate(issue, policy).reason == "category_disabled"


def test_evaluate_below_threshold():
    decision = evaluate(_issue(severity=Severity.medium), _policy())
    assert decision.outcome == PolicyOutcome.ignore
    assert decision.reason == "below_threshold"


def test_evaluate_closed_issue():
    decision = evaluate(_issue(status=IssueStatus.mitigated), _policy())
    assert decision.reason == "issue_not_active"


def test_evaluate_dispatch_and_approval():
    assert evaluate(_issue(), _policy()).outcome == PolicyOutcome.dispatch
    decision = evaluate(_issue(), _policy(require_approval=True))
    assert decision.outcome == PolicyOutcome.request_approval
    assert decision.reason == "approval_required"


def test_get_or_create_policy_defaults_are_conservative(db, cluster):
    policy = get_or_create_policy(db, cluster.id)
    db.commit()
    assert policy.enabled is False
    assert policy.category_auto_apply == {"anomaly": False, "security": False}
    assert policy.severity_threshold == Severity.high
    assert policy.require_approval is True
    assert policy.approval_timeout_minutes == 30
    assert policy.max_retries == 3
    # Second call returns the same row
    assert get_or_create_policy(db, cluster.id) is policy


# ── plan_action ────────────────────────────────────────────────────────────────

def test_deployment_from_pod():
    assert deployment_from_pod("api-7d9f8c6b5-x2k4p") == "api"
    assert deployment_from_pod("payments-worker-6c8d7f9b4-qz8rt") == "payments-worker"


def test_plan_restart_for_crash_loop():
    planned = plan_action(_issue())
    assert planned.command_type == CommandType.restart_pod
    assert planned.params == {
        "pod_name": "api-7d9f8c6b5-x2k4p",
        "namespace": "shop",
        "reason": "auto_heal_crash_loop_backoff",
    }


def test_plan_scale_for_high_cpu():
    planned = plan_action(_issue(kind="high_cpu", resource="shop/web-5f7b9c4d8-abcde"))
    assert planned.command_type == CommandType.scale_deployment
    assert planned.params["deployment_name"] == "web"
    assert planned.params["replicas"] == DEFAULT_REPLICAS


def test_plan_resources_for_oom_merges_defaults():
    issue = _issue(
        kind="oom_killed",
        resource="payments/payments-6c8d7f9b4-qz8rt",
        analysis={"action_params": {"memory_limit": "2Gi"}},
    )
    planned = plan_action(issue)
    assert planned.command_type == CommandType.update_deployment_resources
    assert planned.params["deployment_name"] == "payments"
    assert planned.params["container_name"] == "payments"
    assert planned.params["memory_limit"] == "2Gi"
    assert planned.params["memory_request"] == "512Mi"
    assert planned.params["cpu_limit"] == "1000m"


def test_plan_image_pull_error_with_and_without_new_image():
    with_image = plan_action(_issue(
        kind="image_pull_error",
        analysis={"action_params": {"new_image": "registry/api:1.4.2", "container_name": "api"}},
    ))
    assert with_image.command_type == CommandType.update_deployment_image
    assert with_image.params["new_image"] == "registry/api:1.4.2"

    without = plan_action(_issue(kind="image_pull_error"))
    assert without.command_type == CommandType.restart_pod


def test_plan_falls_back_to_suggested_action():
    issue = _issue(
        kind="traffic_spike",
        resource="shop/web-5f7b9c4d8-abcde",
        analysis={"suggested_action": "scale_up", "action_params": {"replicas": 5}},
    )
    planned = plan_action(issue)
    assert planned.command_type == CommandType.scale_deployment
    assert planned.params["replicas"] == 5
    assert planned.params["deployment_name"] == "web"


def test_plan_unsupported_suggestion_is_none():
    issue = _issue(kind="node_not_ready", analysis={"suggested_action": "drain_node"})
    assert plan_action(issue) is None


def test_plan_without_target_is_none():
    assert plan_action(_issue(resource=None)) is None


# ── handle_new_issue ───────────────────────────────────────────────────────────

def test_disabled_policy_produces_no_work(db, cluster):
    """Auto-remediation off: critical anomaly yields no command and no approval."""
    make_policy(db, cluster.id, enabled=False)
    issue = make_issue(db, cluster.id)

    result = handle_new_issue(db, issue)

    assert result.outcome == PolicyOutcome.ignore
    assert result.reason == "policy_disabled"
    assert db.query(RemediationCommand).count() == 0
    assert db.query(ApprovalRequest).count() == 0


def test_issue_below_threshold_is_ignored(db, cluster):
    make_policy(db, cluster.id, severity_threshold=Severity.high)
    issue = make_issue(db, cluster.id, severity=Severity.medium)

    result = handle_new_issue(db, issue)

    assert result.reason == "below_threshold"
    assert db.query(RemediationCommand).count() == 0
    assert db.query(ApprovalRequest).count() == 0


def test_approval_required_creates_single_pending_request(db, cluster):
    make_policy(db, cluster.id, severity_threshold=Severity.medium, require_approval=True)
    issue = make_issue(db, cluster.id, severity=Severity.high)

    first = handle_new_issue(db, issue)
    second = handle_new_issue(db, issue)

    assert first.outcome == PolicyOutcome.request_approval
    assert second.approval_id == first.approval_id
    approvals = db.query(ApprovalRequest).all()
    assert len(approvals) == 1
    assert approvals[0].status == ApprovalStatus.pending
    assert approvals[0].action_type == CommandType.restart_pod
    assert db.query(RemediationCommand).count() == 0


def test_auto_apply_dispatches_command(db, cluster):
    make_policy(db, cluster.id, max_retries=5)
    issue = make_issue(db, cluster.id)

    result = handle_new_issue(db, issue)

    assert result.outcome == PolicyOutcome.dispatch
    command = db.get(RemediationCommand, result.command_id)
    assert command.status == CommandStatus.pending
    assert command.issue_id == issue.id
    assert command.max_retries == 5
    audit = db.query(AuditLog).filter_by(action="command_dispatched").one()
    assert audit.cluster_id == cluster.id
    assert audit.resource == f"command:{command.id}"


def test_unplannable_issue_is_ignored(db, cluster):
    make_policy(db, cluster.id)
    issue = make_issue(db, cluster.id, kind="node_not_ready", affected_resource=None,
                       analysis={"suggested_action": None})

    result = handle_new_issue(db, issue)

    assert result.outcome == PolicyOutcome.ignore
    assert result.reason == "no_action"
    assert db.query(RemediationCommand).count() == 0


def test_first_issue_creates_default_policy(db, cluster):
    issue = make_issue(db, cluster.id)
    result = handle_new_issue(db, issue)
    assert result.reason == "policy_disabled"
    assert db.get(Policy, cluster.id) is not None
