"""
Route tests for the operator-facing surfaces of the detections and
remediation services, plus the one-shot sweep entry points.
Uses SQLite in-memory database and FastAPI TestClient - no docker required.
"""

import json
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from kubeheal.scripts import run_sweeps
from kubeheal.services.detections.classifier import decode_candidates
from kubeheal.services.detections.dedup import acquire_lease
from kubeheal.services.detections.main import app as detections_app
from kubeheal.services.detections.routes_analysis import get_classifier, get_notifier
from kubeheal.services.remediation.main import app as remediation_app, run_sweeps_once
from kubeheal.services.remediation.notifier import ApprovalNotifier
from kubeheal.services.remediation.orchestrator import handle_new_issue
from kubeheal.services.shared.errors import TransientError
from kubeheal.services.shared.models import (
    ApprovalStatus, AuditLog, CommandStatus, IssueStatus, RemediationCommand, Severity,
    TelemetryRecord,
)
from kubeheal.services.shared.timeutil import utcnow

from factories import make_approval, make_cluster, make_command, make_issue, make_policy

ALICE = {"X-Operator-Id": "alice"}
MALLORY = {"X-Operator-Id": "mallory"}


class StubClassifier:
    def __init__(self, items=None, error=None):
        self.items = items or []
        self.error = error

    def classify(self, cluster_summary):
        if self.error is not None:
            raise self.error
        return decode_candidates(json.dumps({"summary": "stub", "issues": self.items}))


@pytest.fixture
def remediation(override_db):
    remediation_app.dependency_overrides.update(override_db)
    yield TestClient(remediation_app)
    remediation_app.dependency_overrides.clear()


@pytest.fixture
def detections(override_db):
    stub = StubClassifier(items=[{
        "category": "anomaly",
        "kind": "crash_loop_backoff",
        "severity": "critical",
        "description": "api pod is in CrashLoopBackOff",
        "affected_resource": "shop/api-7d9f8c6b5-x2k4p",
    }])
    detections_app.dependency_overrides.update(override_db)
    detections_app.dependency_overrides[get_classifier] = lambda: stub
    detections_app.dependency_overrides[get_notifier] = lambda: ApprovalNotifier(url="")
    yield TestClient(detections_app), stub
    detections_app.dependency_overrides.clear()


@pytest.fixture
def cluster(db):
    return make_cluster(db, owner="alice")


# ── Policies ───────────────────────────────────────────────────────────────────

def test_get_policy_returns_defaults(remediation, cluster):
    r = remediation.get(f"/api/policies/{cluster.id}", headers=ALICE)
    assert r.status_code == 200
    body = r.json()
    assert body["enabled"] is False
    assert body["category_auto_apply"] == {"anomaly": False, "security": False}
    assert body["severity_threshold"] == "high"
    assert body["require_approval"] is True


def test_put_policy_merges_and_audits(remediation, cluster, db):
    r = remediation.put(
        f"/api/policies/{cluster.id}",
        json={"enabled": True, "category_auto_apply": {"anomaly": True}, "severity_threshold": "medium"},
        headers=ALICE,
    )
    assert r.status_code == 200
    body = r.json()
    assert body["enabled"] is True
    assert body["category_auto_apply"] == {"anomaly": True, "security": False}
    assert body["severity_threshold"] == "medium"
    assert body["updated_by"] == "alice"

    audit = db.query(AuditLog).filter_by(action="policy_updated").one()
    assert audit.actor == "alice"
    assert audit.detail["before"]["enabled"] is False
    assert audit.detail["after"]["severity_threshold"] == "medium"


def test_put_policy_rejects_out_of_range_values(remediation, cluster):
    r = remediation.put(f"/api/policies/{cluster.id}", json={"max_retries": 50}, headers=ALICE)
    assert r.status_code == 422


def test_policy_of_foreign_cluster_is_404(remediation, cluster):
    assert remediation.get(f"/api/policies/{cluster.id}", headers=MALLORY).status_code == 404
    assert remediation.put(f"/api/policies/{cluster.id}", json={"enabled": True},
                           headers=MALLORY).status_code == 404


# ── Approvals ──────────────────────────────────────────────────────────────────

def test_approve_through_api(remediation, cluster, db):
    approval = make_approval(db, make_issue(db, cluster.id))

    r = remediation.post(
        "/api/approvals/respond",
        json={"approval_id": approval.id, "decision": "approve", "responder_channel": "messaging"},
        headers=ALICE,
    )
    assert r.status_code == 200
    body = r.json()
    assert body["changed"] is True
    assert body["approval"]["status"] == "executed"
    assert body["approval"]["responder_channel"] == "messaging"
    assert body["command_id"] == body["approval"]["command_id"]

    again = remediation.post(
        "/api/approvals/respond",
        json={"approval_id": approval.id, "decision": "approve"},
        headers=ALICE,
    ).json()
    assert again["changed"] is False
    assert db.query(RemediationCommand).count() == 1


def test_respond_to_foreign_approval_is_404(remediation, cluster, db):
    approval = make_approval(db, make_issue(db, cluster.id))
    r = remediation.post("/api/approvals/respond",
                         json={"approval_id": approval.id, "decision": "reject"}, headers=MALLORY)
    assert r.status_code == 404


def test_respond_with_unknown_decision_is_422(remediation, cluster, db):
    approval = make_approval(db, make_issue(db, cluster.id))
    r = remediation.post("/api/approvals/respond",
                         json={"approval_id": approval.id, "decision": "maybe"}, headers=ALICE)
    assert r.status_code == 422


def test_list_approvals_expires_stale_rows(remediation, cluster, db):
    make_approval(db, make_issue(db, cluster.id), expires_in_minutes=-1)
    r = remediation.get("/api/approvals", params={"cluster_id": cluster.id}, headers=ALICE)
    assert r.status_code == 200
    assert [a["status"] for a in r.json()] == ["expired"]
    assert remediation.get("/api/approvals", headers=MALLORY).json() == []


def test_read_single_approval(remediation, cluster, db):
    approval = make_approval(db, make_issue(db, cluster.id))
    r = remediation.get(f"/api/approvals/{approval.id}", headers=ALICE)
    assert r.status_code == 200
    assert r.json()["status"] == ApprovalStatus.pending.value
    assert r.json()["expires_at"].endswith(("Z", "+00:00"))
    assert remediation.get(f"/api/approvals/{approval.id}", headers=MALLORY).status_code == 404


def test_approval_sweep_endpoint_only_touches_own_clusters(remediation, cluster, db):
    other = make_cluster(db, owner="bob", name="other")
    make_approval(db, make_issue(db, cluster.id), expires_in_minutes=-1)
    foreign = make_approval(db, make_issue(db, other.id), expires_in_minutes=-1)

    assert remediation.post("/api/approvals/sweep", headers=MALLORY).json() == {"expired": 0}
    assert remediation.post("/api/approvals/sweep", headers=ALICE).json() == {"expired": 1}

    db.refresh(foreign)
    assert foreign.status == ApprovalStatus.pending


# ── Commands ───────────────────────────────────────────────────────────────────

def test_retry_sweep_endpoint_only_touches_own_clusters(remediation, cluster, db):
    other = make_cluster(db, owner="bob", name="other")
    make_command(db, cluster.id, status=CommandStatus.failed, error_message="boom",
                 next_retry_at=utcnow() - timedelta(seconds=5))
    foreign = make_command(db, other.id, status=CommandStatus.failed, error_message="boom",
                           next_retry_at=utcnow() - timedelta(seconds=5))

    r = remediation.post("/api/commands/retry-sweep", headers=ALICE)

    assert r.status_code == 200
    assert r.json() == {"retried": 1, "skipped": 0, "failed_to_requeue": 0}
    db.refresh(foreign)
    assert foreign.status == CommandStatus.failed
    assert foreign.retry_count == 0


def test_list_commands_is_scoped_and_flags_terminal(remediation, cluster, db):
    other = make_cluster(db, owner="bob", name="other")
    terminal = make_command(db, cluster.id, status=CommandStatus.failed, retry_count=3, max_retries=3)
    make_command(db, other.id)

    body = remediation.get("/api/commands", headers=ALICE).json()
    assert [c["id"] for c in body] == [terminal.id]
    assert body[0]["terminal"] is True
    assert remediation.get("/api/commands", params={"status": "bogus"}, headers=ALICE).status_code == 400
    assert remediation.get(f"/api/commands/{terminal.id}", headers=MALLORY).status_code == 404


# ── Notifications and audit ────────────────────────────────────────────────────

def test_notifications_and_audit_are_scoped(remediation, cluster, db):
    make_policy(db, cluster.id, require_approval=True, severity_threshold=Severity.low)
    make_cluster(db, owner="bob", name="other")
    handle_new_issue(db, make_issue(db, cluster.id))

    notes = remediation.get("/api/notifications", headers=ALICE).json()
    assert [n["title"] for n in notes] == ["Approval required"]
    assert remediation.get("/api/notifications", headers=MALLORY).json() == []

    read = remediation.post(f"/api/notifications/{notes[0]['id']}/read", headers=ALICE)
    assert read.json()["read"] is True
    assert remediation.get("/api/notifications", params={"unread_only": True}, headers=ALICE).json() == []

    audit = remediation.get("/api/audit", headers=ALICE).json()
    assert [a["action"] for a in audit] == ["approval_requested"]
    assert remediation.get("/api/audit", headers=MALLORY).json() == []


# ── Analysis and issues ────────────────────────────────────────────────────────

def _seed_telemetry(db, cluster_id):
    now = utcnow()
    db.add(TelemetryRecord(cluster_id=cluster_id, kind="cpu", payload={"usage_percent": 97.0},
                           size_bytes=24, collected_at=now, received_at=now))
    db.commit()


def test_trigger_analysis_creates_issue(detections, cluster, db):
    client, _ = detections
    _seed_telemetry(db, cluster.id)

    r = client.post("/api/analysis/trigger", json={"cluster_id": cluster.id}, headers=ALICE)
    assert r.status_code == 200
    body = r.json()
    assert body["new_issues"] == 1
    assert body["issues"][0]["dedup_key"] == "crash_loop_backoff|shop/api-7d9f8c6b5-x2k4p"
    assert body["cached"] is False

    cached = client.post("/api/analysis/trigger", json={"cluster_id": cluster.id}, headers=ALICE).json()
    assert cached["cached"] is True
    assert cached["scan_id"] == body["scan_id"]

    scans = client.get("/api/analysis/scans", params={"cluster_id": cluster.id}, headers=ALICE).json()
    assert len(scans) == 1
    assert scans[0]["status"] == "completed"


def test_trigger_analysis_for_foreign_cluster_is_404(detections, cluster):
    client, _ = detections
    r = client.post("/api/analysis/trigger", json={"cluster_id": cluster.id}, headers=MALLORY)
    assert r.status_code == 404


def test_trigger_analysis_while_running_is_409(detections, cluster, db):
    client, _ = detections
    _seed_telemetry(db, cluster.id)
    acquire_lease(db, cluster.id, "scheduled-run", utcnow())
    r = client.post("/api/analysis/trigger", json={"cluster_id": cluster.id, "force": True}, headers=ALICE)
    assert r.status_code == 409


def test_trigger_analysis_classifier_outage_is_503(detections, cluster, db):
    client, stub = detections
    stub.error = TransientError("classifier timed out", retry_after_seconds=45)
    _seed_telemetry(db, cluster.id)

    r = client.post("/api/analysis/trigger", json={"cluster_id": cluster.id}, headers=ALICE)
    assert r.status_code == 503
    assert r.headers["Retry-After"] == "45"


def test_issue_filters_and_status_change(detections, cluster, db):
    client, _ = detections
    issue = make_issue(db, cluster.id)

    listed = client.get("/api/issues", params={"severity": "critical", "category": "anomaly"}, headers=ALICE)
    assert [i["id"] for i in listed.json()] == [issue.id]
    assert client.get("/api/issues", params={"category": "cost"}, headers=ALICE).status_code == 400

    r = client.patch(f"/api/issues/{issue.id}", json={"status": "false_positive", "note": "expected"},
                     headers=ALICE)
    assert r.status_code == 200
    assert r.json()["status"] == IssueStatus.false_positive.value
    assert r.json()["resolved_at"] is not None

    back = client.patch(f"/api/issues/{issue.id}", json={"status": "active"}, headers=ALICE)
    assert back.status_code == 409
    assert client.get(f"/api/issues/{issue.id}", headers=MALLORY).status_code == 404


# ── One-shot sweeps ────────────────────────────────────────────────────────────

def test_run_sweeps_once(session_factory, db, monkeypatch):
    monkeypatch.setattr("kubeheal.services.shared.database.SessionLocal", session_factory)
    cluster = make_cluster(db)
    make_approval(db, make_issue(db, cluster.id), expires_in_minutes=-1)
    make_command(db, cluster.id, status=CommandStatus.failed, next_retry_at=utcnow() - timedelta(seconds=1))

    result = run_sweeps_once()

    assert result == {"reaped": 0, "expired_approvals": 1, "retried": 1, "skipped": 0, "failed_to_requeue": 0}


def test_run_sweeps_script_selects_sweeps(session_factory, db, monkeypatch):
    monkeypatch.setattr("kubeheal.services.shared.database.SessionLocal", session_factory)
    cluster = make_cluster(db)
    make_approval(db, make_issue(db, cluster.id), expires_in_minutes=-1)

    assert run_sweeps.run(["approvals"]) == {"expired_approvals": 1}
