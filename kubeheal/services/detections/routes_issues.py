"""
Issue routes.

GET   /api/issues        → list issues of clusters the operator owns
GET   /api/issues/{id}   → one issue
PATCH /api/issues/{id}   → human status change

Allowed human transitions:
  active        → investigating | mitigated | false_positive
  investigating → active | mitigated | false_positive
mitigated and false_positive are terminal.
"""

from typing import Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query

from kubeheal.services.shared.auth import get_operator
from kubeheal.services.shared.database import get_db
from kubeheal.services.shared.models import Cluster, Issue, IssueCategory, IssueStatus, Severity
from kubeheal.services.shared.notifications import emit_audit
from kubeheal.services.shared.schemas import IssueOut, IssueStatusUpdate
from kubeheal.services.shared.timeutil import utcnow

router = APIRouter()
logger = structlog.get_logger()

ALLOWED_TRANSITIONS: dict[IssueStatus, set[IssueStatus]] = {
    IssueStatus.active:        {IssueStatus.investigating, IssueStatus.mitigated, IssueStatus.false_positive},
    IssueStatus.investigating: {IssueStatus.active, IssueStatus.mitigated, IssueStatus.false_positive},
    IssueStatus.mitigated:      set(),
    IssueStatus.false_positive: set(),
}
RESOLVED = {IssueStatus.mitigated, IssueStatus.false_positive}


def _owned_issue(db, issue_id: int, operator_id: str) -> Issue:
    issue = (
        db.query(Issue)
        .join(Cluster, Cluster.id == Issue.cluster_id)
        .filter(Issue.id == issue_id, Cluster.owner_id == operator_id)
        .first()
    )
    if not issue:
        raise HTTPException(status_code=404, detail="Issue not found")
    return issue


@router.get("/issues", response_model=list[IssueOut])
def list_issues(
    cluster_id: Optional[int] = None,
    status:     Optional[str] = None,
    severity:   Optional[str] = None,
    category:   Optional[str] = None,
    limit:      int = Query(default=100, le=500),
    operator_id: str = Depends(get_operator),
    db=Depends(get_db),
):
    q = (
        db.query(Issue)
        .join(Cluster, Cluster.id == Issue.cluster_id)
        .filter(Cluster.owner_id == operator_id)
    )
    if cluster_id:
        q = q.filter(Issue.cluster_id == cluster_id)
    if status:
        try:
            q = q.filter(Issue.status == IssueStatus(status))
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Unknown status '{status}'")
    if severity:
        try:
            q = q.filter(Issue.severity == Severity(severity))
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Unknown severity '{severity}'")
    if category:
        try:
            q = q.filter(Issue.category == IssueCategory(category))
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Unknown category '{category}'")
    rows = q.order_by(Issue.detected_at.desc()).limit(limit).all()
    return [IssueOut.model_validate(r) for r in rows]


@router.get("/issues/{issue_id}", response_model=IssueOut)
def get_issue(issue_id: int, operator_id: str = Depends(get_operator), db=Depends(get_db)):
    return IssueOut.model_validate(_owned_issue(db, issue_id, operator_id))


@router.patch("/issues/{issue_id}", response_model=IssueOut)
def update_issue_status(
    issue_id: int,
    req: IssueStatusUpdate,
    operator_id: str = Depends(get_operator),
    db=Depends(get_db),
):
    issue = _owned_issue(db, issue_id, operator_id)
    current = issue.status
    if req.status == current:
        return IssueOut.model_validate(issue)
    if req.status not in ALLOWED_TRANSITIONS[current]:
        raise HTTPException(
            status_code=409,
            detail=f"Cannot move issue from '{current.value}' to '{req.status.value}'",
        )

    now = utcnow()
    values = {"status": req.status, "updated_at": now}
    if req.status in RESOLVED:
        values["resolved_at"] = now
    moved = (
        db.query(Issue)
        .filter(Issue.id == issue_id, Issue.status == current)
        .update(values, synchronize_session=False)
    )
    if moved != 1:
        db.rollback()
        raise HTTPException(status_code=409, detail="Issue status changed concurrently, reload and retry")

    emit_audit(
        db,
        cluster_id=issue.cluster_id,
        actor=operator_id,
        action="issue_status_changed",
        resource=f"issue:{issue_id}",
        detail={"from": current.value, "to": req.status.value, "note": req.note},
    )
    db.commit()
    db.refresh(issue)
    logger.info("issue_status_changed", issue_id=issue_id, status=req.status.value, actor=operator_id)
    return IssueOut.model_validate(issue)
