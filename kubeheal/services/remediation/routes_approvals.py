"""
Approval workflow routes.

Approval lifecycle:
  created by the orchestrator when policy requires approval → status=pending
  POST /api/approvals/respond  approve → command created, status=executed
                               reject  → status=rejected
  GET  /api/approvals          → list (auto-expires stale pending rows)
  GET  /api/approvals/{id}     → one request, lazily expired
  POST /api/approvals/sweep    → eager expiry over the operator's clusters
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from kubeheal.services.shared.auth import get_operator, owned_cluster_ids
from kubeheal.services.shared.database import get_db
from kubeheal.services.shared.errors import NotFoundError
from kubeheal.services.shared.models import ApprovalRequest, ApprovalStatus
from kubeheal.services.shared.schemas import (
    ApprovalDecisionOut, ApprovalDecisionRequest, ApprovalOut, ApprovalSweepOut,
)
from kubeheal.services.remediation.approvals import (
    expire_stale_approvals, get_approval, respond,
)

router = APIRouter()


@router.get("/approvals", response_model=list[ApprovalOut])
def list_approvals(
    cluster_id: Optional[int] = None,
    status:     Optional[str] = None,
    limit:      int = Query(default=100, le=500),
    operator_id: str = Depends(get_operator),
    db=Depends(get_db),
):
    """List approval requests. Stale pending rows are expired before returning."""
    cluster_ids = owned_cluster_ids(db, operator_id)
    if cluster_id is not None:
        cluster_ids = [c for c in cluster_ids if c == cluster_id]
    if not cluster_ids:
        return []
    expire_stale_approvals(db, cluster_ids=cluster_ids)

    q = db.query(ApprovalRequest).filter(ApprovalRequest.cluster_id.in_(cluster_ids))
    if status:
        try:
            q = q.filter(ApprovalRequest.status == ApprovalStatus(status))
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Unknown status '{status}'")
    rows = q.order_by(ApprovalRequest.created_at.desc()).limit(limit).all()
    return [ApprovalOut.model_validate(r) for r in rows]


@router.get("/approvals/{approval_id}", response_model=ApprovalOut)
def read_approval(approval_id: int, operator_id: str = Depends(get_operator), db=Depends(get_db)):
    try:
        approval = get_approval(db, approval_id, operator_id)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Approval not found")
    return ApprovalOut.model_validate(approval)


@router.post("/approvals/respond", response_model=ApprovalDecisionOut)
def respond_to_approval(
    req: ApprovalDecisionRequest,
    operator_id: str = Depends(get_operator),
    db=Depends(get_db),
):
    """
    Approve or reject a pending request.
    Responses to expired, rejected or executed requests return the current state with changed=false.
    """
    try:
        result = respond(
            db,
            approval_id=req.approval_id,
            decision=req.decision,
            channel=req.responder_channel,
            responder=operator_id,
            owner_id=operator_id,
        )
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Approval not found")

    return ApprovalDecisionOut(
        approval=ApprovalOut.model_validate(result.approval),
        changed=result.changed,
        command_id=result.command_id,
    )


@router.post("/approvals/sweep", response_model=ApprovalSweepOut)
def sweep_approvals(operator_id: str = Depends(get_operator), db=Depends(get_db)):
    """Expire stale pending requests of the operator's clusters. The timer loop covers every cluster."""
    cluster_ids = owned_cluster_ids(db, operator_id)
    if not cluster_ids:
        return ApprovalSweepOut(expired=0)
    return ApprovalSweepOut(expired=expire_stale_approvals(db, cluster_ids=cluster_ids))
