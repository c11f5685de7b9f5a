"""
Command routes.

GET  /api/commands               → commands of the operator's clusters
GET  /api/commands/{id}          → one command
POST /api/commands/retry-sweep   → re-queue due failures of the operator's clusters:
                                   {retried, skipped, failed_to_requeue}
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from kubeheal.services.shared.auth import get_operator, owned_cluster_ids
from kubeheal.services.shared.database import get_db
from kubeheal.services.shared.models import Cluster, CommandStatus, RemediationCommand
from kubeheal.services.shared.schemas import CommandOut, RetrySweepOut
from kubeheal.services.remediation.retry import is_terminal, sweep_failed_commands

router = APIRouter()


def _command_out(command: RemediationCommand) -> CommandOut:
    out = CommandOut.model_validate(command)
    out.terminal = is_terminal(command)
    return out


@router.get("/commands", response_model=list[CommandOut])
def list_commands(
    cluster_id: Optional[int] = None,
    status:     Optional[str] = None,
    issue_id:   Optional[int] = None,
    limit:      int = Query(default=100, le=500),
    operator_id: str = Depends(get_operator),
    db=Depends(get_db),
):
    q = (
        db.query(RemediationCommand)
        .join(Cluster, Cluster.id == RemediationCommand.cluster_id)
        .filter(Cluster.owner_id == operator_id)
    )
    if cluster_id:
        q = q.filter(RemediationCommand.cluster_id == cluster_id)
    if issue_id:
        q = q.filter(RemediationCommand.issue_id == issue_id)
    if status:
        try:
            q = q.filter(RemediationCommand.status == CommandStatus(status))
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Unknown status '{status}'")
    rows = q.order_by(RemediationCommand.created_at.desc()).limit(limit).all()
    return [_command_out(r) for r in rows]


@router.get("/commands/{command_id}", response_model=CommandOut)
def get_command(command_id: int, operator_id: str = Depends(get_operator), db=Depends(get_db)):
    command = (
        db.query(RemediationCommand)
        .join(Cluster, Cluster.id == RemediationCommand.cluster_id)
        .filter(RemediationCommand.id == command_id, Cluster.owner_id == operator_id)
        .first()
    )
    if not command:
        raise HTTPException(status_code=404, detail="Command not found")
    return _command_out(command)


@router.post("/commands/retry-sweep", response_model=RetrySweepOut)
def retry_sweep(operator_id: str = Depends(get_operator), db=Depends(get_db)):
    cluster_ids = owned_cluster_ids(db, operator_id)
    if not cluster_ids:
        return RetrySweepOut(retried=0, skipped=0, failed_to_requeue=0)
    return RetrySweepOut(**sweep_failed_commands(db, cluster_ids=cluster_ids))
