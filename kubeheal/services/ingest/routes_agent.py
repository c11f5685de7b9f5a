"""
Agent command surface.

GET  /api/agent/commands         → claim pending commands (pending → executing)
POST /api/agent/commands/report  → report outcome (executing → completed | failed)

The cluster is always the one bound to the agent credential.
"""

from fastapi import APIRouter, Depends, HTTPException

from kubeheal.services.shared.auth import AgentIdentity, get_agent
from kubeheal.services.shared.database import get_db
from kubeheal.services.shared.errors import NotFoundError, PolicyError, ValidationFailure
from kubeheal.services.shared.schemas import AgentCommandOut, CommandOut, CommandReportRequest
from kubeheal.services.remediation.dispatcher import claim_pending_commands, record_result
from kubeheal.services.remediation.retry import is_terminal

router = APIRouter()


@router.get("/agent/commands", response_model=list[AgentCommandOut])
def poll_commands(
    agent: AgentIdentity = Depends(get_agent),
    db=Depends(get_db),
):
    commands = claim_pending_commands(db, agent.cluster_id)
    return [AgentCommandOut.model_validate(c) for c in commands]


@router.post("/agent/commands/report", response_model=CommandOut)
def report_command(
    req: CommandReportRequest,
    agent: AgentIdentity = Depends(get_agent),
    db=Depends(get_db),
):
    """Record the outcome of a command this agent claimed."""
    try:
        command = record_result(
            db,
            cluster_id=agent.cluster_id,
            command_id=req.command_id,
            status=req.status,
            result=req.result,
            error_message=req.error_message,
        )
    except ValidationFailure as exc:
        raise HTTPException(status_code=400, detail=exc.reason)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except PolicyError as exc:
        raise HTTPException(status_code=409, detail=str(exc))

    out = CommandOut.model_validate(command)
    out.terminal = is_terminal(command)
    return out
