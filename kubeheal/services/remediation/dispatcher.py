"""
Command dispatcher: the durable queue between the orchestrator and the agent.

  create_command          - orchestrator / approvals; always pending
  claim_pending_commands  - agent poll; pending -> executing
  record_result           - agent report; executing -> completed | failed
"""

import json
import os
from typing import Any, Optional

import structlog

from kubeheal.services.shared.errors import NotFoundError, PolicyError, ValidationFailure
from kubeheal.services.shared.models import (
    CommandStatus, CommandType, Issue, IssueStatus, RemediationCommand,
)
from kubeheal.services.shared.timeutil import utcnow
from kubeheal.services.remediation.retry import schedule_retry

logger = structlog.get_logger()

AGENT_POLL_BATCH      = int(os.getenv("AGENT_POLL_BATCH", "10"))
MAX_RESULT_BYTES      = 50 * 1024
OPEN_ISSUE_STATUSES   = (IssueStatus.active, IssueStatus.investigating)


def create_command(
    db,
    cluster_id: int,
    command_type: CommandType,
    params: dict[str, Any],
    issue_id: Optional[int] = None,
    approval_id: Optional[int] = None,
    max_retries: int = 3,
) -> RemediationCommand:
    """Add a pending command to the session and flush to get its id. The caller commits."""
    command = RemediationCommand(
        cluster_id=cluster_id,
        issue_id=issue_id,
        approval_id=approval_id,
        command_type=command_type,
        params=params or {},
        status=CommandStatus.pending,
        retry_count=0,
        max_retries=max_retries,
    )
    db.add(command)
    db.flush()
    logger.info(
        "command_created",
        command_id=command.id,
        cluster_id=cluster_id,
        command_type=command_type.value,
        issue_id=issue_id,
        approval_id=approval_id,
    )
    return command


def claim_pending_commands(db, cluster_id: int, limit: int = AGENT_POLL_BATCH) -> list[RemediationCommand]:
    """Claim up to `limit` pending commands for the cluster, oldest first."""
    now = utcnow()
    candidate_ids = [
        row.id for row in
        db.query(RemediationCommand.id)
        .filter(
            RemediationCommand.cluster_id == cluster_id,
            RemediationCommand.status == CommandStatus.pending,
        )
        .order_by(RemediationCommand.created_at.asc(), RemediationCommand.id.asc())
        .limit(limit)
        .all()
    ]

    claimed_ids = []
    for command_id in candidate_ids:
        moved = (
            db.query(RemediationCommand)
            .filter(
                RemediationCommand.id == command_id,
                RemediationCommand.status == CommandStatus.pending,
            )
            .update(
                {"status": CommandStatus.executing, "executed_at": now},
                synchronize_session=False,
            )
        )
        if moved == 1:
            claimed_ids.append(command_id)
    db.commit()

    if not claimed_ids:
        return []
    commands = (
        db.query(RemediationCommand)
        .filter(RemediationCommand.id.in_(claimed_ids))
        .order_by(RemediationCommand.created_at.asc(), RemediationCommand.id.asc())
        .all()
    )
    logger.info("commands_claimed", cluster_id=cluster_id, count=len(commands))
    return commands


def _mitigate_issue(db, issue_id: Optional[int]) -> None:
    if issue_id is None:
        return
    now = utcnow()
    db.query(Issue).filter(
        Issue.id == issue_id,
        Issue.status.in_(OPEN_ISSUE_STATUSES),
    ).update(
        {"status": IssueStatus.mitigated, "resolved_at": now, "updated_at": now},
        synchronize_session=False,
    )


def record_result(
    db,
    cluster_id: int,
    command_id: int,
    status: str,
    result: Optional[dict[str, Any]] = None,
    error_message: Optional[str] = None,
) -> RemediationCommand:
    """
    Record the agent's outcome for an executing command of its own cluster.
    Raises NotFoundError for unknown or foreign commands, PolicyError when the
    command is not executing, ValidationFailure for oversized results.
    """
    if result is not None and len(json.dumps(result, default=str).encode()) > MAX_RESULT_BYTES:
        raise ValidationFailure(f"result exceeds {MAX_RESULT_BYTES} bytes")

    command = (
        db.query(RemediationCommand)
        .filter_by(id=command_id, cluster_id=cluster_id)
        .first()
    )
    if command is None:
        raise NotFoundError(f"Command {command_id} not found")

    now = utcnow()
    new_status = CommandStatus(status)
    values: dict[str, Any] = {"status": new_status, "result": result, "completed_at": now}
    if new_status == CommandStatus.completed:
        values["error_message"] = None
    else:
        values["error_message"] = error_message or "command failed"

    moved = (
        db.query(RemediationCommand)
        .filter(
            RemediationCommand.id == command_id,
            RemediationCommand.cluster_id == cluster_id,
            RemediationCommand.status == CommandStatus.executing,
        )
        .update(values, synchronize_session=False)
    )
    if moved != 1:
        db.rollback()
        db.refresh(command)
        raise PolicyError(f"Command {command_id} is {command.status.value}, not executing")

    db.refresh(command)
    if new_status == CommandStatus.completed:
        _mitigate_issue(db, command.issue_id)
    else:
        schedule_retry(db, command, now=now)
    db.commit()
    db.refresh(command)

    logger.info(
        "command_result_recorded",
        command_id=command_id,
        cluster_id=cluster_id,
        status=new_status.value,
        retry_count=command.retry_count,
    )
    return command
