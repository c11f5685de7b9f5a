"""
Retry scheduling for failed remediation commands.

  schedule_retry         - called right after a command moved to failed
  sweep_failed_commands  - re-queues failed commands whose next_retry_at has passed
  reap_stuck_commands    - fails commands the agent claimed but never reported

Backoff: RETRY_BASE_SECONDS * RETRY_MULTIPLIER ** retry_count, plus up to 10% jitter,
capped at RETRY_MAX_DELAY_SECONDS. Only the sweep moves a command back to pending,
and it does so with a conditional update so two sweeps never re-queue the same
failure twice.
"""

import os
import random
from datetime import datetime, timedelta
from typing import Callable, Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError

from kubeheal.services.shared.models import CommandStatus, RemediationCommand
from kubeheal.services.shared.notifications import notify
from kubeheal.services.shared.timeutil import utcnow

logger = structlog.get_logger()

RETRY_BASE_SECONDS                = float(os.getenv("RETRY_BASE_SECONDS", "30"))
RETRY_MULTIPLIER                  = float(os.getenv("RETRY_MULTIPLIER", "2"))
RETRY_MAX_DELAY_SECONDS           = float(os.getenv("RETRY_MAX_DELAY_SECONDS", "3600"))
RETRY_JITTER                      = 0.1
COMMAND_EXECUTION_TIMEOUT_SECONDS = int(os.getenv("COMMAND_EXECUTION_TIMEOUT_SECONDS", "600"))
SWEEP_BATCH                       = 200


def compute_backoff(retry_count: int, rng: Callable[[], float] = random.random) -> float:
    """Seconds to wait before retry number retry_count + 1."""
    delay = RETRY_BASE_SECONDS * (RETRY_MULTIPLIER ** retry_count)
    delay *= 1 + RETRY_JITTER * rng()
    return min(delay, RETRY_MAX_DELAY_SECONDS)


def is_terminal(command: RemediationCommand) -> bool:
    return command.status == CommandStatus.failed and command.retry_count >= command.max_retries


def schedule_retry(db, command: RemediationCommand, now: Optional[datetime] = None) -> bool:
    """
    Arm the next retry of a failed command, or finalise it when retries are spent.
    Returns True when a retry was scheduled. The caller commits.
    """
    now = now or utcnow()
    if command.retry_count < command.max_retries:
        delay = compute_backoff(command.retry_count)
        command.next_retry_at = now + timedelta(seconds=delay)
        logger.info(
            "command_retry_scheduled",
            command_id=command.id,
            retry_count=command.retry_count,
            max_retries=command.max_retries,
            delay_seconds=round(delay, 1),
        )
        return True

    command.next_retry_at = None
    notify(
        db,
        cluster_id=command.cluster_id,
        title="Remediation failed",
        message=(
            f"{command.command_type.value} failed after {command.retry_count} "
            f"retr{'y' if command.retry_count == 1 else 'ies'}: "
            f"{command.error_message or 'no error reported'}"
        ),
        level="error",
        entity_type="command",
        entity_id=command.id,
    )
    logger.warning(
        "command_failed_terminal",
        command_id=command.id,
        retry_count=command.retry_count,
        error=command.error_message,
    )
    return False


def sweep_failed_commands(
    db,
    now: Optional[datetime] = None,
    cluster_ids: Optional[list[int]] = None,
) -> dict:
    """Re-queue due failures, optionally only for some clusters. Safe to run concurrently with itself."""
    now = now or utcnow()
    q = db.query(RemediationCommand).filter(
        RemediationCommand.status == CommandStatus.failed,
        RemediationCommand.next_retry_at.isnot(None),
        RemediationCommand.next_retry_at <= now,
        RemediationCommand.retry_count < RemediationCommand.max_retries,
    )
    if cluster_ids is not None:
        q = q.filter(RemediationCommand.cluster_id.in_(cluster_ids))
    due = (
        q.order_by(RemediationCommand.next_retry_at.asc())
        .limit(SWEEP_BATCH)
        .all()
    )
    candidates = [(c.id, c.cluster_id, c.command_type, c.retry_count) for c in due]

    retried = skipped = failed_to_requeue = 0
    for command_id, cluster_id, command_type, retry_count in candidates:
        try:
            claimed = (
                db.query(RemediationCommand)
                .filter(
                    RemediationCommand.id == command_id,
                    RemediationCommand.status == CommandStatus.failed,
                    RemediationCommand.retry_count == retry_count,
                    RemediationCommand.next_retry_at.isnot(None),
                    RemediationCommand.next_retry_at <= now,
                )
                .update(
                    {
                        "status":        CommandStatus.pending,
                        "retry_count":   retry_count + 1,
                        "next_retry_at": None,
                        "result":        None,
                        "executed_at":   None,
                        "completed_at":  None,
                    },
                    synchronize_session=False,
                )
            )
            if claimed != 1:
                db.rollback()
                skipped += 1
                continue

            notify(
                db,
                cluster_id=cluster_id,
                title="Retrying remediation",
                message=f"{command_type.value} re-queued (attempt {retry_count + 2})",
                level="info",
                entity_type="command",
                entity_id=command_id,
            )
            db.commit()
            retried += 1
            logger.info("command_requeued", command_id=command_id, retry_count=retry_count + 1)
        except SQLAlchemyError as exc:
            db.rollback()
            failed_to_requeue += 1
            logger.error("command_requeue_error", command_id=command_id, error=str(exc))

    if candidates:
        logger.info(
            "retry_sweep_complete",
            retried=retried,
            skipped=skipped,
            failed_to_requeue=failed_to_requeue,
        )
    return {"retried": retried, "skipped": skipped, "failed_to_requeue": failed_to_requeue}


def reap_stuck_commands(db, now: Optional[datetime] = None) -> int:
    """Fail commands stuck in executing longer than COMMAND_EXECUTION_TIMEOUT_SECONDS."""
    now = now or utcnow()
    cutoff = now - timedelta(seconds=COMMAND_EXECUTION_TIMEOUT_SECONDS)
    stuck_ids = [
        row.id for row in
        db.query(RemediationCommand.id)
        .filter(
            RemediationCommand.status == CommandStatus.executing,
            RemediationCommand.executed_at <= cutoff,
        )
        .limit(SWEEP_BATCH)
        .all()
    ]

    reaped = 0
    for command_id in stuck_ids:
        moved = (
            db.query(RemediationCommand)
            .filter(
                RemediationCommand.id == command_id,
                RemediationCommand.status == CommandStatus.executing,
            )
            .update(
                {
                    "status":        CommandStatus.failed,
                    "error_message": "execution timed out",
                    "completed_at":  now,
                },
                synchronize_session=False,
            )
        )
        if moved != 1:
            db.rollback()
            continue
        command = db.get(RemediationCommand, command_id)
        db.refresh(command)
        schedule_retry(db, command, now=now)
        db.commit()
        reaped += 1
        logger.warning("command_execution_timed_out", command_id=command_id)
    return reaped
