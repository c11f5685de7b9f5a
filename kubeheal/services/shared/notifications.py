"""
Notification and audit helpers.

Both only db.add() a row; the caller owns the transaction so the row commits
together with the state change it describes.
"""

from typing import Optional

import structlog

from kubeheal.services.shared.models import AuditLog, Cluster, Notification

logger = structlog.get_logger()


def notify(
    db,
    cluster_id: Optional[int],
    title: str,
    message: str,
    level: str = "info",
    entity_type: Optional[str] = None,
    entity_id: Optional[int] = None,
) -> Notification:
    owner_id = None
    if cluster_id is not None:
        cluster = db.get(Cluster, cluster_id)
        owner_id = cluster.owner_id if cluster else None

    row = Notification(
        cluster_id=cluster_id,
        owner_id=owner_id,
        title=title,
        message=message,
        level=level,
        entity_type=entity_type,
        entity_id=entity_id,
    )
    db.add(row)
    logger.info("notification_created", cluster_id=cluster_id, title=title, level=level)
    return row


def emit_audit(db, actor: str, action: str, resource: str, detail: dict,
               cluster_id: Optional[int] = None) -> None:
    db.add(AuditLog(
        cluster_id=cluster_id,
        actor=actor,
        action=action,
        resource=resource,
        detail=detail,
    ))
