"""
Notifications and audit trail.

GET  /api/notifications             → notifications for the operator's clusters
POST /api/notifications/{id}/read   → mark one as read
GET  /api/audit                     → audit entries (most recent first)
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import or_, select

from kubeheal.services.shared.auth import get_operator
from kubeheal.services.shared.database import get_db
from kubeheal.services.shared.models import AuditLog, Cluster, Notification
from kubeheal.services.shared.schemas import NotificationOut
from kubeheal.services.shared.timeutil import as_utc

router = APIRouter()


@router.get("/notifications", response_model=list[NotificationOut])
def list_notifications(
    cluster_id:  Optional[int] = None,
    unread_only: bool = False,
    limit:       int = Query(default=100, le=500),
    operator_id: str = Depends(get_operator),
    db=Depends(get_db),
):
    q = db.query(Notification).filter(Notification.owner_id == operator_id)
    if cluster_id:
        q = q.filter(Notification.cluster_id == cluster_id)
    if unread_only:
        q = q.filter(Notification.read.is_(False))
    rows = q.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(limit).all()
    return [NotificationOut.model_validate(r) for r in rows]


@router.post("/notifications/{notification_id}/read", response_model=NotificationOut)
def mark_read(notification_id: int, operator_id: str = Depends(get_operator), db=Depends(get_db)):
    row = db.query(Notification).filter_by(id=notification_id, owner_id=operator_id).first()
    if not row:
        raise HTTPException(status_code=404, detail="Notification not found")
    row.read = True
    db.commit()
    db.refresh(row)
    return NotificationOut.model_validate(row)


@router.get("/audit")
def list_audit(
    action: Optional[str] = None,
    limit:  int = Query(default=100, le=1000),
    operator_id: str = Depends(get_operator),
    db=Depends(get_db),
):
    """Entries for the operator's clusters plus anything the operator did."""
    owned = select(Cluster.id).where(Cluster.owner_id == operator_id)
    q = db.query(AuditLog).filter(or_(AuditLog.cluster_id.in_(owned), AuditLog.actor == operator_id))
    if action:
        q = q.filter(AuditLog.action == action)
    rows = q.order_by(AuditLog.timestamp.desc(), AuditLog.id.desc()).limit(limit).all()
    return [
        {
            "id":        r.id,
            "actor":     r.actor,
            "action":    r.action,
            "resource":  r.resource,
            "detail":    r.detail,
            "timestamp": as_utc(r.timestamp).isoformat(),
        }
        for r in rows
    ]
