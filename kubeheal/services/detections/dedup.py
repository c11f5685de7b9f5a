"""
Deduplication and per-cluster serialisation of detection runs.

dedup_key = "<kind>|<namespace>/<name>" (lowercased). Candidates whose key is
already held by an open issue detected inside the suppression window are
dropped. The set of open keys is read once at the start of a run; the
detection lease guarantees no other run for the same cluster is inserting
at the same time.
"""

import os
from datetime import datetime, timedelta
from typing import Optional

import structlog
from sqlalchemy import insert
from sqlalchemy.exc import IntegrityError

from kubeheal.services.shared.models import DetectionLease, Issue, IssueStatus
from kubeheal.services.shared.timeutil import utcnow

logger = structlog.get_logger()

DEDUP_WINDOW_MINUTES    = int(os.getenv("DEDUP_WINDOW_MINUTES", "30"))
DETECTION_LEASE_SECONDS = int(os.getenv("DETECTION_LEASE_SECONDS", "300"))

OPEN_STATUSES = (IssueStatus.active, IssueStatus.investigating)


def normalize_resource(resource: Optional[str]) -> str:
    if not resource or not resource.strip():
        return "cluster"
    resource = resource.strip().lower()
    if "/" not in resource:
        resource = f"default/{resource}"
    return resource


def make_dedup_key(kind: str, affected_resource: Optional[str]) -> str:
    return f"{kind.strip().lower()}|{normalize_resource(affected_resource)}"


def active_dedup_keys(db, cluster_id: int, now: Optional[datetime] = None) -> set[str]:
    now = now or utcnow()
    since = now - timedelta(minutes=DEDUP_WINDOW_MINUTES)
    rows = (
        db.query(Issue.dedup_key)
        .filter(
            Issue.cluster_id == cluster_id,
            Issue.status.in_(OPEN_STATUSES),
            Issue.detected_at >= since,
        )
        .all()
    )
    return {r.dedup_key for r in rows}


def acquire_lease(db, cluster_id: int, holder: str, now: Optional[datetime] = None) -> bool:
    """Take the cluster's detection lease. Returns False while another holder owns it."""
    now = now or utcnow()
    db.query(DetectionLease).filter(
        DetectionLease.cluster_id == cluster_id,
        DetectionLease.expires_at <= now,
    ).delete(synchronize_session=False)

    try:
        db.execute(insert(DetectionLease).values(
            cluster_id=cluster_id,
            holder=holder,
            acquired_at=now,
            expires_at=now + timedelta(seconds=DETECTION_LEASE_SECONDS),
        ))
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.info("detection_lease_busy", cluster_id=cluster_id)
        return False
    logger.debug("detection_lease_acquired", cluster_id=cluster_id, holder=holder)
    return True


def release_lease(db, cluster_id: int, holder: str) -> None:
    db.query(DetectionLease).filter(
        DetectionLease.cluster_id == cluster_id,
        DetectionLease.holder == holder,
    ).delete(synchronize_session=False)
    db.commit()
