"""
Policy routes.

GET /api/policies/{cluster_id}  → current policy (defaults created on first read)
PUT /api/policies/{cluster_id}  → partial update; every change is audited
"""

import structlog
from fastapi import APIRouter, Depends, HTTPException

from kubeheal.services.shared.auth import get_operator, get_owned_cluster
from kubeheal.services.shared.database import get_db
from kubeheal.services.shared.errors import NotFoundError
from kubeheal.services.shared.notifications import emit_audit
from kubeheal.services.shared.schemas import PolicyOut, PolicyUpdate
from kubeheal.services.remediation.policy import get_or_create_policy

router = APIRouter()
logger = structlog.get_logger()


def _policy_out(policy) -> PolicyOut:
    out = PolicyOut.model_validate(policy)
    out.category_auto_apply = {
        "anomaly":  bool((policy.category_auto_apply or {}).get("anomaly", False)),
        "security": bool((policy.category_auto_apply or {}).get("security", False)),
    }
    return out


@router.get("/policies/{cluster_id}", response_model=PolicyOut)
def get_policy(cluster_id: int, operator_id: str = Depends(get_operator), db=Depends(get_db)):
    try:
        get_owned_cluster(db, cluster_id, operator_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    policy = get_or_create_policy(db, cluster_id)
    db.commit()
    db.refresh(policy)
    return _policy_out(policy)


@router.put("/policies/{cluster_id}", response_model=PolicyOut)
def update_policy(
    cluster_id: int,
    req: PolicyUpdate,
    operator_id: str = Depends(get_operator),
    db=Depends(get_db),
):
    try:
        get_owned_cluster(db, cluster_id, operator_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))

    policy = get_or_create_policy(db, cluster_id)
    changes = req.model_dump(exclude_unset=True, exclude_none=True)

    if "category_auto_apply" in changes:
        merged = dict(policy.category_auto_apply or {})
        merged.update({k.value if hasattr(k, "value") else str(k): bool(v)
                       for k, v in changes["category_auto_apply"].items()})
        changes["category_auto_apply"] = merged

    before = {}
    for field, value in changes.items():
        old = getattr(policy, field)
        before[field] = old.value if hasattr(old, "value") else old
        setattr(policy, field, value)
    policy.updated_by = operator_id

    emit_audit(
        db,
        cluster_id=cluster_id,
        actor=operator_id,
        action="policy_updated",
        resource=f"policy:{cluster_id}",
        detail={
            "before": before,
            "after": {k: (v.value if hasattr(v, "value") else v) for k, v in changes.items()},
        },
    )
    db.commit()
    db.refresh(policy)
    logger.info("policy_updated", cluster_id=cluster_id, actor=operator_id, fields=sorted(changes))
    return _policy_out(policy)
