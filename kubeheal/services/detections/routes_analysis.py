"""
Operator-triggered analysis.

POST /api/analysis/trigger  {cluster_id, force?}
GET  /api/analysis/scans    → recent scan history for a cluster
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from kubeheal.services.shared.auth import get_operator, get_owned_cluster
from kubeheal.services.shared.database import get_db
from kubeheal.services.shared.errors import (
    AnalysisInProgress, ClassifierError, NotFoundError, TransientError,
)
from kubeheal.services.shared.models import ScanRun
from kubeheal.services.shared.schemas import AnalysisResponse, AnalysisTriggerRequest, IssueOut
from kubeheal.services.shared.timeutil import as_utc
from kubeheal.services.detections.analyzer import run_analysis
from kubeheal.services.detections.classifier import Classifier, HttpClassifier
from kubeheal.services.remediation.notifier import ApprovalNotifier

router = APIRouter()

_classifier: Optional[Classifier] = None


def get_classifier() -> Classifier:
    global _classifier
    if _classifier is None:
        _classifier = HttpClassifier()
    return _classifier


def get_notifier() -> ApprovalNotifier:
    return ApprovalNotifier()


@router.post("/analysis/trigger", response_model=AnalysisResponse)
def trigger_analysis(
    req: AnalysisTriggerRequest,
    operator_id: str = Depends(get_operator),
    classifier: Classifier = Depends(get_classifier),
    notifier: ApprovalNotifier = Depends(get_notifier),
    db=Depends(get_db),
):
    """
    Analyze the cluster's recent telemetry.
    Returns the cached result of a scan younger than SCAN_CACHE_SECONDS unless force=true.
    409 while another analysis for the cluster is running; 503 when the classifier is unavailable.
    """
    try:
        get_owned_cluster(db, req.cluster_id, operator_id)
        outcome = run_analysis(db, req.cluster_id, classifier, force=req.force, notifier=notifier)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except AnalysisInProgress as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    except TransientError as exc:
        raise HTTPException(
            status_code=503,
            detail=f"Classifier unavailable: {exc}",
            headers={"Retry-After": str(exc.retry_after_seconds)},
        )
    except ClassifierError as exc:
        raise HTTPException(status_code=502, detail=f"Classifier error: {exc}")

    return AnalysisResponse(
        scan_id=outcome.scan.id if outcome.scan else None,
        issues_found=outcome.issues_found,
        new_issues=outcome.new_issues,
        issues=[IssueOut.model_validate(i) for i in outcome.issues],
        summary=outcome.summary,
        cached=outcome.cached,
    )


@router.get("/analysis/scans")
def list_scans(
    cluster_id: int,
    limit: int = Query(default=20, le=200),
    operator_id: str = Depends(get_operator),
    db=Depends(get_db),
):
    try:
        get_owned_cluster(db, cluster_id, operator_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))

    rows = (
        db.query(ScanRun)
        .filter(ScanRun.cluster_id == cluster_id)
        .order_by(ScanRun.started_at.desc())
        .limit(limit)
        .all()
    )
    return [
        {
            "id":           r.id,
            "trigger":      r.trigger.value,
            "status":       r.status.value,
            "started_at":   as_utc(r.started_at).isoformat() if r.started_at else None,
            "finished_at":  as_utc(r.finished_at).isoformat() if r.finished_at else None,
            "issues_found": r.issues_found,
            "new_issues":   r.new_issues,
            "error":        r.error,
        }
        for r in rows
    ]
