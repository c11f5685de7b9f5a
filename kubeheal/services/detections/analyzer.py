"""
Detection run for one cluster.

  1. Recent completed scan (< SCAN_CACHE_SECONDS) is returned as-is unless force=True.
  2. Take the cluster's detection lease; a concurrent run gets AnalysisInProgress.
  3. Load the ANALYSIS_WINDOW_MINUTES telemetry window and condense it.
  4. Ask the classifier; decode candidates strictly.
  5. Drop candidates whose dedup_key is already open (snapshot taken before the
     classifier call) or repeated inside this batch; insert the rest.
  6. Notify on high/critical issues, then hand each new issue to remediation.

Classifier outages mark the scan failed and propagate as TransientError so
the caller can retry later. No issue is ever created from a failed call.
"""

import os
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

import structlog

from kubeheal.services.shared.errors import AnalysisInProgress, ClassifierError, TransientError
from kubeheal.services.shared.models import (
    Issue, IssueStatus, ScanRun, ScanStatus, ScanTrigger, Severity, TelemetryRecord,
)
from kubeheal.services.shared.notifications import notify
from kubeheal.services.shared.timeutil import as_utc, utcnow
from kubeheal.services.detections.candidates import candidate_category
from kubeheal.services.detections.classifier import Classifier
from kubeheal.services.detections.dedup import (
    acquire_lease, active_dedup_keys, make_dedup_key, release_lease,
)
from kubeheal.services.detections.summary import build_summary

logger = structlog.get_logger()

ANALYSIS_WINDOW_MINUTES   = int(os.getenv("ANALYSIS_WINDOW_MINUTES", "15"))
SCAN_CACHE_SECONDS        = int(os.getenv("SCAN_CACHE_SECONDS", "180"))
TELEMETRY_RETENTION_HOURS = int(os.getenv("TELEMETRY_RETENTION_HOURS", "24"))

NOTIFY_SEVERITIES = {Severity.high, Severity.critical}


@dataclass
class AnalysisOutcome:
    scan:         Optional[ScanRun]
    issues:       list = field(default_factory=list)
    issues_found: int = 0
    new_issues:   int = 0
    summary:      str = ""
    cached:       bool = False


def _recent_scan(db, cluster_id: int, now: datetime) -> Optional[ScanRun]:
    since = now - timedelta(seconds=SCAN_CACHE_SECONDS)
    return (
        db.query(ScanRun)
        .filter(
            ScanRun.cluster_id == cluster_id,
            ScanRun.status == ScanStatus.completed,
            ScanRun.finished_at >= since,
        )
        .order_by(ScanRun.finished_at.desc())
        .first()
    )


def _cached_outcome(db, scan: ScanRun) -> AnalysisOutcome:
    ids = scan.issue_ids or []
    issues = db.query(Issue).filter(Issue.id.in_(ids)).order_by(Issue.id).all() if ids else []
    return AnalysisOutcome(
        scan=scan,
        issues=issues,
        issues_found=scan.issues_found,
        new_issues=scan.new_issues,
        summary=scan.summary or "",
        cached=True,
    )


def _window(db, cluster_id: int, now: datetime) -> list[TelemetryRecord]:
    since = now - timedelta(minutes=ANALYSIS_WINDOW_MINUTES)
    return (
        db.query(TelemetryRecord)
        .filter(
            TelemetryRecord.cluster_id == cluster_id,
            TelemetryRecord.collected_at >= since,
        )
        .order_by(TelemetryRecord.collected_at.desc(), TelemetryRecord.id.desc())
        .all()
    )


def _finish_scan(db, scan: ScanRun, status: ScanStatus, now: datetime, **values) -> None:
    scan.status = status
    scan.finished_at = now
    for key, value in values.items():
        setattr(scan, key, value)
    db.commit()
    db.refresh(scan)


def run_analysis(
    db,
    cluster_id: int,
    classifier: Classifier,
    trigger: ScanTrigger = ScanTrigger.manual,
    force: bool = False,
    notifier=None,
    now: Optional[datetime] = None,
) -> AnalysisOutcome:
    now = now or utcnow()

    if not force:
        recent = _recent_scan(db, cluster_id, now)
        if recent is not None:
            logger.info("analysis_cache_hit", cluster_id=cluster_id, scan_id=recent.id)
            return _cached_outcome(db, recent)

    holder = uuid.uuid4().hex
    if not acquire_lease(db, cluster_id, holder, now):
        raise AnalysisInProgress(f"Analysis already running for cluster {cluster_id}")

    scan = None
    try:
        scan = ScanRun(cluster_id=cluster_id, trigger=trigger, status=ScanStatus.running, started_at=now)
        db.add(scan)
        db.commit()
        db.refresh(scan)

        records = _window(db, cluster_id, now)
        if not records:
            _finish_scan(db, scan, ScanStatus.completed, utcnow(),
                         summary="No telemetry received in the analysis window.")
            logger.info("analysis_no_telemetry", cluster_id=cluster_id, scan_id=scan.id)
            return AnalysisOutcome(scan=scan, summary=scan.summary)

        open_keys = active_dedup_keys(db, cluster_id, now)
        cluster_summary = build_summary(records)

        try:
            result = classifier.classify(cluster_summary)
        except (TransientError, ClassifierError) as exc:
            _finish_scan(db, scan, ScanStatus.failed, utcnow(), error=str(exc))
            logger.error("analysis_classifier_error", cluster_id=cluster_id, scan_id=scan.id, error=str(exc))
            raise

        created: list[Issue] = []
        seen = set(open_keys)
        for candidate in result.candidates:
            key = make_dedup_key(candidate.kind, candidate.affected_resource)
            if key in seen:
                logger.debug("issue_suppressed", cluster_id=cluster_id, dedup_key=key)
                continue
            seen.add(key)

            analysis = {
                "suggested_action": candidate.suggested_action,
                "action_params":    candidate.action_params,
            }
            if hasattr(candidate, "cve_ids"):
                analysis["cve_ids"] = candidate.cve_ids
                analysis["reference"] = candidate.reference

            issue = Issue(
                cluster_id=cluster_id,
                category=candidate_category(candidate),
                kind=candidate.kind.lower(),
                severity=candidate.severity,
                status=IssueStatus.active,
                dedup_key=key,
                affected_resource=candidate.affected_resource,
                description=candidate.description,
                recommendation=candidate.recommendation,
                evidence=candidate.evidence,
                analysis=analysis,
                scan_id=scan.id,
                detected_at=now,
            )
            db.add(issue)
            created.append(issue)
        db.flush()

        for issue in created:
            if issue.severity in NOTIFY_SEVERITIES:
                notify(
                    db,
                    cluster_id=cluster_id,
                    title=f"{issue.severity.value.capitalize()} {issue.category.value} detected",
                    message=f"{issue.kind} on {issue.affected_resource or 'cluster'}: {issue.description}",
                    level="error" if issue.severity == Severity.critical else "warning",
                    entity_type="issue",
                    entity_id=issue.id,
                )

        summary = result.summary or f"{len(result.candidates)} issue(s) found, {len(created)} new."
        _finish_scan(
            db, scan, ScanStatus.completed, utcnow(),
            issues_found=len(result.candidates),
            new_issues=len(created),
            summary=summary,
            issue_ids=[i.id for i in created],
        )
        logger.info(
            "analysis_complete",
            cluster_id=cluster_id,
            scan_id=scan.id,
            issues_found=len(result.candidates),
            new_issues=len(created),
            suppressed=len(result.candidates) - len(created),
        )
    except Exception as exc:
        db.rollback()
        if scan is not None and scan.status == ScanStatus.running:
            _finish_scan(db, scan, ScanStatus.failed, utcnow(), error=str(exc))
            logger.error("analysis_failed", cluster_id=cluster_id, scan_id=scan.id, error=str(exc))
        raise
    finally:
        release_lease(db, cluster_id, holder)

    _hand_off(db, created, notifier)
    for issue in created:
        db.refresh(issue)
    return AnalysisOutcome(
        scan=scan,
        issues=created,
        issues_found=len(result.candidates),
        new_issues=len(created),
        summary=summary,
    )


def _hand_off(db, issues: list[Issue], notifier) -> None:
    from kubeheal.services.remediation.orchestrator import handle_new_issue

    for issue in issues:
        try:
            handle_new_issue(db, issue, notifier=notifier)
        except Exception as exc:
            db.rollback()
            logger.error("issue_handoff_error", issue_id=issue.id, error=str(exc))


def clusters_due_for_scan(db, now: Optional[datetime] = None) -> list[int]:
    """Clusters with an enabled policy whose last scan is older than its scan interval."""
    from kubeheal.services.shared.models import Policy

    now = now or utcnow()
    due = []
    for policy in db.query(Policy).filter(Policy.enabled.is_(True)).all():
        last = (
            db.query(ScanRun.started_at)
            .filter(ScanRun.cluster_id == policy.cluster_id)
            .order_by(ScanRun.started_at.desc())
            .first()
        )
        if last is None or as_utc(last.started_at) <= now - timedelta(minutes=policy.scan_interval_minutes):
            due.append(policy.cluster_id)
    return due


def run_scheduled_scans(db, classifier: Classifier, notifier=None) -> dict:
    scanned = skipped = failed = 0
    for cluster_id in clusters_due_for_scan(db):
        try:
            run_analysis(db, cluster_id, classifier, trigger=ScanTrigger.scheduled,
                         force=True, notifier=notifier)
            scanned += 1
        except AnalysisInProgress:
            skipped += 1
        except (TransientError, ClassifierError) as exc:
            failed += 1
            logger.warning("scheduled_scan_failed", cluster_id=cluster_id, error=str(exc))
    if scanned or skipped or failed:
        logger.info("scheduled_scans_complete", scanned=scanned, skipped=skipped, failed=failed)
    return {"scanned": scanned, "skipped": skipped, "failed": failed}


def purge_old_telemetry(db, now: Optional[datetime] = None) -> int:
    now = now or utcnow()
    cutoff = now - timedelta(hours=TELEMETRY_RETENTION_HOURS)
    deleted = (
        db.query(TelemetryRecord)
        .filter(TelemetryRecord.received_at < cutoff)
        .delete(synchronize_session=False)
    )
    db.commit()
    if deleted:
        logger.info("telemetry_purged", deleted=deleted, retention_hours=TELEMETRY_RETENTION_HOURS)
    return deleted
