"""
Telemetry ingestion route.
Used by the in-cluster agent, which pushes batches of typed metric records.

POST /api/telemetry

Order of checks: credential (401) -> rate limit per credential (429) ->
batch shape (400) -> per-record validation (partial accept).
"""

import os

import structlog
from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from kubeheal.services.shared.auth import AgentIdentity, get_agent
from kubeheal.services.shared.database import get_db
from kubeheal.services.shared.errors import ValidationFailure
from kubeheal.services.shared.models import AgentCredential, Cluster, TelemetryRecord
from kubeheal.services.shared.ratelimit import RateLimiter, build_rate_limiter
from kubeheal.services.shared.schemas import (
    IngestTelemetryRequest, IngestTelemetryResponse, RejectedRecord,
)
from kubeheal.services.shared.timeutil import utcnow
from kubeheal.services.ingest.validation import validate_record

router = APIRouter()
logger = structlog.get_logger()

INGEST_RATE_LIMIT          = int(os.getenv("INGEST_RATE_LIMIT", "60"))
INGEST_RATE_WINDOW_SECONDS = int(os.getenv("INGEST_RATE_WINDOW_SECONDS", "60"))
INGEST_MAX_RECORDS         = int(os.getenv("INGEST_MAX_RECORDS", "500"))

_rate_limiter: RateLimiter | None = None


def get_rate_limiter() -> RateLimiter:
    """FastAPI dependency: process-wide limiter, built on first use."""
    global _rate_limiter
    if _rate_limiter is None:
        _rate_limiter = build_rate_limiter(INGEST_RATE_LIMIT, INGEST_RATE_WINDOW_SECONDS)
    return _rate_limiter


def _as_float(value) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


def _touch_cluster(db, agent: AgentIdentity, latest: dict[str, dict]) -> None:
    """Refresh liveness and copy the scalar stats the dashboard lists clusters by."""
    now = utcnow()
    credential = db.get(AgentCredential, agent.credential_id)
    if credential:
        credential.last_seen = now

    cluster = db.get(Cluster, agent.cluster_id)
    if not cluster:
        return
    cluster.last_seen = now
    if "cpu" in latest:
        cpu = _as_float(latest["cpu"].get("usage_percent"))
        if cpu is not None:
            cluster.cpu_usage = cpu
    if "memory" in latest:
        mem = _as_float(latest["memory"].get("usage_percent"))
        if mem is not None:
            cluster.memory_usage = mem
    if "pods" in latest:
        running = latest["pods"].get("running")
        if isinstance(running, int) and not isinstance(running, bool):
            cluster.pod_count = running


@router.post("/telemetry", response_model=IngestTelemetryResponse)
def ingest_telemetry(
    req: IngestTelemetryRequest,
    agent: AgentIdentity = Depends(get_agent),
    limiter: RateLimiter = Depends(get_rate_limiter),
    db=Depends(get_db),
):
    """
    Accept a batch of telemetry records from an agent.
    cluster_id is taken from the agent credential, never from the body.
    Valid records are stored even when others in the batch are rejected.
    """
    decision = limiter.check(f"agent:{agent.credential_id}")
    if not decision.allowed:
        return JSONResponse(
            status_code=429,
            content={
                "error": "rate limit exceeded",
                "limit": decision.limit,
                "window_seconds": decision.window_seconds,
                "retry_after_seconds": decision.retry_after_seconds,
            },
            headers={
                "X-RateLimit-Limit": str(decision.limit),
                "X-RateLimit-Window": str(decision.window_seconds),
                "Retry-After": str(decision.retry_after_seconds),
            },
        )

    if len(req.records) > INGEST_MAX_RECORDS:
        raise HTTPException(
            status_code=400,
            detail=f"Batch too large: {len(req.records)} records (max {INGEST_MAX_RECORDS})",
        )

    now = utcnow()
    rejected: list[RejectedRecord] = []
    latest: dict[str, dict] = {}
    accepted = 0

    for index, raw in enumerate(req.records):
        try:
            record, size = validate_record(index, raw)
        except ValidationFailure as exc:
            rejected.append(RejectedRecord(index=index, kind=exc.kind, reason=exc.reason))
            continue

        db.add(TelemetryRecord(
            cluster_id=agent.cluster_id,
            kind=record.kind,
            payload=record.payload,
            size_bytes=size,
            collected_at=record.collected_at or now,
            received_at=now,
        ))
        latest[record.kind] = record.payload
        accepted += 1

    _touch_cluster(db, agent, latest)

    try:
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error("telemetry_store_error", cluster_id=agent.cluster_id, error=str(exc))
        raise HTTPException(status_code=503, detail="Telemetry store unavailable", headers={"Retry-After": "30"})

    logger.info(
        "telemetry_ingested",
        cluster_id=agent.cluster_id,
        key_prefix=agent.key_prefix,
        accepted=accepted,
        rejected=len(rejected),
    )
    return IngestTelemetryResponse(
        accepted=accepted,
        rejected=len(rejected),
        rejected_details=rejected or None,
    )
