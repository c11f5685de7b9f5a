"""
KubeHeal Detections Service (port 8200)
----------------------------------------
Turns recent cluster telemetry into deduplicated issues and exposes
analysis + issue endpoints. Two background loops run in the lifespan:

  scan loop       - analyses every cluster whose enabled policy says a scan is due
  retention loop  - purges telemetry older than TELEMETRY_RETENTION_HOURS

Run: uvicorn kubeheal.services.detections.main:app --port 8200
"""

import asyncio
import logging
import os
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from kubeheal.services.shared.database import create_all_tables

logging.basicConfig(level=logging.INFO)
logger = structlog.get_logger()

SCAN_LOOP_INTERVAL      = int(os.getenv("SCAN_LOOP_INTERVAL_SECONDS", "60"))
RETENTION_LOOP_INTERVAL = int(os.getenv("RETENTION_LOOP_INTERVAL_SECONDS", "3600"))


def _call_scheduled_scans() -> None:
    from kubeheal.services.shared.database import session_scope
    from kubeheal.services.detections.analyzer import run_scheduled_scans
    from kubeheal.services.detections.routes_analysis import get_classifier, get_notifier

    with session_scope() as db:
        run_scheduled_scans(db, get_classifier(), notifier=get_notifier())


def _call_retention() -> None:
    from kubeheal.services.shared.database import session_scope
    from kubeheal.services.detections.analyzer import purge_old_telemetry

    with session_scope() as db:
        purge_old_telemetry(db)


async def _run_loop(name: str, interval: int, fn, initial_delay: int = 0) -> None:
    await asyncio.sleep(initial_delay)
    while True:
        try:
            loop = asyncio.get_event_loop()
            await loop.run_in_executor(None, fn)
        except Exception as exc:
            logger.error(f"{name}_loop_error", error=str(exc))
        await asyncio.sleep(interval)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("kubeheal_detections_starting")
    create_all_tables()
    logger.info("kubeheal_detections_tables_ready")

    scan_task = asyncio.create_task(_run_loop("scan", SCAN_LOOP_INTERVAL, _call_scheduled_scans,
                                              initial_delay=SCAN_LOOP_INTERVAL))
    logger.info("scan_loop_started", interval=SCAN_LOOP_INTERVAL)

    retention_task = asyncio.create_task(_run_loop("retention", RETENTION_LOOP_INTERVAL, _call_retention))
    logger.info("retention_loop_started", interval=RETENTION_LOOP_INTERVAL)

    yield

    scan_task.cancel()
    retention_task.cancel()
    logger.info("kubeheal_detections_stopping")


app = FastAPI(
    title="KubeHeal Detections Service",
    version="0.1.0",
    description="Classifies recent telemetry into deduplicated anomaly and security issues.",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

# ── Routes ────────────────────────────────────────────────────────────────────
from kubeheal.services.detections.routes_analysis import router as analysis_router  # noqa: E402
from kubeheal.services.detections.routes_issues   import router as issues_router    # noqa: E402

app.include_router(analysis_router, prefix="/api", tags=["Analysis"])
app.include_router(issues_router,   prefix="/api", tags=["Issues"])


@app.get("/health", tags=["Health"])
def health():
    return {"status": "healthy", "service": "kubeheal-detections", "version": "0.1.0"}
