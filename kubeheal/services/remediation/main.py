"""
KubeHeal Remediation Service (port 8300)
-----------------------------------------
Policies, approvals, commands, notifications and audit for operators.
One background loop runs every SWEEP_INTERVAL_SECONDS:

  retry sweep     - failed commands whose next_retry_at has passed → pending
  approval expiry - pending approvals past expires_at → expired
  reaper          - executing commands older than COMMAND_EXECUTION_TIMEOUT_SECONDS → failed

Run: uvicorn kubeheal.services.remediation.main:app --port 8300
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

SWEEP_INTERVAL = int(os.getenv("SWEEP_INTERVAL_SECONDS", "30"))


def run_sweeps_once() -> dict:
    from kubeheal.services.shared.database import session_scope
    from kubeheal.services.remediation.approvals import expire_stale_approvals
    from kubeheal.services.remediation.retry import reap_stuck_commands, sweep_failed_commands

    with session_scope() as db:
        reaped = reap_stuck_commands(db)
        retry = sweep_failed_commands(db)
        expired = expire_stale_approvals(db)
    return {"reaped": reaped, "expired_approvals": expired, **retry}


async def _run_sweep_loop(interval: int) -> None:
    await asyncio.sleep(interval)
    while True:
        try:
            loop = asyncio.get_event_loop()
            await loop.run_in_executor(None, run_sweeps_once)
        except Exception as exc:
            logger.error("sweep_loop_error", error=str(exc))
        await asyncio.sleep(interval)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("kubeheal_remediation_starting")
    create_all_tables()
    logger.info("kubeheal_remediation_tables_ready")

    sweep_task = asyncio.create_task(_run_sweep_loop(SWEEP_INTERVAL))
    logger.info("sweep_loop_started", interval=SWEEP_INTERVAL)

    yield

    sweep_task.cancel()
    logger.info("kubeheal_remediation_stopping")


app = FastAPI(
    title="KubeHeal Remediation Service",
    version="0.1.0",
    description="Policy gate, approval workflow and remediation command queue.",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

# ── Routes ────────────────────────────────────────────────────────────────────
from kubeheal.services.remediation.routes_policies  import router as policies_router   # noqa: E402
from kubeheal.services.remediation.routes_approvals import router as approvals_router  # noqa: E402
from kubeheal.services.remediation.routes_commands  import router as commands_router   # noqa: E402
from kubeheal.services.remediation.routes_audit     import router as audit_router      # noqa: E402

app.include_router(policies_router,  prefix="/api", tags=["Policies"])
app.include_router(approvals_router, prefix="/api", tags=["Approvals"])
app.include_router(commands_router,  prefix="/api", tags=["Commands"])
app.include_router(audit_router,     prefix="/api", tags=["Audit"])


@app.get("/health", tags=["Health"])
def health():
    return {"status": "healthy", "service": "kubeheal-remediation", "version": "0.1.0"}
