"""
KubeHeal Ingest Service (port 8100)
------------------------------------
Agent-facing surface:
  1. Telemetry batches        → POST /api/telemetry
  2. Command poll and report  → GET /api/agent/commands, POST /api/agent/commands/report

Every request is authenticated with the agent's X-Agent-Key; the cluster is
derived from the credential.

Run: uvicorn kubeheal.services.ingest.main:app --port 8100
"""

import logging
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from kubeheal.services.shared.database import create_all_tables

logging.basicConfig(level=logging.INFO)
logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("kubeheal_ingest_starting")
    create_all_tables()
    logger.info("kubeheal_ingest_tables_ready")
    yield
    logger.info("kubeheal_ingest_stopping")


app = FastAPI(
    title="KubeHeal Ingest Service",
    version="0.1.0",
    description="Receives cluster telemetry and serves remediation commands to agents.",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(RequestValidationError)
async def malformed_request_handler(request: Request, exc: RequestValidationError):
    logger.warning("malformed_request", path=request.url.path, errors=len(exc.errors()))
    return JSONResponse(
        status_code=400,
        content={"detail": "Malformed request body", "errors": jsonable_errors(exc)},
    )


def jsonable_errors(exc: RequestValidationError) -> list[dict]:
    return [
        {"loc": list(e.get("loc", ())), "msg": e.get("msg", ""), "type": e.get("type", "")}
        for e in exc.errors()
    ]


# ── Routes ────────────────────────────────────────────────────────────────────
from kubeheal.services.ingest.routes_telemetry import router as telemetry_router  # noqa: E402
from kubeheal.services.ingest.routes_agent     import router as agent_router      # noqa: E402

app.include_router(telemetry_router, prefix="/api", tags=["Telemetry"])
app.include_router(agent_router,     prefix="/api", tags=["Agent"])


@app.get("/health", tags=["Health"])
def health():
    return {"status": "healthy", "service": "kubeheal-ingest", "version": "0.1.0"}
