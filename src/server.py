"""
HTTP surface for the TikTok Shop ledger sync service.

Provides health and Prometheus metrics endpoints plus the inbound operations:
start a connection sync, reconcile the ledger, and the OAuth connect /
disconnect flow.
"""

import logging
import threading
from contextlib import asynccontextmanager
from datetime import UTC, date, datetime
from typing import Any

import uvicorn
from fastapi import FastAPI, HTTPException, Query
from fastapi.responses import JSONResponse, PlainTextResponse, RedirectResponse
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)
from pydantic import BaseModel
from sqlalchemy import select, text

from src.adapters.tiktok import TikTokClient, build_oauth_state, parse_oauth_state
from src.config.loader import cfg
from src.db.connections import connect_from_auth_code, disconnect
from src.db.deps import get_session
from src.db.models import SYNC_STATUS_ERROR, TikTokConnection
from src.jobs.ledger_reconcile import reconcile
from src.jobs.tiktok_sync import SYNC_TYPES, start_sync
from src.utils.time_windows import day_window

logger = logging.getLogger(__name__)

SERVICE_NAME = "TikTok Shop Ledger Sync"
SERVICE_VERSION = "1.0.0"

# Prometheus metrics
REGISTRY = CollectorRegistry()

# Job metrics
job_runs_total = Counter(
    "job_runs_total", "Total number of job runs", ["job", "status"], registry=REGISTRY
)

job_duration_seconds = Histogram(
    "job_duration_seconds", "Job execution duration in seconds", ["job"], registry=REGISTRY
)

records_upserted_total = Counter(
    "records_upserted_total",
    "Total number of TikTok records upserted",
    ["entity"],
    registry=REGISTRY,
)

ledger_days_updated_total = Counter(
    "ledger_days_updated_total", "Total number of ledger days reconciled", registry=REGISTRY
)

# System metrics
scheduler_running = Gauge(
    "scheduler_running", "Whether the scheduler is running", registry=REGISTRY
)

database_connection_healthy = Gauge(
    "database_connection_healthy", "Database connection health status", registry=REGISTRY
)

connection_sync_healthy = Gauge(
    "connection_sync_healthy",
    "Whether a TikTok connection is out of the error state",
    ["connection_id"],
    registry=REGISTRY,
)

# Global state
_scheduler_running = False
_app_start_time = datetime.now(UTC)


def set_scheduler_running(running: bool) -> None:
    """Update scheduler running status."""
    global _scheduler_running
    _scheduler_running = running
    scheduler_running.set(1 if running else 0)


def check_database_health() -> bool:
    """Check database connectivity."""
    try:
        with get_session() as session:
            session.execute(text("SELECT 1")).fetchone()
            database_connection_healthy.set(1)
            return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        database_connection_healthy.set(0)
        return False


def get_connection_states() -> dict[str, dict[str, Any]]:
    """Sync state of every connection, refreshing the per-connection health gauge."""
    states = {}
    try:
        with get_session() as session:
            for connection in session.scalars(select(TikTokConnection)):
                healthy = connection.sync_status != SYNC_STATUS_ERROR
                connection_sync_healthy.labels(connection_id=connection.id).set(1 if healthy else 0)
                states[connection.id] = {
                    "shop_name": connection.shop_name,
                    "status": connection.sync_status,
                    "last_sync_at": connection.last_sync_at.isoformat() if connection.last_sync_at else None,
                    "error": connection.sync_error,
                }
    except Exception as e:
        logger.error(f"Failed to get connection states: {e}")
    return states


def get_health_status() -> dict[str, Any]:
    """Get comprehensive health status."""
    db_healthy = check_database_health()
    connections = get_connection_states()

    # Connection errors are reported but not counted against service health
    overall_healthy = db_healthy and _scheduler_running

    return {
        "status": "healthy" if overall_healthy else "unhealthy",
        "timestamp": datetime.now(UTC).isoformat(),
        "uptime_seconds": (datetime.now(UTC) - _app_start_time).total_seconds(),
        "checks": {
            "database": "healthy" if db_healthy else "unhealthy",
            "scheduler": "running" if _scheduler_running else "stopped",
        },
        "connections": connections,
    }


# Metrics helpers for use in jobs
def record_job_start(job_name: str) -> float:
    """Record job start and return start time."""
    return datetime.now(UTC).timestamp()


def record_job_success(job_name: str, start_time: float) -> None:
    """Record successful job completion."""
    job_runs_total.labels(job=job_name, status="success").inc()
    job_duration_seconds.labels(job=job_name).observe(datetime.now(UTC).timestamp() - start_time)


def record_job_error(job_name: str, start_time: float, error: str) -> None:
    """Record job error."""
    job_runs_total.labels(job=job_name, status="error").inc()
    job_duration_seconds.labels(job=job_name).observe(datetime.now(UTC).timestamp() - start_time)


def record_sync_results(results: dict[str, Any]) -> None:
    """Count upserted records per entity from a sync result; skipped entities are ignored."""
    for entity in ("orders", "affiliate_orders", "settlements", "products"):
        count = results.get(entity)
        if isinstance(count, int) and count > 0:
            records_upserted_total.labels(entity=entity).inc(count)


def record_sync_outcome(outcome: dict[str, Any], start_time: float) -> None:
    if outcome.get("success"):
        record_job_success("tiktok_sync", start_time)
        record_sync_results(outcome["results"])
    elif outcome.get("error"):
        record_job_error("tiktok_sync", start_time, outcome["error"])


def record_reconcile_outcome(outcome: dict[str, Any], start_time: float) -> None:
    if outcome.get("success"):
        record_job_success("ledger_reconcile", start_time)
        ledger_days_updated_total.inc(outcome.get("days_updated", 0))
    else:
        record_job_error("ledger_reconcile", start_time, outcome.get("error", ""))


# Request models
class SyncRequest(BaseModel):
    connection_id: str
    sync_type: str = "all"
    full_sync: bool = False
    start_date: date | None = None
    end_date: date | None = None


class ReconcileRequest(BaseModel):
    connection_id: str
    start_date: date
    end_date: date
    platform_fee_percent: float | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """FastAPI lifespan context manager."""
    logger.info("Starting HTTP server")
    yield
    logger.info("Stopping HTTP server")


app = FastAPI(
    title=SERVICE_NAME,
    description="Sync and ledger reconciliation endpoints for TikTok Shop connections",
    version=SERVICE_VERSION,
    lifespan=lifespan,
)


@app.get("/healthz")
def health_check():
    """Health check endpoint."""
    health = get_health_status()

    if health["status"] == "healthy":
        return health
    raise HTTPException(status_code=503, detail=health)


@app.get("/metrics", response_class=PlainTextResponse)
def metrics():
    """Prometheus metrics endpoint."""
    check_database_health()
    get_connection_states()

    return PlainTextResponse(generate_latest(REGISTRY), media_type=CONTENT_TYPE_LATEST)


@app.get("/")
def root():
    """Root endpoint with service info."""
    return {
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "timestamp": datetime.now(UTC).isoformat(),
        "endpoints": ["/healthz", "/metrics", "/sync", "/reconcile", "/tiktok/auth", "/tiktok/callback"],
    }


@app.post("/sync")
def sync_endpoint(request: SyncRequest):
    """Run a connection sync and return per-entity results."""
    if request.sync_type not in SYNC_TYPES:
        raise HTTPException(status_code=400, detail=f"sync_type must be one of {list(SYNC_TYPES)}")
    if (request.start_date is None) != (request.end_date is None):
        raise HTTPException(status_code=400, detail="start_date and end_date must be given together")

    window = day_window(request.start_date, request.end_date) if request.start_date else None

    start_time = record_job_start("tiktok_sync")
    outcome = start_sync(request.connection_id, request.sync_type, window, request.full_sync)
    record_sync_outcome(outcome, start_time)

    if outcome.get("status") == "already_syncing":
        return JSONResponse(status_code=409, content=outcome)
    if not outcome["success"]:
        return JSONResponse(status_code=500, content=outcome)
    return outcome


@app.post("/reconcile")
def reconcile_endpoint(request: ReconcileRequest):
    """Fold synced data for the given days into the ledger."""
    if request.end_date < request.start_date:
        raise HTTPException(status_code=400, detail="end_date must not be before start_date")

    start_time = record_job_start("ledger_reconcile")
    outcome = reconcile(
        request.connection_id,
        day_window(request.start_date, request.end_date),
        request.platform_fee_percent,
    )
    record_reconcile_outcome(outcome, start_time)

    if not outcome["success"]:
        return JSONResponse(status_code=500, content=outcome)
    return outcome


@app.get("/tiktok/auth")
def tiktok_auth(user_id: str = Query(...)):
    """Redirect the seller to TikTok's authorization page."""
    url = TikTokClient().get_authorization_url(build_oauth_state(user_id))
    return RedirectResponse(url)


@app.get("/tiktok/callback")
def tiktok_callback(code: str = Query(...), state: str = Query(...)):
    """Complete the OAuth flow and store the authorized shop connection(s)."""
    try:
        user_id = parse_oauth_state(state)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e

    connection_ids = connect_from_auth_code(code, user_id)
    return {"success": True, "connection_ids": connection_ids}


@app.delete("/connections/{connection_id}")
def delete_connection(connection_id: str, user_id: str = Query(...)):
    """Disconnect a shop; synced history is kept."""
    if not disconnect(connection_id, user_id):
        raise HTTPException(status_code=404, detail="Connection not found")
    return {"success": True}


def start_http_server(port: int | None = None):
    """
    Start the HTTP server with uvicorn in a background thread.

    Returns:
        Thread handle, or None when disabled by configuration
    """
    if not cfg("observability.metrics.enabled", True):
        logger.info("HTTP server disabled by configuration")
        return None

    port = port or cfg("observability.metrics.port", 8000)
    server = uvicorn.Server(uvicorn.Config(app, host="0.0.0.0", port=port, log_config=None))

    thread = threading.Thread(target=server.run, daemon=True)
    thread.start()
    logger.info(f"HTTP server listening on port {port}")
    return thread
