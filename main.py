import logging
import time
from datetime import datetime, timezone
from typing import Optional

import redis
from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel
from starlette.concurrency import run_in_threadpool

from config import settings
from decision import Decision, blocking_headers, blocking_message
from errors import PersistenceFailure
from proxy import forward_request
from schemas import CleanupResponse, HealthResponse, StatsResponse
from security import require_control_secret
from traffic_logger import shutdown_traffic_logger, start_traffic_logger
from wiring import Worker, build_worker, close_worker


# ======================================================
# App Setup
# ======================================================

app = FastAPI(title="Throttle Worker")

logging.basicConfig(level=settings.LOG_LEVEL)
logger = logging.getLogger("throttle.worker")


# ======================================================
# Request Context (Facts Only)
# ======================================================

class RequestContext(BaseModel):
    timestamp: str
    method: str
    path: str

    ip: Optional[str]
    user_agent: str

    verdict: str
    count: Optional[int]
    recorded: bool

    status_code: int
    latency_ms: int


def _log_request(request: Request, path: str, decision: Decision, status_code: int, start: float):
    ctx = RequestContext(
        timestamp=datetime.now(timezone.utc).isoformat(),
        method=request.method,
        path=path,
        ip=decision.ip,
        user_agent=decision.user_agent,
        verdict=decision.verdict.value,
        count=decision.count,
        recorded=decision.recorded,
        status_code=status_code,
        latency_ms=int((time.monotonic() - start) * 1000),
    )
    logger.info(ctx.model_dump_json())


# ======================================================
# Lifecycle
# ======================================================

@app.on_event("startup")
async def startup():
    app.state.worker = build_worker(settings)
    app.state.worker.config_manager.start_background_refresh()
    if settings.LOG_TO_FILE:
        start_traffic_logger(settings.TRAFFIC_LOG_PATH, settings.TRAFFIC_LOG_MAX_BYTES)


@app.on_event("shutdown")
async def shutdown():
    worker = getattr(app.state, "worker", None)
    if worker is not None:
        await close_worker(worker)
    shutdown_traffic_logger()


def get_worker(request: Request) -> Worker:
    worker = getattr(request.app.state, "worker", None)
    if worker is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Worker is initializing",
        )
    return worker


# ======================================================
# Health
# ======================================================

@app.get("/health", response_model=HealthResponse)
def health_check(worker: Worker = Depends(get_worker)):
    try:
        worker.redis.ping()
    except redis.RedisError:
        return {"status": "degraded"}
    return {"status": "ok"}


# ======================================================
# Operator endpoints
# ======================================================

@app.get(
    "/internal/stats",
    response_model=StatsResponse,
    dependencies=[Depends(require_control_secret)],
)
def traffic_stats(worker: Worker = Depends(get_worker)):
    try:
        return worker.event_store.statistics()
    except PersistenceFailure as e:
        logger.error(f"Statistics unavailable: {e}")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Statistics unavailable")


@app.post(
    "/internal/cleanup",
    response_model=CleanupResponse,
    dependencies=[Depends(require_control_secret)],
)
def run_cleanup(worker: Worker = Depends(get_worker)):
    config = worker.config_manager.get_snapshot()
    try:
        result = worker.retention.run_job(config)
    except PersistenceFailure as e:
        logger.error(f"Cleanup failed: {e}")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Cleanup failed")
    return {"ran": result.ran, "deleted": result.deleted, "last_check": result.last_check}


# ======================================================
# Gateway (ALL REAL TRAFFIC)
# ======================================================

@app.api_route(
    "/{path:path}",
    methods=["GET", "POST", "PUT", "DELETE", "PATCH", "HEAD", "OPTIONS"],
)
async def gateway(
    path: str,
    request: Request,
    worker: Worker = Depends(get_worker),
):
    start_time = time.monotonic()
    config = worker.config_manager.get_snapshot()
    peer = request.client.host if request.client else None

    # Classification does blocking DB and Redis I/O.
    decision = await run_in_threadpool(worker.classifier.evaluate, config, request.headers, peer)

    # --------------------------------------------------
    # Block (policy outcome, not an error)
    # --------------------------------------------------

    if decision.blocked:
        _log_request(request, path, decision, status.HTTP_429_TOO_MANY_REQUESTS, start_time)
        return PlainTextResponse(
            blocking_message(config),
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            headers=blocking_headers(config),
        )

    # --------------------------------------------------
    # Forward to Origin (Transparent)
    # --------------------------------------------------

    upstream_url = f"{worker.upstream_url.rstrip('/')}/{path}"

    try:
        response = await forward_request(
            client=worker.http_client,
            request=request,
            upstream_url=upstream_url,
            client_ip=decision.ip,
        )
    except HTTPException as e:
        _log_request(request, path, decision, e.status_code, start_time)
        raise

    _log_request(request, path, decision, response.status_code, start_time)
    return response
