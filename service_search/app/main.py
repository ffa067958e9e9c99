"""Retrieval service entrypoint.

Wires the hybrid search manager, calibration table and drift monitor into a
FastAPI app. Startup fails if the calibration table is missing or malformed.
"""

import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, Dict

import redis.asyncio as redis
import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST
import structlog

from .api.routes import router as api_router
from .hybrid.search_manager import create_search_manager
from .ranking.calibration import get_calibration
from .runtime.metrics import SERVICE_NAME, get_service_metrics
from libs.common.config import DriftConfig, SearchConfig
from libs.common.logging import bound_context, configure_logging
from monitoring.drift_monitor import create_drift_monitor

logger = structlog.get_logger("search_service")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build shared clients on startup and release them on shutdown."""
    config = SearchConfig()
    configure_logging(SERVICE_NAME, config.ml_log_level, config.ml_log_format)

    # Raises CalibrationConfigError before the service takes traffic
    app.state.calibration = get_calibration(config.ml_calibration_path)
    logger.info(
        "Calibration table loaded",
        path=config.ml_calibration_path,
        source=app.state.calibration.source,
        breakpoints=len(app.state.calibration.x)
    )

    app.state.metrics_collector = get_service_metrics()
    app.state.redis = redis.from_url(config.ml_redis_url)

    app.state.search_manager = create_search_manager(config, app.state.redis, app.state.metrics_collector)
    await app.state.search_manager.initialize()

    app.state.drift_monitor = create_drift_monitor(DriftConfig(), app.state.redis, app.state.metrics_collector)

    logger.info("Retrieval service ready", default_alpha=app.state.search_manager.default_alpha)
    try:
        yield
    finally:
        logger.info("Retrieval service stopping")
        await app.state.search_manager.cleanup()
        await app.state.drift_monitor.close()
        await app.state.redis.aclose()


app = FastAPI(
    title="Retrieval Service",
    description="Hybrid lexical and vector search with adaptive blending",
    version="0.1.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["GET", "POST", "DELETE"],
    allow_headers=["*"],
)

app.include_router(api_router, prefix="/api/v1")


def _endpoint_label(request: Request) -> str:
    # Route templates keep label cardinality bounded
    route = request.scope.get("route")
    return getattr(route, "path", request.url.path)


@app.middleware("http")
async def record_request_metrics(request: Request, call_next):
    """Tag logs with a request id, time the request and export HTTP metrics."""
    started = time.perf_counter()
    request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex

    with bound_context(request_id=request_id):
        try:
            response = await call_next(request)
        except Exception as e:
            logger.error("Unhandled request error", path=request.url.path, error=str(e))
            response = JSONResponse(status_code=500, content={"error": "Internal server error"})

    elapsed = time.perf_counter() - started
    response.headers["X-Process-Time"] = f"{elapsed:.6f}"
    response.headers["X-Request-ID"] = request_id

    collector = getattr(request.app.state, "metrics_collector", None)
    if collector is not None:
        collector.record_http_request(
            method=request.method,
            endpoint=_endpoint_label(request),
            status=response.status_code,
            duration=elapsed
        )
    return response


@app.get("/health")
async def health(request: Request):
    """Report search readiness; the drift monitor is informational only."""
    search_manager = getattr(request.app.state, "search_manager", None)
    body: Dict[str, Any] = {"service": SERVICE_NAME}

    try:
        search_ready = search_manager is not None and await search_manager.health_check()
    except Exception as e:
        logger.error("Health check failed", error=str(e))
        search_ready = False

    body["components"] = {
        "search": search_ready,
        "calibration": getattr(request.app.state, "calibration", None) is not None,
        "drift_monitor": getattr(request.app.state, "drift_monitor", None) is not None,
    }
    if not search_ready:
        body["status"] = "unhealthy"
        return JSONResponse(status_code=503, content=body)

    body["status"] = "healthy"
    body["default_alpha"] = search_manager.default_alpha
    return body


@app.get("/metrics")
async def metrics(request: Request):
    """Prometheus exposition of the service registry."""
    collector = getattr(request.app.state, "metrics_collector", None)
    if collector is None:
        return Response(content="# No metrics available\n", media_type="text/plain")
    return Response(content=collector.get_metrics(), media_type=CONTENT_TYPE_LATEST)


if __name__ == "__main__":
    uvicorn.run(
        "service_search.app.main:app",
        host="0.0.0.0",
        port=SearchConfig().ml_search_port,
        log_level="info"
    )
