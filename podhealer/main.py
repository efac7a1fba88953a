"""
Pod Healer - Main Application
=============================

FastAPI application hosting the healing loop.

Responsibilities:
- Verify the cluster is reachable before starting (fatal otherwise)
- Run the scan loop as a background task
- Expose health, readiness, Prometheus metrics and state endpoints
- Stop the loop gracefully on shutdown
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator
import asyncio

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST

from podhealer.api.routes import router as api_router
from podhealer.config import get_settings
from podhealer.core.action_executor import ActionExecutor
from podhealer.core.cooldown_store import CooldownStore
from podhealer.core.errors import ClusterUnavailableError
from podhealer.core.k8s_client import K8sClient
from podhealer.core.metrics import HealerMetrics
from podhealer.core.notifier import build_notifier
from podhealer.core.scan_orchestrator import ScanOrchestrator
from podhealer.utils.logging import get_logger, setup_logging

settings = get_settings()

setup_logging(
    service_name=settings.service_name,
    log_level=settings.log_level,
    json_output=settings.log_json
)

logger = get_logger(__name__)


def build_orchestrator(k8s: K8sClient) -> ScanOrchestrator:
    """Wire the healer components from settings."""
    return ScanOrchestrator(
        cluster=k8s,
        store=CooldownStore.from_settings(settings),
        executor=ActionExecutor(k8s, settings),
        notifier=build_notifier(settings),
        metrics=HealerMetrics(),
        settings=settings,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """
    Startup: connect to the cluster and start the scan loop.
    Shutdown: stop ticking, let in-flight remediations finish, flush events.
    """
    logger.info(
        f"Starting {settings.service_name} v{settings.service_version}",
        extra={
            "version": settings.service_version,
            "action_mode": settings.action_mode.value,
            "dry_run": settings.dry_run,
            "namespace": settings.watch_namespace or "*",
        }
    )

    try:
        k8s = K8sClient(settings)
        await k8s.check_connection()
    except ClusterUnavailableError as e:
        logger.critical(f"Cannot start: {e}")
        raise

    orchestrator = build_orchestrator(k8s)
    app.state.orchestrator = orchestrator
    loop_task = asyncio.create_task(orchestrator.run_forever())
    app.state.loop_task = loop_task

    yield

    logger.info("Shutting down Pod Healer...")
    await orchestrator.shutdown(loop_task, timeout=settings.cycle_deadline_seconds + 5)
    logger.info("Pod Healer shutdown complete")


app = FastAPI(
    title="Pod Healer",
    description="Self-healing control loop for Kubernetes workloads",
    version=settings.service_version,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(
        f"Unhandled exception: {exc}",
        extra={"path": request.url.path},
        exc_info=True
    )
    return JSONResponse(
        status_code=500,
        content={"error": "internal_server_error", "message": str(exc) if settings.debug else "An error occurred"}
    )


@app.get("/health", tags=["health"])
async def health_check():
    return {
        "status": "healthy",
        "service": settings.service_name,
        "version": settings.service_version
    }


@app.get("/ready", tags=["health"])
async def readiness_check(request: Request):
    orchestrator = getattr(request.app.state, "orchestrator", None)
    running = orchestrator is not None and orchestrator.is_running
    last = orchestrator.last_report if orchestrator is not None else None
    body = {
        "status": "ready" if running else "not_ready",
        "service": settings.service_name,
        "loop_running": running,
        "last_cycle_at": last.finished_at.isoformat() if last and last.finished_at else None,
        "tracked_workloads": len(orchestrator.store) if orchestrator is not None else 0,
    }
    return JSONResponse(status_code=200 if running else 503, content=body)


@app.get("/metrics", tags=["health"])
async def metrics(request: Request):
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        return JSONResponse(
            status_code=503,
            content={"status": "not_ready", "detail": "Metrics are available once the scan loop has started"}
        )
    return Response(content=orchestrator.metrics.render(), media_type=CONTENT_TYPE_LATEST)


app.include_router(api_router, prefix="/api/v1")
