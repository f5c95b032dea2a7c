from __future__ import annotations
import os
import time
import psutil
from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import JSONResponse, Response
from stlbridge import __version__
from stlbridge.config import OTEL_SERVICE_NAME, UPLOADS_DIR
from stlbridge.obs.logging_setup import get_logger
from stlbridge.obs.prometheus_metrics import prometheus_metrics

logger = get_logger(__name__)

router = APIRouter(tags=["health"])

@router.get("/ready")
async def readiness_check(request: Request) -> JSONResponse:
    """
    Kubernetes-style readiness probe.
    Checks the job registry, its snapshot store and system resources.
    """
    registry = request.app.state.registry
    checks = {}
    overall_healthy = True
    start_time = time.time()

    checks["registry"] = {
        "status": "healthy" if registry.running else "unhealthy",
        "jobs": len(registry.list_jobs()),
        "active_jobs": registry.active_count
    }
    if not registry.running:
        overall_healthy = False

    try:
        store_health = await registry.store.health_check()
        checks["store"] = store_health
        if store_health["status"] != "healthy":
            overall_healthy = False
    except Exception as e:
        checks["store"] = {"status": "unhealthy", "error": str(e)}
        overall_healthy = False

    try:
        memory = psutil.virtual_memory()
        disk = psutil.disk_usage(UPLOADS_DIR if os.path.isdir(UPLOADS_DIR) else "/")

        # Unhealthy above 90% memory or 95% disk
        memory_healthy = memory.percent < 90
        disk_healthy = disk.percent < 95

        checks["system"] = {
            "status": "healthy" if (memory_healthy and disk_healthy) else "degraded",
            "memory_percent": memory.percent,
            "disk_percent": disk.percent
        }
        if not (memory_healthy and disk_healthy):
            overall_healthy = False
    except (psutil.Error, OSError) as e:
        checks["system"] = {"status": "unhealthy", "error": str(e)}
        overall_healthy = False

    total_time = (time.time() - start_time) * 1000
    response_data = {
        "status": "ready" if overall_healthy else "not_ready",
        "timestamp": time.time(),
        "checks": checks,
        "response_time_ms": round(total_time, 2)
    }

    if not overall_healthy:
        logger.warning("Readiness check failed", checks=checks)

    return JSONResponse(response_data, status_code=200 if overall_healthy else 503)

@router.get("/live")
async def liveness_check() -> JSONResponse:
    """
    Kubernetes-style liveness probe.
    Simple check that service is running.
    """
    return JSONResponse({
        "status": "alive",
        "timestamp": time.time(),
        "service": OTEL_SERVICE_NAME,
        "version": __version__
    })

@router.get("/metrics/prometheus")
async def prometheus_metrics_endpoint(request: Request):
    """Prometheus metrics endpoint."""
    try:
        process = psutil.Process(os.getpid())
        prometheus_metrics.update_system_metrics(process.memory_info().rss, process.cpu_percent())
        prometheus_metrics.update_active_jobs(request.app.state.registry.active_count)

        return Response(
            content=prometheus_metrics.get_prometheus_metrics(),
            media_type=prometheus_metrics.get_content_type()
        )
    except Exception as e:
        logger.error("Prometheus metrics error", error=str(e))
        raise HTTPException(status_code=500, detail="Metrics collection failed")
