from __future__ import annotations
import os
import psutil
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from stlbridge.obs.logging_setup import get_logger

logger = get_logger(__name__)

router = APIRouter(tags=["metrics"])

@router.get("/metrics")
async def get_metrics(request: Request) -> JSONResponse:
    """Import pipeline counters in JSON format."""
    registry = request.app.state.registry
    import_service = request.app.state.import_service

    jobs_by_status: dict = {}
    for job in registry.list_jobs():
        jobs_by_status[job.status.value] = jobs_by_status.get(job.status.value, 0) + 1

    try:
        system = {
            "cpu_percent": psutil.cpu_percent(),
            "memory_percent": psutil.virtual_memory().percent,
            "process_memory_mb": psutil.Process(os.getpid()).memory_info().rss / 1024 / 1024
        }
    except psutil.Error as e:
        logger.error("Failed to collect system metrics", error=str(e))
        system = {"error": str(e)}

    return JSONResponse({
        "jobs": {
            "total": sum(jobs_by_status.values()),
            "active": registry.active_count,
            "running_tasks": import_service.running_jobs,
            "by_status": jobs_by_status
        },
        "channel": {
            "subscribers": registry.channel.subscriber_count,
            "rooms": registry.channel.room_count
        },
        "system": system
    })
