from __future__ import annotations
import os
from contextlib import asynccontextmanager
from typing import Optional
import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

# Import observability setup
from .obs.otel import setup_tracing, shutdown_tracing
from .obs.logging_setup import setup_logging, get_logger

# Import middleware
from .middleware.request_id import RequestIDMiddleware
from .middleware.security import SecurityMiddleware

# Import services
from .config import ALLOWED_ORIGINS, DEV_MODE
from .services.import_service import ImportService
from .services.job_store import create_job_store
from .services.job_tracker import JobRegistry
from .services.realtime import RealtimeChannel

# Import routers
from .routers import health, imports, metrics, readiness, realtime

logger = get_logger(__name__)

def create_app(
    registry: Optional[JobRegistry] = None,
    import_service: Optional[ImportService] = None,
    http_transport: Optional[httpx.AsyncBaseTransport] = None
) -> FastAPI:
    """Build the import bridge application.

    The registry and import service live on ``app.state``; pass them in to
    share one registry with in-process clients, or ``http_transport`` to
    route remote model fetches through a custom httpx transport.
    """
    registry = registry or JobRegistry(channel=RealtimeChannel(), store=create_job_store())
    import_service = import_service or ImportService(registry, transport=http_transport)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_tracing()
        setup_logging(
            structured=os.getenv("LOG_STRUCTURED", "true").lower() == "true"
        )
        await registry.start()
        logger.info("STL import bridge ready",
                    allowed_origins=sorted(ALLOWED_ORIGINS),
                    dev_mode=DEV_MODE)

        yield

        logger.info("STL import bridge shutting down", running_jobs=import_service.running_jobs)
        await import_service.close()
        await registry.stop()
        try:
            shutdown_tracing()
        except Exception as e:
            logger.error("Error during telemetry shutdown", error=str(e))

    app = FastAPI(
        title="STL Import Bridge",
        version="1.0.0",
        description="Cross-origin STL model import with tracked jobs and realtime status",
        lifespan=lifespan
    )
    app.state.registry = registry
    app.state.import_service = import_service

    # Security middleware (first)
    app.add_middleware(
        SecurityMiddleware,
        rate_limit_requests=int(os.getenv("RATE_LIMIT_REQUESTS", "100")),
        rate_limit_window=int(os.getenv("RATE_LIMIT_WINDOW", "60")),
        timeout_seconds=int(os.getenv("REQUEST_TIMEOUT", "120"))
    )

    # Request ID middleware
    app.add_middleware(RequestIDMiddleware)

    # CORS restricted to the origins allowed to request imports
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if DEV_MODE else sorted(ALLOWED_ORIGINS),
        allow_credentials=not DEV_MODE,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    FastAPIInstrumentor.instrument_app(
        app,
        excluded_urls="/health,/ready,/live,/metrics/prometheus"
    )

    app.include_router(health.router)
    app.include_router(readiness.router)
    app.include_router(metrics.router)
    app.include_router(imports.router)
    app.include_router(realtime.router)

    @app.get("/")
    async def root():
        """Service summary and endpoint index."""
        return {
            "service": "STL Import Bridge",
            "version": "1.0.0",
            "endpoints": {
                "health": "/health - Basic health check",
                "ready": "/ready - Kubernetes readiness probe",
                "live": "/live - Kubernetes liveness probe",
                "import": "/api/import-stl - Start a server-side import from a URL",
                "upload": "/api/upload - Upload an STL file for import",
                "status": "/api/import-status/{id} - Current job snapshot",
                "stream": "/api/import-status/{id}/stream - Job status as server-sent events",
                "cancel": "/api/import-status/{id}/cancel - Cancel a running import",
                "model": "/api/models/{id} - Download the imported STL",
                "realtime": "/ws - Realtime channel (join-import-room / leave-import-room)",
                "metrics": "/metrics - JSON metrics",
                "prometheus": "/metrics/prometheus - Prometheus metrics"
            },
            "jobs": {
                "active": registry.active_count,
                "subscribers": registry.channel.subscriber_count
            }
        }

    return app

app = create_app()
