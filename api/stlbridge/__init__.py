"""
STL Import Bridge - cross-origin STL model import for a browser modeling app.

Provides:
- Server-mediated import jobs with a validated state machine
- Realtime per-job status channel (WebSocket and SSE)
- Browser-side bridge: origin gatekeeping, request classification,
  embed/server dispatch and cross-frame responses
- OpenTelemetry tracing, Prometheus metrics and structured logging
"""

__version__ = "1.0.0"
__description__ = "Cross-origin STL import bridge with tracked jobs and realtime status"

# Export main application
from .main import app, create_app

__all__ = ["app", "create_app"]
