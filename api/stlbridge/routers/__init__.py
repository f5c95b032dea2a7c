"""
API routers module.

Provides:
- Import, upload, status and model download endpoints
- Realtime channel WebSocket
- Health, readiness and metrics endpoints
"""

from . import health, imports, readiness, metrics, realtime

__all__ = [
    "health",
    "imports",
    "readiness",
    "metrics",
    "realtime"
]
