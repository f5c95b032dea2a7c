"""
Observability module - Tracing, metrics, and logging.

Provides:
- OpenTelemetry distributed tracing
- Prometheus metrics for import jobs and the realtime channel
- Structured logging with trace correlation
- Tracing decorator
"""

from .otel import setup_tracing, shutdown_tracing, get_tracer
from .logging_setup import setup_logging, get_logger
from .decorators import traced
from .prometheus_metrics import prometheus_metrics

__all__ = [
    "setup_tracing",
    "shutdown_tracing",
    "get_tracer",
    "setup_logging",
    "get_logger",
    "traced",
    "prometheus_metrics"
]
