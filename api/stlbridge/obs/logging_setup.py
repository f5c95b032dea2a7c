from __future__ import annotations
import logging
import json
import sys
from contextvars import ContextVar
from typing import Dict, Any, Optional
from opentelemetry import trace
from opentelemetry.trace import format_trace_id, format_span_id

_RESERVED_ATTRS = frozenset({
    'name', 'msg', 'args', 'levelname', 'levelno', 'pathname',
    'filename', 'module', 'lineno', 'funcName', 'created',
    'msecs', 'relativeCreated', 'thread', 'threadName', 'taskName',
    'processName', 'process', 'exc_info', 'exc_text', 'stack_info',
    'message', 'asctime',
    # injected by the OTel logging instrumentation
    'otelSpanID', 'otelTraceID', 'otelTraceSampled', 'otelServiceName',
})

# Set per HTTP request; copied into import tasks spawned while handling it
request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

class StructuredFormatter(logging.Formatter):
    """JSON structured logging formatter with OpenTelemetry correlation."""

    def format(self, record: logging.LogRecord) -> str:
        span_context = trace.get_current_span().get_span_context()

        log_entry = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if span_context.is_valid:
            log_entry.update({
                "trace_id": format_trace_id(span_context.trace_id),
                "span_id": format_span_id(span_context.span_id),
                "trace_flags": f"{span_context.trace_flags:02x}"
            })

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        extra_fields = {
            key: value for key, value in record.__dict__.items()
            if key not in _RESERVED_ATTRS
        }
        if extra_fields:
            log_entry["extra"] = extra_fields

        return json.dumps(log_entry, ensure_ascii=False, default=str)

def setup_logging(level: int = logging.INFO, structured: bool = True) -> None:
    """Configure application logging."""

    root_logger = logging.getLogger()
    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)

    if structured:
        formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )

    handler.setFormatter(formatter)
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    logging.getLogger("uvicorn").setLevel(logging.INFO)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("redis").setLevel(logging.WARNING)

    print(f"📝 Logging configured (structured={structured}, level={logging.getLevelName(level)})")

class ContextLogger:
    """Logger that turns keyword arguments into structured context fields."""

    def __init__(self, name: str):
        self.logger = logging.getLogger(name)

    def _add_context(self, extra: Dict[str, Any]) -> Dict[str, Any]:
        # Keys clashing with LogRecord attributes would make logging raise
        context = {
            (f"ctx_{key}" if key in _RESERVED_ATTRS else key): value
            for key, value in extra.items()
        }

        request_id = request_id_var.get()
        if request_id is not None:
            context.setdefault("request_id", request_id)

        span = trace.get_current_span()
        if span.is_recording():
            context["span_name"] = getattr(span, "name", None)

        return context

    def debug(self, message: str, exc_info: Any = None, **kwargs):
        self.logger.debug(message, exc_info=exc_info, extra=self._add_context(kwargs))

    def info(self, message: str, exc_info: Any = None, **kwargs):
        self.logger.info(message, exc_info=exc_info, extra=self._add_context(kwargs))

    def warning(self, message: str, exc_info: Any = None, **kwargs):
        self.logger.warning(message, exc_info=exc_info, extra=self._add_context(kwargs))

    def error(self, message: str, exc_info: Any = None, **kwargs):
        self.logger.error(message, exc_info=exc_info, extra=self._add_context(kwargs))

    def exception(self, message: str, **kwargs):
        self.logger.exception(message, extra=self._add_context(kwargs))

def get_logger(name: str) -> ContextLogger:
    """Get context-aware logger."""
    return ContextLogger(name)
