from __future__ import annotations
import functools
import inspect
from typing import Callable, Iterable, Optional
from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from stlbridge.obs.logging_setup import get_logger

logger = get_logger(__name__)

def traced(operation_name: Optional[str] = None, record: Iterable[str] = ()):
    """Run a coroutine function inside an OpenTelemetry span.

    Arguments named in ``record`` become ``import.<name>`` span attributes.
    When the result carries an ``id`` (an import job), it is attached as
    ``import.job_id`` so the span can be found from the job.
    """
    recorded = tuple(record)

    def decorator(func: Callable) -> Callable:
        if not inspect.iscoroutinefunction(func):
            raise TypeError(f"traced expects a coroutine function, got {func.__qualname__}")

        tracer = trace.get_tracer(__name__)
        span_name = operation_name or f"{func.__module__}.{func.__qualname__}"
        signature = inspect.signature(func)

        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            with tracer.start_as_current_span(span_name) as span:
                if recorded:
                    bound = signature.bind_partial(*args, **kwargs).arguments
                    for name in recorded:
                        if bound.get(name) is not None:
                            span.set_attribute(f"import.{name}", str(bound[name])[:500])
                try:
                    result = await func(*args, **kwargs)
                except Exception as e:
                    span.record_exception(e)
                    span.set_status(Status(StatusCode.ERROR, str(e)))
                    logger.warning(f"{span_name} failed", error=str(e), error_type=type(e).__name__)
                    raise
                job_id = getattr(result, "id", None)
                if job_id is not None:
                    span.set_attribute("import.job_id", str(job_id))
                span.set_status(Status(StatusCode.OK))
                return result

        return wrapper

    return decorator
