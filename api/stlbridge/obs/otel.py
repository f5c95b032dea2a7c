from __future__ import annotations
import os
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.sdk.trace.sampling import TraceIdRatioBased, ALWAYS_ON
from opentelemetry.propagate import set_global_textmap
from opentelemetry.propagators.b3 import B3MultiFormat
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.instrumentation.logging import LoggingInstrumentor
from stlbridge.config import OTEL_EXPORTER_OTLP_ENDPOINT, OTEL_SERVICE_NAME

_configured = False

def setup_tracing() -> None:
    """Initialize OpenTelemetry tracing once per process."""
    global _configured
    if _configured:
        return

    set_global_textmap(B3MultiFormat())

    resource = Resource.create({
        "service.name": OTEL_SERVICE_NAME,
        "service.version": "1.0.0",
        "deployment.environment": os.getenv("ENVIRONMENT", "development")
    })

    sample_rate = float(os.getenv("OTEL_SAMPLE_RATE", "1.0"))
    sampler = ALWAYS_ON if sample_rate >= 1.0 else TraceIdRatioBased(sample_rate)

    tracer_provider = TracerProvider(resource=resource, sampler=sampler)

    if OTEL_EXPORTER_OTLP_ENDPOINT:
        try:
            otlp_exporter = OTLPSpanExporter(
                endpoint=f"{OTEL_EXPORTER_OTLP_ENDPOINT}/v1/traces",
                timeout=10
            )
            tracer_provider.add_span_processor(BatchSpanProcessor(
                otlp_exporter,
                max_queue_size=512,
                max_export_batch_size=256,
                export_timeout_millis=30000
            ))
            print(f"🔍 OTLP exporter configured: {OTEL_EXPORTER_OTLP_ENDPOINT}")
        except Exception as e:
            print(f"⚠️  OTLP exporter failed, spans will not be exported: {e}")
    elif os.getenv("OTEL_CONSOLE_EXPORT", "false").lower() == "true":
        tracer_provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))
        print("⚠️  No OTLP endpoint configured, using console exporter")

    trace.set_tracer_provider(tracer_provider)
    try:
        HTTPXClientInstrumentor().instrument()
        LoggingInstrumentor().instrument(set_logging_format=False)
        print("📊 Auto-instrumentation enabled")
    except Exception as e:
        print(f"⚠️  Auto-instrumentation warning: {e}")

    _configured = True
    print(f"🔍 OpenTelemetry configured for service: {OTEL_SERVICE_NAME}")

def shutdown_tracing() -> None:
    """Flush and stop the tracer provider if the SDK one is installed."""
    tracer_provider = trace.get_tracer_provider()
    if hasattr(tracer_provider, "shutdown"):
        tracer_provider.shutdown()

def get_tracer(name: str = "stl-import-bridge") -> trace.Tracer:
    """Get OpenTelemetry tracer instance."""
    return trace.get_tracer(name)
