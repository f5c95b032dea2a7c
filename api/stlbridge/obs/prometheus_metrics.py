from __future__ import annotations
from prometheus_client import Counter, Histogram, Gauge, Info, generate_latest, CONTENT_TYPE_LATEST
from stlbridge.obs.logging_setup import get_logger

logger = get_logger(__name__)

IMPORT_JOBS_TOTAL = Counter(
    'stl_import_jobs_total',
    'Total server-mediated import jobs by terminal outcome',
    ['status', 'kind']
)

IMPORT_JOB_DURATION = Histogram(
    'stl_import_job_duration_seconds',
    'Import job duration from creation to terminal state',
    ['status']
)

JOB_TRANSITIONS_TOTAL = Counter(
    'stl_import_job_transitions_total',
    'Applied job state transitions',
    ['status']
)

CONSISTENCY_FAULTS_TOTAL = Counter(
    'stl_import_consistency_faults_total',
    'Illegal state transitions that forced a job to fail'
)

PERSISTENCE_FAILURES_TOTAL = Counter(
    'stl_import_persistence_failures_total',
    'Job snapshot writes that failed'
)

MODEL_BYTES = Histogram(
    'stl_import_model_bytes',
    'Size of imported STL payloads in bytes',
    ['kind'],
    buckets=(64 * 1024, 512 * 1024, 1024 ** 2, 5 * 1024 ** 2, 20 * 1024 ** 2, 50 * 1024 ** 2)
)

ACTIVE_JOBS = Gauge(
    'stl_import_active_jobs',
    'Jobs that have not reached a terminal state'
)

CHANNEL_SUBSCRIBERS = Gauge(
    'stl_import_channel_subscribers',
    'Connected realtime channel subscribers'
)

MEMORY_USAGE = Gauge(
    'process_memory_bytes',
    'Process memory usage in bytes'
)

CPU_USAGE = Gauge(
    'process_cpu_percent',
    'Process CPU usage percentage'
)

SERVICE_INFO = Info(
    'service_info',
    'Service information'
)

class PrometheusMetrics:
    """Prometheus metrics collector with convenience methods."""

    def __init__(self):
        SERVICE_INFO.info({
            'version': '1.0.0',
            'service': 'stl-import-bridge',
        })
        logger.info("Prometheus metrics initialized")

    def record_transition(self, status: str):
        JOB_TRANSITIONS_TOTAL.labels(status=status).inc()

    def record_job_finished(self, status: str, kind: str, duration_seconds: float):
        IMPORT_JOBS_TOTAL.labels(status=status, kind=kind).inc()
        IMPORT_JOB_DURATION.labels(status=status).observe(duration_seconds)

    def record_consistency_fault(self):
        CONSISTENCY_FAULTS_TOTAL.inc()

    def record_persistence_failure(self):
        PERSISTENCE_FAILURES_TOTAL.inc()

    def record_model_size(self, kind: str, size_bytes: int):
        MODEL_BYTES.labels(kind=kind).observe(size_bytes)

    def update_active_jobs(self, count: int):
        ACTIVE_JOBS.set(count)

    def update_subscribers(self, count: int):
        CHANNEL_SUBSCRIBERS.set(count)

    def update_system_metrics(self, memory_bytes: float, cpu_percent: float):
        MEMORY_USAGE.set(memory_bytes)
        CPU_USAGE.set(cpu_percent)

    def get_prometheus_metrics(self) -> bytes:
        """Get metrics in Prometheus format."""
        return generate_latest()

    def get_content_type(self) -> str:
        return CONTENT_TYPE_LATEST

# Global Prometheus metrics instance
prometheus_metrics = PrometheusMetrics()
