from __future__ import annotations
import os

# Origin allow-list
ALLOWED_ORIGINS: frozenset[str] = frozenset(
    origin.strip()
    for origin in os.getenv(
        "ALLOWED_ORIGINS",
        "https://magic.taiyaki.ai,https://library.taiyaki.ai,http://localhost:3000"
    ).split(",")
    if origin.strip()
)
DEV_MODE: bool = os.getenv("DEV_MODE", "false").lower() == "true"
ALLOW_PRIVATE_URLS: bool = os.getenv("ALLOW_PRIVATE_URLS", "false").lower() == "true"

# Import pipeline
EMBED_THRESHOLD_BYTES: int = int(os.getenv("EMBED_THRESHOLD_BYTES", str(5 * 1024 * 1024)))
UPLOADS_DIR: str = os.getenv("UPLOADS_DIR", os.path.join(os.getcwd(), "uploads"))
MAX_UPLOAD_BYTES: int = int(os.getenv("MAX_UPLOAD_BYTES", str(50 * 1024 * 1024)))
FETCH_TIMEOUT_SECONDS: float = float(os.getenv("FETCH_TIMEOUT_SECONDS", "60"))
DECODE_TIMEOUT_SECONDS: float = float(os.getenv("DECODE_TIMEOUT_SECONDS", "30"))
DECODE_WORKERS: int = int(os.getenv("DECODE_WORKERS", "4"))
MAX_RETRIES: int = int(os.getenv("MAX_RETRIES", "2"))

# Job retention
JOB_TTL_SECONDS: int = int(os.getenv("JOB_TTL_SECONDS", str(24 * 3600)))
SWEEP_INTERVAL_SECONDS: int = int(os.getenv("SWEEP_INTERVAL_SECONDS", "3600"))

# Redis (optional job snapshot persistence)
REDIS_URL: str | None = os.getenv("REDIS_URL")

# Realtime channel
HEARTBEAT_INTERVAL: int = int(os.getenv("HEARTBEAT_INTERVAL", "15"))

# Client bridge
API_BASE_URL: str = os.getenv("API_BASE_URL", "http://localhost:3001/api")
BRIDGE_VERSION: str = "1.0"

# OpenTelemetry Configuration
OTEL_EXPORTER_OTLP_ENDPOINT: str | None = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
OTEL_SERVICE_NAME: str = os.getenv("OTEL_SERVICE_NAME", "stl-import-bridge")
