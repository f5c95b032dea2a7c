"""
Utility functions and helpers.

Provides:
- Server-sent events utilities
- Retry logic with backoff
- Circuit breaker
"""

from .sse import create_sse_message, create_sse_heartbeat, create_sse_close, parse_sse_lines
from .retry_backoff import (
    retry_with_backoff,
    RetryConfig,
    DEFAULT_HTTP_RETRY,
    CHANNEL_RECONNECT_RETRY
)
from .circuit_breaker import CircuitBreaker, CircuitState

__all__ = [
    "create_sse_message",
    "create_sse_heartbeat",
    "create_sse_close",
    "parse_sse_lines",
    "retry_with_backoff",
    "RetryConfig",
    "DEFAULT_HTTP_RETRY",
    "CHANNEL_RECONNECT_RETRY",
    "CircuitBreaker",
    "CircuitState"
]
