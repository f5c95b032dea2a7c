from __future__ import annotations
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, TypeVar
from stlbridge.errors import PersistenceError
from stlbridge.obs.logging_setup import get_logger

logger = get_logger(__name__)
T = TypeVar("T")

class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"            # writes are refused without touching the backend
    HALF_OPEN = "half_open"  # next write decides

class CircuitBreaker:
    """Stops hammering a snapshot backend that keeps failing.

    After ``failure_threshold`` consecutive failures the circuit opens and
    writes raise PersistenceError immediately. Once ``recovery_timeout``
    seconds pass a single probe write is let through; its outcome closes or
    reopens the circuit.
    """

    def __init__(
        self,
        name: str = "job-store",
        failure_threshold: int = 5,
        recovery_timeout: float = 60,
        clock: Callable[[], float] = time.monotonic
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._clock = clock
        self.failure_count = 0
        self.opened_at: Optional[float] = None
        self.state = CircuitState.CLOSED

    def allow(self) -> bool:
        if self.state != CircuitState.OPEN:
            return True
        if self._clock() - self.opened_at >= self.recovery_timeout:
            self.state = CircuitState.HALF_OPEN
            logger.info("Store circuit half-open, probing backend", circuit=self.name)
            return True
        return False

    async def call(self, func: Callable[..., Awaitable[T]], *args, **kwargs) -> T:
        if not self.allow():
            raise PersistenceError(f"{self.name} circuit is open, write skipped")
        try:
            result = await func(*args, **kwargs)
        except Exception:
            self.record_failure()
            raise
        self.record_success()
        return result

    def record_success(self) -> None:
        if self.state != CircuitState.CLOSED:
            logger.info("Store circuit closed", circuit=self.name)
        self.failure_count = 0
        self.opened_at = None
        self.state = CircuitState.CLOSED

    def record_failure(self) -> None:
        self.failure_count += 1
        if self.state == CircuitState.HALF_OPEN or self.failure_count >= self.failure_threshold:
            self.state = CircuitState.OPEN
            self.opened_at = self._clock()
            logger.error("Store circuit opened",
                         circuit=self.name,
                         failures=self.failure_count,
                         retry_in_seconds=self.recovery_timeout)

    def snapshot(self) -> dict[str, Any]:
        return {"state": self.state.value, "failures": self.failure_count}
