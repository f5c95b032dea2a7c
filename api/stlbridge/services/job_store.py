from __future__ import annotations
import json
import time
from typing import Any, Dict, Optional, TYPE_CHECKING
import redis.asyncio as redis
from stlbridge.config import JOB_TTL_SECONDS, REDIS_URL
from stlbridge.obs.logging_setup import get_logger
from stlbridge.utils.circuit_breaker import CircuitBreaker

if TYPE_CHECKING:
    from stlbridge.services.job_tracker import ImportJob

logger = get_logger(__name__)

class JobStore:
    """Where job snapshots are written after each transition.

    The registry's in-memory table stays authoritative; stores only keep a
    copy for inspection from other processes.
    """

    async def save(self, job: "ImportJob") -> None:
        raise NotImplementedError

    async def load(self, job_id: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    async def delete(self, job_id: str) -> None:
        raise NotImplementedError

    async def health_check(self) -> Dict[str, Any]:
        return {"status": "healthy", "backend": type(self).__name__}

    async def close(self) -> None:
        return None

class MemoryJobStore(JobStore):
    """Process-local snapshot store."""

    def __init__(self):
        self._snapshots: Dict[str, Dict[str, Any]] = {}

    async def save(self, job: "ImportJob") -> None:
        self._snapshots[job.id] = {**job.to_dict(), "kind": job.kind}

    async def load(self, job_id: str) -> Optional[Dict[str, Any]]:
        snapshot = self._snapshots.get(job_id)
        return dict(snapshot) if snapshot is not None else None

    async def delete(self, job_id: str) -> None:
        self._snapshots.pop(job_id, None)

    async def health_check(self) -> Dict[str, Any]:
        return {"status": "healthy", "backend": "memory", "jobs": len(self._snapshots)}

class RedisJobStore(JobStore):
    """Redis hash per job, expiring TTL seconds after its last write."""

    def __init__(
        self,
        redis_url: Optional[str] = None,
        ttl_seconds: int = JOB_TTL_SECONDS,
        client: Optional[redis.Redis] = None,
        breaker: Optional[CircuitBreaker] = None
    ):
        self.redis_url = redis_url or REDIS_URL or "redis://localhost:6379"
        self.ttl_seconds = ttl_seconds
        self._redis: Optional[redis.Redis] = client
        self._breaker = breaker or CircuitBreaker(name="redis-job-store", failure_threshold=3, recovery_timeout=30)

    async def _get_redis(self) -> redis.Redis:
        if self._redis is None:
            self._redis = redis.from_url(
                self.redis_url,
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5,
                retry_on_timeout=True,
                max_connections=20
            )
            logger.info("Redis job store configured", redis_url=self.redis_url)
        return self._redis

    def _job_key(self, job_id: str) -> str:
        return f"stl-import:job:{job_id}"

    async def save(self, job: "ImportJob") -> None:
        snapshot = job.to_dict()
        mapping = {key: value for key, value in snapshot.items() if value is not None}
        mapping["metadata"] = json.dumps(snapshot["metadata"], default=str)
        mapping["kind"] = job.kind

        async def _write():
            client = await self._get_redis()
            pipe = client.pipeline()
            pipe.hset(self._job_key(job.id), mapping=mapping)
            pipe.expire(self._job_key(job.id), self.ttl_seconds)
            await pipe.execute()

        await self._breaker.call(_write)

    async def load(self, job_id: str) -> Optional[Dict[str, Any]]:
        client = await self._get_redis()
        data = await client.hgetall(self._job_key(job_id))
        if not data:
            return None
        data["metadata"] = json.loads(data["metadata"]) if data.get("metadata") else {}
        return data

    async def delete(self, job_id: str) -> None:
        client = await self._get_redis()
        await client.delete(self._job_key(job_id))

    async def health_check(self) -> Dict[str, Any]:
        try:
            client = await self._get_redis()
            start_time = time.time()
            await client.ping()
            ping_time = (time.time() - start_time) * 1000
            info = await client.info("memory")
            return {
                "status": "healthy",
                "backend": "redis",
                "ping_ms": round(ping_time, 2),
                "memory_used_mb": round(info.get("used_memory", 0) / 1024 / 1024, 2),
                "circuit": self._breaker.snapshot()
            }
        except Exception as e:
            return {"status": "unhealthy", "backend": "redis", "error": str(e)}

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None

def create_job_store(redis_url: Optional[str] = REDIS_URL) -> JobStore:
    """Redis when configured, process memory otherwise."""
    if redis_url:
        return RedisJobStore(redis_url=redis_url)
    return MemoryJobStore()
