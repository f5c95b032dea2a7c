from __future__ import annotations
import json
from unittest.mock import AsyncMock, MagicMock
import pytest
from stlbridge.errors import PersistenceError
from stlbridge.services.job_store import MemoryJobStore, RedisJobStore, create_job_store
from stlbridge.services.job_tracker import ImportJob, ImportJobStatus
from stlbridge.utils.circuit_breaker import CircuitBreaker, CircuitState

def sample_job(**overrides) -> ImportJob:
    fields = dict(id="job-1", source="https://allowed.example", file_name="a.stl",
                  metadata={"author": "ada"})
    fields.update(overrides)
    return ImportJob(**fields)

def fake_redis():
    pipe = MagicMock()
    pipe.execute = AsyncMock(return_value=[1, True])
    client = MagicMock()
    client.pipeline.return_value = pipe
    client.hgetall = AsyncMock()
    client.delete = AsyncMock()
    client.ping = AsyncMock(return_value=True)
    client.info = AsyncMock(return_value={"used_memory": 2 * 1024 * 1024})
    client.aclose = AsyncMock()
    return client, pipe

@pytest.mark.asyncio
async def test_memory_store_save_load_delete():
    store = MemoryJobStore()
    job = sample_job()

    await store.save(job)
    loaded = await store.load(job.id)
    assert loaded["fileName"] == "a.stl"
    assert loaded["kind"] == "url"

    await store.delete(job.id)
    assert await store.load(job.id) is None
    assert (await store.health_check())["status"] == "healthy"

@pytest.mark.asyncio
async def test_redis_store_writes_hash_with_ttl():
    client, pipe = fake_redis()
    store = RedisJobStore(client=client, ttl_seconds=120)
    job = sample_job(status=ImportJobStatus.FAILED, error="boom")

    await store.save(job)

    key = "stl-import:job:job-1"
    mapping = pipe.hset.call_args.kwargs["mapping"]
    assert pipe.hset.call_args.args == (key,)
    assert mapping["status"] == "failed"
    assert mapping["error"] == "boom"
    assert json.loads(mapping["metadata"]) == {"author": "ada"}
    assert "filePath" not in mapping
    pipe.expire.assert_called_once_with(key, 120)
    pipe.execute.assert_awaited_once()

@pytest.mark.asyncio
async def test_redis_store_load_decodes_metadata():
    client, _ = fake_redis()
    client.hgetall.return_value = {"id": "job-1", "status": "pending", "metadata": '{"a": 1}'}
    store = RedisJobStore(client=client)

    loaded = await store.load("job-1")

    assert loaded["metadata"] == {"a": 1}
    client.hgetall.return_value = {}
    assert await store.load("job-2") is None

@pytest.mark.asyncio
async def test_redis_store_health_and_close():
    client, _ = fake_redis()
    store = RedisJobStore(client=client)

    health = await store.health_check()
    assert health["status"] == "healthy"
    assert health["memory_used_mb"] == 2.0
    assert health["circuit"] == {"state": "closed", "failures": 0}

    await store.close()
    client.aclose.assert_awaited_once()

@pytest.mark.asyncio
async def test_redis_store_unhealthy_when_ping_fails():
    client, _ = fake_redis()
    client.ping.side_effect = ConnectionError("refused")
    health = await RedisJobStore(client=client).health_check()
    assert health == {"status": "unhealthy", "backend": "redis", "error": "refused"}

@pytest.mark.asyncio
async def test_circuit_opens_after_repeated_write_failures():
    client, pipe = fake_redis()
    pipe.execute.side_effect = ConnectionError("down")
    breaker = CircuitBreaker(failure_threshold=2, recovery_timeout=60)
    store = RedisJobStore(client=client, breaker=breaker)

    for _ in range(2):
        with pytest.raises(ConnectionError):
            await store.save(sample_job())
    assert breaker.state == CircuitState.OPEN

    with pytest.raises(PersistenceError):
        await store.save(sample_job())
    assert pipe.execute.await_count == 2

@pytest.mark.asyncio
async def test_circuit_half_open_probe():
    now = [100.0]
    breaker = CircuitBreaker(failure_threshold=1, recovery_timeout=30, clock=lambda: now[0])
    failing = AsyncMock(side_effect=ConnectionError("down"))
    with pytest.raises(ConnectionError):
        await breaker.call(failing)
    assert breaker.state == CircuitState.OPEN
    assert not breaker.allow()

    now[0] += 30
    with pytest.raises(ConnectionError):
        await breaker.call(failing)
    assert breaker.state == CircuitState.OPEN

    now[0] += 30
    ok = AsyncMock(return_value="saved")
    assert await breaker.call(ok) == "saved"
    assert breaker.snapshot() == {"state": "closed", "failures": 0}

def test_create_job_store_picks_backend():
    assert isinstance(create_job_store(None), MemoryJobStore)
    assert isinstance(create_job_store("redis://localhost:6379/0"), RedisJobStore)
