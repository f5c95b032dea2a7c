from __future__ import annotations
import asyncio
from typing import Dict
import httpx
import pytest
from stlbridge.main import create_app
from stlbridge.services.import_service import ImportService
from stlbridge.services.job_tracker import JobRegistry
from stlbridge.services.realtime import RealtimeChannel
from stlbridge.utils.retry_backoff import RetryConfig
from tests.helpers import RecordingStore, make_binary_stl

REMOTE_MODEL_URL = "https://cdn.example/model.stl"
NO_RETRY = RetryConfig(max_retries=0)

class RemoteModels:
    """Stands in for the remote hosts models are imported from."""

    def __init__(self):
        self.files: Dict[str, bytes] = {REMOTE_MODEL_URL: make_binary_stl(12)}
        self.gate: asyncio.Event | None = None
        self.requests: list = []

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(str(request.url))
        if self.gate is not None:
            await self.gate.wait()
        content = self.files.get(str(request.url))
        if content is None:
            return httpx.Response(404, text="not found")
        return httpx.Response(200, content=content, headers={"Content-Type": "model/stl"})

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

@pytest.fixture
def remote():
    return RemoteModels()

@pytest.fixture
def store():
    return RecordingStore()

@pytest.fixture
async def registry(store):
    registry = JobRegistry(channel=RealtimeChannel(), store=store)
    await registry.start()
    yield registry
    await registry.stop()

@pytest.fixture
async def import_service(registry, remote, tmp_path):
    service = ImportService(
        registry,
        uploads_dir=str(tmp_path / "uploads"),
        retry_config=NO_RETRY,
        transport=remote.transport
    )
    yield service
    await service.close()

@pytest.fixture
def app(registry, import_service):
    return create_app(registry=registry, import_service=import_service)

@pytest.fixture
async def http(app):
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app),
        base_url="http://testserver"
    ) as client:
        yield client
