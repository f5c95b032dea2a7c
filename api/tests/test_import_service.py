from __future__ import annotations
import asyncio
import os
import threading
import httpx
import pytest
from stlbridge.errors import ValidationError
from stlbridge.services.import_service import ImportService
from stlbridge.services.job_tracker import ImportJobStatus
from stlbridge.utils.retry_backoff import RetryConfig
from tests.conftest import NO_RETRY, REMOTE_MODEL_URL
from tests.helpers import make_binary_stl

async def wait_for_status(registry, job_id, status, timeout=2.0):
    async def poll():
        while registry.require(job_id).status != status:
            await asyncio.sleep(0.005)
    await asyncio.wait_for(poll(), timeout)

@pytest.fixture
async def make_service(registry, remote, tmp_path):
    services = []

    def factory(**overrides):
        options = dict(uploads_dir=str(tmp_path / "uploads"), retry_config=NO_RETRY,
                       transport=remote.transport)
        options.update(overrides)
        service = ImportService(registry, **options)
        services.append(service)
        return service

    yield factory
    for service in services:
        await service.close()

@pytest.mark.asyncio
async def test_url_import_completes_with_artifact(import_service, registry, store, remote):
    job = await import_service.start_url_import(REMOTE_MODEL_URL, "part.stl", "https://allowed.example")
    await import_service.drain()

    assert job.status == ImportJobStatus.COMPLETED
    assert job.kind == "url"
    assert store.statuses(job.id) == ["pending", "downloading", "processing", "completed"]
    assert os.path.basename(job.file_path) == f"{job.id}-part.stl"
    with open(job.file_path, "rb") as fh:
        assert fh.read() == remote.files[REMOTE_MODEL_URL]
    assert import_service.running_jobs == 0

@pytest.mark.asyncio
async def test_remote_404_fails_job(import_service):
    job = await import_service.start_url_import("https://cdn.example/missing.stl", "a.stl", "origin")
    await import_service.drain()

    assert job.status == ImportJobStatus.FAILED
    assert job.error == "Remote server returned 404"
    assert job.file_path is None

@pytest.mark.asyncio
async def test_invalid_geometry_fails_job(import_service, remote, tmp_path):
    remote.files[REMOTE_MODEL_URL] = b"this is not an stl"
    job = await import_service.start_url_import(REMOTE_MODEL_URL, "a.stl", "origin")
    await import_service.drain()

    assert job.status == ImportJobStatus.FAILED
    assert "not a valid STL" in job.error
    assert not (tmp_path / "uploads").exists() or os.listdir(tmp_path / "uploads") == []

@pytest.mark.asyncio
async def test_download_timeout(make_service, remote):
    remote.gate = asyncio.Event()
    service = make_service(fetch_timeout=0.05)

    job = await service.start_url_import(REMOTE_MODEL_URL, "a.stl", "origin")
    await service.drain()

    assert job.status == ImportJobStatus.FAILED
    assert job.error == "Download timed out after 0.05s"

@pytest.mark.asyncio
async def test_oversized_download_is_rejected(make_service):
    service = make_service(max_download_bytes=100)
    job = await service.start_url_import(REMOTE_MODEL_URL, "a.stl", "origin")
    await service.drain()

    assert job.status == ImportJobStatus.FAILED
    assert "exceeds 100 bytes" in job.error

@pytest.mark.asyncio
async def test_cancel_running_import(import_service, registry, remote):
    remote.gate = asyncio.Event()
    job = await import_service.start_url_import(REMOTE_MODEL_URL, "a.stl", "origin")
    await wait_for_status(registry, job.id, ImportJobStatus.DOWNLOADING)

    assert await import_service.cancel(job.id)
    await import_service.drain()

    assert job.status == ImportJobStatus.FAILED
    assert job.error == "cancelled"
    assert not await import_service.cancel(job.id)

@pytest.mark.asyncio
async def test_upload_import(import_service, store):
    data = make_binary_stl(5)
    job = await import_service.start_upload_import(data, "../../etc/passwd")
    await import_service.drain()

    assert job.kind == "upload"
    assert job.source == "direct-upload"
    assert job.status == ImportJobStatus.COMPLETED
    assert os.path.basename(job.file_path) == f"{job.id}-passwd.stl"
    assert store.statuses(job.id)[-1] == "completed"

@pytest.mark.asyncio
@pytest.mark.parametrize("url", [
    "ftp://cdn.example/a.stl",
    "http://localhost/a.stl",
    "http://127.0.0.1/a.stl",
    "http://10.0.0.8/a.stl",
    "http://169.254.169.254/latest",
])
async def test_unsafe_urls_are_rejected_before_a_job_exists(import_service, registry, url):
    with pytest.raises(ValidationError):
        await import_service.start_url_import(url, "a.stl", "origin")
    assert registry.list_jobs() == []

@pytest.mark.asyncio
async def test_transient_server_errors_are_retried(make_service, remote):
    attempts = []

    async def flaky(request: httpx.Request) -> httpx.Response:
        attempts.append(request.url)
        if len(attempts) < 3:
            return httpx.Response(503)
        return httpx.Response(200, content=remote.files[REMOTE_MODEL_URL])

    service = make_service(
        transport=httpx.MockTransport(flaky),
        retry_config=RetryConfig(max_retries=3, base_delay=0.01, jitter=False)
    )
    job = await service.start_url_import(REMOTE_MODEL_URL, "a.stl", "origin")
    await service.drain()

    assert len(attempts) == 3
    assert job.status == ImportJobStatus.COMPLETED

@pytest.mark.asyncio
async def test_client_errors_are_not_retried(make_service, remote):
    service = make_service(retry_config=RetryConfig(max_retries=3, base_delay=0.01, jitter=False))
    job = await service.start_url_import("https://cdn.example/gone.stl", "a.stl", "origin")
    await service.drain()

    assert len(remote.requests) == 1
    assert job.error == "Remote server returned 404"

class StalledWriteService(ImportService):
    """Import service whose artifact write blocks until released."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.writing = asyncio.Event()
        self.release = threading.Event()
        self._loop = asyncio.get_running_loop()

    def _write_artifact(self, job, data):
        self._loop.call_soon_threadsafe(self.writing.set)
        self.release.wait(timeout=5)
        return super()._write_artifact(job, data)

@pytest.mark.asyncio
async def test_cancel_during_artifact_write_leaves_no_file(registry, remote, tmp_path):
    uploads = tmp_path / "uploads"
    service = StalledWriteService(registry, uploads_dir=str(uploads), retry_config=NO_RETRY,
                                  transport=remote.transport)
    try:
        job = await service.start_url_import(REMOTE_MODEL_URL, "x.stl", "origin")
        await asyncio.wait_for(service.writing.wait(), timeout=2)

        assert await service.cancel(job.id)
        service.release.set()
        await service.drain()
    finally:
        service.release.set()
        await service.close()

    assert job.status == ImportJobStatus.FAILED
    assert job.error == "cancelled"
    assert job.file_path is None
    assert os.listdir(uploads) == []
