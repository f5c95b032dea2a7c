from __future__ import annotations
import asyncio
import os
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Coroutine, Dict, Optional
import httpx
from stlbridge.config import (
    DECODE_TIMEOUT_SECONDS,
    DECODE_WORKERS,
    FETCH_TIMEOUT_SECONDS,
    MAX_UPLOAD_BYTES,
    UPLOADS_DIR,
)
from stlbridge.errors import DecodeError, ImportPipelineError, TransportError
from stlbridge.middleware.security import ContentSanitizer
from stlbridge.obs.decorators import traced
from stlbridge.obs.logging_setup import get_logger
from stlbridge.obs.prometheus_metrics import prometheus_metrics
from stlbridge.services.job_tracker import ImportJob, ImportJobStatus, JobRegistry
from stlbridge.services.stl_decoder import StlMesh, decode_stl
from stlbridge.utils.retry_backoff import DEFAULT_HTTP_RETRY, RetryConfig, retry_with_backoff

logger = get_logger(__name__)

class ImportService:
    """Runs the server side of an import: fetch, decode, store the artifact.

    Each job runs as its own asyncio task. Network I/O stays on the event
    loop; STL decoding and file writes go to a thread pool so a large decode
    cannot stall other jobs' downloads.
    """

    def __init__(
        self,
        registry: JobRegistry,
        uploads_dir: str = UPLOADS_DIR,
        fetch_timeout: float = FETCH_TIMEOUT_SECONDS,
        decode_timeout: float = DECODE_TIMEOUT_SECONDS,
        max_download_bytes: int = MAX_UPLOAD_BYTES,
        decode_workers: int = DECODE_WORKERS,
        retry_config: RetryConfig = DEFAULT_HTTP_RETRY,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.registry = registry
        self.uploads_dir = uploads_dir
        self.fetch_timeout = fetch_timeout
        self.decode_timeout = decode_timeout
        self.max_download_bytes = max_download_bytes
        self.retry_config = retry_config
        self._transport = transport
        self._executor = ThreadPoolExecutor(
            max_workers=decode_workers,
            thread_name_prefix="stl-decode"
        )
        self._tasks: Dict[str, asyncio.Task] = {}

    @traced(operation_name="start_url_import", record=("stl_url", "file_name", "source"))
    async def start_url_import(
        self,
        stl_url: str,
        file_name: Optional[str] = None,
        source: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> ImportJob:
        stl_url = ContentSanitizer.sanitize_url(stl_url)
        job = await self.registry.create(source or "unknown", file_name, metadata, kind="url")
        self._spawn(job.id, self._run_url_import(job.id, stl_url))
        return job

    @traced(operation_name="start_upload_import", record=("file_name", "source"))
    async def start_upload_import(
        self,
        data: bytes,
        file_name: Optional[str] = None,
        source: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> ImportJob:
        job = await self.registry.create(source or "direct-upload", file_name, metadata, kind="upload")
        self._spawn(job.id, self._run_upload_import(job.id, data))
        return job

    async def cancel(self, job_id: str) -> bool:
        cancelled = await self.registry.cancel(job_id)
        task = self._tasks.get(job_id)
        if task is not None and not task.done():
            task.cancel()
        return cancelled

    async def drain(self) -> None:
        """Wait until every running import has finished and its snapshots are written."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)
        await self.registry.flush()

    async def close(self) -> None:
        for task in list(self._tasks.values()):
            task.cancel()
        await self.drain()
        self._executor.shutdown(wait=False, cancel_futures=True)

    @property
    def running_jobs(self) -> int:
        return len(self._tasks)

    def _spawn(self, job_id: str, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(coro, name=f"stl-import-{job_id}")
        self._tasks[job_id] = task
        task.add_done_callback(lambda _: self._tasks.pop(job_id, None))

    async def _run_url_import(self, job_id: str, stl_url: str) -> None:
        logger.info("Starting URL import", job_id=job_id, url=stl_url)
        await self._run(job_id, self._download(job_id, stl_url))

    async def _run_upload_import(self, job_id: str, data: bytes) -> None:
        logger.info("Starting upload import", job_id=job_id, size_bytes=len(data))

        async def _received() -> bytes:
            return data

        await self._run(job_id, _received())

    async def _run(self, job_id: str, payload: Coroutine[Any, Any, bytes]) -> None:
        try:
            if not await self.registry.advance(
                job_id, ImportJobStatus.DOWNLOADING, expected=ImportJobStatus.PENDING
            ):
                payload.close()
                return
            data = await payload
            await self._process(job_id, data)
        except asyncio.CancelledError:
            await self.registry.fail(job_id, "cancelled")
            raise
        except ImportPipelineError as e:
            logger.warning("Import job failed", job_id=job_id, error=str(e), error_type=type(e).__name__)
            await self.registry.fail(job_id, str(e))
        except Exception as e:
            logger.error("Unexpected import failure", job_id=job_id, error=str(e), exc_info=True)
            await self.registry.fail(job_id, f"Import failed: {e}")

    async def _download(self, job_id: str, stl_url: str) -> bytes:
        fetch = retry_with_backoff(self.retry_config, "fetch_stl")(self._fetch_once)
        try:
            data = await asyncio.wait_for(fetch(stl_url), timeout=self.fetch_timeout)
        except asyncio.TimeoutError as e:
            raise TransportError(f"Download timed out after {self.fetch_timeout:g}s") from e
        except httpx.HTTPStatusError as e:
            raise TransportError(
                f"Remote server returned {e.response.status_code}",
                status_code=e.response.status_code
            ) from e
        except httpx.HTTPError as e:
            raise TransportError(f"Failed to download model: {e}") from e

        logger.info("Downloaded remote model", job_id=job_id, size_bytes=len(data))
        return data

    async def _fetch_once(self, stl_url: str) -> bytes:
        async with httpx.AsyncClient(
            timeout=httpx.Timeout(self.fetch_timeout),
            follow_redirects=True,
            transport=self._transport
        ) as client:
            async with client.stream("GET", stl_url) as response:
                response.raise_for_status()
                chunks = []
                total = 0
                async for chunk in response.aiter_bytes():
                    total += len(chunk)
                    if total > self.max_download_bytes:
                        raise TransportError(
                            f"Remote model exceeds {self.max_download_bytes} bytes"
                        )
                    chunks.append(chunk)
        return b"".join(chunks)

    async def _process(self, job_id: str, data: bytes) -> None:
        if not await self.registry.advance(
            job_id, ImportJobStatus.PROCESSING, expected=ImportJobStatus.DOWNLOADING
        ):
            return

        job = self.registry.require(job_id)
        mesh = await self._decode(data)
        prometheus_metrics.record_model_size(job.kind, len(data))
        logger.info("Decoded STL model",
                    job_id=job_id,
                    triangles=mesh.triangle_count,
                    binary=mesh.is_binary)

        loop = asyncio.get_running_loop()
        write = loop.run_in_executor(self._executor, self._write_artifact, job, data)
        try:
            file_path = await asyncio.shield(write)
            applied = await self.registry.advance(
                job_id,
                ImportJobStatus.COMPLETED,
                expected=ImportJobStatus.PROCESSING,
                file_path=file_path
            )
        except asyncio.CancelledError:
            # the thread keeps writing after cancellation; wait for it before cleanup
            await asyncio.wait([write])
            if job.status != ImportJobStatus.COMPLETED:
                self._discard_artifact(job)
            raise
        if not applied:
            self._discard_artifact(job)

    async def _decode(self, data: bytes) -> StlMesh:
        loop = asyncio.get_running_loop()
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(self._executor, decode_stl, data),
                timeout=self.decode_timeout
            )
        except asyncio.TimeoutError as e:
            raise DecodeError(f"Decoding timed out after {self.decode_timeout:g}s") from e

    def _artifact_path(self, job: ImportJob) -> str:
        safe_name = ContentSanitizer.sanitize_file_name(job.file_name)
        return os.path.join(self.uploads_dir, f"{job.id}-{safe_name}")

    def _write_artifact(self, job: ImportJob, data: bytes) -> str:
        os.makedirs(self.uploads_dir, exist_ok=True)
        file_path = self._artifact_path(job)
        with open(file_path, "wb") as fh:
            fh.write(data)
        return file_path

    def _discard_artifact(self, job: ImportJob) -> None:
        file_path = self._artifact_path(job)
        if os.path.exists(file_path):
            os.remove(file_path)
            logger.info("Discarded unfinished import artifact", job_id=job.id, path=file_path)
