from __future__ import annotations
import asyncio
import functools
import os
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from stlbridge.config import JOB_TTL_SECONDS, SWEEP_INTERVAL_SECONDS
from stlbridge.errors import InternalConsistencyError, JobNotFoundError
from stlbridge.obs.logging_setup import get_logger
from stlbridge.obs.prometheus_metrics import prometheus_metrics
from stlbridge.services.job_store import JobStore, MemoryJobStore
from stlbridge.services.realtime import (
    ChannelFrame,
    IMPORT_COMPLETED,
    IMPORT_FAILED,
    RealtimeChannel,
    STATUS_UPDATE,
    Subscriber,
)

logger = get_logger(__name__)

class ImportJobStatus(str, Enum):
    PENDING = "pending"
    DOWNLOADING = "downloading"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

ALLOWED_TRANSITIONS: Dict[ImportJobStatus, frozenset] = {
    ImportJobStatus.PENDING: frozenset({ImportJobStatus.DOWNLOADING, ImportJobStatus.FAILED}),
    ImportJobStatus.DOWNLOADING: frozenset({ImportJobStatus.PROCESSING, ImportJobStatus.FAILED}),
    ImportJobStatus.PROCESSING: frozenset({ImportJobStatus.COMPLETED, ImportJobStatus.FAILED}),
    ImportJobStatus.COMPLETED: frozenset(),
    ImportJobStatus.FAILED: frozenset(),
}

TERMINAL_STATUSES = frozenset({ImportJobStatus.COMPLETED, ImportJobStatus.FAILED})

PROGRESS_BY_STATUS: Dict[ImportJobStatus, int] = {
    ImportJobStatus.PENDING: 0,
    ImportJobStatus.DOWNLOADING: 30,
    ImportJobStatus.PROCESSING: 70,
    ImportJobStatus.COMPLETED: 100,
    ImportJobStatus.FAILED: 100,
}

def can_transition(current: ImportJobStatus, requested: ImportJobStatus) -> bool:
    return requested in ALLOWED_TRANSITIONS[current]

def progress_for_status(status: ImportJobStatus | str) -> int:
    try:
        return PROGRESS_BY_STATUS[ImportJobStatus(status)]
    except ValueError:
        return 0

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)

def _parse_time(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))

@dataclass
class ImportJob:
    id: str
    source: str
    file_name: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    status: ImportJobStatus = ImportJobStatus.PENDING
    error: Optional[str] = None
    file_path: Optional[str] = None
    kind: str = "url"
    imported_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        """Wire snapshot; ``error`` and ``filePath`` only appear when set."""
        data: Dict[str, Any] = {
            "id": self.id,
            "status": self.status.value,
            "source": self.source,
            "fileName": self.file_name,
            "metadata": dict(self.metadata),
            "importedAt": self.imported_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
        }
        if self.error is not None:
            data["error"] = self.error
        if self.file_path is not None:
            data["filePath"] = self.file_path
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ImportJob":
        return cls(
            id=data["id"],
            source=data.get("source", "unknown"),
            file_name=data.get("fileName", f"model-{data['id']}.stl"),
            metadata=dict(data.get("metadata") or {}),
            status=ImportJobStatus(data.get("status", "pending")),
            error=data.get("error"),
            file_path=data.get("filePath"),
            kind=data.get("kind", "url"),
            imported_at=_parse_time(data["importedAt"]) if data.get("importedAt") else _utcnow(),
            updated_at=_parse_time(data["updatedAt"]) if data.get("updatedAt") else _utcnow(),
        )

def transition_frames(job: ImportJob) -> List[ChannelFrame]:
    """Frames broadcast for the job's current status."""
    snapshot = job.to_dict()
    frames = [ChannelFrame(STATUS_UPDATE, {
        "importId": job.id,
        "status": job.status.value,
        "job": snapshot
    })]
    if job.status == ImportJobStatus.COMPLETED:
        frames.append(ChannelFrame(IMPORT_COMPLETED, {"importId": job.id, "job": snapshot}))
    elif job.status == ImportJobStatus.FAILED:
        frames.append(ChannelFrame(IMPORT_FAILED, {
            "importId": job.id,
            "error": job.error,
            "job": snapshot
        }))
    return frames

class JobRegistry:
    """Authoritative table of import jobs and their state machines.

    All status changes go through ``advance``/``fail``/``cancel``, which hold
    a per-job lock, validate against ALLOWED_TRANSITIONS and broadcast on the
    realtime channel. Snapshots are written afterwards by a per-job writer
    task, in transition order, outside the lock.
    """

    def __init__(
        self,
        channel: Optional[RealtimeChannel] = None,
        store: Optional[JobStore] = None,
        ttl_seconds: int = JOB_TTL_SECONDS,
        sweep_interval: float = SWEEP_INTERVAL_SECONDS
    ):
        self.channel = channel or RealtimeChannel()
        self.store = store or MemoryJobStore()
        self.ttl_seconds = ttl_seconds
        self.sweep_interval = sweep_interval
        self._jobs: Dict[str, ImportJob] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._writes: Dict[str, asyncio.Task] = {}
        self._sweeper: Optional[asyncio.Task] = None

    async def start(self) -> None:
        if self._sweeper is not None:
            return
        self._sweeper = asyncio.create_task(self._sweep_loop())
        logger.info("Job registry started",
                    ttl_seconds=self.ttl_seconds,
                    sweep_interval=self.sweep_interval)

    async def stop(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None
        await self.flush()
        await self.store.close()
        logger.info("Job registry stopped", jobs=len(self._jobs))

    @property
    def running(self) -> bool:
        return self._sweeper is not None and not self._sweeper.done()

    async def create(
        self,
        source: str,
        file_name: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        kind: str = "url"
    ) -> ImportJob:
        """Register a new job in ``pending``."""
        job_id = str(uuid.uuid4())
        while job_id in self._jobs:
            job_id = str(uuid.uuid4())

        job = ImportJob(
            id=job_id,
            source=source or "unknown",
            file_name=file_name or f"model-{job_id}.stl",
            metadata=dict(metadata or {}),
            kind=kind
        )
        self._jobs[job_id] = job
        self._locks[job_id] = asyncio.Lock()
        prometheus_metrics.update_active_jobs(self.active_count)

        logger.info("Import job created",
                    job_id=job_id,
                    source=job.source,
                    file_name=job.file_name,
                    kind=kind)
        self._schedule_persist(job)
        return job

    def get(self, job_id: str) -> Optional[ImportJob]:
        return self._jobs.get(job_id)

    def require(self, job_id: str) -> ImportJob:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def list_jobs(self) -> List[ImportJob]:
        return sorted(self._jobs.values(), key=lambda j: j.updated_at, reverse=True)

    @property
    def active_count(self) -> int:
        return sum(1 for job in self._jobs.values() if not job.is_terminal)

    async def advance(
        self,
        job_id: str,
        next_status: ImportJobStatus | str,
        *,
        expected: ImportJobStatus | str | None = None,
        error: Optional[str] = None,
        file_path: Optional[str] = None
    ) -> bool:
        """Apply one transition. Returns True when it was applied.

        ``expected`` guards the current status: if it no longer matches, the
        signal lost a race and nothing happens. An illegal transition is an
        internal consistency fault and force-fails the job.
        """
        next_status = ImportJobStatus(next_status)
        job = self.require(job_id)

        async with self._locks[job_id]:
            if expected is not None and job.status != ImportJobStatus(expected):
                logger.info("Stale transition skipped",
                            job_id=job_id,
                            expected=ImportJobStatus(expected).value,
                            current=job.status.value,
                            requested=next_status.value)
                return False

            if not can_transition(job.status, next_status):
                fault = InternalConsistencyError(job_id, job.status.value, next_status.value)
                logger.error("Illegal job transition", job_id=job_id, error=str(fault))
                prometheus_metrics.record_consistency_fault()
                if not job.is_terminal:
                    self._apply(job, ImportJobStatus.FAILED, error=str(fault))
                return False

            self._apply(job, next_status, error=error, file_path=file_path)
            return True

    async def fail(self, job_id: str, message: str) -> bool:
        """Move a non-terminal job to ``failed``; a no-op once already failed."""
        job = self.require(job_id)
        async with self._locks[job_id]:
            if job.status == ImportJobStatus.FAILED:
                return False
            if job.status == ImportJobStatus.COMPLETED:
                logger.warning("Ignoring failure for completed job", job_id=job_id, error=message)
                return False
            self._apply(job, ImportJobStatus.FAILED, error=message)
            return True

    async def cancel(self, job_id: str) -> bool:
        cancelled = await self.fail(job_id, "cancelled")
        self.channel.close_room(job_id)
        return cancelled

    def join(self, subscriber: Subscriber, job_id: str) -> bool:
        """Put subscriber in the job's room and queue the current state.

        Synchronous on purpose: no transition can interleave between the
        snapshot and the subscriber's membership.
        """
        job = self._jobs.get(job_id)
        if job is None:
            logger.warning("Join requested for unknown job",
                           job_id=job_id,
                           subscriber_id=subscriber.subscriber_id)
            return False
        self.channel.join(subscriber, job_id, snapshot=transition_frames(job))
        return True

    def leave(self, subscriber: Subscriber, job_id: str) -> bool:
        return self.channel.leave(subscriber, job_id)

    async def evict_expired(self, now: Optional[datetime] = None) -> int:
        """Drop terminal jobs older than the TTL, their artifacts and rooms."""
        cutoff = (now or _utcnow()) - timedelta(seconds=self.ttl_seconds)
        expired = [
            job for job in self._jobs.values()
            if job.is_terminal and job.updated_at <= cutoff
        ]
        for job in expired:
            await self._remove(job)
        if expired:
            logger.info("Evicted expired import jobs", evicted=len(expired))
        return len(expired)

    async def _remove(self, job: ImportJob) -> None:
        if job.file_path and os.path.exists(job.file_path):
            try:
                os.remove(job.file_path)
            except OSError as e:
                logger.error("Failed to delete import artifact",
                             job_id=job.id, path=job.file_path, error=str(e))
        self._jobs.pop(job.id, None)
        self._locks.pop(job.id, None)
        self.channel.close_room(job.id)
        await self.flush(job.id)
        try:
            await self.store.delete(job.id)
        except Exception as e:
            logger.error("Failed to delete job snapshot", job_id=job.id, error=str(e))

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            try:
                await self.evict_expired()
            except Exception as e:
                logger.error("Job sweep failed", error=str(e), exc_info=True)

    async def flush(self, job_id: Optional[str] = None) -> None:
        """Wait until queued snapshot writes (for one job, or all) have run."""
        while True:
            if job_id is None:
                pending = list(self._writes.values())
            else:
                pending = [self._writes[job_id]] if job_id in self._writes else []
            if not pending:
                return
            await asyncio.wait(pending)

    def _apply(
        self,
        job: ImportJob,
        status: ImportJobStatus,
        error: Optional[str] = None,
        file_path: Optional[str] = None
    ) -> None:
        job.status = status
        job.updated_at = _utcnow()
        if status == ImportJobStatus.FAILED:
            job.error = error or "Import failed"
        elif status == ImportJobStatus.COMPLETED:
            job.file_path = file_path

        delivered = self.channel.publish_many(job.id, transition_frames(job))

        prometheus_metrics.record_transition(status.value)
        prometheus_metrics.update_active_jobs(self.active_count)
        if job.is_terminal:
            duration = (job.updated_at - job.imported_at).total_seconds()
            prometheus_metrics.record_job_finished(status.value, job.kind, duration)

        logger.info("Import job status updated",
                    job_id=job.id,
                    status=status.value,
                    deliveries=delivered)

        self._schedule_persist(job)

    def _schedule_persist(self, job: ImportJob) -> None:
        # Each write waits for the job's previous one so snapshots land in order
        snapshot = replace(job, metadata=dict(job.metadata))
        previous = self._writes.get(job.id)
        task = asyncio.create_task(self._persist(snapshot, previous), name=f"persist-{job.id}")
        self._writes[job.id] = task
        task.add_done_callback(functools.partial(self._write_done, job.id))

    def _write_done(self, job_id: str, task: asyncio.Task) -> None:
        if self._writes.get(job_id) is task:
            del self._writes[job_id]

    async def _persist(self, job: ImportJob, previous: Optional[asyncio.Task] = None) -> None:
        if previous is not None:
            await asyncio.wait([previous])
        try:
            await self.store.save(job)
        except Exception as e:
            prometheus_metrics.record_persistence_failure()
            logger.error("Failed to persist job snapshot",
                         job_id=job.id,
                         status=job.status.value,
                         error=str(e))
