"""
Business logic services.

Provides:
- Import job registry and state machine
- Realtime per-job channel
- Job snapshot stores (memory, Redis)
- Server import pipeline (fetch, decode, store)
- STL decoding
"""

from .job_tracker import JobRegistry, ImportJob, ImportJobStatus
from .realtime import RealtimeChannel, Subscriber, ChannelFrame
from .job_store import JobStore, MemoryJobStore, RedisJobStore, create_job_store
from .import_service import ImportService
from .stl_decoder import StlMesh, decode_stl, decode_base64_payload

__all__ = [
    "JobRegistry",
    "ImportJob",
    "ImportJobStatus",
    "RealtimeChannel",
    "Subscriber",
    "ChannelFrame",
    "JobStore",
    "MemoryJobStore",
    "RedisJobStore",
    "create_job_store",
    "ImportService",
    "StlMesh",
    "decode_stl",
    "decode_base64_payload"
]
