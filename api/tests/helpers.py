from __future__ import annotations
import asyncio
import base64
from typing import Any, Dict, List, Optional, Tuple
import numpy as np
from stlbridge.services.job_store import MemoryJobStore
from stlbridge.services.stl_decoder import TRIANGLE_DTYPE

def make_binary_stl(triangles: int, header: bytes = b"stlbridge test model") -> bytes:
    """Binary STL with ``triangles`` facets spread along the x axis."""
    facets = np.zeros(triangles, dtype=TRIANGLE_DTYPE)
    offsets = np.arange(triangles, dtype=np.float32)
    facets["normal"][:, 2] = 1.0
    facets["vertices"][:, 0, 0] = offsets
    facets["vertices"][:, 1, 0] = offsets + 1.0
    facets["vertices"][:, 2, 0] = offsets
    facets["vertices"][:, 2, 1] = 1.0
    return header.ljust(80, b"\0") + triangles.to_bytes(4, "little") + facets.tobytes()

def binary_stl_of_size(size_bytes: int) -> bytes:
    """Largest binary STL not exceeding size_bytes."""
    return make_binary_stl((size_bytes - 84) // TRIANGLE_DTYPE.itemsize)

ASCII_CUBE_FACET = b"""solid part
  facet normal 0 0 1
    outer loop
      vertex 0 0 0
      vertex 2.5 0 0
      vertex 0 1.5 -1
    endloop
  endfacet
endsolid part
"""

def b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")

class FakeWindow:
    """Browsing context double that records posted messages."""

    def __init__(
        self,
        origin: Optional[str] = None,
        parent: Optional["FakeWindow"] = None,
        opener: Optional["FakeWindow"] = None,
        frames: Optional[List["FakeFrame"]] = None,
        unreachable: bool = False
    ):
        self.origin = origin
        self.parent = parent
        self.opener = opener
        self.frames = frames or []
        self.unreachable = unreachable
        self.messages: List[Tuple[Dict[str, Any], str]] = []

    def post_message(self, data: Dict[str, Any], target_origin: str) -> None:
        if self.unreachable:
            raise RuntimeError("Blocked a frame from accessing a cross-origin frame")
        self.messages.append((data, target_origin))

    @property
    def payloads(self) -> List[Dict[str, Any]]:
        return [data for data, _ in self.messages]

class FakeFrame:
    def __init__(self, src: str, content_window: Optional[FakeWindow] = None):
        self.src = src
        self.content_window = content_window if content_window is not None else FakeWindow()

class RecordingStore(MemoryJobStore):
    """Memory store that remembers every status it was asked to persist."""

    def __init__(self):
        super().__init__()
        self.history: List[Tuple[str, str]] = []

    async def save(self, job) -> None:
        self.history.append((job.id, job.status.value))
        await super().save(job)

    def statuses(self, job_id: str) -> List[str]:
        return [status for saved_id, status in self.history if saved_id == job_id]

class FailingStore(MemoryJobStore):
    async def save(self, job) -> None:
        raise ConnectionError("store unavailable")

class GatedStore(RecordingStore):
    """Store whose writes hang until ``gate`` is set, then fail."""

    def __init__(self):
        super().__init__()
        self.gate = asyncio.Event()

    async def save(self, job) -> None:
        self.history.append((job.id, job.status.value))
        await self.gate.wait()
        raise ConnectionError("store timed out")
