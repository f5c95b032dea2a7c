from __future__ import annotations
import base64
import binascii
import re
from dataclasses import dataclass
from typing import Tuple
import numpy as np
from stlbridge.errors import DecodeError

HEADER_SIZE = 80
COUNT_SIZE = 4

# 12 float32 (normal + 3 vertices) and a uint16 attribute byte count
TRIANGLE_DTYPE = np.dtype([
    ("normal", "<f4", (3,)),
    ("vertices", "<f4", (3, 3)),
    ("attr", "<u2"),
])

_VERTEX_RE = re.compile(
    rb"vertex\s+([-+0-9.eE]+)\s+([-+0-9.eE]+)\s+([-+0-9.eE]+)"
)

@dataclass(frozen=True)
class StlMesh:
    triangle_count: int
    is_binary: bool
    bounds_min: Tuple[float, float, float]
    bounds_max: Tuple[float, float, float]

    @property
    def size(self) -> Tuple[float, float, float]:
        return tuple(hi - lo for lo, hi in zip(self.bounds_min, self.bounds_max))

def _summarize(vertices: np.ndarray, is_binary: bool) -> StlMesh:
    points = vertices.reshape(-1, 3)
    if not np.isfinite(points).all():
        raise DecodeError("STL contains non-finite vertex coordinates")
    lo = points.min(axis=0)
    hi = points.max(axis=0)
    return StlMesh(
        triangle_count=len(points) // 3,
        is_binary=is_binary,
        bounds_min=tuple(float(v) for v in lo),
        bounds_max=tuple(float(v) for v in hi),
    )

def _looks_binary(data: bytes) -> bool:
    if len(data) < HEADER_SIZE + COUNT_SIZE:
        return False
    count = int.from_bytes(data[HEADER_SIZE:HEADER_SIZE + COUNT_SIZE], "little")
    return len(data) == HEADER_SIZE + COUNT_SIZE + count * TRIANGLE_DTYPE.itemsize

def decode_stl(data: bytes) -> StlMesh:
    """Parse binary or ASCII STL bytes into a mesh summary.

    Binary files are recognised by their exact size; some exporters write
    ``solid`` into binary headers, so the ASCII prefix alone is not trusted.
    """
    if not data:
        raise DecodeError("STL payload is empty")

    if _looks_binary(data):
        if len(data) == HEADER_SIZE + COUNT_SIZE:
            raise DecodeError("STL contains no triangles")
        triangles = np.frombuffer(data, dtype=TRIANGLE_DTYPE, offset=HEADER_SIZE + COUNT_SIZE)
        return _summarize(triangles["vertices"], is_binary=True)

    if data.lstrip()[:5].lower() == b"solid":
        coords = _VERTEX_RE.findall(data)
        if not coords or len(coords) % 3:
            raise DecodeError("ASCII STL has no complete facets")
        try:
            vertices = np.array(
                [[float(v.decode("ascii")) for v in vertex] for vertex in coords],
                dtype=np.float64
            )
        except ValueError as e:
            raise DecodeError(f"ASCII STL has malformed vertex: {e}") from e
        return _summarize(vertices, is_binary=False)

    if len(data) >= HEADER_SIZE + COUNT_SIZE:
        count = int.from_bytes(data[HEADER_SIZE:HEADER_SIZE + COUNT_SIZE], "little")
        raise DecodeError(
            f"Binary STL size mismatch: header declares {count} triangles, "
            f"payload has {len(data)} bytes"
        )
    raise DecodeError("Payload is not a valid STL file")

def decode_base64_payload(payload: str) -> bytes:
    """Decode raw base64 or a ``data:`` URL into bytes."""
    if payload.startswith("data:"):
        _, _, content = payload.partition(",")
        if not content:
            raise DecodeError("Invalid base64 data URL format")
        payload = content
    try:
        return base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as e:
        raise DecodeError(f"Invalid base64 payload: {e}") from e
