from __future__ import annotations
import json
import time
from typing import Dict, Any, Optional

def create_sse_message(
    data: Dict[str, Any],
    event_type: str = "message",
    event_id: Optional[str] = None
) -> str:
    """Create a Server-Sent Event formatted message."""
    lines = []
    if event_id:
        lines.append(f"id: {event_id}")
    lines.append(f"event: {event_type}")

    json_data = json.dumps(data, ensure_ascii=False, default=str)
    for line in json_data.split('\n'):
        lines.append(f"data: {line}")

    lines.append("")
    return "\n".join(lines) + "\n"

def create_sse_heartbeat() -> str:
    """Create a heartbeat SSE message."""
    return create_sse_message({"type": "heartbeat", "timestamp": time.time()}, "heartbeat")

def create_sse_close() -> str:
    """Create a close SSE message."""
    return "event: close\ndata: {\"type\":\"close\"}\n\n"

def parse_sse_lines(lines):
    """Group raw SSE lines into (event, data) pairs.

    Blank lines terminate an event; ``data`` is decoded as JSON when possible.
    """
    event_type = "message"
    data_lines: list[str] = []
    for line in lines:
        if line == "":
            if data_lines:
                raw = "\n".join(data_lines)
                try:
                    payload = json.loads(raw)
                except json.JSONDecodeError:
                    payload = raw
                yield event_type, payload
            event_type, data_lines = "message", []
        elif line.startswith("event:"):
            event_type = line[len("event:"):].strip()
        elif line.startswith("data:"):
            data_lines.append(line[len("data:"):].lstrip())
