from __future__ import annotations
import asyncio
import json
from typing import Any, Optional
from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from stlbridge.obs.logging_setup import get_logger
from stlbridge.services.job_tracker import JobRegistry
from stlbridge.services.realtime import ChannelFrame, JOIN_ROOM, LEAVE_ROOM, Subscriber

logger = get_logger(__name__)
router = APIRouter(tags=["realtime"])

CHANNEL_ERROR = "channel-error"

def _import_id(data: Any) -> Optional[str]:
    """Room requests carry either the bare import id or ``{"importId": ...}``."""
    if isinstance(data, str):
        return data
    if isinstance(data, dict) and isinstance(data.get("importId"), str):
        return data["importId"]
    return None

async def _forward_frames(websocket: WebSocket, subscriber: Subscriber) -> None:
    while True:
        frame = await subscriber.receive()
        try:
            await websocket.send_json(frame.to_dict())
        finally:
            subscriber.task_done()

@router.websocket("/ws")
async def realtime_socket(websocket: WebSocket):
    """Realtime channel over a WebSocket speaking ``{"event", "data"}`` frames."""
    registry: JobRegistry = websocket.app.state.registry
    await websocket.accept()
    subscriber = registry.channel.connect()
    sender = asyncio.create_task(_forward_frames(websocket, subscriber))

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                message = json.loads(raw)
            except json.JSONDecodeError:
                logger.warning("Ignoring malformed channel message",
                               subscriber_id=subscriber.subscriber_id)
                continue

            event = message.get("event") if isinstance(message, dict) else None
            import_id = _import_id(message.get("data")) if isinstance(message, dict) else None

            if event == JOIN_ROOM and import_id:
                if not registry.join(subscriber, import_id):
                    subscriber.deliver(ChannelFrame(CHANNEL_ERROR, {
                        "importId": import_id,
                        "error": "Import job not found"
                    }))
            elif event == LEAVE_ROOM and import_id:
                registry.leave(subscriber, import_id)
            else:
                logger.warning("Unknown channel event",
                               subscriber_id=subscriber.subscriber_id,
                               event=str(event))
    except WebSocketDisconnect:
        pass
    finally:
        sender.cancel()
        try:
            await sender
        except (asyncio.CancelledError, WebSocketDisconnect, RuntimeError):
            pass
        registry.channel.disconnect(subscriber)
