from __future__ import annotations
import asyncio
import time
import uuid
from dataclasses import dataclass, field
from typing import Dict, Any, Iterable, List, Optional
from stlbridge.obs.logging_setup import get_logger
from stlbridge.obs.prometheus_metrics import prometheus_metrics

logger = get_logger(__name__)

# Client -> server
JOIN_ROOM = "join-import-room"
LEAVE_ROOM = "leave-import-room"

# Server -> client
STATUS_UPDATE = "import-status-update"
IMPORT_COMPLETED = "import-completed"
IMPORT_FAILED = "import-failed"

TERMINAL_EVENTS = frozenset({IMPORT_COMPLETED, IMPORT_FAILED})

def room_name(job_id: str) -> str:
    return f"import-{job_id}"

@dataclass(frozen=True)
class ChannelFrame:
    """One event pushed to the subscribers of a room."""
    event: str
    data: Dict[str, Any]

    def to_dict(self) -> Dict[str, Any]:
        return {"event": self.event, "data": self.data}

@dataclass(eq=False)
class Subscriber:
    """A connected client; may sit in several rooms, has one FIFO inbox."""
    subscriber_id: str
    max_queue_size: int = 1000
    rooms: set = field(default_factory=set)
    connected: bool = True
    created_at: float = field(default_factory=time.time)

    def __post_init__(self):
        self.queue: asyncio.Queue[ChannelFrame] = asyncio.Queue(maxsize=self.max_queue_size)

    def deliver(self, frame: ChannelFrame) -> bool:
        if not self.connected:
            return False
        try:
            self.queue.put_nowait(frame)
        except asyncio.QueueFull:
            logger.warning("Subscriber inbox full, dropping frame",
                           subscriber_id=self.subscriber_id,
                           event=frame.event)
            return False
        return True

    async def receive(self) -> ChannelFrame:
        return await self.queue.get()

    def task_done(self) -> None:
        self.queue.task_done()

class RealtimeChannel:
    """Per-job publish/subscribe rooms.

    Publishing never awaits: frames are appended to each member's inbox in
    call order, so the order of transitions applied for one job is the order
    every member of its room observes. Nothing is retained for replay.
    """

    def __init__(self, max_queue_size: int = 1000):
        self.max_queue_size = max_queue_size
        self._subscribers: Dict[str, Subscriber] = {}
        self._rooms: Dict[str, Dict[str, Subscriber]] = {}

    def connect(self, subscriber_id: Optional[str] = None) -> Subscriber:
        subscriber = Subscriber(
            subscriber_id=subscriber_id or f"sub_{uuid.uuid4().hex[:12]}",
            max_queue_size=self.max_queue_size
        )
        self._subscribers[subscriber.subscriber_id] = subscriber
        prometheus_metrics.update_subscribers(len(self._subscribers))
        logger.info("Channel subscriber connected", subscriber_id=subscriber.subscriber_id)
        return subscriber

    def disconnect(self, subscriber: Subscriber) -> None:
        for job_id in list(subscriber.rooms):
            self.leave(subscriber, job_id)
        subscriber.connected = False
        self._subscribers.pop(subscriber.subscriber_id, None)
        prometheus_metrics.update_subscribers(len(self._subscribers))
        logger.info("Channel subscriber disconnected", subscriber_id=subscriber.subscriber_id)

    def join(
        self,
        subscriber: Subscriber,
        job_id: str,
        snapshot: Iterable[ChannelFrame] = ()
    ) -> None:
        """Add subscriber to the job's room, then queue the given snapshot frames."""
        self._rooms.setdefault(job_id, {})[subscriber.subscriber_id] = subscriber
        subscriber.rooms.add(job_id)
        for frame in snapshot:
            subscriber.deliver(frame)
        logger.debug("Joined import room",
                     subscriber_id=subscriber.subscriber_id,
                     room=room_name(job_id))

    def leave(self, subscriber: Subscriber, job_id: str) -> bool:
        members = self._rooms.get(job_id)
        subscriber.rooms.discard(job_id)
        if not members or members.pop(subscriber.subscriber_id, None) is None:
            return False
        if not members:
            del self._rooms[job_id]
        logger.debug("Left import room",
                     subscriber_id=subscriber.subscriber_id,
                     room=room_name(job_id))
        return True

    def publish(self, job_id: str, frame: ChannelFrame) -> int:
        """Deliver frame to every member of the room; returns deliveries."""
        members = self._rooms.get(job_id)
        if not members:
            return 0
        return sum(1 for member in list(members.values()) if member.deliver(frame))

    def publish_many(self, job_id: str, frames: Iterable[ChannelFrame]) -> int:
        return sum(self.publish(job_id, frame) for frame in frames)

    def close_room(self, job_id: str) -> int:
        """Remove every member from the room. Already queued frames stay queued."""
        members = self._rooms.pop(job_id, {})
        for member in members.values():
            member.rooms.discard(job_id)
        if members:
            logger.info("Closed import room", room=room_name(job_id), removed=len(members))
        return len(members)

    def room_members(self, job_id: str) -> List[str]:
        return list(self._rooms.get(job_id, {}))

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    @property
    def room_count(self) -> int:
        return len(self._rooms)
