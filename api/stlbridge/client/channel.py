from __future__ import annotations
import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol
import httpx
from stlbridge.config import API_BASE_URL
from stlbridge.obs.logging_setup import get_logger
from stlbridge.services.job_tracker import JobRegistry
from stlbridge.services.realtime import TERMINAL_EVENTS, Subscriber
from stlbridge.utils.retry_backoff import CHANNEL_RECONNECT_RETRY, RetryConfig, retry_with_backoff
from stlbridge.utils.sse import parse_sse_lines

logger = get_logger(__name__)

EventHandler = Callable[[Dict[str, Any]], Awaitable[None]]
ReconnectHandler = Callable[[], Awaitable[None]]

class ChannelClient(Protocol):
    """Client end of the realtime channel, as the bridge consumes it."""

    def on(self, event: str, handler: EventHandler) -> None: ...

    def on_reconnect(self, handler: ReconnectHandler) -> None: ...

    async def join(self, import_id: str) -> None: ...

    async def leave(self, import_id: str) -> None: ...

    async def close(self) -> None: ...

class _HandlerMixin:
    def __init__(self):
        self._handlers: Dict[str, List[EventHandler]] = {}
        self._reconnect_handlers: List[ReconnectHandler] = []

    def on(self, event: str, handler: EventHandler) -> None:
        self._handlers.setdefault(event, []).append(handler)

    def on_reconnect(self, handler: ReconnectHandler) -> None:
        self._reconnect_handlers.append(handler)

    async def _dispatch(self, event: str, data: Dict[str, Any]) -> None:
        for handler in list(self._handlers.get(event, ())):
            try:
                await handler(data)
            except Exception as e:
                logger.error("Channel event handler failed", event=event, error=str(e), exc_info=True)

    async def _reconnected(self) -> None:
        for handler in list(self._reconnect_handlers):
            try:
                await handler()
            except Exception as e:
                logger.error("Reconnect handler failed", error=str(e), exc_info=True)

class InProcessChannelClient(_HandlerMixin):
    """Channel client bound directly to a registry in the same event loop."""

    def __init__(self, registry: JobRegistry):
        super().__init__()
        self.registry = registry
        self.subscriber: Subscriber = registry.channel.connect()
        self._pump: Optional[asyncio.Task] = None

    @property
    def rooms(self) -> set:
        return set(self.subscriber.rooms)

    async def join(self, import_id: str) -> None:
        self._ensure_pump()
        if not self.registry.join(self.subscriber, import_id):
            logger.warning("Could not join import room", import_id=import_id)

    async def leave(self, import_id: str) -> None:
        self.registry.leave(self.subscriber, import_id)

    async def drain(self) -> None:
        """Wait until every frame queued so far has been handled."""
        await self.subscriber.queue.join()

    async def reconnect(self) -> None:
        """Drop the current subscription and start a fresh one.

        Room memberships are lost, as with a real connection drop; reconnect
        handlers are expected to re-join.
        """
        self.registry.channel.disconnect(self.subscriber)
        await self._stop_pump()
        self.subscriber = self.registry.channel.connect()
        self._ensure_pump()
        await self._reconnected()

    async def close(self) -> None:
        self.registry.channel.disconnect(self.subscriber)
        await self._stop_pump()

    def _ensure_pump(self) -> None:
        if self._pump is None or self._pump.done():
            self._pump = asyncio.create_task(self._run(self.subscriber))

    async def _stop_pump(self) -> None:
        if self._pump is not None:
            self._pump.cancel()
            try:
                await self._pump
            except asyncio.CancelledError:
                pass
            self._pump = None

    async def _run(self, subscriber: Subscriber) -> None:
        while True:
            frame = await subscriber.receive()
            try:
                await self._dispatch(frame.event, frame.data)
            finally:
                subscriber.task_done()

class SSEChannelClient(_HandlerMixin):
    """Channel client over ``GET /import-status/{id}/stream``.

    Each joined room is one SSE stream. A dropped stream is reopened with
    backoff; reopening re-joins the room and the server sends the job's
    current state first.
    """

    def __init__(
        self,
        base_url: str = API_BASE_URL,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        retry_config: RetryConfig = CHANNEL_RECONNECT_RETRY
    ):
        super().__init__()
        self.base_url = base_url.rstrip("/")
        self.retry_config = retry_config
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            transport=transport,
            timeout=httpx.Timeout(10.0, read=None)
        )
        self._streams: Dict[str, asyncio.Task] = {}

    @property
    def rooms(self) -> set:
        return set(self._streams)

    async def join(self, import_id: str) -> None:
        if import_id in self._streams and not self._streams[import_id].done():
            return
        task = asyncio.create_task(self._follow(import_id))
        self._streams[import_id] = task
        task.add_done_callback(lambda t: self._forget(import_id, t))

    async def leave(self, import_id: str) -> None:
        task = self._streams.pop(import_id, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def wait_closed(self) -> None:
        """Wait until every followed stream has ended."""
        while self._streams:
            await asyncio.gather(*list(self._streams.values()), return_exceptions=True)

    async def close(self) -> None:
        for import_id in list(self._streams):
            await self.leave(import_id)
        await self._client.aclose()

    def _forget(self, import_id: str, task: asyncio.Task) -> None:
        if self._streams.get(import_id) is task:
            del self._streams[import_id]

    async def _follow(self, import_id: str) -> None:
        follow = retry_with_backoff(self.retry_config, "follow_import_stream")(self._stream_once)
        attempt = {"count": 0}
        try:
            await follow(import_id, attempt)
        except httpx.HTTPError as e:
            logger.error("Import stream lost", import_id=import_id, error=str(e))

    async def _stream_once(self, import_id: str, attempt: Dict[str, int]) -> None:
        attempt["count"] += 1
        if attempt["count"] > 1:
            await self._reconnected()

        async with self._client.stream("GET", f"/import-status/{import_id}/stream") as response:
            response.raise_for_status()
            block: List[str] = []
            async for line in response.aiter_lines():
                if line:
                    block.append(line)
                    continue
                for event, payload in parse_sse_lines(block + [""]):
                    if event in ("heartbeat", "close"):
                        continue
                    await self._dispatch(event, payload if isinstance(payload, dict) else {"data": payload})
                    if event in TERMINAL_EVENTS:
                        return
                block = []

        # Stream ended before a terminal event
        raise httpx.RemoteProtocolError("Import stream closed before a terminal event")
