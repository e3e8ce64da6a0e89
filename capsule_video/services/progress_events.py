"""Progress event sinks: in-process fan-out and Redis pub/sub."""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, List, Optional, Set, Tuple
import redis.asyncio as aioredis

from ..schemas.video import VideoProcessingEvent
from ..utils.constants import EventStatus
from ..utils.logger import get_logger

logger = get_logger(__name__)

_QUEUE_SIZE = 100


def _filter_key(event_name: str, filter: Dict[str, str]) -> Tuple[str, Tuple[Tuple[str, str], ...]]:
    return event_name, tuple(sorted(filter.items()))


def channel_name(event_name: str, filter: Dict[str, str]) -> str:
    """Redis channel for an event and filter, e.g. videoProcessing:video_id=abc."""
    parts = [f"{k}={v}" for k, v in sorted(filter.items())]
    return ":".join([event_name, *parts])


class InMemoryProgressBroker:
    """
    Fans progress events out to subscribers of the same process.

    Keeps the last event per filter so late subscribers start from the
    current state instead of waiting for the next tick.
    """

    def __init__(self):
        self._subscribers: Dict[Tuple, List[asyncio.Queue]] = {}
        self._latest: Dict[Tuple, VideoProcessingEvent] = {}

    def emit(self, event_name: str, filter: Dict[str, str], data: VideoProcessingEvent) -> None:
        key = _filter_key(event_name, filter)
        self._latest[key] = data
        for queue in self._subscribers.get(key, []):
            if queue.full():
                # Slow consumer: drop its oldest tick
                queue.get_nowait()
            queue.put_nowait(data)

    def latest(self, event_name: str, filter: Dict[str, str]) -> Optional[VideoProcessingEvent]:
        return self._latest.get(_filter_key(event_name, filter))

    @asynccontextmanager
    async def subscribe(
        self, event_name: str, filter: Dict[str, str]
    ) -> AsyncIterator[asyncio.Queue]:
        """Queue receiving every event emitted for filter while the context is open."""
        key = _filter_key(event_name, filter)
        queue: asyncio.Queue = asyncio.Queue(maxsize=_QUEUE_SIZE)
        last = self._latest.get(key)
        if last is not None:
            queue.put_nowait(last)
        self._subscribers.setdefault(key, []).append(queue)
        try:
            yield queue
        finally:
            subscribers = self._subscribers.get(key, [])
            if queue in subscribers:
                subscribers.remove(queue)
            if not subscribers:
                self._subscribers.pop(key, None)

    async def stream(
        self, event_name: str, filter: Dict[str, str]
    ) -> AsyncIterator[VideoProcessingEvent]:
        """Yield events until one reports a final status."""
        async with self.subscribe(event_name, filter) as queue:
            while True:
                event = await queue.get()
                yield event
                if event.status != EventStatus.PROCESSING:
                    return


class RedisProgressPublisher:
    """
    Publishes progress events to Redis so other processes can relay them.

    ``emit`` is synchronous; publishing happens in background tasks whose
    failures are logged, never raised into the pipeline.
    """

    def __init__(self, client: aioredis.Redis, local: Optional[InMemoryProgressBroker] = None):
        self.client = client
        self.local = local
        self._pending: Set[asyncio.Task] = set()

    def emit(self, event_name: str, filter: Dict[str, str], data: VideoProcessingEvent) -> None:
        if self.local is not None:
            self.local.emit(event_name, filter, data)
        payload = data.model_dump_json()
        task = asyncio.get_running_loop().create_task(
            self.client.publish(channel_name(event_name, filter), payload)
        )
        self._pending.add(task)
        task.add_done_callback(self._on_published)

    def _on_published(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.warning("Failed to publish progress event", error=str(error))

    async def flush(self) -> None:
        """Wait for in-flight publishes."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def stream(
        self, event_name: str, filter: Dict[str, str]
    ) -> AsyncIterator[VideoProcessingEvent]:
        """Yield events published by any process until a final status arrives."""
        pubsub = self.client.pubsub()
        await pubsub.subscribe(channel_name(event_name, filter))
        try:
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                event = VideoProcessingEvent.model_validate_json(message["data"])
                yield event
                if event.status != EventStatus.PROCESSING:
                    return
        finally:
            await pubsub.unsubscribe()
            await pubsub.aclose()
