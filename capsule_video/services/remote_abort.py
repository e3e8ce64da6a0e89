"""Abort requests for runs executing in task queue workers."""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator

import redis.asyncio as aioredis

from ..core.abort import AbortController
from ..utils.logger import get_logger

logger = get_logger(__name__)

ABORT_CHANNEL_PREFIX = "video-abort:"


def abort_channel(key: str) -> str:
    return f"{ABORT_CHANNEL_PREFIX}{key}"


async def request_abort(
    client: aioredis.Redis, key: str, reason: str = "aborted by request"
) -> bool:
    """Ask the worker running key to abort. False when no worker is listening."""
    receivers = await client.publish(abort_channel(key), reason)
    logger.info("Requested remote abort", job_key=key, receivers=receivers)
    return receivers > 0


@asynccontextmanager
async def listen_for_abort(
    client: aioredis.Redis, key: str, controller: AbortController
) -> AsyncIterator[None]:
    """Abort controller when an abort request for key arrives while inside the block."""
    pubsub = client.pubsub()
    await pubsub.subscribe(abort_channel(key))

    async def watch() -> None:
        async for message in pubsub.listen():
            if message.get("type") != "message":
                continue
            logger.info("Received remote abort", job_key=key, reason=message["data"])
            controller.abort(message["data"])
            return

    watcher = asyncio.create_task(watch())
    try:
        yield
    finally:
        watcher.cancel()
        await asyncio.gather(watcher, return_exceptions=True)
        await pubsub.unsubscribe()
        await pubsub.aclose()
