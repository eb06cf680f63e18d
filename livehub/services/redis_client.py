"""
Redis client for cross-process fanout, stats and bounded batch destinations.

- RedisRelay subscribes to a hub and publishes each element to the live channel.
- subscribe_live() yields the channel's messages; the API pumps them into its own hub.
- RedisListDestination is a bounded list queue; a full list rejects the batch.
- Worker periodically writes stats to a key; API reads it for GET /stats.
"""
import asyncio
import json
import logging
from typing import Any, AsyncIterator, Optional, Sequence

import redis.asyncio as redis
from redis.exceptions import ResponseError

from livehub.core.config import settings
from livehub.services.batch_ingest import BatchWriteRejected
from livehub.services.encoding import serialize_element
from livehub.services.live_broadcast import EndOfStream, Gap, HubFailed, LiveHub, Subscription

logger = logging.getLogger("livehub.redis")

_redis: Optional[redis.Redis] = None


async def get_redis() -> redis.Redis:
    global _redis
    if _redis is None:
        _redis = redis.from_url(
            settings.REDIS_URL,
            encoding="utf-8",
            decode_responses=True,
        )
    return _redis


async def close_redis() -> None:
    global _redis
    if _redis is not None:
        await _redis.aclose()
        _redis = None


async def publish_live(element: Any, channel: Optional[str] = None) -> None:
    """Publish one element to the live channel."""
    r = await get_redis()
    await r.publish(channel or settings.REDIS_LIVE_CHANNEL, serialize_element(element))


async def write_stats(stats: dict[str, Any]) -> None:
    """Write worker stats to Redis (worker calls this periodically)."""
    r = await get_redis()
    await r.set(settings.REDIS_STATS_KEY, json.dumps(stats), ex=60)


async def read_stats() -> Optional[dict[str, Any]]:
    """Read worker stats from Redis (API calls this for /stats)."""
    r = await get_redis()
    raw = await r.get(settings.REDIS_STATS_KEY)
    if not raw:
        return None
    try:
        return json.loads(raw)
    except (TypeError, json.JSONDecodeError):
        return None


async def subscribe_live(channel: Optional[str] = None) -> AsyncIterator[Any]:
    """
    Subscribe to the live channel; yields decoded elements (API feeds its hub from this).
    Payloads that are not JSON are yielded as the raw string.
    """
    channel = channel or settings.REDIS_LIVE_CHANNEL
    r = await get_redis()
    pubsub = r.pubsub()
    await pubsub.subscribe(channel)
    try:
        async for message in pubsub.listen():
            if message["type"] == "message" and message.get("data"):
                try:
                    yield json.loads(message["data"])
                except (TypeError, json.JSONDecodeError):
                    yield message["data"]
    finally:
        await pubsub.unsubscribe(channel)
        await pubsub.aclose()


class RedisRelay:
    """Hub consumer that republishes every element on a Redis channel."""

    def __init__(self, hub: LiveHub, channel: Optional[str] = None):
        self.hub = hub
        self.channel = channel or settings.REDIS_LIVE_CHANNEL
        self._subscription: Optional[Subscription] = None
        self._task: Optional[asyncio.Task] = None
        self.stats = {"published": 0, "errors": 0, "gaps": 0}

    def start(self) -> "RedisRelay":
        if self._task is None:
            self._subscription = self.hub.attach()
            self._task = asyncio.create_task(self._publish_loop(), name="redis-relay")
        return self

    async def stop(self) -> None:
        # A finished hub is drained before the task exits.
        if self._subscription is not None and not self._subscription.terminated:
            self._subscription.detach()
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)

    async def _publish_loop(self) -> None:
        while True:
            try:
                element = await self._subscription.get()
            except EndOfStream:
                return
            except HubFailed as exc:
                logger.warning("relay stopping: %s", exc)
                return
            if isinstance(element, Gap):
                self.stats["gaps"] += element.dropped
                continue
            try:
                await publish_live(element, self.channel)
                self.stats["published"] += 1
            except Exception as exc:
                self.stats["errors"] += 1
                logger.debug("publish error: %s", exc)


class RedisListDestination:
    """
    Bounded Redis list per destination. The LLEN check is the admission queue;
    BUSY/OOM replies are treated the same way.
    """

    def __init__(self, client: Optional[redis.Redis] = None, maxlen: Optional[int] = None):
        self._client = client
        self.maxlen = settings.REDIS_QUEUE_MAXLEN if maxlen is None else maxlen

    async def write_batch(self, destination: str, records: Sequence[Any]) -> None:
        r = self._client or await get_redis()
        try:
            queued = await r.llen(destination)
            if self.maxlen and queued + len(records) > self.maxlen:
                raise BatchWriteRejected(
                    destination, f"write queue full ({queued}/{self.maxlen})"
                )
            async with r.pipeline(transaction=True) as pipe:
                pipe.rpush(destination, *[serialize_element(rec) for rec in records])
                await pipe.execute()
        except ResponseError as exc:
            message = str(exc)
            if message.startswith(("BUSY", "OOM")):
                raise BatchWriteRejected(destination, message) from exc
            raise
