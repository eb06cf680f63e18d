"""
Live feed worker.

- Connects to a JSON WebSocket feed and pushes each message into a hub's Inlet.
- Reconnects with exponential backoff; server-side error frames stop the retry storm.
- Standalone mode (run_worker): hub -> Redis relay (+ optional batch sink); stats to Redis.
"""
import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Optional

import websockets

from livehub.core.config import settings
from livehub.db.database import database_enabled, init_models
from livehub.services.batch_ingest import BatchSink, BatchWriter, SqlDestination
from livehub.services.live_broadcast import HubError, Inlet, LiveHub
from livehub.services.redis_client import (
    RedisListDestination,
    RedisRelay,
    close_redis,
    write_stats,
)

logger = logging.getLogger("livehub.worker")


class FeedSubscriptionError(Exception):
    """Raised when the feed answers the subscription with an error frame."""


def _extract_stream_error(raw: str | bytes) -> str | None:
    """
    Feeds commonly report server-side failures as {"error": "..."}.
    Parse and surface these explicitly (e.g., invalid API key or filter).
    """
    try:
        msg = json.loads(raw)
    except (TypeError, json.JSONDecodeError):
        return None
    if not isinstance(msg, dict):
        return None
    err = msg.get("error") or msg.get("Error")
    if isinstance(err, str):
        err = err.strip()
        return err or None
    return None


class FeedWorker:
    def __init__(
        self,
        inlet: Inlet,
        url: Optional[str] = None,
        subscribe_message: Optional[str] = None,
        stats: Optional[dict[str, Any]] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.inlet = inlet
        self.url = settings.FEED_WS_URL if url is None else url
        self.subscribe_message = (
            settings.FEED_SUBSCRIBE_MESSAGE if subscribe_message is None else subscribe_message
        )
        self._running = False
        self._sleep = sleep
        self.stats = stats if stats is not None else {}
        self.stats.update(
            {
                "status": "stopped",
                "received": 0,
                "pushed": 0,
                "discarded": 0,
                "errors": 0,
                "reconnects": 0,
            }
        )
        self._tasks: set[asyncio.Task[Any]] = set()

    def _spawn(self, coro: Any, name: str) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def start(self) -> None:
        if not self.url.strip():
            self.stats["status"] = "config error (missing FEED_WS_URL)"
            logger.error("FEED_WS_URL is empty; the feed worker has nothing to connect to")
            return
        self._running = True
        self._spawn(self._connect_loop(), "feed-ws")
        logger.info("feed worker started: %s", self.url)

    async def stop(self, complete: bool = True) -> None:
        self._running = False
        self._sleep = sleep
        for t in list(self._tasks):
            t.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        if complete and not self.inlet.closed:
            self.inlet.complete()
        self.stats["status"] = "stopped"
        logger.info("feed worker stopped")

    async def _connect_loop(self) -> None:
        delay = 1
        while self._running:
            received = self.stats["received"]
            try:
                await self._stream()
                if not self._running:
                    break
                # Closed by the server. Back off unless the connection delivered data.
                if self.stats["received"] > received:
                    delay = 1
                self.stats["reconnects"] += 1
                self.stats["status"] = "reconnecting (closed by server)"
                logger.warning("feed closed by server; reconnect in %ds", delay)
                await self._sleep(delay)
                delay = min(delay * 2, settings.FEED_RECONNECT_MAX_SEC)
            except HubError as exc:
                self._running = False
                self.stats["status"] = f"hub closed ({exc})"
                logger.info("hub no longer accepts elements; feed worker stopping: %s", exc)
                return
            except FeedSubscriptionError as exc:
                self.stats["errors"] += 1
                self.stats["status"] = f"stream error ({exc})"
                logger.error(
                    "feed subscription failed: %s. Check FEED_SUBSCRIBE_MESSAGE.", exc
                )
                # Avoid aggressive reconnect loops for invalid credentials.
                await self._sleep(60)
            except asyncio.CancelledError:
                break
            except Exception as exc:
                self.stats["errors"] += 1
                self.stats["reconnects"] += 1
                self.stats["status"] = f"reconnecting ({exc})"
                logger.warning("WS error: %s; retry in %ds", exc, delay)
                await self._sleep(delay)
                delay = min(delay * 2, settings.FEED_RECONNECT_MAX_SEC)

    async def _stream(self) -> None:
        async with websockets.connect(
            self.url, ping_interval=20, ping_timeout=30
        ) as ws:
            if self.subscribe_message:
                await ws.send(self.subscribe_message)
            self.stats["status"] = "streaming"
            logger.info("feed connected: %s", self.url)
            async for raw in ws:
                if not self._running:
                    break
                stream_error = _extract_stream_error(raw)
                if stream_error:
                    raise FeedSubscriptionError(stream_error)
                await self._handle(raw)

    async def _handle(self, raw: str | bytes) -> None:
        self.stats["received"] += 1
        try:
            element = json.loads(raw)
        except (TypeError, json.JSONDecodeError):
            self.stats["discarded"] += 1
            logger.debug("non-JSON frame discarded")
            return
        await self.inlet.push_async(element)
        self.stats["pushed"] += 1


def build_batch_writer() -> Optional[BatchWriter]:
    """BatchWriter for INGEST_BACKEND, or None when ingestion is disabled."""
    if settings.INGEST_BACKEND == "sql":
        if not database_enabled():
            logger.error("INGEST_BACKEND=sql but DATABASE_URL is empty; ingestion disabled")
            return None
        return BatchWriter(SqlDestination())
    if settings.INGEST_BACKEND == "redis":
        return BatchWriter(RedisListDestination())
    return None


async def _stats_loop(hub: LiveHub, worker: FeedWorker, relay: RedisRelay) -> None:
    while True:
        await asyncio.sleep(5)
        try:
            await write_stats(
                {"hub": hub.stats(), "feed": worker.stats, "relay": relay.stats}
            )
        except Exception as exc:
            logger.debug("stats write error: %s", exc)


async def run_worker() -> None:
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    hub: LiveHub = LiveHub(
        name="live",
        buffer_size=settings.HUB_BUFFER_SIZE,
        overflow=settings.HUB_OVERFLOW_POLICY,
    )
    worker = FeedWorker(hub.claim_inlet())
    relay = RedisRelay(hub).start()
    sink: Optional[BatchSink] = None
    writer = build_batch_writer()
    if writer is not None and settings.INGEST_DESTINATION:
        if settings.INGEST_BACKEND == "sql":
            await init_models()
        sink = BatchSink(hub, writer, settings.INGEST_DESTINATION).start()
    await worker.start()
    stats_task = asyncio.create_task(_stats_loop(hub, worker, relay), name="feed-stats")
    try:
        await hub.join()
    except asyncio.CancelledError:
        pass
    finally:
        stats_task.cancel()
        await worker.stop()
        hub.shutdown()
        await relay.stop()
        if sink is not None:
            await sink.stop()
        await close_redis()


def main() -> None:
    asyncio.run(run_worker())


if __name__ == "__main__":
    main()
