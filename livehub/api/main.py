"""
FastAPI application for the live broadcast hub.

- Health: /health/live, /health/ready
- API: /api/v1/live, /api/v1/live/{view}, /api/v1/stats, /api/v1/ingest
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import FastAPI

from livehub.core.config import settings
from livehub.api.health import router as health_router
from livehub.api.router import router as api_router
from livehub.db.database import database_enabled, dispose_engine, init_models
from livehub.services import hub_state
from livehub.services.batch_ingest import BatchSink
from livehub.services.derived_view import DerivedView, SlidingWindow
from livehub.services.live_broadcast import LiveHub
from livehub.services.producers import pump
from livehub.services.redis_client import RedisRelay, close_redis, subscribe_live
from worker.main import FeedWorker, build_batch_writer


def _setup_logging() -> None:
    level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    _setup_logging()

    # The anchor is attached inside LiveHub() before any consumer can attach.
    hub: LiveHub = LiveHub(
        name="live",
        buffer_size=settings.HUB_BUFFER_SIZE,
        overflow=settings.HUB_OVERFLOW_POLICY,
    )
    window = DerivedView(hub, SlidingWindow(settings.WINDOW_SIZE), name="live.window").start()
    stats: Dict[str, Any] = {"producer": {"source": settings.FEED_SOURCE}, "sink": {}}

    hub_state.set_hub(hub)
    hub_state.set_view("window", window)
    hub_state.set_stats(stats)

    inlet = hub.claim_inlet()
    worker: Optional[FeedWorker] = None
    feed_task: Optional[asyncio.Task] = None
    if settings.FEED_SOURCE == "websocket":
        worker = FeedWorker(inlet, stats=stats["producer"])
        await worker.start()
    elif settings.FEED_SOURCE == "redis":
        feed_task = asyncio.create_task(pump(inlet, subscribe_live()), name="redis-feed")

    # Republishing a hub fed from the live channel would loop back into it.
    relay: Optional[RedisRelay] = None
    if settings.REDIS_ENABLED and settings.FEED_SOURCE != "redis":
        relay = RedisRelay(hub).start()
        stats["relay"] = relay.stats

    writer = build_batch_writer()
    if writer is not None and settings.INGEST_BACKEND == "sql":
        await init_models()
    hub_state.set_batch_writer(writer)
    sink: Optional[BatchSink] = None
    if writer is not None and settings.INGEST_DESTINATION:
        sink = BatchSink(hub, writer, settings.INGEST_DESTINATION).start()
        stats["sink"] = sink.stats

    yield

    if worker is not None:
        await worker.stop()
    if feed_task is not None:
        feed_task.cancel()
        await asyncio.gather(feed_task, return_exceptions=True)
    hub.shutdown()
    if relay is not None:
        await relay.stop()
    if sink is not None:
        await sink.stop()
    await window.stop()
    if settings.REDIS_ENABLED or "redis" in (settings.FEED_SOURCE, settings.INGEST_BACKEND):
        await close_redis()
    if database_enabled():
        await dispose_engine()
    hub_state.reset()


app = FastAPI(
    title="Live Hub API",
    description="Shared live stream with independent subscribers and batch ingestion",
    lifespan=lifespan,
)

app.include_router(health_router)
app.include_router(api_router, prefix=settings.API_PREFIX)
