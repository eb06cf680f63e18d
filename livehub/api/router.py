"""
Live hub API: SSE streams, stats, batch ingestion.

- GET /live: SSE stream of raw elements (one subscription per client)
- GET /live/{view}: SSE stream of a derived view (computed once, shared)
- GET /stats: hub, view, producer and sink counters
- POST /ingest: write a record list in size-bounded batches
"""
import asyncio
import json
import logging
from typing import AsyncGenerator

from fastapi import APIRouter, HTTPException
from fastapi.responses import StreamingResponse

from livehub.core.config import settings
from livehub.db.schemas import (
    BatchOutcomeOut,
    HubStatsOut,
    IngestRequest,
    IngestResultOut,
    StatsOut,
)
from livehub.services.encoding import serialize_element
from livehub.services.hub_state import (
    get_batch_writer,
    get_hub,
    get_stats,
    get_view,
    get_views,
)
from livehub.services.live_broadcast import EndOfStream, Gap, HubFailed, LiveHub
from livehub.services.redis_client import read_stats

router = APIRouter()
logger = logging.getLogger("livehub.api")

_SSE_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "X-Accel-Buffering": "no",
    "Connection": "keep-alive",
    "Access-Control-Allow-Origin": "*",
}


async def _sse_generator(hub: LiveHub, heartbeat_sec: float) -> AsyncGenerator[str, None]:
    """
    Attach to ``hub`` and yield SSE events until end-of-stream or failure.
    Heartbeat comment every ``heartbeat_sec`` if no element. Closing the
    generator (client disconnect) detaches the subscription.
    """
    async with hub.attach() as sub:
        while True:
            try:
                item = await asyncio.wait_for(sub.get(), timeout=heartbeat_sec)
            except asyncio.TimeoutError:
                yield ": heartbeat\n\n"
                continue
            except EndOfStream:
                yield "event: end\ndata: {}\n\n"
                return
            except HubFailed as exc:
                yield f"event: error\ndata: {json.dumps({'error': str(exc.cause)})}\n\n"
                return
            if isinstance(item, Gap):
                yield f"event: gap\ndata: {json.dumps({'dropped': item.dropped})}\n\n"
            else:
                yield f"data: {serialize_element(item)}\n\n"


@router.get("/live", summary="Live element stream via Server-Sent Events")
async def live_stream():
    """
    Raw elements as pushed by the producer.
    Connect with EventSource or: curl -N http://localhost:8000/api/v1/live
    """
    return StreamingResponse(
        _sse_generator(get_hub(), settings.SSE_HEARTBEAT_SEC),
        media_type="text/event-stream",
        headers=_SSE_HEADERS,
    )


@router.get("/live/{view}", summary="Derived view stream via Server-Sent Events")
async def live_view_stream(view: str):
    try:
        derived = get_view(view)
    except RuntimeError:
        raise HTTPException(status_code=404, detail="View not found")
    return StreamingResponse(
        _sse_generator(derived.hub, settings.SSE_HEARTBEAT_SEC),
        media_type="text/event-stream",
        headers=_SSE_HEADERS,
    )


@router.get("/stats", response_model=StatsOut)
async def stats():
    """In-process hub stats; worker stats from Redis when enabled."""
    data = get_stats()
    worker = None
    if settings.REDIS_ENABLED:
        try:
            worker = await read_stats()
        except Exception as exc:
            logger.debug("worker stats unavailable: %s", exc)
    return StatsOut(
        hub=HubStatsOut(**get_hub().stats()),
        views=[HubStatsOut(**v.stats()) for v in get_views().values()],
        producer=dict(data.get("producer", {})),
        sink=dict(data.get("sink", {})),
        relay=dict(data.get("relay", {})),
        worker=worker,
    )


@router.post("/ingest", response_model=IngestResultOut, summary="Batch ingestion")
async def ingest(body: IngestRequest, per_record: bool = False):
    """Write ``records`` to ``destination``; one write per INGEST_BATCH_SIZE records."""
    writer = get_batch_writer()
    if writer is None:
        raise HTTPException(status_code=503, detail="Ingestion backend not configured")
    result = await writer.ingest(body.destination, body.records)
    return IngestResultOut(
        destination=result.destination,
        total=result.total,
        written=result.written,
        failed=result.failed,
        ok=result.ok,
        batches=[BatchOutcomeOut(**vars(b)) for b in result.batches],
        record_results=result.record_results() if per_record else None,
    )
