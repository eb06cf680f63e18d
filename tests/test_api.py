import json

import pytest
from fastapi.testclient import TestClient

from livehub.api.main import app
from livehub.api.router import _sse_generator
from livehub.services import hub_state
from livehub.services.batch_ingest import BatchWriteRejected, BatchWriter
from livehub.services.live_broadcast import LiveHub, OverflowPolicy


class FullAfterTwoBatches:
    def __init__(self):
        self.writes = 0

    async def write_batch(self, destination, records):
        self.writes += 1
        if self.writes > 2:
            raise BatchWriteRejected(destination)


async def _instant(_seconds):
    return None


def test_health_live():
    with TestClient(app) as client:
        r = client.get("/health/live")
    assert r.status_code == 200
    assert r.json() == {"status": "ok"}


def test_health_ready_with_running_hub():
    with TestClient(app) as client:
        r = client.get("/health/ready")
    assert r.status_code == 200
    assert r.json()["status"] == "ok"


def test_stats_reports_hub_and_window_view():
    with TestClient(app) as client:
        r = client.get("/api/v1/stats")
    assert r.status_code == 200
    data = r.json()
    assert data["hub"]["name"] == "live"
    assert data["hub"]["anchored"] is True
    # the window view is the only consumer
    assert data["hub"]["subscribers"] == 1
    assert [v["name"] for v in data["views"]] == ["live.window"]
    assert data["views"][0]["source"] == "live"
    assert data["producer"]["source"] == "none"
    assert data["worker"] is None


def test_unknown_view_is_404():
    with TestClient(app) as client:
        r = client.get("/api/v1/live/nope")
    assert r.status_code == 404


def test_ingest_without_backend_is_503():
    with TestClient(app) as client:
        r = client.post("/api/v1/ingest", json={"destination": "events", "records": [1]})
    assert r.status_code == 503


def test_ingest_reports_per_batch_and_per_record_results():
    with TestClient(app) as client:
        hub_state.set_batch_writer(
            BatchWriter(FullAfterTwoBatches(), batch_size=2, max_retries=0, sleep=_instant)
        )
        r = client.post(
            "/api/v1/ingest?per_record=true",
            json={"destination": "events", "records": [{"i": i} for i in range(5)]},
        )
    assert r.status_code == 200
    data = r.json()
    assert data["total"] == 5
    assert data["written"] == 4
    assert data["failed"] == 1
    assert data["ok"] is False
    assert [b["ok"] for b in data["batches"]] == [True, True, False]
    assert data["batches"][2]["rejected"] is True
    assert data["record_results"][:4] == [None] * 4
    assert data["record_results"][4].startswith("rejected")


def test_ingest_rejects_empty_destination():
    with TestClient(app) as client:
        r = client.post("/api/v1/ingest", json={"destination": "", "records": []})
    assert r.status_code == 422


@pytest.mark.asyncio
async def test_sse_stream_events():
    hub = LiveHub(buffer_size=1, overflow=OverflowPolicy.DROP_OLDEST)
    inlet = hub.claim_inlet()
    events = _sse_generator(hub, heartbeat_sec=0.05)

    assert await events.__anext__() == ": heartbeat\n\n"
    assert hub.subscriber_count == 1

    for i in (1, 2, 3):
        inlet.push({"n": i})
    assert await events.__anext__() == f"event: gap\ndata: {json.dumps({'dropped': 2})}\n\n"
    assert await events.__anext__() == 'data: {"n": 3}\n\n'

    inlet.complete()
    assert await events.__anext__() == "event: end\ndata: {}\n\n"
    with pytest.raises(StopAsyncIteration):
        await events.__anext__()
    assert hub.subscriber_count == 0


@pytest.mark.asyncio
async def test_sse_stream_reports_failure():
    hub = LiveHub()
    inlet = hub.claim_inlet()
    events = _sse_generator(hub, heartbeat_sec=0.05)
    await events.__anext__()

    inlet.fail(ConnectionError("feed lost"))

    assert await events.__anext__() == 'event: error\ndata: {"error": "feed lost"}\n\n'


@pytest.mark.asyncio
async def test_sse_client_disconnect_detaches():
    hub = LiveHub()
    inlet = hub.claim_inlet()
    events = _sse_generator(hub, heartbeat_sec=0.05)
    await events.__anext__()
    assert hub.subscriber_count == 1

    await events.aclose()

    assert hub.subscriber_count == 0
    inlet.push(1)
