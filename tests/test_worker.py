import pytest

from conftest import drain
from livehub.core.config import settings
from livehub.services.batch_ingest import BatchWriter, SqlDestination
from livehub.services.live_broadcast import HubClosed, LiveHub
from livehub.services.redis_client import RedisListDestination
from worker.main import FeedWorker, _extract_stream_error, build_batch_writer


def test_extract_stream_error():
    assert _extract_stream_error('{"error": "invalid api key"}') == "invalid api key"
    assert _extract_stream_error('{"Error": "  bad filter "}') == "bad filter"
    assert _extract_stream_error('{"error": ""}') is None
    assert _extract_stream_error('{"price": 1}') is None
    assert _extract_stream_error("[1, 2]") is None
    assert _extract_stream_error("not json") is None


@pytest.mark.asyncio
async def test_handle_pushes_json_and_discards_the_rest():
    hub = LiveHub()
    sub = hub.attach()
    worker = FeedWorker(hub.claim_inlet(), url="ws://feed.test", subscribe_message="")

    await worker._handle('{"symbol": "ABC", "price": 10.5}')
    await worker._handle(b"not json")

    assert drain(sub) == [{"symbol": "ABC", "price": 10.5}]
    assert worker.stats["received"] == 2
    assert worker.stats["pushed"] == 1
    assert worker.stats["discarded"] == 1


@pytest.mark.asyncio
async def test_start_without_url_reports_config_error():
    hub = LiveHub()
    worker = FeedWorker(hub.claim_inlet(), url="")

    await worker.start()

    assert worker.stats["status"].startswith("config error")
    assert not worker._tasks


@pytest.mark.asyncio
async def test_stop_completes_the_inlet():
    hub = LiveHub()
    sub = hub.attach()
    stats = {}
    worker = FeedWorker(hub.claim_inlet(), url="ws://feed.test", stats=stats)

    await worker.stop()
    await worker.stop()

    assert drain(sub) == ["EOF"]
    assert stats["status"] == "stopped"


@pytest.mark.asyncio
async def test_connect_loop_stops_once_the_hub_is_closed():
    hub = LiveHub()
    worker = FeedWorker(hub.claim_inlet(), url="ws://feed.test")
    calls = []

    async def closed_stream():
        calls.append(1)
        raise HubClosed("hub 'live' is shut down")

    worker._stream = closed_stream
    worker._running = True
    await worker._connect_loop()

    assert calls == [1]
    assert worker.stats["status"].startswith("hub closed")
    assert not worker._running


def test_build_batch_writer_per_backend(monkeypatch):
    monkeypatch.setattr(settings, "INGEST_BACKEND", "none")
    assert build_batch_writer() is None

    monkeypatch.setattr(settings, "INGEST_BACKEND", "sql")
    monkeypatch.setattr(settings, "DATABASE_URL", "")
    assert build_batch_writer() is None

    monkeypatch.setattr(settings, "DATABASE_URL", "sqlite+aiosqlite:///:memory:")
    writer = build_batch_writer()
    assert isinstance(writer, BatchWriter)
    assert isinstance(writer.target, SqlDestination)

    monkeypatch.setattr(settings, "INGEST_BACKEND", "redis")
    writer = build_batch_writer()
    assert isinstance(writer.target, RedisListDestination)
    assert writer.batch_size == settings.INGEST_BATCH_SIZE


@pytest.mark.asyncio
async def test_server_close_backs_off_before_reconnecting():
    hub = LiveHub()
    waits = []

    async def record_sleep(seconds):
        waits.append(seconds)

    worker = FeedWorker(hub.claim_inlet(), url="ws://feed.test", sleep=record_sleep)
    calls = []

    async def closing_stream():
        calls.append(1)
        if len(calls) > 3:
            raise HubClosed("hub 'live' is shut down")

    worker._stream = closing_stream
    worker._running = True
    await worker._connect_loop()

    assert len(calls) == 4
    assert waits == [1, 2, 4]
    assert worker.stats["reconnects"] == 3
