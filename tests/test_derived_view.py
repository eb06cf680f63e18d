import asyncio
import operator

import pytest

from conftest import collect
from livehub.services.derived_view import (
    DerivedView,
    FilterStage,
    MapStage,
    RunningAggregate,
    SlidingWindow,
    TumblingWindow,
    chain,
)
from livehub.services.live_broadcast import (
    Gap,
    HubFailed,
    HubState,
    LiveHub,
    OverflowPolicy,
    SubscriberOverflow,
)


def run_stage(stage, elements):
    out = []
    for element in elements:
        out.extend(stage.process(element))
    out.extend(stage.flush())
    return out


def test_sliding_window_emits_once_full():
    assert run_stage(SlidingWindow(3), [1, 2, 3, 4, 5]) == [[1, 2, 3], [2, 3, 4], [3, 4, 5]]


def test_sliding_window_step():
    assert run_stage(SlidingWindow(3, step=2), [1, 2, 3, 4, 5, 6]) == [[1, 2, 3], [3, 4, 5]]


def test_tumbling_window_flushes_remainder():
    assert run_stage(TumblingWindow(2), [1, 2, 3, 4, 5]) == [[1, 2], [3, 4], [5]]


def test_running_aggregate():
    assert run_stage(RunningAggregate(operator.add, 0), [1, 2, 3]) == [1, 3, 6]


def test_window_sizes_validated():
    with pytest.raises(ValueError):
        SlidingWindow(0)
    with pytest.raises(ValueError):
        TumblingWindow(0)


@pytest.mark.asyncio
async def test_stage_runs_once_for_many_consumers():
    calls = []

    def square(x):
        calls.append(x)
        return x * x

    source = LiveHub(buffer_size=0)
    inlet = source.claim_inlet()
    view = DerivedView(source, MapStage(square), name="squares", buffer_size=0).start()
    consumers = [view.attach() for _ in range(5)]

    for i in range(1, 5):
        inlet.push(i)
    inlet.complete()

    results = await asyncio.gather(*(collect(c) for c in consumers))
    assert results == [[1, 4, 9, 16]] * 5
    assert calls == [1, 2, 3, 4]
    assert view.processed == 4


@pytest.mark.asyncio
async def test_completion_flushes_the_stage_downstream():
    source = LiveHub(buffer_size=0)
    inlet = source.claim_inlet()
    view = DerivedView(source, TumblingWindow(2), buffer_size=0).start()
    sub = view.attach()

    for i in range(1, 6):
        inlet.push(i)
    inlet.complete()

    assert await collect(sub) == [[1, 2], [3, 4], [5]]


@pytest.mark.asyncio
async def test_upstream_failure_fails_the_view():
    source = LiveHub()
    inlet = source.claim_inlet()
    view = DerivedView(source, MapStage(str)).start()
    sub = view.attach()
    error = ConnectionError("feed dropped")

    inlet.push(1)
    inlet.fail(error)

    assert await asyncio.wait_for(sub.get(), 1) == "1"
    with pytest.raises(HubFailed) as info:
        await asyncio.wait_for(sub.get(), 1)
    assert info.value.cause is error


@pytest.mark.asyncio
async def test_stage_error_fails_only_the_view():
    source = LiveHub()
    inlet = source.claim_inlet()
    raw = source.attach()
    view = DerivedView(source, MapStage(lambda x: 1 / x)).start()
    sub = view.attach()

    inlet.push(0)

    with pytest.raises(HubFailed) as info:
        await asyncio.wait_for(sub.get(), 1)
    assert isinstance(info.value.cause, ZeroDivisionError)

    inlet.push(2)
    assert raw.get_nowait() == 0
    assert raw.get_nowait() == 2


async def _settle():
    for _ in range(5):
        await asyncio.sleep(0)


@pytest.mark.asyncio
async def test_failed_view_hub_leaves_the_source_running():
    source = LiveHub(name="raw", buffer_size=2, overflow=OverflowPolicy.FAIL_FAST)
    inlet = source.claim_inlet()
    raw = source.attach(buffer_size=0)
    view = DerivedView(source, MapStage(lambda x: x)).start()
    stuck = view.attach()

    for i in range(12):
        inlet.push(i)
        await _settle()

    assert view.hub.state is HubState.FAILED
    assert stuck.get_nowait() == 0
    assert stuck.get_nowait() == 1
    with pytest.raises(HubFailed) as info:
        stuck.get_nowait()
    assert isinstance(info.value.cause, SubscriberOverflow)

    assert source.state is HubState.RUNNING
    assert source.subscriber_count == 1
    assert source.dropped == 0
    assert [raw.get_nowait() for _ in range(12)] == list(range(12))


@pytest.mark.asyncio
async def test_shut_down_view_hub_releases_the_source():
    source = LiveHub(buffer_size=2, overflow=OverflowPolicy.FAIL_FAST)
    inlet = source.claim_inlet()
    view = DerivedView(source, MapStage(lambda x: x)).start()
    assert source.subscriber_count == 1

    view.hub.shutdown()
    for i in range(6):
        inlet.push(i)
        await _settle()

    assert source.state is HubState.RUNNING
    assert source.subscriber_count == 0
    assert view.hub.state is HubState.COMPLETED


@pytest.mark.asyncio
async def test_chain_nests_one_hub_per_stage():
    source = LiveHub(buffer_size=0)
    inlet = source.claim_inlet()
    views = chain(
        source,
        [FilterStage(lambda x: x % 2 == 0), MapStage(lambda x: x * 10)],
        name="evens",
        buffer_size=0,
    )
    sub = views[-1].attach()

    for i in range(5):
        inlet.push(i)
    inlet.complete()

    assert [v.name for v in views] == ["evens.1", "evens.2"]
    assert await collect(sub) == [0, 20, 40]


@pytest.mark.asyncio
async def test_upstream_gaps_are_forwarded():
    source = LiveHub(buffer_size=2, overflow=OverflowPolicy.DROP_OLDEST)
    inlet = source.claim_inlet()
    view = DerivedView(source, MapStage(lambda x: x), buffer_size=2).start()
    sub = view.attach(buffer_size=0)

    for i in range(1, 6):
        inlet.push(i)
    inlet.complete()

    assert await collect(sub) == [Gap(3), 4, 5]
    assert view.gaps == 1


@pytest.mark.asyncio
async def test_stop_shuts_the_view_and_leaves_the_source_running():
    source = LiveHub()
    inlet = source.claim_inlet()
    view = DerivedView(source, MapStage(lambda x: x)).start()
    sub = view.attach()

    await view.stop()

    assert await collect(sub) == []
    assert source.subscriber_count == 0
    inlet.push(1)
    assert view.stats()["source"] == source.name
