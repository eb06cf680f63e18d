"""
Derived views: run a transformation once, upstream of the consumers.

- The stage is the only reader of one subscription on the source hub.
- Its output is pushed into a second LiveHub that consumers attach to, so every
  consumer sees identical derived data and the work is never repeated per reader.
- Chain several views to stack stages (hub -> stage -> hub -> stage -> hub).
"""
from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Any, Callable, Iterable, List, Optional, Protocol, Sequence

from livehub.services.live_broadcast import (
    EndOfStream,
    Gap,
    HubClosed,
    HubFailed,
    LiveHub,
    Subscription,
)

logger = logging.getLogger("livehub.derived")


class Stage(Protocol):
    def process(self, element: Any) -> Iterable[Any]: ...

    def flush(self) -> Iterable[Any]: ...


class MapStage:
    def __init__(self, fn: Callable[[Any], Any]):
        self.fn = fn

    def process(self, element: Any) -> Iterable[Any]:
        return (self.fn(element),)

    def flush(self) -> Iterable[Any]:
        return ()


class FilterStage:
    def __init__(self, predicate: Callable[[Any], bool]):
        self.predicate = predicate

    def process(self, element: Any) -> Iterable[Any]:
        return (element,) if self.predicate(element) else ()

    def flush(self) -> Iterable[Any]:
        return ()


class SlidingWindow:
    """Emits the last ``size`` elements as a list every ``step`` elements once full."""

    def __init__(self, size: int, step: int = 1):
        if size < 1 or step < 1:
            raise ValueError("size and step must be >= 1")
        self.size = size
        self.step = step
        self._window: deque = deque(maxlen=size)
        self._seen = 0

    def process(self, element: Any) -> Iterable[Any]:
        self._window.append(element)
        self._seen += 1
        if self._seen < self.size or (self._seen - self.size) % self.step:
            return ()
        return (list(self._window),)

    def flush(self) -> Iterable[Any]:
        return ()


class TumblingWindow:
    """Non-overlapping batches of ``size``; the remainder is emitted on completion."""

    def __init__(self, size: int):
        if size < 1:
            raise ValueError("size must be >= 1")
        self.size = size
        self._batch: List[Any] = []

    def process(self, element: Any) -> Iterable[Any]:
        self._batch.append(element)
        if len(self._batch) < self.size:
            return ()
        batch, self._batch = self._batch, []
        return (batch,)

    def flush(self) -> Iterable[Any]:
        if not self._batch:
            return ()
        batch, self._batch = self._batch, []
        return (batch,)


class RunningAggregate:
    """Folds every element into an accumulator and emits the new value."""

    def __init__(self, fn: Callable[[Any, Any], Any], initial: Any):
        self.fn = fn
        self.value = initial

    def process(self, element: Any) -> Iterable[Any]:
        self.value = self.fn(self.value, element)
        return (self.value,)

    def flush(self) -> Iterable[Any]:
        return ()


class DerivedView:
    """One stage between a source hub and the hub its consumers attach to."""

    def __init__(
        self,
        source: LiveHub,
        stage: Stage,
        name: Optional[str] = None,
        buffer_size: Optional[int] = None,
    ):
        self.source = source
        self.stage = stage
        self.name = name or f"{source.name}.derived"
        self.hub: LiveHub = LiveHub(
            name=self.name,
            buffer_size=source.buffer_size if buffer_size is None else buffer_size,
            overflow=source.overflow,
        )
        self._inlet = self.hub.claim_inlet()
        self._subscription: Subscription = source.attach(buffer_size=buffer_size)
        self._task: Optional[asyncio.Task] = None
        self.processed = 0
        self.gaps = 0

    def start(self) -> "DerivedView":
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name=f"derive-{self.name}")
        return self

    def attach(self, buffer_size: Optional[int] = None) -> Subscription:
        return self.hub.attach(buffer_size=buffer_size)

    async def stop(self) -> None:
        self._subscription.detach()
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
        self.hub.shutdown()

    def stats(self) -> dict:
        data = self.hub.stats()
        data["source"] = self.source.name
        data["processed"] = self.processed
        data["gaps"] = self.gaps
        return data

    async def _run(self) -> None:
        try:
            await self._forward()
        except HubFailed as exc:
            # Upstream failed, or this view's own hub failed on overflow.
            if not self._inlet.closed:
                self._inlet.fail(exc.cause)
        except HubClosed:
            logger.info("derived view %s: hub shut down; leaving %s", self.name, self.source.name)
        except Exception as exc:
            logger.warning("derived view %s: stage error: %s", self.name, exc)
            if not self._inlet.closed:
                self._inlet.fail(exc)
        else:
            if not self._inlet.closed:
                self._inlet.complete()
        finally:
            # Nothing reads the source subscription once this task ends.
            self._subscription.detach()

    async def _forward(self) -> None:
        while True:
            try:
                element = await self._subscription.get()
            except EndOfStream:
                break
            if isinstance(element, Gap):
                self.gaps += 1
                await self._inlet.push_async(element)
                continue
            for out in self.stage.process(element):
                await self._inlet.push_async(out)
            self.processed += 1
        for out in self.stage.flush():
            await self._inlet.push_async(out)


def chain(
    source: LiveHub,
    stages: Sequence[Stage],
    name: Optional[str] = None,
    buffer_size: Optional[int] = None,
) -> List[DerivedView]:
    """Nest one DerivedView per stage; consumers attach to the last one."""
    if not stages:
        raise ValueError("chain() needs at least one stage")
    views: List[DerivedView] = []
    upstream = source
    prefix = name or source.name
    for i, stage in enumerate(stages, start=1):
        view = DerivedView(
            upstream, stage, name=f"{prefix}.{i}", buffer_size=buffer_size
        ).start()
        views.append(view)
        upstream = view.hub
    return views
