"""
In-memory live broadcast hub: one producer, many independent subscribers.

- The producer holds the hub's single Inlet and may push from any thread.
- Delivery runs on the hub's event loop; each Subscription owns a bounded buffer
  and the hub's overflow policy decides what happens when it is full.
- A keep-alive anchor (a subscriber that discards everything) is attached at
  construction so the hub survives periods with zero real subscribers.
"""
from __future__ import annotations

import asyncio
import enum
import itertools
import logging
import threading
from collections import deque
from dataclasses import dataclass
from typing import Any, Deque, Dict, Generic, List, Optional, Tuple, TypeVar

logger = logging.getLogger("livehub.hub")

T = TypeVar("T")

_EMPTY = object()

# Why the inlet stopped accepting pushes.
_COMPLETED = "completed"
_FAILED = "failed"
_OVERFLOW = "overflow"
_SHUTDOWN = "shutdown"


class HubError(Exception):
    """Base class for hub errors."""


class ProducerContractViolation(HubError):
    """The producer used the inlet after complete()/fail(), or claimed it twice."""


class HubClosed(HubError):
    """Push into a hub its owner (or its last subscriber) already tore down."""


class EndOfStream(HubError):
    """Raised by Subscription.get() once the stream has completed or was detached."""


class SubscriberOverflow(HubError):
    """A subscription could not accept an element within its buffer."""

    def __init__(self, subscription_id: int, capacity: int):
        super().__init__(
            f"subscription {subscription_id} overflowed its buffer of {capacity}"
        )
        self.subscription_id = subscription_id
        self.capacity = capacity


class HubFailed(HubError):
    """Terminal hub failure; ``cause`` is the producer error or the overflow."""

    def __init__(self, cause: BaseException):
        super().__init__(f"hub failed: {cause}")
        self.cause = cause


class OverflowPolicy(str, enum.Enum):
    FAIL_FAST = "fail-fast"
    DROP_NEWEST = "drop-newest"
    DROP_OLDEST = "drop-oldest"
    BLOCK_PRODUCER = "block-producer"


class HubState(str, enum.Enum):
    CREATED = "created"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


_TERMINAL = (HubState.COMPLETED, HubState.FAILED)


@dataclass(frozen=True)
class Gap:
    """Read in place of ``dropped`` elements a drop policy discarded."""

    dropped: int


class Subscription(Generic[T]):
    """
    One consumer's delivery channel.

    The buffer is only touched on the hub's loop. Read with ``await get()``,
    ``async for``, or ``get_nowait()``; leave with ``detach()`` or by exiting
    ``async with``. Reads raise EndOfStream after completion and HubFailed
    after a failure, once everything already buffered has been read.
    """

    def __init__(self, hub: "LiveHub[T]", sub_id: int, start_seq: int, capacity: int):
        self.id = sub_id
        self._hub = hub
        self._start_seq = start_seq
        self._capacity = capacity
        # (elements dropped just before this one, element)
        self._buffer: Deque[Tuple[int, T]] = deque()
        self._lost_head = 0
        self._lost_tail = 0
        self._completed = False
        self._failure: Optional[BaseException] = None
        self._detached = False
        self._readable = asyncio.Event()
        self._writable = asyncio.Event()
        self._writable.set()
        self.delivered = 0
        self.dropped = 0

    def __repr__(self) -> str:
        return f"<Subscription {self.id} hub={self._hub.name!r} pending={self.pending}>"

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def pending(self) -> int:
        return len(self._buffer)

    @property
    def detached(self) -> bool:
        return self._detached

    @property
    def terminated(self) -> bool:
        return self._completed or self._failure is not None

    async def get(self) -> Any:
        """Next element or Gap; waits while nothing is buffered."""
        while True:
            item = self._take()
            if item is not _EMPTY:
                return item
            self._readable.clear()
            await self._readable.wait()

    def get_nowait(self) -> Any:
        item = self._take()
        if item is _EMPTY:
            raise asyncio.QueueEmpty
        return item

    def detach(self) -> None:
        self._hub.detach(self)

    def __aiter__(self) -> "Subscription[T]":
        return self

    async def __anext__(self) -> Any:
        try:
            return await self.get()
        except EndOfStream:
            raise StopAsyncIteration

    async def __aenter__(self) -> "Subscription[T]":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.detach()

    # ── hub side (event loop only) ────────────────────────────

    def _accepts(self) -> bool:
        if self._detached or self.terminated or not self._capacity:
            return True
        return len(self._buffer) < self._capacity

    def _offer(self, element: T) -> bool:
        """Buffer ``element``. False means the buffer is full under fail-fast."""
        if self._detached or self.terminated:
            return True
        if self._capacity and len(self._buffer) >= self._capacity:
            policy = self._hub.overflow
            if policy is OverflowPolicy.FAIL_FAST:
                return False
            if policy is OverflowPolicy.DROP_NEWEST:
                self._lost_tail += 1
                self._note_dropped()
                return True
            if policy is OverflowPolicy.DROP_OLDEST:
                gap, _ = self._buffer.popleft()
                self._lost_head += gap + 1
                self._note_dropped()
        self._buffer.append((self._lost_tail, element))
        self._lost_tail = 0
        self.delivered += 1
        if self._capacity and len(self._buffer) >= self._capacity:
            self._writable.clear()
        self._readable.set()
        return True

    def _mark_lost(self) -> None:
        """Record one element this subscription will never receive."""
        if self._detached or self.terminated:
            return
        self._lost_tail += 1
        self._note_dropped()
        self._readable.set()

    def _note_dropped(self) -> None:
        self.dropped += 1
        self._hub._dropped += 1

    def _take(self) -> Any:
        if self._detached:
            raise EndOfStream(f"subscription {self.id} detached")
        if self._lost_head:
            lost, self._lost_head = self._lost_head, 0
            return Gap(lost)
        if self._buffer:
            gap, element = self._buffer[0]
            if gap:
                self._buffer[0] = (0, element)
                return Gap(gap)
            self._buffer.popleft()
            self._writable.set()
            return element
        if self._lost_tail:
            lost, self._lost_tail = self._lost_tail, 0
            return Gap(lost)
        if self._failure is not None:
            raise HubFailed(self._failure) from self._failure
        if self._completed:
            raise EndOfStream(f"hub {self._hub.name!r} completed")
        return _EMPTY

    def _terminate(self, failure: Optional[BaseException]) -> None:
        if self.terminated:
            return
        if failure is None:
            self._completed = True
        else:
            self._failure = failure
        self._wake()

    def _close(self) -> None:
        self._detached = True
        self._hub._call_soon(self._release)

    def _release(self) -> None:
        self._buffer.clear()
        self._wake()

    def _wake(self) -> None:
        self._readable.set()
        self._writable.set()


class _Anchor(Subscription):
    """Permanent subscriber that discards everything it receives."""

    def _accepts(self) -> bool:
        return True

    def _offer(self, element: Any) -> bool:
        return True

    def _mark_lost(self) -> None:
        pass

    def detach(self) -> None:
        pass


class SubscriptionRegistry:
    """Subscription id -> Subscription, in attach order. Safe from any thread."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subs: Dict[int, Subscription] = {}
        self._ids = itertools.count(1)

    def next_id(self) -> int:
        with self._lock:
            return next(self._ids)

    def add(self, sub: Subscription) -> None:
        with self._lock:
            self._subs[sub.id] = sub

    def discard(self, sub_id: int) -> bool:
        """Remove ``sub_id``; False if it was not registered."""
        with self._lock:
            return self._subs.pop(sub_id, None) is not None

    def snapshot(self) -> List[Subscription]:
        with self._lock:
            return list(self._subs.values())

    def clear(self) -> List[Subscription]:
        with self._lock:
            subs = list(self._subs.values())
            self._subs.clear()
            return subs

    def __len__(self) -> int:
        with self._lock:
            return len(self._subs)

    def __contains__(self, sub_id: object) -> bool:
        with self._lock:
            return sub_id in self._subs


class Inlet(Generic[T]):
    """The producer's capability for one hub. Every method is safe from any thread."""

    def __init__(self, hub: "LiveHub[T]"):
        self._hub = hub

    @property
    def hub(self) -> "LiveHub[T]":
        return self._hub

    @property
    def closed(self) -> bool:
        return self._hub._closed is not None

    def push(self, element: T) -> None:
        """
        Enqueue one element for fanout.

        Under block-producer this blocks the calling thread until every
        subscription accepted the element; on the hub's own loop use
        ``push_async`` instead.
        """
        self._hub._push(element)

    async def push_async(self, element: T) -> None:
        """Push from a coroutine on the hub's loop; waits for room under block-producer."""
        await self._hub._push_async(element)

    def complete(self) -> None:
        self._hub._close_inlet(None)

    def fail(self, error: BaseException) -> None:
        if not isinstance(error, BaseException):
            raise TypeError("fail() expects an exception instance")
        self._hub._close_inlet(error)


class LiveHub(Generic[T]):
    """
    Shared, multicast view of one live stream.

    The production side runs once no matter how many subscriptions exist.
    Subscribers attach and detach at any time and only see elements pushed
    after they attached.
    """

    def __init__(
        self,
        name: str = "live",
        buffer_size: int = 1000,
        overflow: OverflowPolicy | str = OverflowPolicy.DROP_OLDEST,
        keep_alive: bool = True,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ):
        if buffer_size < 0:
            raise ValueError("buffer_size must be >= 0 (0 = unbounded)")
        self.name = name
        self.buffer_size = buffer_size
        self.overflow = OverflowPolicy(overflow)
        self.keep_alive = keep_alive
        self._loop = loop or asyncio.get_running_loop()
        self._lock = threading.Lock()
        self._registry = SubscriptionRegistry()
        self._state = HubState.CREATED
        self._seq = 0
        self._pending = 0
        self._inlet: Optional[Inlet[T]] = None
        self._closed: Optional[str] = None
        self._failure: Optional[BaseException] = None
        self._done = asyncio.Event()
        self._dropped = 0
        self.pushed = 0
        self._anchor: Optional[_Anchor] = None
        if keep_alive:
            self._anchor = _Anchor(self, self._registry.next_id(), 0, 0)
            self._registry.add(self._anchor)
        logger.info(
            "hub %s created (buffer=%d, overflow=%s, keep_alive=%s)",
            name,
            buffer_size,
            self.overflow.value,
            keep_alive,
        )

    # ── owner / consumer API ──────────────────────────────────

    @property
    def state(self) -> HubState:
        return self._state

    @property
    def dropped(self) -> int:
        return self._dropped

    @property
    def subscriber_count(self) -> int:
        return sum(1 for s in self._registry.snapshot() if not isinstance(s, _Anchor))

    @property
    def anchored(self) -> bool:
        return self._anchor is not None and self._anchor.id in self._registry

    def claim_inlet(self) -> Inlet[T]:
        """Hand out the single producer capability."""
        with self._lock:
            if self._inlet is not None:
                raise ProducerContractViolation(
                    f"hub {self.name!r} already has a producer"
                )
            self._inlet = Inlet(self)
            return self._inlet

    def attach(self, buffer_size: Optional[int] = None) -> Subscription[T]:
        """
        Attach a new subscriber. After a terminal state the subscription
        already carries end-of-stream or the failure.
        """
        capacity = self.buffer_size if buffer_size is None else buffer_size
        with self._lock:
            sub: Subscription[T] = Subscription(
                self, self._registry.next_id(), self._seq, capacity
            )
            late = self._state in _TERMINAL
            if not late:
                self._registry.add(sub)
                if self._state is HubState.CREATED:
                    self._state = HubState.RUNNING
        if late:
            sub._terminate(self._failure if self._state is HubState.FAILED else None)
        logger.debug("hub %s: attached subscription %d", self.name, sub.id)
        return sub

    def detach(self, sub: Subscription[T]) -> None:
        """Idempotent. The anchor cannot be detached."""
        if isinstance(sub, _Anchor):
            return
        removed = self._registry.discard(sub.id)
        if not sub._detached:
            sub._close()
        if not removed:
            return
        logger.debug("hub %s: detached subscription %d", self.name, sub.id)
        if not self.keep_alive and len(self._registry) == 0:
            logger.info("hub %s: last subscriber detached; tearing down", self.name)
            self.shutdown()

    def shutdown(self) -> None:
        """Owner teardown: stop accepting pushes, drop the anchor, end every subscription."""
        on_loop = self._on_loop()
        with self._lock:
            if self._state in _TERMINAL:
                return
            if self._closed is None:
                self._closed = _SHUTDOWN
            inline = self._reserve(on_loop)
        self._dispatch(inline, on_loop, self._finish, None)

    async def join(self) -> None:
        """Wait until the hub reaches a terminal state."""
        await self._done.wait()

    def stats(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "state": self._state.value,
            "overflow": self.overflow.value,
            "buffer_size": self.buffer_size,
            "subscribers": self.subscriber_count,
            "anchored": self.anchored,
            "pushed": self.pushed,
            "dropped": self._dropped,
        }

    # ── producer side ─────────────────────────────────────────

    def _push(self, element: T) -> None:
        on_loop = self._on_loop()
        blocking = self.overflow is OverflowPolicy.BLOCK_PRODUCER
        if blocking and on_loop and not self._all_accept():
            raise ProducerContractViolation(
                f"hub {self.name!r} is full; use push_async on the event loop"
            )
        with self._lock:
            self._check_open()
            seq = self._stamp()
            if blocking and not on_loop:
                inline = False
            else:
                inline = self._reserve(on_loop)
        if blocking and not on_loop:
            asyncio.run_coroutine_threadsafe(
                self._deliver_when_ready(seq, element), self._loop
            ).result()
        else:
            self._dispatch(inline, on_loop, self._deliver, seq, element)

    async def _push_async(self, element: T) -> None:
        if self.overflow is not OverflowPolicy.BLOCK_PRODUCER:
            self._push(element)
            return
        with self._lock:
            self._check_open()
            seq = self._stamp()
        await self._deliver_when_ready(seq, element)

    def _close_inlet(self, failure: Optional[BaseException]) -> None:
        on_loop = self._on_loop()
        with self._lock:
            self._check_open()
            self._closed = _COMPLETED if failure is None else _FAILED
            if failure is not None:
                self._failure = failure
            inline = self._reserve(on_loop)
        if failure is None:
            logger.info("hub %s: producer completed after %d elements", self.name, self.pushed)
        else:
            logger.warning("hub %s: producer failed: %s", self.name, failure)
        self._dispatch(inline, on_loop, self._finish, failure)

    def _check_open(self) -> None:
        # Caller holds self._lock.
        if self._closed is None:
            return
        if self._closed in (_COMPLETED, _FAILED):
            raise ProducerContractViolation(
                f"hub {self.name!r}: inlet already {self._closed}"
            )
        if self._closed == _OVERFLOW:
            raise HubFailed(self._failure)
        raise HubClosed(f"hub {self.name!r} was shut down")

    def _stamp(self) -> int:
        # Caller holds self._lock.
        seq = self._seq
        self._seq += 1
        self.pushed += 1
        if self._state is HubState.CREATED:
            self._state = HubState.RUNNING
        return seq

    # ── serialization point ───────────────────────────────────

    def _on_loop(self) -> bool:
        try:
            return asyncio.get_running_loop() is self._loop
        except RuntimeError:
            return False

    def _reserve(self, on_loop: bool) -> bool:
        """Caller holds the lock. True to run inline, otherwise queue behind pending work."""
        if on_loop and self._pending == 0:
            return True
        self._pending += 1
        return False

    def _dispatch(self, inline: bool, on_loop: bool, fn, *args) -> None:
        if inline:
            fn(*args)
        elif on_loop:
            self._loop.call_soon(self._run_pending, fn, args)
        else:
            self._loop.call_soon_threadsafe(self._run_pending, fn, args)

    def _run_pending(self, fn, args) -> None:
        with self._lock:
            self._pending -= 1
        fn(*args)

    def _call_soon(self, fn) -> None:
        if self._on_loop():
            fn()
        else:
            self._loop.call_soon_threadsafe(fn)

    # ── delivery (event loop only) ────────────────────────────

    def _deliver(self, seq: int, element: T) -> None:
        if self._state in _TERMINAL:
            return
        for sub in self._registry.snapshot():
            if seq < sub._start_seq:
                continue
            if not sub._offer(element):
                self._overflowed(sub)
                return

    async def _deliver_when_ready(self, seq: int, element: T) -> None:
        subs = [s for s in self._registry.snapshot() if seq >= s._start_seq]
        for i, sub in enumerate(subs):
            try:
                while not sub._accepts():
                    sub._writable.clear()
                    await sub._writable.wait()
            except asyncio.CancelledError:
                # The producer gave up mid-fanout; the rest see a gap instead.
                for missed in subs[i:]:
                    missed._mark_lost()
                raise
            if self._state in _TERMINAL:
                return
            sub._offer(element)

    def _all_accept(self) -> bool:
        return all(sub._accepts() for sub in self._registry.snapshot())

    def _overflowed(self, sub: Subscription[T]) -> None:
        error = SubscriberOverflow(sub.id, sub.capacity)
        logger.warning("hub %s: %s; failing hub", self.name, error)
        with self._lock:
            self._closed = _OVERFLOW
            self._failure = error
        self._finish(error)

    def _finish(self, failure: Optional[BaseException]) -> None:
        with self._lock:
            if self._state in _TERMINAL:
                return
            self._state = HubState.COMPLETED if failure is None else HubState.FAILED
            subs = self._registry.clear()
        self._anchor = None
        for sub in subs:
            sub._terminate(failure)
        self._done.set()
        logger.info(
            "hub %s %s (pushed=%d, dropped=%d)",
            self.name,
            self._state.value,
            self.pushed,
            self._dropped,
        )
