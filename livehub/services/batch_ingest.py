"""
Batch ingestion into a write-constrained destination.

- A known-size record set is split into batches of INGEST_BATCH_SIZE; one write per batch.
- A destination whose admission queue is full raises BatchWriteRejected. Only that
  batch is retried, with exponential backoff; acknowledged batches are never resent.
- BatchSink feeds a hub subscription into a BatchWriter, flushing by size or time.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterator, List, Optional, Protocol, Sequence, Tuple

from sqlalchemy import insert
from sqlalchemy.exc import OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from livehub.core.config import settings
from livehub.db.database import AsyncSessionLocal
from livehub.db.models import IngestedRecord
from livehub.services.encoding import to_jsonable
from livehub.services.live_broadcast import EndOfStream, Gap, HubFailed, LiveHub, Subscription

logger = logging.getLogger("livehub.ingest")


class BatchWriteRejected(Exception):
    """The destination's admission control refused one batch."""

    def __init__(
        self,
        destination: str,
        reason: str = "write queue full",
        retry_after: Optional[float] = None,
    ):
        super().__init__(f"{destination}: {reason}")
        self.destination = destination
        self.reason = reason
        self.retry_after = retry_after


class BatchDestination(Protocol):
    async def write_batch(self, destination: str, records: Sequence[Any]) -> None: ...


@dataclass
class BatchOutcome:
    index: int
    start: int
    size: int
    attempts: int = 0
    ok: bool = False
    rejected: bool = False
    error: Optional[str] = None


@dataclass
class IngestResult:
    destination: str
    total: int
    batches: List[BatchOutcome] = field(default_factory=list)

    @property
    def written(self) -> int:
        return sum(b.size for b in self.batches if b.ok)

    @property
    def failed(self) -> int:
        return self.total - self.written

    @property
    def ok(self) -> bool:
        return self.failed == 0

    def record_results(self) -> List[Optional[str]]:
        """Per record: None when written, otherwise the error of its batch."""
        results: List[Optional[str]] = [None] * self.total
        for b in self.batches:
            if b.ok:
                continue
            for i in range(b.start, b.start + b.size):
                results[i] = b.error or "failed"
        return results


def iter_batches(records: Sequence[Any], size: int) -> Iterator[Tuple[int, Sequence[Any]]]:
    """Yield (offset, slice) pairs of at most ``size`` records."""
    if size < 1:
        raise ValueError("batch size must be >= 1")
    for start in range(0, len(records), size):
        yield start, records[start:start + size]


class BatchWriter:
    def __init__(
        self,
        target: BatchDestination,
        batch_size: Optional[int] = None,
        max_retries: Optional[int] = None,
        backoff_base: Optional[float] = None,
        backoff_max: Optional[float] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.target = target
        self.batch_size = settings.INGEST_BATCH_SIZE if batch_size is None else batch_size
        if self.batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self.max_retries = settings.INGEST_MAX_RETRIES if max_retries is None else max_retries
        self.backoff_base = (
            settings.INGEST_BACKOFF_BASE_SEC if backoff_base is None else backoff_base
        )
        self.backoff_max = settings.INGEST_BACKOFF_MAX_SEC if backoff_max is None else backoff_max
        self._sleep = sleep
        self.stats = {
            "batches": 0,
            "writes": 0,
            "rejections": 0,
            "failed_batches": 0,
            "records": 0,
        }

    async def ingest(self, destination: str, records: Sequence[Any]) -> IngestResult:
        """Write ``records`` to ``destination`` in size-bounded batches."""
        records = list(records)
        result = IngestResult(destination=destination, total=len(records))
        for index, (start, batch) in enumerate(iter_batches(records, self.batch_size)):
            outcome = BatchOutcome(index=index, start=start, size=len(batch))
            await self._write(destination, batch, outcome)
            result.batches.append(outcome)
            self.stats["batches"] += 1
        logger.info(
            "ingest %s: %d/%d records written in %d batches",
            destination,
            result.written,
            result.total,
            len(result.batches),
        )
        return result

    async def _write(
        self, destination: str, batch: Sequence[Any], outcome: BatchOutcome
    ) -> None:
        delay = self.backoff_base
        while True:
            outcome.attempts += 1
            self.stats["writes"] += 1
            try:
                await self.target.write_batch(destination, batch)
            except BatchWriteRejected as exc:
                self.stats["rejections"] += 1
                if outcome.attempts > self.max_retries:
                    outcome.rejected = True
                    outcome.error = f"rejected: {exc.reason}"
                    self.stats["failed_batches"] += 1
                    logger.warning(
                        "batch %d to %s rejected %d times; giving up",
                        outcome.index,
                        destination,
                        outcome.attempts,
                    )
                    return
                wait = min(
                    exc.retry_after if exc.retry_after is not None else delay,
                    self.backoff_max,
                )
                logger.info(
                    "batch %d to %s rejected (%s); retry in %.2fs",
                    outcome.index,
                    destination,
                    exc.reason,
                    wait,
                )
                await self._sleep(wait)
                delay = min(delay * 2, self.backoff_max)
            except Exception as exc:
                outcome.error = str(exc) or exc.__class__.__name__
                self.stats["failed_batches"] += 1
                logger.warning("batch %d to %s failed: %s", outcome.index, destination, exc)
                return
            else:
                outcome.ok = True
                self.stats["records"] += len(batch)
                return


class SqlDestination:
    """One multi-row INSERT into ingested_records per batch."""

    def __init__(self, session_factory: Optional[Callable[[], Any]] = None):
        self._session_factory = session_factory or AsyncSessionLocal

    async def write_batch(self, destination: str, records: Sequence[Any]) -> None:
        rows = [{"destination": destination, "payload": to_jsonable(r)} for r in records]
        try:
            async with self._session_factory() as s:
                await s.execute(insert(IngestedRecord), rows)
                await s.commit()
        except (PoolTimeoutError, OperationalError) as exc:
            raise BatchWriteRejected(destination, str(exc)) from exc
        logger.debug("sql write %s: %d rows", destination, len(rows))


class BatchSink:
    """Hub consumer that writes what it receives through a BatchWriter."""

    def __init__(
        self,
        hub: LiveHub,
        writer: BatchWriter,
        destination: str,
        flush_interval: Optional[float] = None,
        buffer_size: Optional[int] = None,
    ):
        self.hub = hub
        self.writer = writer
        self.destination = destination
        self.flush_interval = (
            settings.BATCH_TIMEOUT_SEC if flush_interval is None else flush_interval
        )
        self._buffer_size = buffer_size
        self._subscription: Optional[Subscription] = None
        self._task: Optional[asyncio.Task] = None
        self.stats = {"received": 0, "written": 0, "failed": 0, "gaps": 0, "flushes": 0}

    def start(self) -> "BatchSink":
        if self._task is None:
            self._subscription = self.hub.attach(buffer_size=self._buffer_size)
            self._task = asyncio.create_task(self._run(), name=f"sink-{self.destination}")
        return self

    async def stop(self) -> None:
        """
        Wait for the task. A finished hub is drained first; a live one is
        detached and only what was already taken gets flushed.
        """
        if self._subscription is not None and not self._subscription.terminated:
            self._subscription.detach()
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        batch: List[Any] = []
        deadline = 0.0
        while True:
            timeout = max(0.0, deadline - loop.time()) if batch else None
            try:
                item = await asyncio.wait_for(self._subscription.get(), timeout)
            except asyncio.TimeoutError:
                batch = await self._flush(batch)
                continue
            except EndOfStream:
                break
            except HubFailed as exc:
                logger.warning("sink %s: hub failed: %s", self.destination, exc)
                break
            if isinstance(item, Gap):
                self.stats["gaps"] += item.dropped
                continue
            if not batch:
                deadline = loop.time() + self.flush_interval
            batch.append(item)
            self.stats["received"] += 1
            if len(batch) >= self.writer.batch_size:
                batch = await self._flush(batch)
        await self._flush(batch)

    async def _flush(self, batch: List[Any]) -> List[Any]:
        if batch:
            result = await self.writer.ingest(self.destination, batch)
            self.stats["flushes"] += 1
            self.stats["written"] += result.written
            self.stats["failed"] += result.failed
        return []
