"""
Producer adapters: put a hub's Inlet behind whatever drives the data.

- CallbackProducer: callback-style clients that call back from their own threads.
- pump(): an async iterable on the hub's loop (e.g. a Redis channel).
- feed_from_thread(): a plain blocking iterable read on a dedicated thread.
"""
from __future__ import annotations

import logging
import threading
from typing import Any, AsyncIterable, Callable, Iterable, Optional

from livehub.services.live_broadcast import HubClosed, HubError, HubFailed, Inlet

logger = logging.getLogger("livehub.producers")


class CallbackProducer:
    """Each on_message call is one push; errors and close end the stream."""

    def __init__(self, inlet: Inlet, transform: Optional[Callable[[Any], Any]] = None):
        self.inlet = inlet
        self.transform = transform
        self.received = 0
        self.errors = 0

    def on_message(self, message: Any) -> None:
        self.received += 1
        element = self.transform(message) if self.transform else message
        self.inlet.push(element)

    def on_error(self, error: BaseException) -> None:
        self.errors += 1
        if self.inlet.closed:
            logger.debug("error after close ignored: %s", error)
            return
        self.inlet.fail(error)

    def on_close(self) -> None:
        # Clients usually fire on_close after on_error as well.
        if not self.inlet.closed:
            self.inlet.complete()


async def pump(inlet: Inlet, source: AsyncIterable[Any], complete: bool = True) -> int:
    """Push everything ``source`` yields; returns the number of elements pushed."""
    count = 0
    try:
        async for element in source:
            await inlet.push_async(element)
            count += 1
    except (HubClosed, HubFailed) as exc:
        logger.info("pump stopped after %d elements: %s", count, exc)
        return count
    except HubError:
        raise
    except Exception as exc:
        logger.warning("pump source failed after %d elements: %s", count, exc)
        if not inlet.closed:
            inlet.fail(exc)
        return count
    if complete and not inlet.closed:
        inlet.complete()
    return count


def feed_from_thread(
    inlet: Inlet, source: Iterable[Any], name: str = "livehub-feed"
) -> threading.Thread:
    """Start a daemon thread that pushes ``source`` and then completes the inlet."""

    def run() -> None:
        try:
            for element in source:
                inlet.push(element)
        except (HubClosed, HubFailed) as exc:
            logger.info("feed thread %s stopped: %s", name, exc)
            return
        except Exception as exc:
            logger.warning("feed thread %s failed: %s", name, exc)
            if not inlet.closed:
                inlet.fail(exc)
            return
        if not inlet.closed:
            inlet.complete()

    thread = threading.Thread(target=run, name=name, daemon=True)
    thread.start()
    return thread
