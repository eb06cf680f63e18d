import asyncio
import sys
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parent.parent
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from livehub.services.live_broadcast import EndOfStream, HubFailed


def drain(sub):
    """Everything already buffered, then "EOF"/"FAILED" if the stream ended."""
    items = []
    while True:
        try:
            items.append(sub.get_nowait())
        except asyncio.QueueEmpty:
            return items
        except EndOfStream:
            items.append("EOF")
            return items
        except HubFailed:
            items.append("FAILED")
            return items


async def collect(sub, timeout=5.0):
    """Read until end-of-stream."""

    async def _read():
        return [item async for item in sub]

    return await asyncio.wait_for(_read(), timeout)


async def no_sleep(_seconds):
    return None
