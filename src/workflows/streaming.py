"""
Keep-alive wrapper for long-lived progress streams.
"""
import asyncio
from typing import AsyncIterator

from core.entities import ProgressEvent

HEARTBEAT = ProgressEvent(type="heartbeat", phase="keepalive")


async def with_heartbeat(
    events: AsyncIterator[ProgressEvent],
    interval: float = 10.0,
) -> AsyncIterator[ProgressEvent]:
    """
    Re-yield `events`, inserting HEARTBEAT whenever nothing arrived for `interval` seconds.
    The heartbeat never touches the wrapped pipeline; it only waits on it.
    """
    iterator = events.__aiter__()
    pending = asyncio.ensure_future(iterator.__anext__())
    try:
        while True:
            done, _ = await asyncio.wait({pending}, timeout=interval)
            if not done:
                yield HEARTBEAT
                continue

            try:
                event = pending.result()
            except StopAsyncIteration:
                return

            yield event
            pending = asyncio.ensure_future(iterator.__anext__())
    finally:
        if not pending.done():
            pending.cancel()
            await asyncio.gather(pending, return_exceptions=True)
        aclose = getattr(iterator, "aclose", None)
        if aclose is not None:
            await aclose()
