import asyncio

import pytest

from core.entities import ProgressEvent
from workflows.streaming import HEARTBEAT, with_heartbeat


async def slow_events():
    yield ProgressEvent(type="progress", phase="scoring", current=1, total=2)
    await asyncio.sleep(0.25)
    yield ProgressEvent(type="complete", phase="complete")


@pytest.mark.asyncio
async def test_heartbeat_fills_quiet_periods():
    events = [e async for e in with_heartbeat(slow_events(), interval=0.05)]

    assert events[0].type == "progress"
    assert events[-1].type == "complete"
    assert HEARTBEAT in events
    assert all(e.type in ("progress", "complete", "heartbeat") for e in events)


@pytest.mark.asyncio
async def test_no_heartbeat_when_events_flow():
    async def fast():
        for i in range(3):
            yield ProgressEvent(type="progress", phase="scoring", current=i)

    events = [e async for e in with_heartbeat(fast(), interval=1.0)]
    assert [e.current for e in events] == [0, 1, 2]
