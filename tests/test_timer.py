"""
Tests for AutoCommitTimer. Ticks are 10ms so a 3-tick countdown takes ~30ms.
"""
import asyncio
from unittest.mock import AsyncMock

import pytest

from enviadores.modules.finalization.timer import AutoCommitTimer, TimerState

TICK = 0.01


@pytest.mark.asyncio
async def test_fires_when_countdown_reaches_zero():
    on_fire = AsyncMock()
    ticks = []
    timer = AutoCommitTimer(on_fire, seconds=3, tick_seconds=TICK, on_tick=ticks.append)

    timer.arm()
    await timer.task

    on_fire.assert_awaited_once()
    assert ticks == [3, 2, 1, 0]
    assert timer.remaining == 0
    assert timer.state == TimerState.FIRED


@pytest.mark.asyncio
async def test_cancel_prevents_fire_past_deadline():
    on_fire = AsyncMock()
    timer = AutoCommitTimer(on_fire, seconds=3, tick_seconds=TICK)

    timer.arm()
    await asyncio.sleep(TICK)
    assert timer.cancel() is True
    await asyncio.sleep(TICK * 10)

    on_fire.assert_not_awaited()
    assert timer.state == TimerState.CANCELLED


@pytest.mark.asyncio
async def test_cancel_is_terminal():
    timer = AutoCommitTimer(AsyncMock(), seconds=3, tick_seconds=TICK)
    timer.arm()
    timer.cancel()

    with pytest.raises(RuntimeError):
        timer.arm()
    assert timer.cancel() is False


@pytest.mark.asyncio
async def test_subscribe_streams_remaining_seconds():
    timer = AutoCommitTimer(AsyncMock(), seconds=3, tick_seconds=TICK)
    timer.arm()

    seen = [remaining async for remaining in timer.subscribe()]

    assert seen == [3, 2, 1, 0]


@pytest.mark.asyncio
async def test_subscription_ends_on_cancel():
    timer = AutoCommitTimer(AsyncMock(), seconds=50, tick_seconds=TICK)
    timer.arm()

    async def collect():
        return [remaining async for remaining in timer.subscribe()]

    collector = asyncio.create_task(collect())
    await asyncio.sleep(TICK * 2.5)
    timer.cancel()
    seen = await asyncio.wait_for(collector, timeout=1)

    assert seen[0] == 50
    assert len(seen) < 50


@pytest.mark.asyncio
async def test_disarm_from_fire_handler_does_not_cancel_it():
    finished = asyncio.Event()
    timer = None

    async def on_fire():
        timer.cancel()
        await asyncio.sleep(0)
        finished.set()

    timer = AutoCommitTimer(on_fire, seconds=1, tick_seconds=TICK)
    timer.arm()
    await timer.task

    assert finished.is_set()
    assert timer.state == TimerState.FIRED
