"""Durable timer tests."""

from datetime import timedelta

import pytest

from perennial.config import RetryConfig
from perennial.contracts import TimerTask
from perennial.errors import StoreFault, TimerStoreFault
from perennial.timers import DurableTimer


def _timer(clock, correlation_id="X:0:3", minutes=1):
    return TimerTask(
        correlation_id=correlation_id,
        instance_id="X",
        generation=0,
        fire_at=clock.now + timedelta(minutes=minutes),
    )


@pytest.mark.asyncio
async def test_tick_fires_only_due_timers_once(store, clock):
    fired = []

    async def on_fire(timer):
        fired.append(timer.correlation_id)
        return True

    timers = DurableTimer(store, clock=clock)
    timers.bind(on_fire)
    await timers.schedule(_timer(clock, "a", minutes=1))
    await timers.schedule(_timer(clock, "b", minutes=10))

    assert await timers.tick() == 0
    clock.advance(minutes=2)
    assert await timers.tick() == 1
    assert await timers.tick() == 0
    assert fired == ["a"]


@pytest.mark.asyncio
async def test_cancelled_timer_never_fires(store, clock):
    fired = []

    async def on_fire(timer):
        fired.append(timer.correlation_id)
        return True

    timers = DurableTimer(store, clock=clock)
    timers.bind(on_fire)
    await timers.schedule(_timer(clock))
    assert await timers.cancel("X:0:3")

    clock.advance(minutes=5)
    assert await timers.tick() == 0
    assert fired == []


@pytest.mark.asyncio
async def test_failed_delivery_leaves_timer_pending(store, clock):
    attempts = []

    async def flaky(timer):
        attempts.append(timer.correlation_id)
        if len(attempts) == 1:
            raise StoreFault("history unavailable")
        return True

    timers = DurableTimer(store, clock=clock)
    timers.bind(flaky)
    await timers.schedule(_timer(clock))
    clock.advance(minutes=1)

    with pytest.raises(StoreFault):
        await timers.tick()
    assert await timers.tick() == 1
    assert attempts == ["X:0:3", "X:0:3"]


@pytest.mark.asyncio
async def test_schedule_surfaces_timer_store_fault_after_retries(clock):
    calls = []

    class BrokenStore:
        async def add_timer(self, timer):
            calls.append(timer.correlation_id)
            raise StoreFault("disk full")

    timers = DurableTimer(BrokenStore(), retry=RetryConfig(attempts=3), clock=clock)

    with pytest.raises(TimerStoreFault):
        await timers.schedule(_timer(clock))
    assert len(calls) == 3


@pytest.mark.asyncio
async def test_tick_without_callback_is_an_error(store, clock):
    with pytest.raises(RuntimeError):
        await DurableTimer(store, clock=clock).tick()
