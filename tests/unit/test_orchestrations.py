"""Built-in loop and activity tests."""

from datetime import timedelta

import pytest

import perennial.orchestrations as orchestrations
from perennial.config import PolicyConfig
from perennial.constants import EXECUTOR_ACTIVITY_NAME
from perennial.contracts import EventKind
from perennial.orchestrations import (
    PACED_ORCHESTRATOR_NAME,
    backoff_minutes,
    build_paced_activity,
    default_activities,
    process_records,
)


@pytest.mark.parametrize(
    "processed, expected",
    [(None, 3), (0, 1), (1, 0), (4, 0)],
)
def test_backoff_minutes_default_policy(processed, expected):
    assert backoff_minutes(processed) == expected


def test_backoff_minutes_custom_policy():
    policy = PolicyConfig(minutes_to_wait_after_no_work=5, minutes_to_wait_after_error=15)
    assert backoff_minutes(None, policy) == 15
    assert backoff_minutes(0, policy) == 5
    assert backoff_minutes(2, policy) == 0


@pytest.mark.asyncio
async def test_process_records_reports_random_count(monkeypatch):
    monkeypatch.setattr(orchestrations.random, "randint", lambda a, b: 4)
    assert await process_records() == 4


@pytest.mark.asyncio
async def test_paced_activity_returns_pause(monkeypatch):
    counts = iter([0, 2])
    monkeypatch.setattr(orchestrations.random, "randint", lambda a, b: next(counts))
    paced = build_paced_activity(PolicyConfig(minutes_to_wait_after_no_work=7))

    assert await paced() == 7
    assert await paced() == 0


def test_default_activities_follow_orchestration():
    assert default_activities()[EXECUTOR_ACTIVITY_NAME] is process_records
    paced = default_activities(PACED_ORCHESTRATOR_NAME)
    assert paced[EXECUTOR_ACTIVITY_NAME] is not process_records


@pytest.mark.asyncio
@pytest.mark.parametrize("result", ["lots", None, "3", 2.9, True])
async def test_eternal_loop_treats_unusable_result_as_error(
    result, store, transport, clock, make_engine
):
    engine, _ = make_engine()
    await engine.start("X")
    [(_, task)] = await transport.drain(EXECUTOR_ACTIVITY_NAME)

    await engine.complete_activity("X", 0, task.correlation_id, result=result)

    [timer] = await store.list_timers("X")
    assert timer.fire_at == clock.now + timedelta(minutes=3)


@pytest.mark.asyncio
async def test_eternal_loop_honours_custom_policy(store, transport, clock, make_engine):
    policy = PolicyConfig(minutes_to_wait_after_no_work=10)
    engine, _ = make_engine(policy=policy)
    await engine.start("X")
    [(_, task)] = await transport.drain(EXECUTOR_ACTIVITY_NAME)

    await engine.complete_activity("X", 0, task.correlation_id, result=0)

    [timer] = await store.list_timers("X")
    assert timer.fire_at == clock.now + timedelta(minutes=10)


@pytest.mark.asyncio
async def test_paced_loop_sleeps_for_returned_minutes(store, transport, clock, make_engine):
    engine, timers = make_engine()
    await engine.start("P", orchestration=PACED_ORCHESTRATOR_NAME)
    [(_, task)] = await transport.drain(EXECUTOR_ACTIVITY_NAME)

    await engine.complete_activity("P", 0, task.correlation_id, result=2)

    [timer] = await store.list_timers("P")
    assert timer.fire_at == clock.now + timedelta(minutes=2)

    clock.advance(minutes=2)
    assert await timers.tick() == 1
    [(_, task)] = await transport.drain(EXECUTOR_ACTIVITY_NAME)
    assert task.generation == 1

    await engine.complete_activity("P", 1, task.correlation_id, result=0)
    archived = await store.load_archive("P")
    assert EventKind.TIMER_CREATED not in [e.kind for e in archived]
    assert (await store.get_instance("P")).generation == 2
