"""Restart scenarios against a SQLite store reopened by a fresh engine."""

import pytest

from perennial.constants import EXECUTOR_ACTIVITY_NAME
from perennial.contracts import EventKind, RunStatus
from perennial.persistence import SQLiteInstanceStore
from perennial.transports.inmemory import InMemoryTransport


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "perennial.db"


@pytest.mark.asyncio
async def test_overdue_timer_fires_once_after_restart(db_path, clock, make_engine):
    first_transport = InMemoryTransport(poll_interval=0.01)
    engine, _ = make_engine(store=SQLiteInstanceStore(db_path), transport=first_transport)
    await engine.start("X")
    [(_, task)] = await first_transport.drain(EXECUTOR_ACTIVITY_NAME)
    await engine.complete_activity("X", 0, task.correlation_id, result=0)

    # Process dies while the one minute pause is pending.
    clock.advance(minutes=10)
    store = SQLiteInstanceStore(db_path)
    transport = InMemoryTransport(poll_interval=0.01)
    restarted, timers = make_engine(store=store, transport=transport)

    assert await restarted.recover() == 1
    assert await transport.drain(EXECUTOR_ACTIVITY_NAME) == []

    assert await timers.tick() == 1
    assert await timers.tick() == 0

    archived = await store.load_archive("X")
    kinds = [e.kind for e in archived]
    assert kinds.count(EventKind.TIMER_FIRED) == 1
    assert kinds.count(EventKind.ACTIVITY_COMPLETED) == 1
    assert kinds[-1] == EventKind.CONTINUED_AS_NEW

    [(_, next_task)] = await transport.drain(EXECUTOR_ACTIVITY_NAME)
    assert next_task.generation == 1
    record = await store.get_instance("X")
    assert record.status == RunStatus.RUNNING
    assert record.generation == 1


@pytest.mark.asyncio
async def test_lost_activity_is_redispatched_and_recorded_once(db_path, clock, make_engine):
    first_transport = InMemoryTransport(poll_interval=0.01)
    engine, _ = make_engine(store=SQLiteInstanceStore(db_path), transport=first_transport)
    await engine.start("X")
    [(_, lost)] = await first_transport.drain(EXECUTOR_ACTIVITY_NAME)

    store = SQLiteInstanceStore(db_path)
    transport = InMemoryTransport(poll_interval=0.01)
    restarted, _ = make_engine(store=store, transport=transport)
    await restarted.recover()
    [(_, again)] = await transport.drain(EXECUTOR_ACTIVITY_NAME)
    assert again.correlation_id == lost.correlation_id

    # Both the original and the re-dispatched execution report back.
    assert await restarted.complete_activity("X", 0, lost.correlation_id, result=2)
    assert not await restarted.complete_activity("X", 0, again.correlation_id, result=2)

    archived = await store.load_archive("X")
    assert [e.kind for e in archived].count(EventKind.ACTIVITY_COMPLETED) == 1
    assert (await store.get_instance("X")).generation == 1


@pytest.mark.asyncio
async def test_completed_activity_is_not_redispatched(db_path, clock, make_engine):
    engine, _ = make_engine(
        store=SQLiteInstanceStore(db_path), transport=InMemoryTransport(poll_interval=0.01)
    )
    await engine.start("X")

    store = SQLiteInstanceStore(db_path)
    history = await store.load_history("X")
    assert history[-1].kind == EventKind.ACTIVITY_SCHEDULED

    transport = InMemoryTransport(poll_interval=0.01)
    restarted, _ = make_engine(store=store, transport=transport)
    await restarted.recover()
    [(_, task)] = await transport.drain(EXECUTOR_ACTIVITY_NAME)
    await restarted.complete_activity("X", 0, task.correlation_id, result=0)

    # A second restart finds the run parked on its timer, not on the activity.
    transport = InMemoryTransport(poll_interval=0.01)
    again, _ = make_engine(store=SQLiteInstanceStore(db_path), transport=transport)
    await again.recover()
    assert await transport.drain(EXECUTOR_ACTIVITY_NAME) == []
    assert [t.status for t in await store.list_timers("X")] == ["pending"]
