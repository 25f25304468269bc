"""Replay engine tests."""

import logging
from datetime import datetime, timedelta, timezone

import pytest

from perennial.constants import EXECUTOR_ACTIVITY_NAME
from perennial.contracts import EventKind, RunStatus
from perennial.engine import correlation_id_for
from perennial.persistence import InMemoryInstanceStore, SQLiteInstanceStore


async def _activity_messages(transport):
    return [msg for _, msg in await transport.drain(EXECUTOR_ACTIVITY_NAME)]


def _kinds(events):
    return [e.kind for e in events]


@pytest.mark.asyncio
async def test_start_schedules_first_activity(store, transport, make_engine):
    engine, _ = make_engine()

    result = await engine.start("X")

    assert result.started
    history = await store.load_history("X")
    assert _kinds(history) == [
        EventKind.ORCHESTRATION_STARTED,
        EventKind.ACTIVITY_SCHEDULED,
    ]
    messages = await _activity_messages(transport)
    assert len(messages) == 1
    assert messages[0].correlation_id == correlation_id_for("X", 0, 1)
    assert messages[0].generation == 0


@pytest.mark.asyncio
async def test_work_done_continues_without_timer(store, transport, make_engine):
    engine, _ = make_engine()
    await engine.start("X")
    [task] = await _activity_messages(transport)

    assert await engine.complete_activity("X", 0, task.correlation_id, result=3)

    record = await store.get_instance("X")
    assert record.status == RunStatus.RUNNING
    assert record.generation == 1
    archived = await store.load_archive("X")
    assert _kinds(archived) == [
        EventKind.ORCHESTRATION_STARTED,
        EventKind.ACTIVITY_SCHEDULED,
        EventKind.ACTIVITY_COMPLETED,
        EventKind.CONTINUED_AS_NEW,
    ]
    current = await store.load_history("X")
    assert [e.sequence_number for e in current] == [0, 1]
    assert await store.list_timers("X") == []
    [next_task] = await _activity_messages(transport)
    assert next_task.generation == 1


@pytest.mark.asyncio
async def test_no_work_creates_timer_for_no_work_backoff(store, transport, clock, make_engine):
    engine, _ = make_engine()
    await engine.start("X")
    [task] = await _activity_messages(transport)
    clock.advance(seconds=5)

    await engine.complete_activity("X", 0, task.correlation_id, result=0)

    history = await store.load_history("X")
    assert history[-1].kind == EventKind.TIMER_CREATED
    [timer] = await store.list_timers("X")
    assert timer.fire_at == clock.now + timedelta(minutes=1)
    assert timer.status == "pending"


@pytest.mark.asyncio
async def test_activity_failure_is_recovered_with_error_backoff(
    store, transport, clock, make_engine
):
    engine, _ = make_engine()
    await engine.start("X")
    [task] = await _activity_messages(transport)

    await engine.complete_activity("X", 0, task.correlation_id, error="boom")

    assert (await store.get_instance("X")).status == RunStatus.RUNNING
    history = await store.load_history("X")
    assert _kinds(history)[-2:] == [EventKind.ACTIVITY_FAILED, EventKind.TIMER_CREATED]
    [timer] = await store.list_timers("X")
    assert timer.fire_at == clock.now + timedelta(minutes=3)


@pytest.mark.asyncio
async def test_duplicate_and_stale_completions_are_ignored(store, transport, make_engine):
    engine, _ = make_engine()
    await engine.start("X")
    [task] = await _activity_messages(transport)

    assert await engine.complete_activity("X", 0, task.correlation_id, result=0)
    assert not await engine.complete_activity("X", 0, task.correlation_id, result=0)
    assert not await engine.complete_activity("X", 5, task.correlation_id, result=0)

    kinds = _kinds(await store.load_history("X"))
    assert kinds.count(EventKind.ACTIVITY_COMPLETED) == 1


@pytest.mark.asyncio
async def test_replay_produces_identical_intents_without_side_effects(
    store, transport, make_engine
):
    seen = []

    def recording_loop(ctx, _input):
        first = yield ctx.call_activity("work")
        seen.append(("after-first", first, ctx.is_replaying))
        second = yield ctx.call_activity("work", {"previous": first})
        seen.append(("after-second", second, ctx.is_replaying))
        yield ctx.create_timer(timedelta(minutes=second))
        ctx.continue_as_new(None)

    engine, _ = make_engine({"recording": recording_loop})
    await engine.start("R", orchestration="recording")
    [(_, first)] = await transport.drain("work")

    await engine.complete_activity("R", 0, first.correlation_id, result=2)
    [(_, second)] = await transport.drain("work")
    assert second.input == {"previous": 2}

    await engine.complete_activity("R", 0, second.correlation_id, result=4)

    # Each later episode replays the earlier outcomes without re-dispatching them.
    assert await transport.drain("work") == []
    assert seen == [
        ("after-first", 2, False),
        ("after-first", 2, True),
        ("after-second", 4, False),
    ]
    history = await store.load_history("R")
    assert _kinds(history) == [
        EventKind.ORCHESTRATION_STARTED,
        EventKind.ACTIVITY_SCHEDULED,
        EventKind.ACTIVITY_COMPLETED,
        EventKind.ACTIVITY_SCHEDULED,
        EventKind.ACTIVITY_COMPLETED,
        EventKind.TIMER_CREATED,
    ]


@pytest.mark.asyncio
async def test_history_stays_bounded_across_cycles(store, transport, clock, make_engine):
    engine, timers = make_engine()
    await engine.start("X")

    outcomes = [3, 0, None, 1, 0, 2, None, 5]
    for generation, outcome in enumerate(outcomes):
        [task] = await _activity_messages(transport)
        assert task.generation == generation
        if outcome is None:
            await engine.complete_activity("X", generation, task.correlation_id, error="e")
        else:
            await engine.complete_activity(
                "X", generation, task.correlation_id, result=outcome
            )
        assert len(await store.load_history("X")) <= 5
        clock.advance(minutes=5)
        await timers.tick()
        assert len(await store.load_history("X")) <= 5
        assert len(await store.load_archive("X")) <= 6

    record = await store.get_instance("X")
    assert record.generation == len(outcomes)
    assert record.status == RunStatus.RUNNING


@pytest.mark.asyncio
async def test_replay_mismatch_fails_the_run(store, transport, make_engine):
    engine, _ = make_engine()
    await engine.start("X")
    [task] = await _activity_messages(transport)

    def changed_loop(ctx, _input):
        yield ctx.create_timer(timedelta(minutes=1))
        ctx.continue_as_new(None)

    engine.add_orchestration("eternal_loop", changed_loop)
    await engine.complete_activity("X", 0, task.correlation_id, result=1)

    record = await store.get_instance("X")
    assert record.status == RunStatus.FAILED
    assert "mismatch" in record.error
    # A failed instance is startable again.
    assert (await engine.start("X")).started


@pytest.mark.asyncio
async def test_unhandled_orchestration_error_fails_the_run(store, transport, make_engine):
    def strict_loop(ctx, _input):
        yield ctx.call_activity("work")
        ctx.continue_as_new(None)

    engine, _ = make_engine({"strict": strict_loop})
    await engine.start("S", orchestration="strict")
    [(_, task)] = await transport.drain("work")

    await engine.complete_activity("S", 0, task.correlation_id, error="kaput")

    record = await store.get_instance("S")
    assert record.status == RunStatus.FAILED
    assert "kaput" in record.error


@pytest.mark.asyncio
async def test_orchestration_without_continue_as_new_completes(store, transport, make_engine):
    def once(ctx, _input):
        yield ctx.call_activity("work")

    engine, _ = make_engine({"once": once})
    await engine.start("O", orchestration="once")
    [(_, task)] = await transport.drain("work")

    await engine.complete_activity("O", 0, task.correlation_id, result=1)

    assert (await store.get_instance("O")).status == RunStatus.COMPLETED


@pytest.mark.asyncio
async def test_terminated_run_discards_late_completion(store, transport, make_engine):
    engine, _ = make_engine()
    await engine.start("X")
    [task] = await _activity_messages(transport)

    assert await engine.registry.terminate("X", "maintenance")
    assert not await engine.complete_activity("X", 0, task.correlation_id, result=1)

    assert _kinds(await store.load_history("X"))[-1] == EventKind.ACTIVITY_SCHEDULED
    assert (await store.get_instance("X")).status == RunStatus.TERMINATED


@pytest.mark.asyncio
async def test_recover_redispatches_unacknowledged_activity(store, transport, make_engine):
    engine, _ = make_engine()
    await engine.start("X")
    [lost] = await _activity_messages(transport)

    restarted, _ = make_engine()
    assert await restarted.recover() == 1

    [again] = await _activity_messages(transport)
    assert again.correlation_id == lost.correlation_id
    assert len(await store.load_history("X")) == 2


@pytest.mark.asyncio
async def test_recover_runs_instances_started_elsewhere(store, transport, make_engine):
    engine, _ = make_engine()
    await engine.registry.try_start("Y")
    assert await store.load_history("Y") == []

    await engine.recover()

    assert _kinds(await store.load_history("Y"))[-1] == EventKind.ACTIVITY_SCHEDULED
    assert len(await _activity_messages(transport)) == 1


@pytest.mark.asyncio
async def test_replay_safe_logger_is_silent_during_replay(
    store, transport, make_engine, caplog
):
    def logging_loop(ctx, _input):
        log = ctx.create_replay_safe_logger(logging.getLogger("loop"))
        result = yield ctx.call_activity("work")
        log.warning(f"got {result}")
        yield ctx.create_timer(timedelta(minutes=1))
        ctx.continue_as_new(None)

    engine, timers = make_engine({"logging": logging_loop})
    await engine.start("L", orchestration="logging")
    [(_, task)] = await transport.drain("work")

    with caplog.at_level("WARNING", logger="loop"):
        await engine.complete_activity("L", 0, task.correlation_id, result=7)
        await engine.resume("L")

    assert [r.getMessage() for r in caplog.records if r.name == "loop"] == ["got 7"]


@pytest.mark.asyncio
async def test_activity_input_replays_on_sqlite(tmp_path, transport, make_engine):
    store = SQLiteInstanceStore(tmp_path / "perennial.db")

    def structured(ctx, _input):
        first = yield ctx.call_activity(
            "work", {"pair": (1, 2), 3: "three", "at": datetime(2026, 1, 1, tzinfo=timezone.utc)}
        )
        yield ctx.call_activity("work", (first, first))

    engine, _ = make_engine({"structured": structured}, store=store)
    await engine.start("S", orchestration="structured")
    [(_, task)] = await transport.drain("work")
    assert task.input["pair"] == [1, 2]
    assert task.input["3"] == "three"

    await engine.complete_activity("S", 0, task.correlation_id, result=5)
    [(_, second)] = await transport.drain("work")
    assert second.input == [5, 5]
    await engine.complete_activity("S", 0, second.correlation_id, result=None)

    record = await store.get_instance("S")
    assert record.status == RunStatus.COMPLETED, record.error


@pytest.mark.asyncio
@pytest.mark.parametrize("backend", ["inmemory", "sqlite"])
async def test_timer_rows_stay_bounded_across_cycles(
    backend, tmp_path, transport, clock, make_engine
):
    store = (
        SQLiteInstanceStore(tmp_path / "perennial.db")
        if backend == "sqlite"
        else InMemoryInstanceStore()
    )
    engine, timers = make_engine(store=store)
    await engine.start("X")

    for generation in range(20):
        [(_, task)] = await transport.drain(EXECUTOR_ACTIVITY_NAME)
        await engine.complete_activity("X", generation, task.correlation_id, result=0)
        assert len(await store.list_timers("X")) == 1
        clock.advance(minutes=1)
        assert await timers.tick() == 1
        assert len(await store.list_timers("X")) <= 1

    assert (await store.get_instance("X")).generation == 20
    assert await store.list_timers("X") == []
