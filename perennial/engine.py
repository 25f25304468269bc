"""Deterministic replay engine for perennial orchestrations.

An orchestration is a generator function ``fn(ctx, input)`` that yields
intents built by its :class:`OrchestrationContext`. Every time the engine is
woken up (start, activity completion, timer fire, restart) it re-executes the
generator from the beginning against the recorded history:

* while recorded events remain, intents are matched against them and the
  recorded outcomes are fed back (replay, no side effects);
* the first intent past the end of history is dispatched for real and the
  execution suspends. No generator survives a suspension.

When the generator returns after calling ``ctx.continue_as_new`` the run's
history is sealed and the orchestration restarts on a fresh, empty history.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from types import GeneratorType
from typing import Any, Callable, Dict, Generator, List, Optional, Union

from .config import RetryConfig
from .constants import ORCHESTRATOR_TOPIC
from .contracts import (
    CreateTimer,
    EventKind,
    HistoryEvent,
    ScheduleActivity,
    StartResult,
    TaskMessage,
    TimerTask,
    to_json_value,
    utcnow,
)
from .errors import (
    ActivityFailure,
    HistoryCorruptionError,
    OrchestrationFault,
    OrchestrationNotRegisteredError,
    ReplayMismatchError,
    StoreFault,
)
from .history import HistoryStore
from .persistence import InstanceRecord, InstanceStore
from .registry import InstanceRegistry
from .timers import DurableTimer
from .transports import BaseTransport, TransportError

logger = logging.getLogger(__name__)

Intent = Union[ScheduleActivity, CreateTimer]
Orchestrator = Callable[["OrchestrationContext", Any], Generator[Intent, Any, Any]]

# Outcomes of one execution episode.
SUSPENDED = "suspended"
CONTINUED = "continued"
COMPLETED = "completed"
RELOAD = "reload"


def correlation_id_for(instance_id: str, generation: int, sequence_number: int) -> str:
    return f"{instance_id}:{generation}:{sequence_number}"


class ReplaySafeLogger(logging.LoggerAdapter):
    """Logger adapter that drops records while the orchestration replays."""

    def __init__(self, logger: logging.Logger, ctx: "OrchestrationContext") -> None:
        super().__init__(logger, {"instance_id": ctx.instance_id})
        self.ctx = ctx

    def isEnabledFor(self, level: int) -> bool:
        return not self.ctx.is_replaying and self.logger.isEnabledFor(level)


class OrchestrationContext:
    """API available to orchestration code.

    Orchestrations must stay deterministic: time comes from
    ``current_utc_datetime``, everything else from activities.
    """

    def __init__(self, instance_id: str, generation: int, input: Any = None) -> None:
        self.instance_id = instance_id
        self.generation = generation
        self.input = input
        self._current_utc_datetime = datetime(1970, 1, 1, tzinfo=timezone.utc)
        self._is_replaying = True
        self._continued_as_new = False
        self._new_input: Any = None

    @property
    def current_utc_datetime(self) -> datetime:
        """Timestamp of the latest history event processed so far."""
        return self._current_utc_datetime

    @property
    def is_replaying(self) -> bool:
        return self._is_replaying

    def call_activity(self, name: str, input: Any = None) -> ScheduleActivity:
        """Schedule activity ``name``; ``input`` is recorded and delivered in its JSON form."""
        return ScheduleActivity(name=name, input=to_json_value(input))

    def create_timer(self, fire_at: Union[datetime, timedelta]) -> CreateTimer:
        if isinstance(fire_at, timedelta):
            fire_at = self._current_utc_datetime + fire_at
        if fire_at.tzinfo is None:
            fire_at = fire_at.replace(tzinfo=timezone.utc)
        return CreateTimer(fire_at=fire_at)

    def continue_as_new(self, new_input: Any = None) -> None:
        """Restart the orchestration with a fresh history once it returns."""
        self._continued_as_new = True
        self._new_input = to_json_value(new_input)

    def create_replay_safe_logger(self, logger: logging.Logger) -> ReplaySafeLogger:
        return ReplaySafeLogger(logger, self)


class _ReplayCursor:
    """Walks a run's history in order."""

    def __init__(self, history: List[HistoryEvent]) -> None:
        self._history = history
        self.position = 0

    def has_more(self) -> bool:
        return self.position < len(self._history)

    def next(self) -> Optional[HistoryEvent]:
        if not self.has_more():
            return None
        event = self._history[self.position]
        if event.sequence_number != self.position:
            raise HistoryCorruptionError(
                f"Expected sequence {self.position}, found {event.sequence_number}"
            )
        self.position += 1
        return event


def _match(intent: Intent, event: HistoryEvent) -> None:
    """Raise ``ReplayMismatchError`` unless ``event`` records ``intent``."""
    if isinstance(intent, ScheduleActivity):
        matches = (
            event.kind == EventKind.ACTIVITY_SCHEDULED
            and event.payload.get("name") == intent.name
            and event.payload.get("input") == intent.input
        )
    else:
        fire_at = event.payload.get("fire_at")
        matches = (
            event.kind == EventKind.TIMER_CREATED
            and fire_at is not None
            and datetime.fromisoformat(fire_at) == intent.fire_at
        )
    if not matches:
        raise ReplayMismatchError(
            event.sequence_number, event.describe(), intent.describe()
        )


def _expected_completions(scheduled: HistoryEvent) -> frozenset:
    if scheduled.kind == EventKind.ACTIVITY_SCHEDULED:
        return frozenset({EventKind.ACTIVITY_COMPLETED, EventKind.ACTIVITY_FAILED})
    return frozenset({EventKind.TIMER_FIRED})


class OrchestrationEngine:
    """Drives orchestrations through replay and live dispatch."""

    def __init__(
        self,
        store: InstanceStore,
        transport: BaseTransport,
        timers: DurableTimer,
        orchestrations: Optional[Dict[str, Orchestrator]] = None,
        retry: Optional[RetryConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._transport = transport
        self._timers = timers
        self._orchestrations: Dict[str, Orchestrator] = dict(orchestrations or {})
        self._clock = clock
        self.registry = InstanceRegistry(store, retry)
        self.history = HistoryStore(store, retry)
        # Serializes wake-ups per instance; distinct instances never contend.
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        timers.bind(self.fire_timer)

    def add_orchestration(self, name: str, fn: Orchestrator) -> None:
        self._orchestrations[name] = fn

    # ------------------------------------------------------------------
    # Entry points
    async def start(
        self, instance_id: str, input: Any = None, orchestration: Optional[str] = None
    ) -> StartResult:
        """Start ``instance_id`` and run it up to its first suspension point."""
        if orchestration is None:
            orchestration = next(iter(self._orchestrations), None)
        if orchestration not in self._orchestrations:
            raise OrchestrationNotRegisteredError(
                f"A '{orchestration}' orchestration was not registered."
            )
        result = await self.registry.try_start(instance_id, input, orchestration)
        if result.started:
            await self.resume(instance_id)
        return result

    async def resume(self, instance_id: str) -> None:
        async with self._locks[instance_id]:
            await self._advance(instance_id)

    async def complete_activity(
        self,
        instance_id: str,
        generation: int,
        correlation_id: str,
        result: Any = None,
        error: Optional[str] = None,
    ) -> bool:
        """Record an activity outcome and resume the orchestration.

        Returns ``False`` when the completion is stale, duplicate or unknown.
        """
        if error is None:
            kind, payload = EventKind.ACTIVITY_COMPLETED, {"result": result}
        else:
            kind, payload = EventKind.ACTIVITY_FAILED, {"error": error}
        return await self._complete(
            instance_id, generation, correlation_id, EventKind.ACTIVITY_SCHEDULED, kind, payload
        )

    async def fire_timer(self, timer: TimerTask) -> bool:
        """Record a timer firing and resume the orchestration."""
        return await self._complete(
            timer.instance_id,
            timer.generation,
            timer.correlation_id,
            EventKind.TIMER_CREATED,
            EventKind.TIMER_FIRED,
            {},
        )

    async def handle(self, message: TaskMessage) -> None:
        """Apply a message received on the orchestrator topic."""
        if message.kind == "started":
            await self.resume(message.instance_id)
        elif message.kind in ("completed", "failed"):
            await self.complete_activity(
                message.instance_id,
                message.generation,
                message.correlation_id or "",
                result=message.result,
                error=message.error if message.kind == "failed" else None,
            )
        else:
            logger.warning(f"Ignoring unexpected {message.kind} message {message.message_id}")

    async def listen(self, lifespan: Optional[float] = None) -> None:
        """Consume start notifications and activity completions."""
        async for raw_message, message in self._transport.subscribe(
            ORCHESTRATOR_TOPIC, lifespan=lifespan
        ):
            try:
                await self.handle(message)
            except (StoreFault, TransportError) as e:
                logger.error(
                    f"Could not finish handling {message.kind} for "
                    f"{message.instance_id}: {e}. Message requeued."
                )
                await self._transport.nack(raw_message, requeue=True)
                continue
            await self._transport.ack(raw_message)

    async def recover(self) -> int:
        """Re-arm every running instance after a process restart.

        Pending activities are re-published, pending timers re-persisted and
        instances between suspension points are advanced. Returns the number
        of running instances found.
        """
        running = 0
        for record in await self._store.list_instances():
            if record.status.is_startable:
                continue
            running += 1
            async with self._locks[record.instance_id]:
                history = await self.history.load(record.instance_id)
                last = history[-1] if history else None
                if last is not None and last.kind == EventKind.ACTIVITY_SCHEDULED:
                    await self._publish_activity(record, last)
                elif last is not None and last.kind == EventKind.TIMER_CREATED:
                    await self._timers.schedule(self._timer_task(record, last))
                else:
                    await self._advance(record.instance_id)
        logger.info(f"Recovered {running} running instance(s)")
        return running

    # ------------------------------------------------------------------
    # Execution
    async def _complete(
        self,
        instance_id: str,
        generation: int,
        correlation_id: str,
        scheduled_kind: EventKind,
        kind: EventKind,
        payload: dict,
    ) -> bool:
        async with self._locks[instance_id]:
            record = await self.registry.get_record(instance_id)
            if (
                record is None
                or record.status.is_startable
                or record.generation != generation
            ):
                logger.debug(f"Discarding {kind.value} for inactive run {correlation_id}")
                return False
            history = await self.history.load(instance_id)
            last = history[-1] if history else None
            if (
                last is None
                or last.kind != scheduled_kind
                or last.correlation_id != correlation_id
            ):
                logger.debug(f"Discarding duplicate or unknown {kind.value} {correlation_id}")
                return False
            event = HistoryEvent(
                sequence_number=len(history),
                kind=kind,
                timestamp=self._clock(),
                payload={"correlation_id": correlation_id, **payload},
            )
            if not await self.history.append(instance_id, generation, event):
                return False
            await self._advance(instance_id)
            return True

    async def _advance(self, instance_id: str) -> None:
        """Run episodes until the instance suspends or stops running."""
        while True:
            record = await self.registry.get_record(instance_id)
            if record is None or record.status.is_startable:
                return
            fn = self._orchestrations.get(record.orchestration)
            if fn is None:
                await self.registry.mark_failed(
                    instance_id,
                    record.generation,
                    f"A '{record.orchestration}' orchestration was not registered.",
                )
                return
            try:
                outcome = await self._execute(record, fn)
            except StoreFault:
                raise
            except OrchestrationFault as e:
                await self.registry.mark_failed(instance_id, record.generation, str(e))
                return
            except Exception as e:
                # Unhandled errors raised by orchestration code fail the run.
                logger.exception(f"{instance_id}: orchestration raised")
                await self.registry.mark_failed(
                    instance_id, record.generation, f"{type(e).__name__}: {e}"
                )
                return

            if outcome == SUSPENDED:
                return
            if outcome == COMPLETED:
                await self.registry.mark_completed(instance_id, record.generation)
                logger.info(f"{instance_id}: orchestration completed")
                return
            # Continued as new or lost a race; let other instances run first.
            await asyncio.sleep(0)

    async def _execute(self, record: InstanceRecord, fn: Orchestrator) -> str:
        """Replay ``record``'s history through ``fn`` and take the next live step."""
        instance_id = record.instance_id
        history = await self.history.load(instance_id)
        if not history:
            started = HistoryEvent(
                sequence_number=0,
                kind=EventKind.ORCHESTRATION_STARTED,
                timestamp=self._clock(),
                payload={"orchestration": record.orchestration, "input": record.input},
            )
            if not await self.history.append(instance_id, record.generation, started):
                return RELOAD
            history = [started]

        cursor = _ReplayCursor(history)
        first = cursor.next()
        if first.kind != EventKind.ORCHESTRATION_STARTED:
            raise HistoryCorruptionError(
                f"History for {instance_id} starts with {first.kind.value}"
            )
        ctx = OrchestrationContext(instance_id, record.generation, record.input)
        ctx._current_utc_datetime = first.timestamp
        ctx._is_replaying = cursor.has_more()
        logger.debug(
            f"{instance_id}: replaying {len(history)} event(s) of generation {record.generation}"
        )

        generator = fn(ctx, record.input)
        if isinstance(generator, GeneratorType):
            outcome = await self._drive(record, ctx, cursor, generator)
            if outcome is not None:
                return outcome

        if cursor.has_more():
            extra = cursor.next()
            raise ReplayMismatchError(
                extra.sequence_number, extra.describe(), "end of orchestration"
            )
        if not ctx._continued_as_new:
            return COMPLETED

        sealed = HistoryEvent(
            sequence_number=cursor.position,
            kind=EventKind.CONTINUED_AS_NEW,
            timestamp=self._clock(),
            payload={"input": ctx._new_input},
        )
        generation = await self.history.continue_as_new(
            instance_id, record.generation, sealed, ctx._new_input
        )
        if generation is None:
            return RELOAD
        logger.debug(f"{instance_id}: continued as new (generation {generation})")
        return CONTINUED

    async def _drive(
        self,
        record: InstanceRecord,
        ctx: OrchestrationContext,
        cursor: _ReplayCursor,
        generator: Generator[Intent, Any, Any],
    ) -> Optional[str]:
        """Feed recorded outcomes into ``generator``.

        Returns ``None`` once the generator finishes, otherwise the episode's
        outcome at its suspension point.
        """
        value: Any = None
        failure: Optional[ActivityFailure] = None
        try:
            while True:
                try:
                    if failure is not None:
                        intent = generator.throw(failure)
                    else:
                        intent = generator.send(value)
                except StopIteration:
                    return None
                value, failure = None, None
                if not isinstance(intent, (ScheduleActivity, CreateTimer)):
                    raise OrchestrationFault(
                        f"Orchestration yielded {type(intent).__name__}, expected an intent"
                    )

                sequence_number = cursor.position
                scheduled = cursor.next()
                if scheduled is None:
                    return await self._dispatch(record, intent, sequence_number)
                _match(intent, scheduled)

                completion = cursor.next()
                if completion is None:
                    # Dispatched earlier; still waiting for its outcome.
                    return SUSPENDED
                if (
                    completion.kind not in _expected_completions(scheduled)
                    or completion.correlation_id != scheduled.correlation_id
                ):
                    raise HistoryCorruptionError(
                        f"{completion.describe()} at sequence {completion.sequence_number} "
                        f"does not complete {scheduled.describe()}"
                    )
                ctx._current_utc_datetime = completion.timestamp
                ctx._is_replaying = cursor.has_more()
                if completion.kind == EventKind.ACTIVITY_FAILED:
                    failure = ActivityFailure(
                        scheduled.payload["name"], completion.payload.get("error", "")
                    )
                elif completion.kind == EventKind.ACTIVITY_COMPLETED:
                    value = completion.payload.get("result")
        finally:
            generator.close()

    async def _dispatch(
        self, record: InstanceRecord, intent: Intent, sequence_number: int
    ) -> str:
        correlation_id = correlation_id_for(
            record.instance_id, record.generation, sequence_number
        )
        if isinstance(intent, ScheduleActivity):
            event = HistoryEvent(
                sequence_number=sequence_number,
                kind=EventKind.ACTIVITY_SCHEDULED,
                timestamp=self._clock(),
                payload={
                    "name": intent.name,
                    "input": intent.input,
                    "correlation_id": correlation_id,
                },
            )
            if not await self.history.append(record.instance_id, record.generation, event):
                return RELOAD
            await self._publish_activity(record, event)
        else:
            event = HistoryEvent(
                sequence_number=sequence_number,
                kind=EventKind.TIMER_CREATED,
                timestamp=self._clock(),
                payload={
                    "fire_at": intent.fire_at.isoformat(),
                    "correlation_id": correlation_id,
                },
            )
            if not await self.history.append(record.instance_id, record.generation, event):
                return RELOAD
            await self._timers.schedule(self._timer_task(record, event))
        logger.debug(f"{record.instance_id}: suspended on {event.describe()}")
        return SUSPENDED

    async def _publish_activity(self, record: InstanceRecord, event: HistoryEvent) -> None:
        message = TaskMessage(
            kind="activity",
            instance_id=record.instance_id,
            generation=record.generation,
            correlation_id=event.correlation_id,
            activity_name=event.payload["name"],
            input=event.payload.get("input"),
        )
        await self._transport.dispatch_activity(message)

    @staticmethod
    def _timer_task(record: InstanceRecord, event: HistoryEvent) -> TimerTask:
        return TimerTask(
            correlation_id=event.correlation_id,
            instance_id=record.instance_id,
            generation=record.generation,
            fire_at=datetime.fromisoformat(event.payload["fire_at"]),
        )
