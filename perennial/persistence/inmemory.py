"""In-memory implementation of the instance store."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List

from ..contracts import HistoryEvent, RunStatus, TimerTask, utcnow
from ..errors import HistoryCorruptionError
from .models import InstanceRecord
from .repository import InstanceStore


class InMemoryInstanceStore(InstanceStore):
    """Store instance state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Each method body runs without
    awaiting, so every read-modify-write is atomic on the event loop.
    """

    def __init__(self) -> None:
        self._instances: Dict[str, InstanceRecord] = {}
        self._history: Dict[str, List[HistoryEvent]] = {}
        self._archive: Dict[str, List[HistoryEvent]] = {}
        self._timers: Dict[str, TimerTask] = {}

    # ------------------------------------------------------------------
    async def try_start(
        self, instance_id: str, orchestration: str, input: Any = None
    ) -> InstanceRecord | None:
        existing = self._instances.get(instance_id)
        if existing is not None and not existing.status.is_startable:
            return None
        now = utcnow()
        record = InstanceRecord(
            instance_id=instance_id,
            orchestration=orchestration,
            status=RunStatus.RUNNING,
            generation=existing.generation + 1 if existing else 0,
            input=input,
            created_at=existing.created_at if existing else now,
            updated_at=now,
        )
        if existing is not None:
            self._archive[instance_id] = self._history.get(instance_id, [])
            self._drop_timers(instance_id, record.generation)
        self._instances[instance_id] = record
        self._history[instance_id] = []
        return record.model_copy()

    async def get_instance(self, instance_id: str) -> InstanceRecord | None:
        record = self._instances.get(instance_id)
        return record.model_copy() if record else None

    async def list_instances(self) -> list[InstanceRecord]:
        return [r.model_copy() for r in self._instances.values()]

    async def transition(
        self,
        instance_id: str,
        generation: int,
        expected: RunStatus,
        new: RunStatus,
        error: str | None = None,
    ) -> bool:
        record = self._instances.get(instance_id)
        if (
            record is None
            or record.generation != generation
            or record.status != expected
        ):
            return False
        record.status = new
        record.error = error
        record.updated_at = utcnow()
        return True

    # ------------------------------------------------------------------
    async def append_event(
        self, instance_id: str, generation: int, event: HistoryEvent
    ) -> bool:
        record = self._instances.get(instance_id)
        if (
            record is None
            or record.generation != generation
            or record.status != RunStatus.RUNNING
        ):
            return False
        history = self._history.setdefault(instance_id, [])
        if event.sequence_number < len(history):
            return False
        if event.sequence_number > len(history):
            raise HistoryCorruptionError(
                f"Sequence gap for {instance_id}: expected {len(history)}, "
                f"got {event.sequence_number}"
            )
        history.append(event.model_copy())
        record.updated_at = utcnow()
        return True

    async def load_history(self, instance_id: str) -> list[HistoryEvent]:
        return [e.model_copy() for e in self._history.get(instance_id, [])]

    async def load_archive(self, instance_id: str) -> list[HistoryEvent]:
        return [e.model_copy() for e in self._archive.get(instance_id, [])]

    async def continue_as_new(
        self, instance_id: str, generation: int, event: HistoryEvent, input: Any = None
    ) -> int | None:
        if not await self.append_event(instance_id, generation, event):
            return None
        record = self._instances[instance_id]
        self._archive[instance_id] = self._history[instance_id]
        self._history[instance_id] = []
        record.generation += 1
        record.input = input
        record.updated_at = utcnow()
        self._drop_timers(instance_id, record.generation)
        return record.generation

    def _drop_timers(self, instance_id: str, generation: int) -> None:
        """Forget timers of runs older than ``generation``."""
        for correlation_id, timer in list(self._timers.items()):
            if timer.instance_id == instance_id and timer.generation < generation:
                del self._timers[correlation_id]

    # ------------------------------------------------------------------
    async def add_timer(self, timer: TimerTask) -> None:
        self._timers.setdefault(timer.correlation_id, timer.model_copy())

    async def due_timers(self, now: datetime) -> list[TimerTask]:
        due = [
            t.model_copy()
            for t in self._timers.values()
            if t.status == "pending" and t.fire_at <= now
        ]
        return sorted(due, key=lambda t: t.fire_at)

    async def list_timers(self, instance_id: str) -> list[TimerTask]:
        return [
            t.model_copy() for t in self._timers.values() if t.instance_id == instance_id
        ]

    async def update_timer(
        self, correlation_id: str, status: str, expected: str = "pending"
    ) -> bool:
        timer = self._timers.get(correlation_id)
        if timer is None or timer.status != expected:
            return False
        timer.status = status
        return True
