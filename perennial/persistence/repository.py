"""Store abstraction for instance, history and timer persistence."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Protocol

from ..contracts import HistoryEvent, RunStatus, TimerTask
from .models import InstanceRecord


class InstanceStore(Protocol):
    """Protocol for persistence backends.

    Every mutating call is an atomic read-modify-write scoped to one
    instance id.
    """

    async def try_start(
        self, instance_id: str, orchestration: str, input: Any = None
    ) -> InstanceRecord | None:
        """Create or restart the instance unless it is running.

        Returns the new record, or ``None`` when the instance is running.
        Timers of earlier runs are deleted.
        """

    async def get_instance(self, instance_id: str) -> InstanceRecord | None:
        """Retrieve the registry row for ``instance_id``."""

    async def list_instances(self) -> list[InstanceRecord]:
        """Return all persisted instances."""

    async def transition(
        self,
        instance_id: str,
        generation: int,
        expected: RunStatus,
        new: RunStatus,
        error: str | None = None,
    ) -> bool:
        """Compare-and-set the status of the given run."""

    async def append_event(
        self, instance_id: str, generation: int, event: HistoryEvent
    ) -> bool:
        """Append ``event`` to the run's history.

        Returns ``False`` for duplicates and for stale or inactive runs.
        """

    async def load_history(self, instance_id: str) -> list[HistoryEvent]:
        """Return the current run's history in sequence order."""

    async def load_archive(self, instance_id: str) -> list[HistoryEvent]:
        """Return the history of the run superseded by the current one."""

    async def continue_as_new(
        self, instance_id: str, generation: int, event: HistoryEvent, input: Any = None
    ) -> int | None:
        """Seal the run with ``event`` and open the next generation.

        Returns the new generation, or ``None`` when ``generation`` is stale.
        Timers of the sealed run are deleted, so an instance keeps at most
        the timers of its current run.
        """

    async def add_timer(self, timer: TimerTask) -> None:
        """Persist a timer; adding an existing correlation id is a no-op."""

    async def due_timers(self, now: datetime) -> list[TimerTask]:
        """Return pending timers with ``fire_at <= now``, earliest first."""

    async def list_timers(self, instance_id: str) -> list[TimerTask]:
        """Return the timers recorded for ``instance_id``'s current run."""

    async def update_timer(
        self, correlation_id: str, status: str, expected: str = "pending"
    ) -> bool:
        """Compare-and-set a timer's status."""
