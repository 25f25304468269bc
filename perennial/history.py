"""Append-only history access with retries for transient store faults."""

from __future__ import annotations

import logging
from typing import Any, Optional

from .config import RetryConfig
from .contracts import HistoryEvent
from .errors import HistoryStoreFault
from .persistence import InstanceStore
from .utils.retry import retry_store_call

logger = logging.getLogger(__name__)


class HistoryStore:
    """Per-instance event log used as the source of truth for replay."""

    def __init__(self, store: InstanceStore, retry: Optional[RetryConfig] = None) -> None:
        self._store = store
        self._retry = retry or RetryConfig()

    async def _call(self, description: str, operation):
        return await retry_store_call(
            operation,
            description=description,
            fault=HistoryStoreFault,
            config=self._retry,
        )

    async def append(self, instance_id: str, generation: int, event: HistoryEvent) -> bool:
        """Append ``event``; duplicates of an existing sequence number are ignored."""
        appended = await self._call(
            f"append {event.kind.value} for {instance_id}",
            lambda: self._store.append_event(instance_id, generation, event),
        )
        if not appended:
            logger.debug(
                f"Skipped {event.kind.value} #{event.sequence_number} for {instance_id} "
                f"(generation {generation}): duplicate or inactive run"
            )
        return appended

    async def load(self, instance_id: str) -> list[HistoryEvent]:
        return await self._call(
            f"load history for {instance_id}",
            lambda: self._store.load_history(instance_id),
        )

    async def load_archive(self, instance_id: str) -> list[HistoryEvent]:
        return await self._call(
            f"load archived history for {instance_id}",
            lambda: self._store.load_archive(instance_id),
        )

    async def continue_as_new(
        self, instance_id: str, generation: int, event: HistoryEvent, input: Any = None
    ) -> int | None:
        """Seal the current run with ``event`` and start a fresh history."""
        return await self._call(
            f"continue-as-new for {instance_id}",
            lambda: self._store.continue_as_new(instance_id, generation, event, input),
        )
