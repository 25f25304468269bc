"""Instance registry: lifecycle status and the single-run-per-id guarantee."""

from __future__ import annotations

import logging
from typing import Any, Optional

from .config import RetryConfig
from .constants import ORCHESTRATOR_NAME
from .contracts import InstanceStatus, RunStatus, StartResult
from .errors import HistoryStoreFault
from .persistence import InstanceRecord, InstanceStore
from .utils.retry import retry_store_call

logger = logging.getLogger(__name__)


class InstanceRegistry:
    """Maps instance ids to the status of their current run.

    Starting is an atomic check-and-set in the store, so concurrent start
    requests for one id produce exactly one started run.
    """

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

    async def try_start(
        self,
        instance_id: str,
        initial_input: Any = None,
        orchestration: str = ORCHESTRATOR_NAME,
    ) -> StartResult:
        record = await self._call(
            f"start {instance_id}",
            lambda: self._store.try_start(instance_id, orchestration, initial_input),
        )
        if record is None:
            logger.info(f"An instance with ID '{instance_id}' is already running.")
            return StartResult(
                outcome="conflict",
                instance_id=instance_id,
                status=await self.describe(instance_id),
            )
        logger.info(
            f"Started orchestration '{orchestration}' with ID = '{instance_id}' "
            f"(generation {record.generation})."
        )
        return StartResult(
            outcome="started",
            instance_id=instance_id,
            status=self._status(record),
        )

    async def get_record(self, instance_id: str) -> InstanceRecord | None:
        return await self._call(
            f"read {instance_id}", lambda: self._store.get_instance(instance_id)
        )

    async def get_status(self, instance_id: str) -> RunStatus:
        record = await self.get_record(instance_id)
        return record.status if record else RunStatus.NOT_STARTED

    async def describe(self, instance_id: str) -> InstanceStatus:
        """Status plus the last recorded event of the current cycle."""
        record = await self.get_record(instance_id)
        if record is None:
            return InstanceStatus(instance_id=instance_id)
        status = self._status(record)
        history = await self._call(
            f"load history for {instance_id}",
            lambda: self._store.load_history(instance_id),
        )
        if not history:
            history = await self._call(
                f"load archived history for {instance_id}",
                lambda: self._store.load_archive(instance_id),
            )
        status.last_event = history[-1] if history else None
        return status

    async def list_instances(self) -> list[InstanceStatus]:
        records = await self._call("list instances", self._store.list_instances)
        return [self._status(r) for r in records]

    async def terminate(self, instance_id: str, reason: str = "terminated") -> bool:
        """Force a running instance to Terminated and cancel its pending timers.

        Outstanding activities are abandoned; their completions are discarded
        because the run is no longer active.
        """
        record = await self.get_record(instance_id)
        if record is None or record.status != RunStatus.RUNNING:
            return False
        terminated = await self._call(
            f"terminate {instance_id}",
            lambda: self._store.transition(
                instance_id,
                record.generation,
                RunStatus.RUNNING,
                RunStatus.TERMINATED,
                error=reason,
            ),
        )
        if not terminated:
            return False
        timers = await self._call(
            f"list timers of {instance_id}", lambda: self._store.list_timers(instance_id)
        )
        for timer in timers:
            if timer.status == "pending":
                await self._call(
                    f"cancel timer {timer.correlation_id}",
                    lambda: self._store.update_timer(timer.correlation_id, "cancelled"),
                )
        logger.warning(f"Instance '{instance_id}' terminated: {reason}")
        return True

    async def mark_failed(self, instance_id: str, generation: int, error: str) -> bool:
        failed = await self._call(
            f"fail {instance_id}",
            lambda: self._store.transition(
                instance_id,
                generation,
                RunStatus.RUNNING,
                RunStatus.FAILED,
                error=error,
            ),
        )
        if failed:
            logger.error(f"Instance '{instance_id}' failed: {error}")
        return failed

    async def mark_completed(self, instance_id: str, generation: int) -> bool:
        return await self._call(
            f"complete {instance_id}",
            lambda: self._store.transition(
                instance_id, generation, RunStatus.RUNNING, RunStatus.COMPLETED
            ),
        )

    @staticmethod
    def _status(record: InstanceRecord) -> InstanceStatus:
        return InstanceStatus(
            instance_id=record.instance_id,
            status=record.status,
            orchestration=record.orchestration,
            generation=record.generation,
            error=record.error,
            created_at=record.created_at,
            updated_at=record.updated_at,
        )
