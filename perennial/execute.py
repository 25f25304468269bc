"""Activity execution for perennial orchestrations."""

from __future__ import annotations

import inspect
import logging
from typing import Any, Awaitable, Callable, Optional, Union

from .contracts import TaskMessage
from .errors import ActivityNotRegisteredError
from .transports import BaseTransport, TransportError

logger = logging.getLogger(__name__)

Activity = Callable[[Any], Union[Any, Awaitable[Any]]]


class ActivityExecutor:
    """Executes one named activity by listening to transport messages."""

    def __init__(
        self,
        transport: BaseTransport,
        activity_name: str,
        activity: Optional[Activity] = None,
    ) -> None:
        self._transport = transport
        self._activity_name = activity_name
        if activity is None:
            from .orchestrations import ACTIVITIES

            activity = ACTIVITIES.get(activity_name)
        if activity is None:
            raise ActivityNotRegisteredError(
                f"A '{activity_name}' activity was not registered."
            )
        self._activity = activity
        self.executed_activities: list[str] = []

    @property
    def activity_name(self) -> str:
        return self._activity_name

    async def start(self, lifespan: Optional[float] = None) -> None:
        """Start listening for activity tasks on the activity's topic."""
        async for raw_message, message in self._transport.subscribe(
            self._activity_name, lifespan=lifespan
        ):
            completion = await self.execute(message)
            try:
                await self._transport.notify_orchestrator(completion)
            except TransportError as e:
                logger.error(
                    f"Could not report {completion.kind} for {completion.correlation_id}: "
                    f"{e}. Task requeued."
                )
                await self._transport.nack(raw_message, requeue=True)
                continue
            await self._transport.ack(raw_message)

    async def execute(self, message: TaskMessage) -> TaskMessage:
        """Run the activity for ``message`` and build its completion message.

        Failures raised by the activity are reported in the completion; they
        are the orchestration's to handle.
        """
        task = message.to_task()
        logger.debug(f"Running {task.activity_name} for {task.correlation_id}")
        try:
            result = self._activity(task.input)
            if inspect.isawaitable(result):
                result = await result
        except Exception as e:
            cause = f" [{e.__cause__}]" if e.__cause__ else ""
            logger.error(f"Activity {task.activity_name} failed: {e}{cause}")
            return TaskMessage(
                kind="failed",
                instance_id=message.instance_id,
                generation=message.generation,
                correlation_id=task.correlation_id,
                activity_name=task.activity_name,
                error=f"{e}{cause}",
            )

        self.executed_activities.append(task.correlation_id)
        logger.info(
            f"Activity {task.activity_name} completed for correlation_id={task.correlation_id}"
        )
        return TaskMessage(
            kind="completed",
            instance_id=message.instance_id,
            generation=message.generation,
            correlation_id=task.correlation_id,
            activity_name=task.activity_name,
            result=result,
        )
