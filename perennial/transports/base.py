"""Message transport between the engine and activity executors."""

from __future__ import annotations

import abc
from typing import AsyncIterator, Generic, Optional, Tuple, TypeVar

from ..constants import ORCHESTRATOR_TOPIC
from ..contracts import TaskMessage
from ..errors import PerennialError

RawMessageT = TypeVar("RawMessageT")


class TransportError(PerennialError):
    """The broker could not accept or hand back a message."""


class BaseTransport(Generic[RawMessageT], metaclass=abc.ABCMeta):
    """Carries :class:`TaskMessage` envelopes with at-least-once delivery.

    Activity tasks travel on a topic named after the activity; completions
    and start notices travel on :data:`ORCHESTRATOR_TOPIC`. A consumer that
    could not process a message hands it back with ``nack`` so that it is
    delivered again.
    """

    async def connect(self) -> None:
        """Open connection to broker (no-op by default)."""

    async def disconnect(self) -> None:
        """Close connection to broker (no-op by default)."""

    async def __aenter__(self) -> "BaseTransport[RawMessageT]":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.disconnect()

    @abc.abstractmethod
    async def publish(self, topic: str, message: TaskMessage) -> None:
        """Send a message to a topic/queue."""
        raise NotImplementedError

    @abc.abstractmethod
    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawMessageT, TaskMessage]]:
        """Yield raw transport message and TaskMessage pairs.

        Args:
            topic: The topic to subscribe to
            lifespan: Maximum time in seconds to keep connection open. If None, runs indefinitely.
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def ack(self, raw_message: RawMessageT) -> None:
        """Acknowledge successful processing."""
        raise NotImplementedError

    @abc.abstractmethod
    async def nack(self, raw_message: RawMessageT, requeue: bool = True) -> None:
        """Hand a message back; with ``requeue`` it must be delivered again."""
        raise NotImplementedError

    async def dispatch_activity(self, message: TaskMessage) -> None:
        """Send an activity task to the executors of ``message.activity_name``."""
        if not message.activity_name:
            raise ValueError(f"Activity message {message.message_id} names no activity")
        await self.publish(message.activity_name, message)

    async def notify_orchestrator(self, message: TaskMessage) -> None:
        """Send a start notice or activity outcome to the engine."""
        await self.publish(ORCHESTRATOR_TOPIC, message)
