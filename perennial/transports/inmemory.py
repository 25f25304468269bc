"""In-memory transport for testing and single-process workers."""

from __future__ import annotations

import asyncio
from collections import defaultdict, deque
from typing import AsyncIterator, Deque, Dict, List, Optional, Tuple

from ..contracts import TaskMessage
from .base import BaseTransport

RawMessage = Tuple[str, str, TaskMessage]


class InMemoryTransport(BaseTransport[RawMessage]):
    """Simple in-process queue."""

    def __init__(self, poll_interval: float = 0.1) -> None:
        self._queues: Dict[str, Deque[RawMessage]] = defaultdict(deque)
        self._lock = asyncio.Lock()
        self._poll_interval = poll_interval

    async def publish(self, topic: str, message: TaskMessage) -> None:
        """Publish message to in-memory queue."""
        raw = (topic, message.to_json(), message)
        async with self._lock:
            self._queues[topic].append(raw)

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawMessage, TaskMessage]]:
        """Subscribe to messages from topic.

        Args:
            topic: The topic to subscribe to
            lifespan: Maximum time in seconds to keep connection open. If None, runs indefinitely.
        """
        loop = asyncio.get_running_loop()
        start_time = loop.time() if lifespan else None

        while True:
            if lifespan and start_time:
                elapsed = loop.time() - start_time
                if elapsed >= lifespan:
                    break

            async with self._lock:
                raw_message = self._queues[topic].popleft() if self._queues[topic] else None
            if raw_message is not None:
                # Hand out a fresh copy, like a broker would after deserializing.
                yield raw_message, TaskMessage.from_json(raw_message[1])
                continue

            await asyncio.sleep(self._poll_interval)

    async def drain(self, topic: str) -> List[Tuple[RawMessage, TaskMessage]]:
        """Pop every queued message for ``topic`` without waiting."""
        async with self._lock:
            queue = self._queues[topic]
            raws = list(queue)
            queue.clear()
        return [(raw, TaskMessage.from_json(raw[1])) for raw in raws]

    def pending(self, topic: str) -> int:
        return len(self._queues[topic])

    async def ack(self, raw_message: RawMessage) -> None:
        """No-op acknowledgment for in-memory transport."""
        pass

    async def nack(self, raw_message: RawMessage, requeue: bool = True) -> None:
        """Put the message back at the end of its queue."""
        if requeue:
            async with self._lock:
                self._queues[raw_message[0]].append(raw_message)
