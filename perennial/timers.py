"""Durable timers backed by persisted deadlines and a periodic sweeper."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Awaitable, Callable, Optional

from .config import RetryConfig
from .contracts import TimerTask, utcnow
from .errors import StoreFault, TimerStoreFault
from .persistence import InstanceStore
from .utils.retry import retry_store_call

logger = logging.getLogger(__name__)

FireCallback = Callable[[TimerTask], Awaitable[bool]]


class DurableTimer:
    """Fires persisted timers once their deadline has passed.

    No task waits on an individual timer. ``tick`` compares the clock with
    every pending deadline, so timers that expired while the process was down
    fire on the first tick after a restart. A timer is marked fired only after
    the callback returned; the callback records the firing in history, which
    ignores duplicates, so each timer is observed exactly once.
    """

    def __init__(
        self,
        store: InstanceStore,
        retry: Optional[RetryConfig] = None,
        clock: Callable[[], datetime] = utcnow,
        poll_interval: float = 1.0,
    ) -> None:
        self._store = store
        self._retry = retry or RetryConfig()
        self._clock = clock
        self._poll_interval = poll_interval
        self._on_fire: Optional[FireCallback] = None

    def bind(self, on_fire: FireCallback) -> None:
        self._on_fire = on_fire

    async def _call(self, description: str, operation):
        return await retry_store_call(
            operation, description=description, fault=TimerStoreFault, config=self._retry
        )

    async def schedule(self, timer: TimerTask) -> None:
        """Persist ``timer``; scheduling the same correlation id twice is a no-op."""
        await self._call(
            f"schedule timer {timer.correlation_id}", lambda: self._store.add_timer(timer)
        )
        logger.debug(f"Timer {timer.correlation_id} scheduled for {timer.fire_at.isoformat()}")

    async def cancel(self, correlation_id: str) -> bool:
        return await self._call(
            f"cancel timer {correlation_id}",
            lambda: self._store.update_timer(correlation_id, "cancelled"),
        )

    async def tick(self, now: Optional[datetime] = None) -> int:
        """Fire every due timer. Returns how many due timers were consumed.

        A timer whose firing continued the run as new is already gone when it
        would be marked fired; it still counts.
        """
        if self._on_fire is None:
            raise RuntimeError("DurableTimer has no fire callback bound")
        now = now or self._clock()
        due = await self._call("load due timers", lambda: self._store.due_timers(now))
        fired = 0
        for timer in due:
            delivered = await self._on_fire(timer)
            if not delivered:
                logger.debug(f"Timer {timer.correlation_id} no longer awaited")
            marked = await self._call(
                f"mark timer {timer.correlation_id} fired",
                lambda: self._store.update_timer(timer.correlation_id, "fired"),
            )
            if delivered or marked:
                fired += 1
        return fired

    async def run(self, lifespan: Optional[float] = None) -> None:
        """Sweep due timers every ``poll_interval`` seconds.

        Args:
            lifespan: Maximum time in seconds to keep sweeping. If None, runs indefinitely.
        """
        loop = asyncio.get_running_loop()
        start_time = loop.time()
        while lifespan is None or loop.time() - start_time < lifespan:
            try:
                await self.tick()
            except StoreFault as e:
                logger.error(f"Timer sweep failed: {e}")
            await asyncio.sleep(self._poll_interval)
