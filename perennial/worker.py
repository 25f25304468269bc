"""Worker process hosting the engine, timer sweeper and activity executors."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Callable, Dict, Optional

from .config import PerennialConfig, load_config
from .contracts import utcnow
from .engine import OrchestrationEngine, Orchestrator
from .execute import Activity, ActivityExecutor
from .orchestrations import default_activities, default_orchestrations
from .persistence import InstanceStore, get_store
from .timers import DurableTimer
from .transports import BaseTransport, get_transport

logger = logging.getLogger(__name__)


class Worker:
    """Wires the runtime components together for one process."""

    def __init__(
        self,
        config: Optional[PerennialConfig] = None,
        store: Optional[InstanceStore] = None,
        transport: Optional[BaseTransport] = None,
        orchestrations: Optional[Dict[str, Orchestrator]] = None,
        activities: Optional[Dict[str, Activity]] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.config = config or load_config()
        self.store = store or get_store(config=self.config)
        self.transport = transport or get_transport(config=self.config)
        self.timers = DurableTimer(
            self.store,
            retry=self.config.retry,
            clock=clock,
            poll_interval=self.config.timers.poll_interval,
        )
        self.engine = OrchestrationEngine(
            self.store,
            self.transport,
            self.timers,
            orchestrations
            or default_orchestrations(self.config.policy, self.config.activity),
            retry=self.config.retry,
            clock=clock,
        )
        activities = activities or default_activities(
            self.config.orchestration, self.config.policy, self.config.activity
        )
        self.executors = [
            ActivityExecutor(self.transport, name, fn) for name, fn in activities.items()
        ]

    async def run(self, lifespan: Optional[float] = None) -> None:
        """Recover running instances, then serve until ``lifespan`` expires."""
        async with self.transport:
            await self.engine.recover()
            await asyncio.gather(
                self.engine.listen(lifespan=lifespan),
                self.timers.run(lifespan=lifespan),
                *(executor.start(lifespan=lifespan) for executor in self.executors),
            )
