"""Shared fixtures for perennial tests."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

import perennial.persistence as persistence
import perennial.utils.retry as retry
from perennial.config import PolicyConfig, RetryConfig
from perennial.engine import OrchestrationEngine
from perennial.orchestrations import default_orchestrations
from perennial.persistence import InMemoryInstanceStore
from perennial.timers import DurableTimer
from perennial.transports.inmemory import InMemoryTransport


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def build_engine(store, transport, clock, orchestrations=None, policy=None):
    """Return an engine and its timer wired over ``store`` and ``transport``."""
    retry_config = RetryConfig(attempts=2)
    timers = DurableTimer(store, retry=retry_config, clock=clock)
    engine = OrchestrationEngine(
        store,
        transport,
        timers,
        orchestrations or default_orchestrations(policy or PolicyConfig()),
        retry=retry_config,
        clock=clock,
    )
    return engine, timers


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> InMemoryInstanceStore:
    return InMemoryInstanceStore()


@pytest.fixture
def transport() -> InMemoryTransport:
    return InMemoryTransport(poll_interval=0.01)


@pytest.fixture(autouse=True)
def no_retry_sleep(monkeypatch):
    """Skip real backoff delays between store retries."""

    async def _no_sleep(attempt, base=1.5, jitter=0.5):
        return None

    monkeypatch.setattr(retry, "schedule_retry", _no_sleep)


@pytest.fixture(autouse=True)
def reset_store_cache():
    persistence._store_instance = None
    yield
    persistence._store_instance = None


@pytest.fixture
def make_engine(store, transport, clock):
    """Factory for engines; defaults to the shared store, transport and clock."""

    def _make(orchestrations=None, policy=None, store=store, transport=transport):
        return build_engine(store, transport, clock, orchestrations, policy)

    return _make
