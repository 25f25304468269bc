"""Persistence layer for perennial instances."""

from __future__ import annotations

from typing import Optional

from ..config import PerennialConfig, load_config
from .inmemory import InMemoryInstanceStore
from .models import InstanceRecord
from .postgres import PostgresInstanceStore
from .repository import InstanceStore
from .sqlite import SQLiteInstanceStore

_store_instance: InstanceStore | None = None


def open_store(database_url: Optional[str]) -> InstanceStore:
    """Open the store addressed by ``database_url``.

    ``sqlite://<path>`` and ``postgres(ql)://...`` select durable backends;
    no URL selects an in-memory store, which loses every instance on exit.
    """
    if not database_url:
        return InMemoryInstanceStore()
    if database_url.startswith("sqlite://"):
        return SQLiteInstanceStore(database_url[len("sqlite://"):])
    if database_url.startswith(("postgres://", "postgresql://")):
        return PostgresInstanceStore(database_url)
    raise ValueError(f"Unsupported database backend: {database_url}")


def get_store(
    database_url: Optional[str] = None, config: Optional[PerennialConfig] = None
) -> InstanceStore:
    """Return the instance store for this process.

    An explicit ``database_url`` wins over ``config.database_url``. Without
    either argument the store is built from :func:`load_config` (which applies
    the ``PERENNIAL_DATABASE_URL``/``DATABASE_URL`` overrides) and reused by
    later calls, so the CLI commands of one process share it.
    """
    global _store_instance
    if database_url is None and config is None:
        if _store_instance is None:
            _store_instance = open_store(load_config().database_url)
        return _store_instance

    _store_instance = open_store(database_url or config.database_url)
    return _store_instance


__all__ = [
    "InstanceRecord",
    "InstanceStore",
    "InMemoryInstanceStore",
    "SQLiteInstanceStore",
    "PostgresInstanceStore",
    "get_store",
    "open_store",
]
