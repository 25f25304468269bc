"""Transport selection."""

from __future__ import annotations

import os
from typing import Callable, Dict, Optional

from ..config import PerennialConfig, load_config
from .base import BaseTransport, TransportError
from .inmemory import InMemoryTransport


def _redis_transport(config: PerennialConfig) -> BaseTransport:
    from .redis import RedisTransport

    return RedisTransport.from_config(config.transport.redis)


_BACKENDS: Dict[str, Callable[[PerennialConfig], BaseTransport]] = {
    "inmemory": lambda config: InMemoryTransport(),
    "redis": _redis_transport,
}


def get_transport(
    backend: Optional[str] = None, config: Optional[PerennialConfig] = None
) -> BaseTransport:
    """Build the transport named by ``backend`` or by the configuration.

    ``PERENNIAL_TRANSPORT`` overrides ``config.transport.backend``. The
    in-memory backend only links components of one process; a CLI and a
    separate worker process reach each other through ``redis``.
    """
    config = config or load_config()
    name = (
        backend or os.getenv("PERENNIAL_TRANSPORT") or config.transport.backend
    ).lower()
    factory = _BACKENDS.get(name)
    if factory is None:
        raise ValueError(f"Unsupported transport backend: {name}")
    return factory(config)


__all__ = ["BaseTransport", "InMemoryTransport", "TransportError", "get_transport"]
