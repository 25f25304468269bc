"""Perennial: crash-resilient perpetual task loops on a durable replay engine."""

from .config import PerennialConfig, load_config
from .contracts import EventKind, HistoryEvent, RunStatus, StartResult, TaskMessage
from .engine import OrchestrationContext, OrchestrationEngine
from .execute import ActivityExecutor
from .history import HistoryStore
from .persistence import get_store
from .registry import InstanceRegistry
from .timers import DurableTimer
from .transports import get_transport
from .worker import Worker

__version__ = "0.1.0"
__all__ = [
    "ActivityExecutor",
    "DurableTimer",
    "EventKind",
    "HistoryEvent",
    "HistoryStore",
    "InstanceRegistry",
    "OrchestrationContext",
    "OrchestrationEngine",
    "PerennialConfig",
    "RunStatus",
    "StartResult",
    "TaskMessage",
    "Worker",
    "get_store",
    "get_transport",
    "load_config",
]
