"""Core data contracts for the perennial orchestration runtime."""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field
from pydantic_core import to_jsonable_python


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_json_value(value: Any) -> Any:
    """Return ``value`` as it reads back from a JSON column.

    Tuples become lists, mapping keys become strings and datetimes become ISO
    strings. Values with no JSON form are rejected with an error.
    """
    return json.loads(json.dumps(value, default=to_jsonable_python))


class RunStatus(str, Enum):
    """Lifecycle status of an instance's current run."""

    NOT_STARTED = "not_started"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    TERMINATED = "terminated"

    @property
    def is_startable(self) -> bool:
        """Return ``True`` when a new run may be started."""
        return self is not RunStatus.RUNNING


class EventKind(str, Enum):
    ORCHESTRATION_STARTED = "OrchestrationStarted"
    ACTIVITY_SCHEDULED = "ActivityScheduled"
    ACTIVITY_COMPLETED = "ActivityCompleted"
    ACTIVITY_FAILED = "ActivityFailed"
    TIMER_CREATED = "TimerCreated"
    TIMER_FIRED = "TimerFired"
    CONTINUED_AS_NEW = "ContinuedAsNew"


class HistoryEvent(BaseModel):
    """One immutable entry in a run's history."""

    sequence_number: int
    kind: EventKind
    timestamp: datetime = Field(default_factory=utcnow)
    payload: dict[str, Any] = Field(default_factory=dict)

    @property
    def correlation_id(self) -> Optional[str]:
        return self.payload.get("correlation_id")

    def describe(self) -> str:
        """Short human readable form used in errors and CLI output."""
        detail = self.payload.get("name") or self.payload.get("fire_at") or ""
        return f"{self.kind.value}({detail})" if detail else self.kind.value


class ActivityTask(BaseModel):
    """Unit of work handed to the activity executor."""

    activity_name: str
    input: Any = None
    correlation_id: str


class TimerTask(BaseModel):
    """Persisted wake-up for a suspended orchestration."""

    correlation_id: str
    instance_id: str
    generation: int
    fire_at: datetime
    status: Literal["pending", "fired", "cancelled"] = "pending"


# ----------------------------------------------------------------------
# Intents yielded by orchestration code


class ScheduleActivity(BaseModel):
    """Request to run an activity and wait for its result."""

    name: str
    input: Any = None

    def describe(self) -> str:
        return f"{EventKind.ACTIVITY_SCHEDULED.value}({self.name})"


class CreateTimer(BaseModel):
    """Request to wait until ``fire_at``."""

    fire_at: datetime

    def describe(self) -> str:
        return f"{EventKind.TIMER_CREATED.value}({self.fire_at.isoformat()})"


# ----------------------------------------------------------------------
# Messages exchanged over the transport


class TaskMessage(BaseModel):
    """Envelope exchanged between the engine and activity executors."""

    message_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    kind: Literal["activity", "started", "completed", "failed"]
    instance_id: str
    generation: int = 0
    correlation_id: Optional[str] = None
    activity_name: Optional[str] = None
    input: Any = None
    result: Any = None
    error: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)

    def to_json(self) -> str:
        """Serialize message to JSON."""
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str) -> "TaskMessage":
        """Deserialize message from JSON."""
        return cls.model_validate_json(data)

    def to_task(self) -> ActivityTask:
        return ActivityTask(
            activity_name=self.activity_name or "",
            input=self.input,
            correlation_id=self.correlation_id or "",
        )


# ----------------------------------------------------------------------
# Registry results


class InstanceStatus(BaseModel):
    """Read-only view of an instance for status queries."""

    instance_id: str
    status: RunStatus = RunStatus.NOT_STARTED
    orchestration: Optional[str] = None
    generation: Optional[int] = None
    last_event: Optional[HistoryEvent] = None
    error: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class StartResult(BaseModel):
    """Outcome of a start request."""

    outcome: Literal["started", "conflict"]
    instance_id: str
    status: InstanceStatus

    @property
    def started(self) -> bool:
        return self.outcome == "started"
