"""Data models for persisted instance state."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from ..contracts import RunStatus, utcnow


class InstanceRecord(BaseModel):
    """Persisted registry row for one instance id."""

    instance_id: str
    orchestration: str
    status: RunStatus = RunStatus.RUNNING
    generation: int = 0
    input: Any = None
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
