"""Exception hierarchy for perennial."""

from __future__ import annotations

from typing import Optional


class PerennialError(Exception):
    """Base class for all perennial errors."""


class ActivityFailure(PerennialError):
    """Raised inside an orchestration when a scheduled activity failed.

    Orchestrations are expected to catch this and decide how to proceed; it
    never escapes the engine as a crash of the loop.
    """

    def __init__(self, activity_name: str, message: str) -> None:
        super().__init__(f"Activity '{activity_name}' failed: {message}")
        self.activity_name = activity_name
        self.message = message


class OrchestrationFault(PerennialError):
    """Structural failure that ends the current run."""


class ReplayMismatchError(OrchestrationFault):
    """Replayed intents diverged from the recorded history."""

    def __init__(self, sequence_number: int, expected: str, actual: str) -> None:
        super().__init__(
            f"History mismatch at sequence {sequence_number}: a previous execution "
            f"recorded {expected}, but the current execution requested {actual}. "
            "The orchestration has non-deterministic logic or was changed while "
            "an instance was running."
        )
        self.sequence_number = sequence_number
        self.expected = expected
        self.actual = actual


class HistoryCorruptionError(OrchestrationFault):
    """Recorded history is inconsistent with itself."""


class StoreFault(PerennialError):
    """Transient persistence-layer failure."""

    def __init__(self, message: str, cause: Optional[BaseException] = None) -> None:
        super().__init__(message)
        self.cause = cause


class HistoryStoreFault(StoreFault):
    """History or instance persistence failed after retries."""


class TimerStoreFault(StoreFault):
    """Timer persistence failed after retries."""


class OrchestrationNotRegisteredError(ValueError):
    pass


class ActivityNotRegisteredError(ValueError):
    pass
