"""Shared names and defaults for perennial."""

FUNCTION_ID = "funcid"

ORCHESTRATOR_NAME = "eternal_loop"
EXECUTOR_ACTIVITY_NAME = f"{FUNCTION_ID}_executor"

MINUTES_TO_WAIT_AFTER_NO_WORK = 1
MINUTES_TO_WAIT_AFTER_ERROR = 3

# Topic the engine listens on for start notifications and activity completions.
ORCHESTRATOR_TOPIC = "orchestrator"
