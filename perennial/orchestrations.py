"""Built-in orchestrations and activities: the perpetual work loop."""

from __future__ import annotations

import logging
import random
from datetime import timedelta
from typing import Any, Dict, Optional

from .config import PolicyConfig
from .constants import EXECUTOR_ACTIVITY_NAME, ORCHESTRATOR_NAME
from .engine import OrchestrationContext, Orchestrator
from .errors import ActivityFailure
from .execute import Activity

logger = logging.getLogger(__name__)

PACED_ORCHESTRATOR_NAME = "paced_loop"


def backoff_minutes(
    processed: Optional[int], policy: Optional[PolicyConfig] = None
) -> int:
    """Map one cycle's outcome to a pause in minutes.

    ``processed`` is the activity result, or ``None`` when the activity failed.
    """
    policy = policy or PolicyConfig()
    if processed is None:
        return policy.minutes_to_wait_after_error
    if processed > 0:
        return 0
    return policy.minutes_to_wait_after_no_work


def _is_count(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def build_eternal_loop(
    policy: Optional[PolicyConfig] = None,
    activity_name: str = EXECUTOR_ACTIVITY_NAME,
) -> Orchestrator:
    """Build the loop body: work once, back off by outcome, continue as new."""
    policy = policy or PolicyConfig()

    def eternal_loop(ctx: OrchestrationContext, _input: Any = None):
        log = ctx.create_replay_safe_logger(logger)
        try:
            results = yield ctx.call_activity(activity_name)
            if not _is_count(results):
                raise ValueError(
                    f"Activity '{activity_name}' returned {results!r}, expected an integer"
                )
        except (ActivityFailure, ValueError) as e:
            log.error(str(e))
            postpone = backoff_minutes(None, policy)
            log.warning(f"An error occurred. Pausing for {postpone} min(s).")
        else:
            postpone = backoff_minutes(results, policy)
            if results > 0:
                log.warning(f"{results} records were successfully processed.")
            else:
                log.warning(f"No records were processed. Pausing for {postpone} min(s).")

        if postpone > 0:
            yield ctx.create_timer(ctx.current_utc_datetime + timedelta(minutes=postpone))

        ctx.continue_as_new(None)

    return eternal_loop


def build_paced_loop(activity_name: str = EXECUTOR_ACTIVITY_NAME) -> Orchestrator:
    """Build a loop whose activity decides the pause itself (minutes, 0 = none)."""

    def paced_loop(ctx: OrchestrationContext, _input: Any = None):
        minutes = yield ctx.call_activity(activity_name)
        if _is_count(minutes) and minutes > 0:
            yield ctx.create_timer(timedelta(minutes=minutes))
        ctx.continue_as_new(None)

    return paced_loop


async def process_records(_input: Any = None) -> int:
    """Placeholder unit of work: pretends to process 0-4 records."""
    results = random.randint(0, 4)
    logger.info(
        "Simulated processing of 1 or more records."
        if results > 0
        else "Simulated processing of 0 records."
    )
    return results


def build_paced_activity(policy: Optional[PolicyConfig] = None) -> Activity:
    """Wrap ``process_records`` so it returns the pause chosen by ``policy``."""
    policy = policy or PolicyConfig()

    async def process_and_pace(_input: Any = None) -> int:
        try:
            results = await process_records(_input)
        except Exception as e:
            logger.error(f"{e} [{e.__cause__}]")
            return backoff_minutes(None, policy)
        return backoff_minutes(results, policy)

    return process_and_pace


def default_orchestrations(
    policy: Optional[PolicyConfig] = None,
    activity_name: str = EXECUTOR_ACTIVITY_NAME,
) -> Dict[str, Orchestrator]:
    return {
        ORCHESTRATOR_NAME: build_eternal_loop(policy, activity_name),
        PACED_ORCHESTRATOR_NAME: build_paced_loop(activity_name),
    }


def default_activities(
    orchestration: str = ORCHESTRATOR_NAME,
    policy: Optional[PolicyConfig] = None,
    activity_name: str = EXECUTOR_ACTIVITY_NAME,
) -> Dict[str, Activity]:
    if orchestration == PACED_ORCHESTRATOR_NAME:
        return {activity_name: build_paced_activity(policy)}
    return {activity_name: process_records}


ACTIVITIES: Dict[str, Activity] = {EXECUTOR_ACTIVITY_NAME: process_records}
