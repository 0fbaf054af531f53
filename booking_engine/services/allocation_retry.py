"""
Allocation create retry policy.

The create call is retried through a short, ordered ladder of rules. Each rule
names the condition that triggers it and how the next attempt differs; a rule
fires at most once, so the ladder is bounded by its length.
"""

import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable

from booking_engine.services.servicem8 import DirectoryError, DirectoryResponse

logger = logging.getLogger(__name__)

ERROR_TABLE: dict[int, tuple[str, str]] = {
    401: ("SERVICEM8_UNAUTH", "ServiceM8 unauthorized"),
    403: ("SERVICEM8_INSUFFICIENT_SCOPE", "ServiceM8 insufficient scope"),
    422: ("SERVICEM8_VALIDATION_ERROR", "ServiceM8 validation error"),
}
DEFAULT_ERROR = ("SERVICEM8_ALLOC_FAILED", "ServiceM8 allocation failed")


def classify_directory_error(status: int | None) -> tuple[str, str]:
    return ERROR_TABLE.get(status, DEFAULT_ERROR)


@dataclass
class AttemptState:
    """What varies between create attempts."""

    window_id: str | None
    include_scheduling_status: bool
    attempts: int = 0
    rules_used: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class RetryRule:
    name: str
    applies: Callable[[DirectoryError, AttemptState], bool]
    # Mutates the state for the next attempt; False means "cannot retry after all".
    prepare: Callable[[AttemptState], Awaitable[bool]]


class AllocationCreateFailed(Exception):
    def __init__(self, error: DirectoryError, state: AttemptState):
        self.error = error
        self.state = state
        super().__init__(f"allocation create failed after {state.attempts} attempt(s): {error}")


def default_retry_rules(refresh_window_id: Callable[[], Awaitable[str | None]]) -> list[RetryRule]:
    """
    1. 400/422 while the scheduling status was sent -> resend without it.
    2. 422 -> the window id may be stale: refresh the map and resend.
    """

    async def drop_status(state: AttemptState) -> bool:
        state.include_scheduling_status = False
        return True

    async def refresh_window(state: AttemptState) -> bool:
        window_id = await refresh_window_id()
        if not window_id:
            return False
        state.window_id = window_id
        return True

    return [
        RetryRule(
            name="without_scheduling_status",
            applies=lambda err, state: state.include_scheduling_status and err.status in (400, 422),
            prepare=drop_status,
        ),
        RetryRule(
            name="refresh_window_map",
            applies=lambda err, state: err.status == 422,
            prepare=refresh_window,
        ),
    ]


async def create_with_retry(
    create: Callable[[AttemptState], Awaitable[DirectoryResponse]],
    state: AttemptState,
    rules: list[RetryRule],
) -> DirectoryResponse:
    """Run `create` until it succeeds or no unused rule matches the last error."""
    remaining = list(rules)
    while True:
        state.attempts += 1
        try:
            return await create(state)
        except DirectoryError as err:
            rule = next((r for r in remaining if r.applies(err, state)), None)
            if rule is None:
                raise AllocationCreateFailed(err, state) from err
            remaining.remove(rule)
            logger.warning(
                "Allocation create failed status=%s; retrying via rule=%s", err.status, rule.name
            )
            if not await rule.prepare(state):
                raise AllocationCreateFailed(err, state) from err
            state.rules_used.append(rule.name)
