from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, TypeVar

from loguru import logger

from meridian.errors import ConfirmationTimeoutError, MeridianError

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 4
    initial_delay: float = 0.5
    max_delay: float = 8.0
    multiplier: float = 2.0

    def delay_for(self, attempt: int) -> float:
        """Delay before retry number `attempt` (0-based), capped at max_delay."""
        return min(self.initial_delay * (self.multiplier ** attempt), self.max_delay)


class BackoffState:
    """
    Explicit retry state machine: how many attempts were made, what the next
    delay is, and whether the budget is exhausted. No sleeping happens here.
    """

    def __init__(self, policy: RetryPolicy) -> None:
        self.policy = policy
        self.attempt = 0
        self.last_error: Exception | None = None

    @property
    def exhausted(self) -> bool:
        return self.attempt >= self.policy.max_attempts

    @property
    def next_delay(self) -> float:
        return self.policy.delay_for(max(self.attempt - 1, 0))

    def record_failure(self, error: Exception) -> bool:
        """Register a failed attempt; returns True when another attempt is allowed."""
        self.attempt += 1
        self.last_error = error
        if not is_retryable(error):
            return False
        return not self.exhausted


def is_retryable(error: Exception) -> bool:
    return isinstance(error, MeridianError) and error.retryable


def retry_call(
    fn: Callable[[], T],
    policy: RetryPolicy,
    sleep: Callable[[float], None],
    *,
    label: str = "call",
) -> T:
    """
    Run `fn` until it succeeds, a terminal error is raised or the attempt
    budget runs out. The last error is re-raised unchanged.
    """
    state = BackoffState(policy)
    while True:
        try:
            return fn()
        except MeridianError as e:
            if not state.record_failure(e):
                if e.retryable:
                    logger.warning(f"🔁 {label} gave up after {state.attempt} attempts | code={e.code}")
                raise
            delay = state.next_delay
            logger.debug(f"{label} failed (attempt {state.attempt}) | code={e.code} | retry in {delay:.2f}s")
            sleep(delay)


def poll_until(
    check: Callable[[], T | None],
    *,
    max_attempts: int,
    interval: float,
    sleep: Callable[[float], None],
    label: str = "confirmation",
) -> T:
    """
    Poll `check` until it returns a non-None value. Exceeding `max_attempts`
    raises ConfirmationTimeoutError rather than returning silently.
    """
    for attempt in range(max_attempts):
        result = check()
        if result is not None:
            return result
        if attempt < max_attempts - 1:
            sleep(interval)
    raise ConfirmationTimeoutError(
        f"{label} not confirmed after {max_attempts} polls",
        details={"max_attempts": max_attempts},
    )
