from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class RetryPhase(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    EXHAUSTED = "exhausted"


@dataclass(frozen=True)
class BackoffPolicy:
    max_retries: int = 5
    initial_wait: float = 10.0
    multiplier: float = 2.0

    def __post_init__(self) -> None:
        if self.max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        if self.initial_wait < 0:
            raise ValueError("initial_wait must not be negative")
        if self.multiplier < 1:
            raise ValueError("multiplier must be at least 1")

    def delay_after(self, failures: int) -> float:
        """Delay before the attempt that follows the ``failures``-th failure."""
        if failures < 1:
            return 0.0
        return self.initial_wait * (self.multiplier ** (failures - 1))


@dataclass(frozen=True)
class RetryState:
    phase: RetryPhase = RetryPhase.PENDING
    attempts: int = 0
    next_delay: float = 0.0

    @property
    def done(self) -> bool:
        return self.phase is not RetryPhase.PENDING


def advance(policy: BackoffPolicy, state: RetryState, succeeded: bool) -> RetryState:
    """Fold one attempt outcome into the state.

    A pending state either ends (success, or exhausted once ``max_retries``
    attempts failed) or stays pending with the delay to wait before the next
    attempt.
    """
    if state.done:
        raise ValueError(f"retry already finished: {state.phase.value}")
    attempts = state.attempts + 1
    if succeeded:
        return RetryState(phase=RetryPhase.SUCCESS, attempts=attempts)
    if attempts >= policy.max_retries:
        return RetryState(phase=RetryPhase.EXHAUSTED, attempts=attempts)
    return RetryState(
        phase=RetryPhase.PENDING,
        attempts=attempts,
        next_delay=policy.delay_after(attempts),
    )
