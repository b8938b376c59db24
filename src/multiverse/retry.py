from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from enum import StrEnum

from multiverse.config import RetryConfig


class NextAction(StrEnum):
    RETRY = "RETRY"
    BACKLOG = "BACKLOG"
    FAIL = "FAIL"


@dataclass(slots=True)
class RetryPolicy:
    """Deterministic exponential backoff; no jitter."""

    max_attempts: int = 3
    backoff_base: float = 5.0
    backoff_max: float = 300.0
    backoff_factor: float = 2.0
    require_human: bool = True

    @classmethod
    def from_config(cls, config: RetryConfig) -> RetryPolicy:
        return cls(
            max_attempts=max(1, int(config.max_attempts)),
            backoff_base=max(0.0, float(config.backoff_base_seconds)),
            backoff_max=max(0.0, float(config.backoff_max_seconds)),
            backoff_factor=max(1.0, float(config.backoff_factor)),
            require_human=bool(config.require_human),
        )

    def calculate_backoff(self, attempt_number: int) -> timedelta:
        attempt_number = max(1, attempt_number)
        seconds = self.backoff_base * (self.backoff_factor ** (attempt_number - 1))
        return timedelta(seconds=min(seconds, self.backoff_max))

    def should_retry(self, attempt_number: int) -> bool:
        return attempt_number < self.max_attempts

    def determine_next_action(self, attempt_number: int) -> NextAction:
        if self.should_retry(attempt_number):
            return NextAction.RETRY
        if self.require_human:
            return NextAction.BACKLOG
        return NextAction.FAIL
