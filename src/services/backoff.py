"""Retry backoff between ticks, per provider error class."""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from src.services.exceptions import (
    ProviderError,
    ProviderRateLimitError,
    ProviderTimeoutError,
)


@dataclass(frozen=True)
class BackoffPolicy:
    """Exponential delay: ``base * multiplier ** (attempt - 1)``, capped at ``max_seconds``."""

    base_seconds: float = 5.0
    multiplier: float = 2.0
    max_seconds: float = 300.0

    def delay_for(self, attempt: int) -> float:
        if attempt < 1 or self.base_seconds <= 0:
            return 0.0
        return min(self.base_seconds * self.multiplier ** (attempt - 1), self.max_seconds)


class BackoffSchedule:
    """Looks up the policy for an error by walking its class hierarchy."""

    def __init__(self, policies: dict[type, BackoffPolicy], default: BackoffPolicy):
        self.policies = policies
        self.default = default

    def policy_for(self, error: Optional[BaseException]) -> BackoffPolicy:
        if error is not None:
            for cls in type(error).__mro__:
                if cls in self.policies:
                    return self.policies[cls]
        return self.default

    def next_attempt_at(self, error: Optional[BaseException], attempt: int, now: datetime) -> datetime:
        return now + timedelta(seconds=self.policy_for(error).delay_for(attempt))

    @classmethod
    def from_base(cls, base_seconds: float, max_seconds: float) -> "BackoffSchedule":
        """Rate limits wait longest, timeouts a bit longer than other failures."""
        return cls(
            policies={
                ProviderRateLimitError: BackoffPolicy(base_seconds * 6, 2.0, max_seconds * 2),
                ProviderTimeoutError: BackoffPolicy(base_seconds * 2, 2.0, max_seconds),
                ProviderError: BackoffPolicy(base_seconds, 2.0, max_seconds),
            },
            default=BackoffPolicy(base_seconds, 2.0, max_seconds),
        )


NO_BACKOFF = BackoffSchedule(policies={}, default=BackoffPolicy(base_seconds=0))
