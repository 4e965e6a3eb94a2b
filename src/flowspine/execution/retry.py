"""Retry policy with exponential backoff.

The policy is a pure function of the attempt count: it never sleeps and
never touches workflow state. The engine asks it two questions after a
step fails — *may this step run again?* and *how long until it does?* —
and schedules the answer on its clock.

Example:
    >>> from flowspine.execution.retry import RetryPolicy
    >>>
    >>> policy = RetryPolicy(base_delay=1.0, max_delay=60.0)
    >>> policy.should_retry(attempt=1, max_attempts=3)
    True
    >>> policy.backoff_duration(1)   # first retry
    2.0
    >>> policy.backoff_duration(2)   # second retry
    4.0
"""

from __future__ import annotations

from dataclasses import dataclass

from flowspine.core.errors import ConfigError, is_retryable
from flowspine.core.settings import EngineSettings


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry with exponential backoff.

    Delay = min(base_delay * 2 ** retry, max_delay), where ``retry`` is 1 for
    the first retry (not the first attempt).

    Attributes:
        base_delay: Base of the exponential, in seconds
        max_delay: Cap on any single delay, in seconds
    """

    base_delay: float = 1.0
    max_delay: float = 60.0

    def __post_init__(self) -> None:
        if self.base_delay < 0:
            raise ConfigError("base_delay must be non-negative")
        if self.max_delay < self.base_delay:
            raise ConfigError("max_delay must be >= base_delay")

    @classmethod
    def from_settings(cls, settings: EngineSettings) -> RetryPolicy:
        """Build a policy from engine settings."""
        return cls(
            base_delay=settings.backoff_base_seconds,
            max_delay=settings.backoff_max_seconds,
        )

    def should_retry(
        self,
        attempt: int,
        max_attempts: int,
        error: BaseException | None = None,
    ) -> bool:
        """Decide whether a failed step gets another attempt.

        Args:
            attempt: Attempts already made, counting the one that just failed (1-based)
            max_attempts: Total attempts allowed, first try included
            error: The failure, if known; non-retryable errors stop immediately
        """
        if attempt >= max_attempts:
            return False
        if error is not None and not is_retryable(error):
            return False
        return True

    def backoff_duration(self, retry: int) -> float:
        """Seconds to wait before the given retry (1 = first retry)."""
        if retry < 1:
            raise ValueError(f"retry numbers start at 1, got {retry}")
        return min(self.base_delay * (2 ** retry), self.max_delay)


__all__ = ["RetryPolicy"]
