"""
Retry policy for failed webhook deliveries.

Exponential backoff with jitter: next_attempt_at = now + 2^attempt_count
seconds + uniform(0, jitter). Jitter spreads out retries of events that
failed together in the same cycle.

There is no dead-letter queue. Abandoned events need manual reprocessing.
"""
import enum
import random
from dataclasses import dataclass
from datetime import datetime, timedelta

from hookrelay.models.webhook import DeliveryStatus


DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_JITTER_SECONDS = 1.0


class FailureKind(str, enum.Enum):
    """Outcome classification of a single delivery attempt."""
    NONE = "none"
    TRANSIENT = "transient"
    PERMANENT = "permanent"


@dataclass(frozen=True)
class RetryDecision:
    """Status to record for an attempt, and when to try again if at all."""
    status: DeliveryStatus
    next_attempt_at: datetime | None = None


class RetryPolicy:
    """Pure decision function over attempt count and failure kind."""

    def __init__(
        self,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        jitter_seconds: float = DEFAULT_JITTER_SECONDS,
        rng: random.Random | None = None,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.jitter_seconds = jitter_seconds
        self._rng = rng or random.Random()

    def backoff_seconds(self, attempt_count: int) -> float:
        return 2 ** attempt_count + self._rng.uniform(0, self.jitter_seconds)

    def next_attempt_at(self, attempt_count: int, now: datetime) -> datetime:
        """
        Compute when a transiently failed event becomes eligible again.

        Args:
            attempt_count: Number of attempts made so far, including this one
            now: Time the failure is being recorded

        Returns:
            Strictly later datetime than now
        """
        return now + timedelta(seconds=self.backoff_seconds(attempt_count))

    def decide(self, attempt_count: int, failure: FailureKind, now: datetime) -> RetryDecision:
        """
        Decide the recorded status for an attempt.

        Permanent failures are abandoned regardless of attempt count;
        transient ones are abandoned once the ceiling is reached.
        """
        if failure is FailureKind.NONE:
            return RetryDecision(status=DeliveryStatus.DELIVERED)
        if failure is FailureKind.PERMANENT or attempt_count >= self.max_attempts:
            return RetryDecision(status=DeliveryStatus.ABANDONED)
        return RetryDecision(
            status=DeliveryStatus.FAILED,
            next_attempt_at=self.next_attempt_at(attempt_count, now),
        )
