"""
Exponential backoff for failed remote fetches.

Each account owns one RetryState; one account's backoff never affects
another's.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

BASE_DELAY = timedelta(seconds=60)
MAX_DELAY = timedelta(seconds=600)
BACKOFF_FACTOR = 2


@dataclass
class RetryState:
    """Backoff state for one account.

    Delays follow ``min(base * 2^(failures-1), max)``: 60s, 120s, 240s,
    480s, then 600s for every further failure.
    """
    consecutive_failures: int = 0
    next_attempt_at: Optional[datetime] = None
    base_delay: timedelta = BASE_DELAY
    max_delay: timedelta = MAX_DELAY

    def record_success(self) -> None:
        self.consecutive_failures = 0
        self.next_attempt_at = None

    def record_failure(self, now: datetime) -> timedelta:
        """Count a failure and schedule the next attempt.

        Args:
            now: Time the failure was observed

        Returns:
            Delay until the next attempt is due
        """
        self.consecutive_failures += 1
        delay = self.current_delay()
        self.next_attempt_at = now + delay
        return delay

    def current_delay(self) -> timedelta:
        if self.consecutive_failures == 0:
            return self.base_delay

        # Exponent capped so large failure counts cannot overflow timedelta
        exponent = min(self.consecutive_failures - 1, 32)
        delay = self.base_delay * (BACKOFF_FACTOR ** exponent)
        return min(delay, self.max_delay)

    @property
    def in_backoff(self) -> bool:
        return self.consecutive_failures > 0

    def is_due(self, now: datetime) -> bool:
        """True if a fetch may be attempted at ``now``."""
        if self.next_attempt_at is None:
            return True
        return now >= self.next_attempt_at
