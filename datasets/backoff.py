# datasets/backoff.py
"""Request deadlines and bounded exponential backoff for transient failures."""
import logging
import time
from dataclasses import dataclass

from .errors import DeadlineExceeded, EnvelopeError

logger = logging.getLogger(__name__)


class Deadline:
    """Absolute monotonic deadline carried by a request."""

    def __init__(self, seconds=None, clock=time.monotonic):
        self._clock = clock
        self.expires_at = None if seconds is None else clock() + seconds

    @classmethod
    def none(cls):
        return cls(None)

    def remaining(self):
        if self.expires_at is None:
            return None
        return max(0.0, self.expires_at - self._clock())

    @property
    def expired(self):
        return self.expires_at is not None and self._clock() >= self.expires_at

    def check(self, what='request'):
        if self.expired:
            raise DeadlineExceeded(f'Deadline passed during {what}; outcome unknown, re-read state')


@dataclass
class RetryPolicy:
    max_attempts: int = 5
    backoff_seconds: float = 0.5
    max_backoff: float = 8.0

    def delay(self, attempt):
        return min(self.max_backoff, self.backoff_seconds * (2 ** attempt))


def call_with_backoff(func, policy, deadline=None, what='operation', sleep=time.sleep):
    """
    Call `func()` and retry it while it raises a retryable EnvelopeError,
    sleeping with exponential backoff, up to `policy.max_attempts`. The last
    error propagates unchanged.
    """
    deadline = deadline or Deadline.none()
    attempt = 0
    while True:
        deadline.check(what)
        try:
            return func()
        except EnvelopeError as exc:
            attempt += 1
            if not exc.retryable or attempt >= policy.max_attempts:
                raise
            delay = policy.delay(attempt - 1)
            remaining = deadline.remaining()
            if remaining is not None and delay >= remaining:
                raise
            logger.warning('%s failed (%s), retry %d/%d in %.2fs',
                           what, exc.message, attempt, policy.max_attempts - 1, delay)
            sleep(delay)
