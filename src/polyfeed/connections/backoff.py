import logging
import random
from typing import Optional

from polyfeed.config.settings import BackoffSettings

logger = logging.getLogger(__name__)


class BackoffPolicy:
    """Exponential backoff with proportional jitter for stream reconnects.

    ``delay(attempt)`` for attempt ``n`` (1-based) is
    ``min(max_delay, base_delay * multiplier ** (n - 1))`` spread uniformly
    over ``+/- jitter`` of itself, never above ``max_delay``.
    """

    def __init__(
        self,
        base_delay: float = 1.0,
        multiplier: float = 2.0,
        max_delay: float = 60.0,
        jitter: float = 0.2,
        max_attempts: Optional[int] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.base_delay = base_delay
        self.multiplier = multiplier
        self.max_delay = max_delay
        self.jitter = jitter
        self.max_attempts = max_attempts
        self._rng = rng or random.Random()

    @classmethod
    def from_settings(
        cls, settings: BackoffSettings, rng: Optional[random.Random] = None
    ) -> "BackoffPolicy":
        return cls(
            base_delay=settings.base_delay,
            multiplier=settings.multiplier,
            max_delay=settings.max_delay,
            jitter=settings.jitter,
            max_attempts=settings.max_attempts,
            rng=rng,
        )

    def exhausted(self, attempt: int) -> bool:
        return self.max_attempts is not None and attempt > self.max_attempts

    def delay(self, attempt: int) -> float:
        attempt = max(1, attempt)
        delay = min(self.max_delay, self.base_delay * self.multiplier ** (attempt - 1))
        if self.jitter > 0:
            delta = delay * self.jitter
            delay = delay - delta + self._rng.random() * (2 * delta)
        return min(self.max_delay, max(0.0, delay))

    def __repr__(self) -> str:
        return (
            f"BackoffPolicy(base_delay={self.base_delay:g}, multiplier={self.multiplier:g}, "
            f"max_delay={self.max_delay:g}, jitter={self.jitter:g}, "
            f"max_attempts={self.max_attempts})"
        )
