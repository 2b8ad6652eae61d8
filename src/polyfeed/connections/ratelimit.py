import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable

from polyfeed.common.exceptions import RateLimited
from polyfeed.config.enumerations import RateLimitPolicy
from polyfeed.config.settings import RateLimitSettings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Permit:
    """One unit of request budget, granted by :meth:`RateLimiter.acquire`."""

    remaining: int
    granted_at: float


class RateLimiter:
    """Token budget with discrete refill.

    Every whole ``refill_interval`` elapsed on the monotonic clock adds
    ``refill_amount`` permits, capped at ``ceiling``. The budget starts full.

    The lock is held across the blocking wait, so waiters are granted permits
    in arrival order.
    """

    def __init__(
        self,
        ceiling: int,
        refill_amount: int,
        refill_interval: float,
        policy: RateLimitPolicy = RateLimitPolicy.BLOCKING,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if ceiling < 1 or refill_amount < 1:
            raise ValueError("ceiling and refill_amount must be positive")
        if refill_interval <= 0:
            raise ValueError("refill_interval must be positive")

        self.ceiling = ceiling
        self.refill_amount = refill_amount
        self.refill_interval = refill_interval
        self.policy = policy

        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._remaining = ceiling
        self._last_refill = clock()

    @classmethod
    def from_settings(
        cls,
        settings: RateLimitSettings,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> "RateLimiter":
        return cls(
            ceiling=settings.ceiling,
            refill_amount=settings.refill_amount,
            refill_interval=settings.refill_interval,
            policy=settings.policy,
            clock=clock,
            sleep=sleep,
        )

    @property
    def remaining(self) -> int:
        self._refill()
        return self._remaining

    def _refill(self) -> None:
        elapsed = self._clock() - self._last_refill
        intervals = int(elapsed // self.refill_interval)
        if intervals <= 0:
            return

        self._remaining = min(self.ceiling, self._remaining + intervals * self.refill_amount)
        self._last_refill += intervals * self.refill_interval

    def _until_refill(self) -> float:
        return max(0.0, self._last_refill + self.refill_interval - self._clock())

    async def acquire(self) -> Permit:
        async with self._lock:
            self._refill()

            while self._remaining <= 0:
                wait = self._until_refill()
                if self.policy is RateLimitPolicy.REJECTING:
                    raise RateLimited(retry_after=wait)

                logger.debug("Rate limit budget exhausted, waiting %.3fs", wait)
                await self._sleep(wait)
                self._refill()

            self._remaining -= 1
            return Permit(remaining=self._remaining, granted_at=self._clock())

    def __repr__(self) -> str:
        return (
            f"RateLimiter(remaining={self._remaining}, ceiling={self.ceiling}, "
            f"refill={self.refill_amount}/{self.refill_interval:g}s, policy={self.policy.value})"
        )
