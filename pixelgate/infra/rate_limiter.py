# pixelgate/infra/rate_limiter.py
from __future__ import annotations
import math
import time
from dataclasses import dataclass
from threading import Lock
from typing import Callable

from pixelgate.infra.logging_config import get_logger

logger = get_logger(__name__)

# Absorbs float drift from summing emission intervals
_EPSILON = 1e-6


@dataclass(frozen=True)
class RateLimitResult:
    """Outcome of one admission decision."""

    allowed: bool
    limit: int
    remaining: int
    reset_after: float  # Seconds until the bucket is full again
    retry_after: float | None  # Seconds until the next request would pass

    def headers(self) -> dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(math.ceil(self.reset_after)),
        }
        if self.retry_after is not None:
            headers["Retry-After"] = str(max(1, math.ceil(self.retry_after)))
        return headers


class GCRARateLimiter:
    """
    In-memory rate limiter using the generic cell-rate algorithm.

    The whole process shares a single "theoretical arrival time" (TAT).  A request is
    admitted while the TAT is no more than ``(burst - 1)`` emission intervals
    ahead of now, so ``burst`` requests pass at once and one more every
    ``1 / rate`` seconds after that.

    NOT horizontally scalable: each process holds its own state, so with N
    replicas the effective limit is N times the configured rate.
    """

    def __init__(
        self,
        rate: float,
        burst: int,
        clock: Callable[[], float] = time.monotonic,
    ):
        if rate <= 0:
            raise ValueError("rate must be positive")
        self.rate = rate
        self.burst = max(1, burst)
        self.emission_interval = 1.0 / rate
        self.tolerance = (self.burst - 1) * self.emission_interval
        self._clock = clock
        self._tat: float | None = None
        self._lock = Lock()

    def allow(self) -> RateLimitResult:
        """Admit or reject one request and update the shared state."""
        with self._lock:
            now = self._clock()
            tat = now if self._tat is None else max(self._tat, now)
            new_tat = tat + self.emission_interval
            allow_at = new_tat - self.tolerance - self.emission_interval

            if allow_at - now > _EPSILON:
                retry_after = allow_at - now
                logger.warning(
                    "Rate limit exceeded",
                    extra={
                        "limit": self.burst,
                        "retry_after": retry_after,
                    }
                )
                return RateLimitResult(
                    allowed=False,
                    limit=self.burst,
                    remaining=0,
                    reset_after=tat - now,
                    retry_after=retry_after,
                )

            self._tat = new_tat
            remaining = int((self.tolerance - (new_tat - now - self.emission_interval)) / self.emission_interval + _EPSILON)
            return RateLimitResult(
                allowed=True,
                limit=self.burst,
                remaining=max(0, remaining),
                reset_after=new_tat - now,
                retry_after=None,
            )
