"""Per-user, per-endpoint request rate limiting."""
import logging
import math
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from config import RATE_LIMITS

logger = logging.getLogger(__name__)


@dataclass
class RateLimitResult:
    """Outcome of one rate-limit check."""
    allowed: bool
    limit: int
    remaining: int
    reset_at: float  # epoch seconds when the current window ends
    retry_after: Optional[int] = None

    def headers(self) -> Dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(math.ceil(self.reset_at)),
        }
        if not self.allowed and self.retry_after:
            headers["Retry-After"] = str(self.retry_after)
        return headers


class BaseRateLimiter(ABC):
    """Interface for rate limiters; a shared-store implementation can replace the in-memory one."""

    @abstractmethod
    def check(self, user_id: str, endpoint: str = "default") -> RateLimitResult:
        """Count one request and report whether it is allowed."""


class RateLimiter(BaseRateLimiter):
    """
    In-memory fixed-window limiter.

    Requests are counted in time buckets aligned to the endpoint's window.
    Buckets whose window has ended are evicted on a later check, so memory
    is bounded by the number of active (user, endpoint) pairs.
    """

    def __init__(
        self,
        limits: Optional[Dict[str, Tuple[int, int]]] = None,
        clock: Callable[[], float] = time.time
    ):
        """
        Args:
            limits: endpoint -> (window seconds, max requests); must include "default"
            clock: Time source in epoch seconds
        """
        self.limits = dict(limits or RATE_LIMITS)
        if "default" not in self.limits:
            raise ValueError("Rate limits must define a 'default' endpoint")
        self.clock = clock
        self._buckets: Dict[Tuple[str, str], Tuple[float, int]] = {}
        self._lock = threading.Lock()
        self._next_eviction = 0.0

    def check(self, user_id: str, endpoint: str = "default") -> RateLimitResult:
        if endpoint not in self.limits:
            endpoint = "default"
        window, max_requests = self.limits[endpoint]
        now = self.clock()
        bucket_start = math.floor(now / window) * window
        reset_at = bucket_start + window
        key = (user_id, endpoint)

        with self._lock:
            self._evict(now)
            start, count = self._buckets.get(key, (bucket_start, 0))
            if start != bucket_start:
                count = 0

            if count >= max_requests:
                self._buckets[key] = (bucket_start, count)
                retry_after = max(1, math.ceil(reset_at - now))
                logger.warning(f"Rate limit exceeded: user={user_id}, endpoint={endpoint}")
                return RateLimitResult(False, max_requests, 0, reset_at, retry_after)

            count += 1
            self._buckets[key] = (bucket_start, count)
            return RateLimitResult(True, max_requests, max_requests - count, reset_at)

    def _evict(self, now: float) -> None:
        """Drop buckets whose window has ended; runs at most once per shortest window."""
        if now < self._next_eviction:
            return
        expired = [
            key for key, (start, _) in self._buckets.items()
            if start + self.limits[key[1]][0] <= now
        ]
        for key in expired:
            del self._buckets[key]
        self._next_eviction = now + min(window for window, _ in self.limits.values())
        if expired:
            logger.debug(f"Evicted {len(expired)} expired rate-limit buckets")

    def __len__(self) -> int:
        return len(self._buckets)
