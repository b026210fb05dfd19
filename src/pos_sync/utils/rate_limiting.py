"""
Rate limiting for external POS API calls.

Each Integration owns one limiter that enforces two ceilings at once: a short
burst window (requests per second) and a sustained window (requests per
minute). Callers wait cooperatively with ``await limiter.acquire()``; a wait
that would run past the caller's deadline fails fast instead.
"""

import asyncio
import time
from collections import deque
from threading import Lock
from typing import Any, Awaitable, Callable, Dict, Optional

from pos_sync.utils.config import RateLimitSettings
from pos_sync.utils.cancellation import CancellationToken
from pos_sync.utils.exceptions import OperationCancelled, WouldExceedDeadline
from pos_sync.utils.logger import get_logger


logger = get_logger(__name__)

_EPSILON = 1e-9


class TokenBucket:
    """
    Token bucket whose tokens return one full window after being taken.

    Refilling per consumed token (rather than continuously) means no rolling
    window of ``window`` seconds ever contains more than ``capacity`` grants.
    """

    def __init__(self, capacity: int, window: float):
        """
        Initialize token bucket.

        Args:
            capacity: Tokens available per window
            window: Window length in seconds
        """
        self.capacity = capacity
        self.window = window
        self._grants = deque()

    def _expire(self, now: float) -> None:
        while self._grants and self._grants[0] + self.window <= now + _EPSILON:
            self._grants.popleft()

    def tokens(self, now: float) -> int:
        self._expire(now)
        return self.capacity - len(self._grants)

    def time_until_available(self, now: float) -> float:
        """
        Seconds until one token is available.

        Args:
            now: Current clock reading

        Returns:
            0.0 if a token is available now
        """
        self._expire(now)
        if len(self._grants) < self.capacity:
            return 0.0
        return max(0.0, self._grants[0] + self.window - now)

    def consume(self, now: float) -> None:
        self._grants.append(now)

    def get_status(self, now: float) -> Dict[str, Any]:
        available = self.tokens(now)
        return {
            "tokens": available,
            "capacity": self.capacity,
            "window_seconds": self.window,
            "utilization": (self.capacity - available) / self.capacity,
        }


class RateLimiter:
    """
    Dual-window rate limiter for one external POS account.

    Safe for concurrent use by the chunk workers of a run: bucket state is
    only touched under ``self.lock`` and never across an ``await``.
    """

    def __init__(self, config: Optional[RateLimitSettings] = None,
                 clock: Optional[Callable[[], float]] = None,
                 sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
                 name: str = "default"):
        self.config = config or RateLimitSettings()
        self.name = name
        self._clock = clock or time.monotonic
        self._sleep = sleep
        self.lock = Lock()

        self.burst_bucket = TokenBucket(self.config.requests_per_second, 1.0)
        self.sustained_bucket = TokenBucket(self.config.requests_per_minute, 60.0)

        # Set when the provider itself throttles us
        self.paused_until = 0.0

        self.stats = {
            "total_grants": 0,
            "throttled_waits": 0,
            "total_wait_seconds": 0.0,
            "deadline_rejections": 0,
            "pauses": 0,
            "last_pause_seconds": None,
        }

        logger.debug(f"Initialized rate limiter {name}: "
                     f"{self.config.requests_per_second} req/s, "
                     f"{self.config.requests_per_minute} req/min")

    def _wait_time(self, now: float) -> float:
        return max(
            self.paused_until - now,
            self.burst_bucket.time_until_available(now),
            self.sustained_bucket.time_until_available(now),
            0.0,
        )

    @staticmethod
    def _effective_deadline(deadline: Optional[float],
                            cancel_token: Optional[CancellationToken]) -> Optional[float]:
        candidates = [d for d in (deadline, cancel_token.deadline if cancel_token else None)
                      if d is not None]
        return min(candidates) if candidates else None

    async def _wait(self, seconds: float, cancel_token: Optional[CancellationToken]) -> None:
        if self._sleep is not None:
            await self._sleep(seconds)
        elif cancel_token is not None:
            await cancel_token.sleep(seconds)
        else:
            await asyncio.sleep(seconds)

    async def acquire(self, deadline: Optional[float] = None,
                      cancel_token: Optional[CancellationToken] = None) -> float:
        """
        Wait until both windows allow one request, then take it.

        Args:
            deadline: Absolute time on this limiter's clock the caller must not pass
            cancel_token: Run cancellation token; its deadline is honoured too

        Returns:
            Seconds spent waiting.

        Raises:
            WouldExceedDeadline: If the required wait would pass the deadline.
            OperationCancelled: If the token fires while waiting.
        """
        effective_deadline = self._effective_deadline(deadline, cancel_token)
        waited = 0.0

        while True:
            if cancel_token is not None and cancel_token.cancelled:
                raise OperationCancelled("Rate limiter wait cancelled",
                                         {"reason": cancel_token.reason})

            with self.lock:
                now = self._clock()
                wait = self._wait_time(now)

                if wait <= 0:
                    self.burst_bucket.consume(now)
                    self.sustained_bucket.consume(now)
                    self.stats["total_grants"] += 1
                    if waited:
                        self.stats["throttled_waits"] += 1
                        self.stats["total_wait_seconds"] += waited
                    break

                if effective_deadline is not None and now + wait > effective_deadline:
                    self.stats["deadline_rejections"] += 1
                    raise WouldExceedDeadline(wait_seconds=wait)

            if wait > 1.0:
                logger.info(f"Rate limiter {self.name}: waiting {wait:.2f}s for capacity")
            await self._wait(wait, cancel_token)
            waited += wait

        if waited > 0:
            logger.debug(f"Rate limiter {self.name}: granted after {waited:.3f}s")
        return waited

    def pause(self, seconds: float) -> None:
        """
        Block all grants for ``seconds`` (provider-imposed throttling).

        Args:
            seconds: Pause length; extends but never shortens a running pause
        """
        with self.lock:
            until = self._clock() + seconds
            if until > self.paused_until:
                self.paused_until = until
            self.stats["pauses"] += 1
            self.stats["last_pause_seconds"] = seconds
        logger.warning(f"Rate limiter {self.name}: paused for {seconds:.2f}s after provider throttling")

    def get_status(self) -> Dict[str, Any]:
        with self.lock:
            now = self._clock()
            return {
                "name": self.name,
                "paused_for": max(0.0, self.paused_until - now),
                "burst": self.burst_bucket.get_status(now),
                "sustained": self.sustained_bucket.get_status(now),
                "stats": dict(self.stats),
            }


class RateLimiterRegistry:
    """Hands out one limiter per Integration so tenants never share throughput."""

    def __init__(self, config: Optional[RateLimitSettings] = None,
                 clock: Optional[Callable[[], float]] = None,
                 sleep: Optional[Callable[[float], Awaitable[Any]]] = None):
        self.config = config or RateLimitSettings()
        self._clock = clock
        self._sleep = sleep
        self._limiters: Dict[str, RateLimiter] = {}
        self._lock = Lock()

    def get(self, integration_id) -> RateLimiter:
        key = str(integration_id)
        with self._lock:
            limiter = self._limiters.get(key)
            if limiter is None:
                limiter = RateLimiter(self.config, clock=self._clock, sleep=self._sleep, name=key)
                self._limiters[key] = limiter
            return limiter

    def remove(self, integration_id) -> None:
        with self._lock:
            self._limiters.pop(str(integration_id), None)

    def __len__(self) -> int:
        return len(self._limiters)


_registry: Optional[RateLimiterRegistry] = None


def get_rate_limiter_registry() -> RateLimiterRegistry:
    """Process-wide registry used by the API and worker entry points."""
    global _registry
    if _registry is None:
        from pos_sync.utils.config import get_config
        _registry = RateLimiterRegistry(get_config().rate_limits)
    return _registry
