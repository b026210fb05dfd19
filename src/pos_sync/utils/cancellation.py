"""
Cancellation and deadlines for sync runs.

A ``CancellationToken`` is handed down from the orchestrator into the batch
processor, the rate limiter and the adapters. It fires either when
``cancel()`` is called or when its monotonic deadline passes.
"""

import asyncio
import time
from typing import Callable, Optional


class CancellationToken:
    """Cooperative cancellation signal with an optional deadline."""

    def __init__(self, deadline: Optional[float] = None,
                 clock: Callable[[], float] = time.monotonic):
        """
        Args:
            deadline: Absolute time on ``clock`` after which the token counts as cancelled.
            clock: Monotonic clock, injectable for tests.
        """
        self.deadline = deadline
        self._clock = clock
        self._event: Optional[asyncio.Event] = None
        self._cancelled = False
        self.reason: Optional[str] = None

    @classmethod
    def with_timeout(cls, seconds: Optional[float],
                     clock: Callable[[], float] = time.monotonic) -> "CancellationToken":
        if seconds is None:
            return cls(clock=clock)
        return cls(deadline=clock() + seconds, clock=clock)

    def _get_event(self) -> asyncio.Event:
        # Created lazily so the token can be built outside a running loop
        if self._event is None:
            self._event = asyncio.Event()
            if self._cancelled:
                self._event.set()
        return self._event

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._cancelled:
            self._cancelled = True
            self.reason = reason
        if self._event is not None:
            self._event.set()

    @property
    def deadline_exceeded(self) -> bool:
        return self.deadline is not None and self._clock() >= self.deadline

    @property
    def cancelled(self) -> bool:
        if self._cancelled:
            return True
        if self.deadline_exceeded:
            self.cancel("deadline_exceeded")
            return True
        return False

    def remaining(self) -> Optional[float]:
        """Seconds left before the deadline, or None if there is none."""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - self._clock())

    async def sleep(self, seconds: float) -> bool:
        """
        Sleep up to ``seconds``, waking early on cancellation.

        Returns:
            True if the full sleep elapsed, False if cancelled.
        """
        if self.cancelled:
            return False
        remaining = self.remaining()
        if remaining is not None and remaining < seconds:
            seconds = remaining
        try:
            await asyncio.wait_for(self._get_event().wait(), timeout=seconds)
            return False
        except asyncio.TimeoutError:
            return not self.cancelled
