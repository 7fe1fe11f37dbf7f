"""
Rate Limiter - Call budgets and rate limiting for oracle (LLM) calls.

Provides:
- CallBudget: a run-wide counter of oracle consultations shared by every
  concurrently running reasoning loop. The cap is checked and the counter
  incremented in one critical section, so the count can never overshoot.
- AsyncRateLimiter: a sliding-window limiter (requests per minute/second and a
  minimum spacing) that suspends the calling coroutine instead of blocking
  the event loop.

Usage:
    budget = CallBudget(limit=40)
    budget.acquire(task_id="t1")        # raises BudgetExceededError at the cap

    limiter = AsyncRateLimiter.from_config(config.rate_limit)
    await limiter.wait()
"""

import asyncio
import threading
import time
from collections import deque
from typing import Optional, Dict, Any, TYPE_CHECKING

from agent_core.utils.exceptions import BudgetExceededError
from agent_core.utils.logger import get_logger

if TYPE_CHECKING:
    from agent_core.config.agent_config import RateLimitConfig

logger = get_logger(__name__)


class CallBudget:
    """
    Thread-safe shared counter for the per-run LLM-call budget.
    """

    def __init__(self, limit: int):
        if limit < 0:
            raise ValueError("limit cannot be negative")
        self._lock = threading.Lock()
        self._limit = limit
        self._used = 0

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def used(self) -> int:
        with self._lock:
            return self._used

    @property
    def remaining(self) -> int:
        with self._lock:
            return self._limit - self._used

    def acquire(self, task_id: Optional[str] = None) -> int:
        """
        Reserve one oracle call.

        Returns:
            The number of calls used so far, including this one

        Raises:
            BudgetExceededError: LLM_BUDGET_EXCEEDED when the cap is reached
        """
        with self._lock:
            if self._used >= self._limit:
                logger.warning(
                    f"[BUDGET] LLM call budget exhausted ({self._used}/{self._limit})"
                    + (f" for task {task_id}" if task_id else "")
                )
                raise BudgetExceededError(
                    BudgetExceededError.LLM_BUDGET_EXCEEDED, self._limit, task_id=task_id
                )
            self._used += 1
            return self._used

    def reset(self, limit: Optional[int] = None) -> None:
        """Zero the counter at the start of a run, optionally with a new cap."""
        with self._lock:
            self._used = 0
            if limit is not None:
                self._limit = limit

    def get_stats(self) -> Dict[str, int]:
        with self._lock:
            return {"used": self._used, "limit": self._limit, "remaining": self._limit - self._used}


class AsyncRateLimiter:
    """
    Paces oracle calls to a provider's request quota.

    Each caller reserves the earliest slot that respects both the sliding
    window (RPS when set, else RPM) and the minimum spacing, then sleeps until
    that slot outside the lock. Slots are handed out in reservation order, so
    concurrent reasoning loops queue fairly behind one another.
    """

    def __init__(
        self,
        requests_per_minute: int = 60,
        requests_per_second: int = 0,
        min_request_delay: float = 0.0,
    ):
        """
        Args:
            requests_per_minute: Quota per minute (0 = unlimited)
            requests_per_second: Quota per second (0 = unlimited, takes precedence over RPM)
            min_request_delay: Minimum seconds between two calls
        """
        self.requests_per_minute = requests_per_minute
        self.requests_per_second = requests_per_second
        self.min_request_delay = min_request_delay

        if requests_per_second > 0:
            self._max_requests, self._window_seconds = requests_per_second, 1.0
        elif requests_per_minute > 0:
            self._max_requests, self._window_seconds = requests_per_minute, 60.0
        else:
            self._max_requests, self._window_seconds = 0, 0.0

        self._lock = threading.Lock()
        self._slots: deque = deque()
        self._last_slot: Optional[float] = None

    @classmethod
    def from_config(cls, config: "RateLimitConfig") -> "AsyncRateLimiter":
        return cls(
            requests_per_minute=config.requests_per_minute,
            requests_per_second=config.requests_per_second,
            min_request_delay=config.min_request_delay,
        )

    def _expire_slots(self, at: float) -> None:
        while self._slots and self._slots[0] < at - self._window_seconds:
            self._slots.popleft()

    def _reserve(self) -> float:
        with self._lock:
            now = time.monotonic()
            slot = now
            if self._last_slot is not None and self.min_request_delay > 0:
                slot = max(slot, self._last_slot + self.min_request_delay)
            if self._max_requests:
                self._expire_slots(slot)
                if len(self._slots) >= self._max_requests:
                    slot = max(slot, self._slots[-self._max_requests] + self._window_seconds)
                self._slots.append(slot)
            self._last_slot = slot
            return max(0.0, slot - now)

    async def wait(self) -> float:
        """Sleep until this caller's slot; returns the seconds waited."""
        delay = self._reserve()
        if delay > 0:
            logger.debug(f"[RATE] Waiting {delay:.2f}s for an oracle slot")
            await asyncio.sleep(delay)
        return delay

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            if self._max_requests:
                self._expire_slots(time.monotonic())
            return {
                "requests_in_window": len(self._slots),
                "max_requests": self._max_requests,
                "window_seconds": self._window_seconds,
                "min_request_delay": self.min_request_delay,
            }

    def reset(self) -> None:
        with self._lock:
            self._slots.clear()
            self._last_slot = None
