"""
Capped exponential backoff for retrying infrastructure operations.

The autoscaler uses a ``BackoffTracker`` keyed by API name to hold back
scale-up after replica creation failures.
"""

import time
import random
import logging
import threading
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Any


logger = logging.getLogger(__name__)


@dataclass
class BackoffPolicy:
    """Backoff policy configuration."""
    base_delay: float = 1.0
    max_delay: float = 60.0
    exponential_base: float = 2.0
    jitter: bool = True

    def calculate_delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (0-based), never above max_delay."""
        delay = self.base_delay * (self.exponential_base ** max(attempt, 0))
        delay = min(delay, self.max_delay)

        # Up to 50% jitter to spread out retries
        if self.jitter:
            delay += random.uniform(0, delay * 0.5)

        return max(0.0, min(delay, self.max_delay))


@dataclass
class BackoffState:
    """Failure streak for one key."""
    failures: int = 0
    last_failure: float = 0.0
    retry_at: float = 0.0
    last_reason: Optional[str] = None


class BackoffTracker:
    """Tracks consecutive failures per key and when the next attempt is allowed."""

    def __init__(self, policy: Optional[BackoffPolicy] = None, clock: Callable[[], float] = time.monotonic):
        self.policy = policy or BackoffPolicy()
        self._clock = clock
        self._states: Dict[str, BackoffState] = {}
        self._lock = threading.Lock()

    def record_failure(self, key: str, reason: Optional[str] = None) -> float:
        """Register a failure and return the delay until the next attempt."""
        now = self._clock()
        with self._lock:
            state = self._states.setdefault(key, BackoffState())
            delay = self.policy.calculate_delay(state.failures)
            state.failures += 1
            state.last_failure = now
            state.retry_at = now + delay
            state.last_reason = reason

        logger.warning(f"Backoff for {key}: failure #{state.failures}, next attempt in {delay:.2f}s")
        return delay

    def record_success(self, key: str):
        """Clear the failure streak for a key."""
        with self._lock:
            if self._states.pop(key, None) is not None:
                logger.info(f"Backoff for {key} cleared")

    def is_blocked(self, key: str) -> bool:
        return self.remaining(key) > 0

    def remaining(self, key: str) -> float:
        """Seconds until the next attempt is allowed, 0 when not backing off."""
        with self._lock:
            state = self._states.get(key)
            if state is None:
                return 0.0
            return max(0.0, state.retry_at - self._clock())

    def failures(self, key: str) -> int:
        with self._lock:
            state = self._states.get(key)
            return state.failures if state else 0

    def forget(self, key: str):
        with self._lock:
            self._states.pop(key, None)

    def get_stats(self) -> Dict[str, Any]:
        now = self._clock()
        with self._lock:
            return {
                key: {
                    "failures": state.failures,
                    "retry_in": max(0.0, state.retry_at - now),
                    "last_reason": state.last_reason
                }
                for key, state in self._states.items()
            }
