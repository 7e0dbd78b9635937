"""Adaptive pacing shared by every external-call client.

Two separate mechanisms compose here:

  - ``AdaptiveRateLimiter`` sets the baseline spacing between *all*
    requests a client issues. It speeds up after a run of successes and
    slows down on errors, scaled by how severe the error was.
  - ``retry_delay`` is the per-request exponential backoff used to decide
    when to reissue one logical request before giving up on it.
"""

import logging
import threading
import time
from typing import Callable, Optional

from .config import PacingConfig

logger = logging.getLogger(__name__)

SUCCESS = "success"
RATE_LIMITED = "rate_limited"
SERVER_ERROR = "server_error"
BLOCKED = "blocked"
OTHER_ERROR = "other_error"


def retry_delay(attempt: int, base: float, multiplier: float = 2.0,
                maximum: Optional[float] = None) -> float:
    """Backoff before retry number ``attempt`` (1-based): base * multiplier^(attempt-1)."""
    delay = base * (multiplier ** max(attempt - 1, 0))
    if maximum is not None:
        delay = min(delay, maximum)
    return delay


class AdaptiveRateLimiter:
    """Self-tuning inter-request delay, safe to share across worker threads."""

    def __init__(self, pacing: Optional[PacingConfig] = None, name: str = "client",
                 sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], float] = time.monotonic):
        self.pacing = pacing or PacingConfig()
        self.name = name
        self._sleep = sleep
        self._clock = clock
        self._lock = threading.Lock()

        self.delay = min(max(self.pacing.initial_delay, self.pacing.min_delay), self.pacing.max_delay)
        self.consecutive_successes = 0
        self.consecutive_errors = 0
        self.total_requests = 0
        self.total_errors = 0
        self._next_slot = 0.0

    def wait(self) -> float:
        """Block until this client may issue its next request. Returns seconds waited."""
        with self._lock:
            now = self._clock()
            start = max(now, self._next_slot)
            self._next_slot = start + self.delay
            self.total_requests += 1
        wait_time = start - now
        if wait_time > 0:
            if wait_time > 0.05:
                logger.debug(f"{self.name}: waiting {wait_time * 1000:.0f}ms "
                             f"(adaptive delay {self.delay * 1000:.0f}ms)")
            self._sleep(wait_time)
        return wait_time

    def record(self, outcome: str):
        """Feed one request outcome back into the pacing policy."""
        if outcome == SUCCESS:
            self.record_success()
        else:
            self.record_error(outcome)

    def record_success(self):
        with self._lock:
            self.consecutive_successes += 1
            self.consecutive_errors = 0
            if self.consecutive_successes < self.pacing.success_threshold:
                return
            old = self.delay
            self.delay = max(self.pacing.min_delay, self.delay * self.pacing.speedup_factor)
            self.consecutive_successes = 0
        if old != self.delay:
            logger.info(f"{self.name}: speeding up {old * 1000:.0f}ms -> {self.delay * 1000:.0f}ms")

    def record_error(self, outcome: str = OTHER_ERROR):
        factors = self.pacing.severity_factors
        factor = factors.get(outcome, factors.get(OTHER_ERROR, 1.5))
        with self._lock:
            self.consecutive_successes = 0
            self.consecutive_errors += 1
            self.total_errors += 1
            old = self.delay
            # A zero delay cannot grow by multiplication alone
            base = self.delay if self.delay > 0 else max(self.pacing.min_delay, 0.05)
            self.delay = min(self.pacing.max_delay, base * factor)
            errors = self.consecutive_errors
        logger.warning(
            f"{self.name}: slowing down {old * 1000:.0f}ms -> {self.delay * 1000:.0f}ms "
            f"({outcome}, {errors} consecutive errors)"
        )

    def retry_delay(self, attempt: int) -> float:
        """Per-request backoff for this client's pacing config."""
        return retry_delay(
            attempt,
            self.pacing.base_retry_delay,
            self.pacing.backoff_multiplier,
            self.pacing.max_retry_delay,
        )

    @property
    def snapshot(self) -> dict:
        return {
            "name": self.name,
            "delay_ms": round(self.delay * 1000, 1),
            "consecutive_successes": self.consecutive_successes,
            "consecutive_errors": self.consecutive_errors,
            "total_requests": self.total_requests,
            "total_errors": self.total_errors,
        }
