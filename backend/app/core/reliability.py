"""
Reliability utilities.

Circuit breaker guarding each routing provider, so a rate-limited or
unreachable provider is skipped instead of timing out on every resolution.
"""

import logging
from typing import Any, Optional

from backend.app.core.clock import SystemClock

logger = logging.getLogger(__name__)


class CircuitBreaker:
    """
    Simple Circuit Breaker implementation.
    If 'failure_threshold' consecutive failures occur, the circuit opens and
    rejects calls for 'reset_timeout' seconds, then lets one trial call through.
    """
    def __init__(self, name: str = "default", failure_threshold: int = 5,
                 reset_timeout: float = 60, clock: Optional[Any] = None):
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.clock = clock or SystemClock()
        self.failures = 0
        self.last_failure_time = 0.0
        self.state = "CLOSED"  # CLOSED, OPEN, HALF_OPEN

    def allow(self) -> bool:
        """Return True if a call may go through right now."""
        if self.state == "OPEN":
            if self.clock.now() - self.last_failure_time > self.reset_timeout:
                self.state = "HALF_OPEN"
                return True
            return False
        return True

    def record_failure(self):
        self.failures += 1
        self.last_failure_time = self.clock.now()
        if self.state == "HALF_OPEN" or self.failures >= self.failure_threshold:
            if self.state != "OPEN":
                logger.warning("Circuit opened", extra={"circuit": self.name, "failures": self.failures})
            self.state = "OPEN"

    def record_success(self):
        if self.state == "HALF_OPEN" or self.failures:
            self.reset_state()

    def reset_state(self):
        self.failures = 0
        self.state = "CLOSED"
