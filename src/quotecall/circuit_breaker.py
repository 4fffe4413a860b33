"""Circuit breaker for outbound service calls.

Used by the LLM provider to skip a down service for a cooldown period
after repeated failures.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Optional

logger = logging.getLogger(__name__)


@dataclass
class CircuitBreaker:
    """Closed -> open (after N failures) -> half-open (after cooldown)."""

    failure_threshold: int = 3
    cooldown_seconds: float = 60.0
    label: str = "service"

    _consecutive_failures: int = field(default=0, init=False, repr=False)
    _opened_at: Optional[float] = field(default=None, init=False, repr=False)

    @property
    def is_open(self) -> bool:
        return not self.should_try()

    def should_try(self) -> bool:
        if self._consecutive_failures < self.failure_threshold:
            return True
        # Open: let a single trial request through once the cooldown has elapsed
        if self._opened_at and (time.monotonic() - self._opened_at) >= self.cooldown_seconds:
            return True
        return False

    def record_success(self) -> None:
        if self._opened_at is not None:
            logger.info("Circuit breaker closed for %s", self.label)
        self._consecutive_failures = 0
        self._opened_at = None

    def record_failure(self) -> None:
        self._consecutive_failures += 1
        if self._consecutive_failures >= self.failure_threshold:
            if self._opened_at is None:
                logger.warning(
                    "Circuit breaker OPENED for %s after %d consecutive failures, "
                    "skipping for %.0fs",
                    self.label,
                    self._consecutive_failures,
                    self.cooldown_seconds,
                )
            # A failed half-open trial restarts the cooldown
            self._opened_at = time.monotonic()
