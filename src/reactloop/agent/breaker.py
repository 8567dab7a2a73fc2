"""
reactloop/agent/breaker.py — Failure Circuit Breaker

Counts consecutive THINK/ACT failures. Once the count reaches the threshold
the breaker is open and the executor refuses to reason again until reset().
A hard stop, not retry-with-backoff.
"""

from __future__ import annotations

from reactloop.exceptions import CircuitOpenError
from reactloop.observability.logger import get_logger

log = get_logger(__name__)

DEFAULT_THRESHOLD = 3


class CircuitBreaker:

    def __init__(self, threshold: int = DEFAULT_THRESHOLD):
        if threshold < 1:
            raise ValueError("threshold must be >= 1")
        self.threshold = threshold
        self.consecutive_failures = 0
        self.last_call_success = True

    @property
    def is_open(self) -> bool:
        return self.consecutive_failures >= self.threshold

    def record_success(self) -> None:
        self.consecutive_failures = 0
        self.last_call_success = True

    def record_failure(self) -> None:
        self.consecutive_failures += 1
        self.last_call_success = False
        if self.is_open:
            log.warning(
                "breaker.open",
                failures=self.consecutive_failures,
                threshold=self.threshold,
            )

    def check(self) -> None:
        """Raise CircuitOpenError if the breaker is open."""
        if self.is_open:
            raise CircuitOpenError(self.consecutive_failures, self.threshold)

    def reset(self) -> None:
        self.consecutive_failures = 0
        self.last_call_success = True

    def __repr__(self) -> str:
        return f"<CircuitBreaker {self.consecutive_failures}/{self.threshold}>"
