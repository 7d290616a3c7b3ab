"""
Retry policy for channel delivery: exponential backoff with a cap.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class RetryPolicy:
    """
    Backoff parameters for one delivery task.

    Delay before attempt n+1 (after the n-th failure) is
    ``min(initial_delay * multiplier ** (n - 1), max_delay)``.
    """

    initial_delay: float = 1.0
    max_delay: float = 60.0
    multiplier: float = 2.0
    max_attempts: int = 5

    def __post_init__(self) -> None:
        if self.initial_delay < 0:
            raise ValueError("initial_delay must be >= 0")
        if self.max_delay < self.initial_delay:
            raise ValueError("max_delay must be >= initial_delay")
        if self.multiplier < 1:
            raise ValueError("multiplier must be >= 1")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

    def delay_after(self, attempt: int) -> float:
        """Seconds to wait after the given (1-based) failed attempt."""
        if attempt < 1:
            raise ValueError("attempt is 1-based")
        return min(self.initial_delay * (self.multiplier ** (attempt - 1)), self.max_delay)

    def schedule(self) -> list[float]:
        """All waits between attempts, in order (max_attempts - 1 entries)."""
        return [self.delay_after(n) for n in range(1, self.max_attempts)]

    def exhausted(self, attempts: int) -> bool:
        return attempts >= self.max_attempts
