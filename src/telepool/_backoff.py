"""
Exponential backoff calculation for the backpressure controller.

Example:
    >>> from telepool._backoff import calculate_backoff_delay
    >>> calculate_backoff_delay(0)
    1000
    >>> calculate_backoff_delay(3)
    8000
    >>> calculate_backoff_delay(50)
    300000
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class BackoffPolicy:
    """
    Tunables of the backpressure controller.

    Attributes:
        base_delay_ms: Delay for backoff level 0, in milliseconds.
        multiplier: Growth factor applied per backoff level.
        max_delay_ms: Ceiling for any computed delay, in milliseconds.
        max_backoff_level: Highest backoff level a failure can reach.
        circuit_breaker_threshold: Consecutive failures that open the circuit breaker.

    Example:
        >>> policy = BackoffPolicy(base_delay_ms=500)
        >>> policy.delay(2)
        2000
    """

    base_delay_ms: int = 1000
    multiplier: int = 2
    max_delay_ms: int = 300_000
    max_backoff_level: int = 10
    circuit_breaker_threshold: int = 10

    def __post_init__(self) -> None:
        assert self.base_delay_ms > 0, "base_delay_ms must be greater than 0."
        assert self.multiplier >= 1, "multiplier must be >= 1."
        assert self.max_delay_ms >= self.base_delay_ms, "max_delay_ms must be >= base_delay_ms."
        assert self.max_backoff_level >= 0, "max_backoff_level must be >= 0."
        assert self.circuit_breaker_threshold > 0, "circuit_breaker_threshold must be greater than 0."

    def delay(self, level: int) -> int:
        """
        Map a backoff level to a wait duration in milliseconds.

        Computes `min(base_delay_ms * multiplier ** level, max_delay_ms)` by
        repeated multiplication, stopping as soon as the ceiling is reached,
        so arbitrarily large levels stay cheap and never overflow.

        Args:
            level: Backoff level (>= 0).

        Returns:
            The wait duration in milliseconds.

        Raises:
            ValueError: If level is negative.
        """
        if level < 0:
            raise ValueError(f"Backoff level must be >= 0, got {level}")

        delay = self.base_delay_ms
        for _ in range(level):
            if delay >= self.max_delay_ms or self.multiplier == 1:
                break
            delay *= self.multiplier
        return min(delay, self.max_delay_ms)


DEFAULT_POLICY = BackoffPolicy()


def calculate_backoff_delay(level: int, policy: BackoffPolicy = DEFAULT_POLICY) -> int:
    """
    Calculate the backoff delay (ms) for the given level.

    Args:
        level: Backoff level (>= 0).
        policy: Backoff tunables. Defaults to 1s base, x2 growth, 5 minute ceiling.

    Returns:
        The wait duration in milliseconds.
    """
    return policy.delay(level)
