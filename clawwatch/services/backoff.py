"""
Exponential backoff utility for retry loops.

Provides delay calculation for the batch flusher (stateful, with jitter)
and for notification retry scheduling (stateless, deterministic).
"""

import random


def compute_retry_delay(
    attempt: int,
    base_delay: float = 60.0,
    max_delay: float = 1800.0,
    multiplier: float = 2.0,
) -> float:
    """
    Delay before retry number ``attempt`` (1-based), without jitter.

    With the defaults this yields 60s, 120s, 240s, ... capped at 30 minutes.

    Args:
        attempt: Number of failed attempts so far (values below 1 count as 1).
        base_delay: Delay after the first failure.
        max_delay: Upper bound on any delay.
        multiplier: Growth factor per attempt.

    Returns:
        Delay in seconds.
    """
    exponent = max(0, attempt - 1)
    # Bound the exponent so huge attempt counts cannot overflow the float
    if exponent > 64:
        return max_delay
    return min(base_delay * (multiplier ** exponent), max_delay)


class ExponentialBackoff:
    """
    Exponential backoff with jitter.

    Computes delays as: min(base * multiplier^attempt, max_delay) + jitter.
    Call reset() after a successful operation to zero the attempt counter.

    Usage:
        backoff = ExponentialBackoff(base_delay=1.0, max_delay=60.0)
        while True:
            try:
                await do_work()
                backoff.reset()
            except Exception:
                delay = backoff.next_delay()
                await asyncio.sleep(delay)
    """

    def __init__(
        self,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        multiplier: float = 2.0,
        jitter_range: float = 0.5,
    ):
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.multiplier = multiplier
        self.jitter_range = jitter_range
        self._attempt = 0

    @property
    def attempt(self) -> int:
        """Current attempt count."""
        return self._attempt

    def next_delay(self) -> float:
        """Calculate and return the next backoff delay, incrementing the attempt counter."""
        delay = compute_retry_delay(
            self._attempt + 1,
            base_delay=self.base_delay,
            max_delay=self.max_delay,
            multiplier=self.multiplier,
        )
        # Add random jitter: +/- jitter_range fraction of delay
        jitter = delay * random.uniform(-self.jitter_range, self.jitter_range)
        delay = max(0, delay + jitter)
        self._attempt += 1
        return delay

    def reset(self) -> None:
        """Reset the attempt counter after a successful operation."""
        self._attempt = 0
