"""
Exponential Backoff

Retry delays grow geometrically from an initial value up to a cap, with a
random jitter fraction taken off each delay so many clients do not retry in
lockstep.
"""

import random
from dataclasses import dataclass, field
from typing import Callable


@dataclass
class ExponentialBackoff:
    """
    Attributes:
        initial: First delay in seconds
        maximum: Upper bound for any delay
        multiplier: Growth factor between consecutive attempts
        jitter: Fraction (0..1) of each delay that is randomized away
    """

    initial: float = 1.0
    maximum: float = 60.0
    multiplier: float = 2.0
    jitter: float = 0.5
    rand: Callable[[], float] = field(default=random.random, repr=False)
    attempts: int = 0

    def next_delay(self) -> float:
        """Delay before the next retry; advances the attempt counter."""
        base = min(self.maximum, self.initial * (self.multiplier ** self.attempts))
        self.attempts += 1
        return base * (1.0 - self.jitter * self.rand())

    def reset(self) -> None:
        self.attempts = 0
