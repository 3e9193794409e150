import random
from dataclasses import dataclass
from typing import Callable


@dataclass(frozen=True)
class RetryPolicy:
    base_seconds: float = 1.0
    cap_seconds: float = 60.0
    max_attempts: int = 8

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_seconds < 0 or self.cap_seconds < self.base_seconds:
            raise ValueError("backoff requires 0 <= base_seconds <= cap_seconds")

    def is_exhausted(self, attempts: int) -> bool:
        return attempts >= self.max_attempts

    def ceiling_for(self, attempt: int) -> float:
        exponent = max(attempt, 1) - 1
        # 2**64 seconds is already far past any cap
        if exponent >= 64:
            return self.cap_seconds
        return min(self.cap_seconds, self.base_seconds * (2**exponent))

    def delay_for(self, attempt: int, rng: Callable[[], float] = random.random) -> float:
        ceiling = self.ceiling_for(attempt)
        half = ceiling / 2
        return half + rng() * half
