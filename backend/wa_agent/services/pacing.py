from __future__ import annotations

import random
import time
from typing import Callable, Optional, Protocol


class DelayStrategy(Protocol):
    def delay_before_send(self, min_ms: int, max_ms: int) -> float:
        """Suspend before dispatch; returns the delay applied, in seconds."""
        ...


class RandomDelay:
    def __init__(
        self,
        *,
        sleep: Callable[[float], None] = time.sleep,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._sleep = sleep
        self._rng = rng or random.Random()

    def delay_before_send(self, min_ms: int, max_ms: int) -> float:
        low = max(0, min_ms)
        high = max(low, max_ms)
        seconds = self._rng.randint(low, high) / 1000.0
        if seconds > 0:
            self._sleep(seconds)
        return seconds


class NoDelay:
    def delay_before_send(self, min_ms: int, max_ms: int) -> float:
        return 0.0
