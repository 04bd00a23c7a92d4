"""Clock sources for the limiter."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable

Clock = Callable[[], float]

monotonic: Clock = time.monotonic


@dataclass
class ManualClock:
    """Settable clock for tests and simulations."""

    t: float = 0.0

    def __call__(self) -> float:
        return self.t

    def advance(self, seconds: float) -> float:
        self.t += seconds
        return self.t

    def set(self, t: float) -> None:
        self.t = float(t)
