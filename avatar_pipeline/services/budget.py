from __future__ import annotations

import time
from typing import Callable


class InvocationBudget:
    """Wall-clock budget of one orchestrator invocation.

    No new unit of work may start once ``budget - safety_margin`` seconds have elapsed.
    """

    def __init__(
        self,
        budget_seconds: float,
        safety_margin_seconds: float = 0.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if budget_seconds <= 0:
            raise ValueError("budget_seconds must be positive")
        self.budget_seconds = budget_seconds
        self.safety_margin_seconds = max(0.0, safety_margin_seconds)
        self._clock = clock
        self._started = clock()

    def elapsed(self) -> float:
        return self._clock() - self._started

    def elapsed_ms(self) -> int:
        return int(self.elapsed() * 1000)

    def remaining(self) -> float:
        return max(0.0, self.budget_seconds - self.safety_margin_seconds - self.elapsed())

    def exhausted(self) -> bool:
        return self.elapsed() >= self.budget_seconds - self.safety_margin_seconds
