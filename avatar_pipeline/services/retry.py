from __future__ import annotations

import logging
import random
import time
from typing import Callable, Optional, TypeVar

from avatar_pipeline.clients.base import TransientProviderError
from avatar_pipeline.services.budget import InvocationBudget

T = TypeVar("T")

JITTER_MAX = 0.25


def call_with_retry(
    operation: Callable[[], T],
    *,
    step: str,
    attempts: int,
    base_delay: float,
    budget: InvocationBudget | None = None,
    sleep: Callable[[float], None] = time.sleep,
    logger: Optional[logging.Logger] = None,
) -> T:
    """Run a provider call, retrying transient failures with exponential backoff.

    Permanent errors propagate immediately. The last transient error propagates once
    the attempts are used up or the next delay would overrun the budget.
    """
    log = logger or logging.getLogger(__name__)
    total = max(1, attempts + 1)
    for attempt in range(total):
        try:
            return operation()
        except TransientProviderError as exc:
            if attempt + 1 >= total:
                raise
            delay = base_delay * (2 ** attempt) + random.uniform(0, JITTER_MAX)
            if budget is not None and delay >= budget.remaining():
                log.info(
                    "retry skipped, budget too small",
                    extra={"step": step, "attempt": attempt + 1, "remaining": budget.remaining()},
                )
                raise
            log.warning(
                "transient provider error, retrying",
                extra={"step": step, "attempt": attempt + 1, "delay": round(delay, 2), "error": str(exc)},
            )
            sleep(delay)
    raise AssertionError("unreachable")  # pragma: no cover
