from __future__ import annotations

import logging
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Tuple, TypeVar

from avatar_pipeline.clients.base import ProviderAdapter, ProviderError, RenderStatus
from avatar_pipeline.models.domain import PersonaRecord, RenderResult, utcnow
from avatar_pipeline.services.budget import InvocationBudget

T = TypeVar("T")
R = TypeVar("R")

RENDER_TIMEOUT_REASON = "render timed out"


class ConcurrencyLimiter:
    """Runs calls on a small thread pool, never more than ``max_concurrency`` at once.

    A call is only dispatched while the budget has time left. Calls still running when
    the budget runs out are abandoned; their results are dropped.
    """

    def __init__(self, max_concurrency: int) -> None:
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self.max_concurrency = max_concurrency

    def map(
        self,
        func: Callable[[T], R],
        items: Iterable[T],
        budget: InvocationBudget,
    ) -> Tuple[Dict[int, R | BaseException], int]:
        """Return per-index results (or raised exceptions) and how many items were never started."""
        queue = list(items)
        results: Dict[int, R | BaseException] = {}
        in_flight: Dict[Future, int] = {}
        next_index = 0
        executor = ThreadPoolExecutor(max_workers=self.max_concurrency, thread_name_prefix="render-poll")
        try:
            while next_index < len(queue) or in_flight:
                while next_index < len(queue) and len(in_flight) < self.max_concurrency and not budget.exhausted():
                    in_flight[executor.submit(func, queue[next_index])] = next_index
                    next_index += 1
                if not in_flight:
                    break
                done, _ = wait(list(in_flight), timeout=budget.remaining(), return_when=FIRST_COMPLETED)
                if not done:
                    break
                for future in done:
                    index = in_flight.pop(future)
                    error = future.exception()
                    results[index] = error if error is not None else future.result()
        finally:
            for future in in_flight:
                future.cancel()
            executor.shutdown(wait=False, cancel_futures=True)
        return results, len(queue) - next_index


class PollResult(str, Enum):
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TRANSIENT = "transient"
    EXPIRED = "expired"
    NOT_POLLED = "not_polled"


@dataclass(frozen=True)
class PollTarget:
    record_key: str
    script_key: str
    job_id: str
    started_at: datetime


@dataclass
class PollOutcome:
    target: PollTarget
    result: PollResult
    status: Optional[RenderStatus] = None
    reason: Optional[str] = None


class RenderPoller:
    """Checks in-flight renders of a whole batch through one shared limiter."""

    def __init__(
        self,
        likeness: ProviderAdapter,
        limiter: ConcurrencyLimiter,
        max_pending_age_seconds: float | None = None,
        now: Callable[[], datetime] = utcnow,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.likeness = likeness
        self.limiter = limiter
        self.max_pending_age_seconds = max_pending_age_seconds
        self._now = now
        self.log = logger or logging.getLogger(__name__)

    def targets(self, record_key: str, record: PersonaRecord) -> List[PollTarget]:
        return [
            PollTarget(record_key, script_key, entry.job_id, entry.started_at)
            for script_key, entry in record.pending.items()
        ]

    def poll(self, targets: List[PollTarget], budget: InvocationBudget) -> List[PollOutcome]:
        if not targets:
            return []
        if not self.likeness.enabled():
            return [PollOutcome(target, PollResult.NOT_POLLED, reason="provider unavailable") for target in targets]
        raw, not_started = self.limiter.map(lambda target: self.likeness.poll_render(target.job_id), targets, budget)
        if not_started:
            self.log.info("render polling stopped by budget", extra={"not_polled": not_started})
        return [self._classify(target, raw.get(index)) for index, target in enumerate(targets)]

    def _classify(self, target: PollTarget, raw: RenderStatus | BaseException | None) -> PollOutcome:
        if raw is None:
            return PollOutcome(target, PollResult.NOT_POLLED)
        if isinstance(raw, BaseException):
            if not isinstance(raw, ProviderError):
                self.log.error(
                    "render poll crashed",
                    extra={"job_id": target.job_id, "error": repr(raw)},
                )
            outcome = PollOutcome(target, PollResult.TRANSIENT, reason=str(raw))
        elif raw.terminal and raw.succeeded and raw.url:
            return PollOutcome(target, PollResult.SUCCEEDED, status=raw)
        elif raw.terminal:
            return PollOutcome(target, PollResult.FAILED, status=raw, reason=raw.reason or "render failed")
        else:
            outcome = PollOutcome(target, PollResult.RUNNING, status=raw)
        if self._expired(target):
            return PollOutcome(target, PollResult.EXPIRED, reason=RENDER_TIMEOUT_REASON)
        return outcome

    def _expired(self, target: PollTarget) -> bool:
        if not self.max_pending_age_seconds:
            return False
        age = (self._now() - target.started_at).total_seconds()
        return age > self.max_pending_age_seconds

    def apply(self, record: PersonaRecord, outcomes: Iterable[PollOutcome]) -> bool:
        """Fold terminal outcomes into ``record``. Entries whose job id changed meanwhile are left alone."""
        changed = False
        for outcome in outcomes:
            script_key = outcome.target.script_key
            entry = record.pending.get(script_key)
            if entry is None or entry.job_id != outcome.target.job_id:
                continue
            if outcome.result == PollResult.SUCCEEDED:
                status = outcome.status
                record.renders[script_key] = RenderResult(
                    url=status.url,
                    thumbnail_url=status.thumbnail_url,
                    duration_seconds=status.duration_seconds,
                )
            elif outcome.result in (PollResult.FAILED, PollResult.EXPIRED):
                record.failures[script_key] = outcome.reason or "render failed"
            else:
                continue
            del record.pending[script_key]
            changed = True
            self.log.info(
                "render finished",
                extra={
                    "persona_id": record.id,
                    "script_key": script_key,
                    "job_id": entry.job_id,
                    "result": outcome.result.value,
                },
            )
        return changed
