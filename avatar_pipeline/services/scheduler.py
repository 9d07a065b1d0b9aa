from __future__ import annotations

import logging
from collections import Counter, defaultdict
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Tuple

from avatar_pipeline.clients.object_store import StorageError
from avatar_pipeline.models.api import PersonaOutcome, PersonaResult, ProcessResponse, ProcessSummary, ScheduleMode
from avatar_pipeline.models.domain import PersonaRecord, PersonaStatus
from avatar_pipeline.services.budget import InvocationBudget
from avatar_pipeline.services.poller import PollOutcome, RenderPoller
from avatar_pipeline.services.reconciliation import ReconciliationWriter, snapshot
from avatar_pipeline.services.state_machine import ACTIVE_STATUSES, PipelineStateMachine, resolve_status
from avatar_pipeline.storage.repository import MalformedRecordError, PersonaRepository

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass
class _Candidate:
    key: str
    created_at: datetime
    last_modified: datetime
    record: Optional[PersonaRecord] = None
    error: Optional[MalformedRecordError] = None


class TimeBoxedScheduler:
    """Drives every persona in the store forward within one invocation budget.

    Phase one visits personas newest first and runs setup and render submission. Phase two
    polls the in-flight renders of the visited personas through a shared limiter and writes
    the reconciled records. No persona is started once the budget minus the safety margin
    has elapsed.
    """

    def __init__(
        self,
        repo: PersonaRepository,
        machine: PipelineStateMachine,
        poller: RenderPoller,
        writer: ReconciliationWriter,
        budgets: Dict[ScheduleMode, float],
        safety_margin_seconds: float,
        max_sort_candidates: int = 500,
        poll_reserve_fraction: float = 0.25,
        clock: Callable[[], float] | None = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.repo = repo
        self.machine = machine
        self.poller = poller
        self.writer = writer
        self.budgets = budgets
        self.safety_margin_seconds = safety_margin_seconds
        self.max_sort_candidates = max_sort_candidates
        self.poll_reserve_fraction = poll_reserve_fraction
        self._clock = clock
        self.log = logger or logging.getLogger(__name__)

    def new_budget(self, mode: ScheduleMode) -> InvocationBudget:
        kwargs = {"clock": self._clock} if self._clock is not None else {}
        return InvocationBudget(self.budgets[mode], self.safety_margin_seconds, **kwargs)

    def run(self, mode: ScheduleMode = ScheduleMode.QUICK) -> ProcessResponse:
        """One invocation. Raises ``StorageError`` only when the persona listing fails."""
        budget = self.new_budget(mode)
        listing = self.repo.list_keys()
        candidates = self._prioritize(listing, budget)
        self.log.info("orchestrator pass started", extra={"mode": mode.value, "candidates": len(candidates)})

        reserve = self.poll_reserve_fraction * max(0.0, budget.budget_seconds - budget.safety_margin_seconds)
        results: Dict[str, PersonaResult] = {}
        final: Dict[str, PersonaRecord] = {}
        budget_exhausted = False
        for candidate in candidates:
            if budget.elapsed() >= budget.budget_seconds - budget.safety_margin_seconds - reserve:
                budget_exhausted = True
                break
            result, record = self._visit(candidate, budget)
            results[candidate.key] = result
            if record is not None:
                final[candidate.key] = record

        self._poll_phase(final, results, budget)
        if budget.exhausted():
            budget_exhausted = True

        summary = self._summarize(final, results, budget_exhausted, len(candidates) - len(results))
        self.log.info(
            "orchestrator pass finished",
            extra={
                "mode": mode.value,
                "processed": len(results),
                "elapsed_ms": budget.elapsed_ms(),
                "budget_exhausted": budget_exhausted,
            },
        )
        return ProcessResponse(
            mode=mode,
            processed=len(results),
            elapsed=budget.elapsed_ms(),
            summary=summary,
            results=list(results.values()),
        )

    def _prioritize(self, listing: List[Tuple[str, Optional[datetime]]], budget: InvocationBudget) -> List[_Candidate]:
        """Newest first by creation time; only the first ``max_sort_candidates`` keys are read for it."""
        by_recency = sorted(listing, key=lambda item: (_aware(item[1]), item[0]), reverse=True)
        head, tail = by_recency[: self.max_sort_candidates], by_recency[self.max_sort_candidates :]
        loaded: List[_Candidate] = []
        for index, (key, modified) in enumerate(head):
            if budget.exhausted():
                tail = head[index:] + tail
                break
            candidate = _Candidate(key=key, created_at=_EPOCH, last_modified=_aware(modified))
            try:
                candidate.record = self.repo.load(key)
            except MalformedRecordError as exc:
                candidate.error = exc
            except StorageError as exc:
                candidate.error = MalformedRecordError(key, f"unreadable: {exc}")
            if candidate.record is not None and candidate.record.created_at is not None:
                candidate.created_at = candidate.record.created_at
            loaded.append(candidate)
        loaded.sort(key=lambda c: (c.created_at, c.last_modified, c.key), reverse=True)
        return loaded + [_Candidate(key=key, created_at=_EPOCH, last_modified=_aware(modified)) for key, modified in tail]

    def _visit(self, candidate: _Candidate, budget: InvocationBudget) -> Tuple[PersonaResult, Optional[PersonaRecord]]:
        key = candidate.key
        if candidate.error is not None:
            self.log.warning("persona skipped", extra={"key": key, "reason": candidate.error.reason})
            return PersonaResult(key=key, outcome=PersonaOutcome.SKIPPED, reason=candidate.error.reason), None
        try:
            record = candidate.record if candidate.record is not None else self.repo.load(key)
            if record is None:
                return PersonaResult(key=key, outcome=PersonaOutcome.SKIPPED, reason="missing blob"), None
            if not record.scripts:
                return self._mark_invalid(key, record), record
            report = self.machine.advance(key, record, budget)
        except MalformedRecordError as exc:
            self.log.warning("persona skipped", extra={"key": key, "reason": exc.reason})
            return PersonaResult(key=key, outcome=PersonaOutcome.SKIPPED, reason=exc.reason), None
        except Exception as exc:
            self.log.exception("persona processing failed", extra={"key": key})
            return PersonaResult(key=key, outcome=PersonaOutcome.ERROR, reason=str(exc)), None
        return (
            PersonaResult(
                key=key,
                persona_id=report.record.id,
                status=report.record.status.value,
                outcome=report.outcome,
                reason=report.reason,
                notified=report.notified,
            ),
            report.record,
        )

    def _mark_invalid(self, key: str, record: PersonaRecord) -> PersonaResult:
        if record.status != PersonaStatus.ERROR:
            baseline, previous = snapshot(record), record.status
            record.status = PersonaStatus.ERROR
            self.writer.commit(key, record, baseline, previous)
        return PersonaResult(
            key=key,
            persona_id=record.id,
            status=record.status.value,
            outcome=PersonaOutcome.ERROR,
            reason="record has no scripts",
        )

    def _poll_phase(self, final: Dict[str, PersonaRecord], results: Dict[str, PersonaResult], budget: InvocationBudget) -> None:
        targets = []
        for key, record in final.items():
            if record.status in ACTIVE_STATUSES and record.pending:
                targets.extend(self.poller.targets(key, record))
        if not targets:
            return
        grouped: Dict[str, List[PollOutcome]] = defaultdict(list)
        for outcome in self.poller.poll(targets, budget):
            grouped[outcome.target.record_key].append(outcome)
        for key, outcomes in grouped.items():
            try:
                record = self.repo.load(key)
                if record is None:
                    continue
                baseline, previous = snapshot(record), record.status
                self.poller.apply(record, outcomes)
                if record.status in ACTIVE_STATUSES:
                    record.status = resolve_status(record)
                commit = self.writer.commit(key, record, baseline, previous)
            except MalformedRecordError as exc:
                self.log.warning("persona skipped during reconciliation", extra={"key": key, "reason": exc.reason})
                continue
            except Exception:
                self.log.exception("persona reconciliation failed", extra={"key": key})
                continue
            final[key] = record
            result = results[key]
            result.status = record.status.value
            result.notified = result.notified or commit.notified
            if commit.written and result.outcome in (PersonaOutcome.UNCHANGED, PersonaOutcome.WAITING):
                result.outcome = PersonaOutcome.ADVANCED

    def _summarize(
        self,
        final: Dict[str, PersonaRecord],
        results: Dict[str, PersonaResult],
        budget_exhausted: bool,
        not_visited: int,
    ) -> ProcessSummary:
        counts = Counter(record.status.value for record in final.values())
        return ProcessSummary(
            status_counts=dict(counts),
            videos_completed=sum(len(record.renders) for record in final.values()),
            videos_failed=sum(len(record.failures) for record in final.values()),
            videos_pending=sum(len(record.pending) for record in final.values()),
            skipped=sum(1 for result in results.values() if result.outcome == PersonaOutcome.SKIPPED),
            budget_exhausted=budget_exhausted,
            not_visited=not_visited,
        )


def _aware(value: Optional[datetime]) -> datetime:
    if value is None:
        return _EPOCH
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
