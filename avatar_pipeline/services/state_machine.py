"""Resumable per-persona pipeline.

Setup runs once per persona in a fixed order: upload the photo, create the avatar
group, resolve the renderable look, clone the voice and build the chat prompt. One
render is then submitted per script. Every provider call is preceded by a fresh read
of the record and followed by an immediate write, so a crash or a racing invocation
resumes at the first step whose result is still missing.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, List, Optional

from avatar_pipeline.clients.base import (
    PermanentProviderError,
    ProviderAdapter,
    ProviderUnavailable,
    TransientProviderError,
)
from avatar_pipeline.clients.elevenlabs import ElevenLabsClient
from avatar_pipeline.clients.openai_chat import OpenAIChatClient
from avatar_pipeline.models.api import PersonaOutcome
from avatar_pipeline.models.domain import PendingRender, PersonaRecord, PersonaStatus, utcnow
from avatar_pipeline.services.budget import InvocationBudget
from avatar_pipeline.services.reconciliation import ReconciliationWriter, snapshot
from avatar_pipeline.services.retry import call_with_retry
from avatar_pipeline.storage.repository import PersonaRepository, image_content_type, split_data_url

ACTIVE_STATUSES = (PersonaStatus.UPLOADED, PersonaStatus.PROCESSING)


@dataclass(frozen=True)
class SetupStep:
    name: str
    field: str
    run: Callable[[PersonaRecord], str]


@dataclass
class StepReport:
    record: PersonaRecord
    outcome: PersonaOutcome
    reason: Optional[str] = None
    notified: bool = False


def resolve_status(record: PersonaRecord) -> PersonaStatus:
    """Status implied by the render maps.

    While any script is still unsubmitted the current status is kept.
    """
    if record.is_complete():
        return PersonaStatus.READY
    if record.unresolved_keys():
        return record.status
    if not record.pending and record.failures:
        return PersonaStatus.PARTIAL
    return PersonaStatus.PROCESSING


class PipelineStateMachine:
    def __init__(
        self,
        repo: PersonaRepository,
        writer: ReconciliationWriter,
        likeness: ProviderAdapter,
        voice: ElevenLabsClient | None = None,
        chat: OpenAIChatClient | None = None,
        default_voice_id: str | None = None,
        retry_attempts: int = 2,
        retry_base_delay: float = 0.5,
        sleep: Callable[[float], None] | None = None,
        now: Callable[[], object] = utcnow,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.repo = repo
        self.writer = writer
        self.likeness = likeness
        self.voice = voice
        self.chat = chat
        self.default_voice_id = default_voice_id
        self.retry_attempts = retry_attempts
        self.retry_base_delay = retry_base_delay
        self._sleep = sleep
        self._now = now
        self.log = logger or logging.getLogger(__name__)
        self.setup_steps: List[SetupStep] = [
            SetupStep("upload_asset", "asset_handle", self._upload_asset),
            SetupStep("create_likeness_group", "group_handle", self._create_likeness_group),
            SetupStep("resolve_renderable_id", "renderable_id", self._resolve_renderable_id),
        ]

    def advance(self, key: str, record: PersonaRecord, budget: InvocationBudget) -> StepReport:
        """Move one persona forward as far as the budget allows.

        Provider errors are folded into the report; storage and parse errors propagate.
        """
        if record.status not in ACTIVE_STATUSES:
            return StepReport(record, PersonaOutcome.UNCHANGED)
        try:
            if record.status == PersonaStatus.UPLOADED or not self._setup_done(record):
                prepared = self._run_setup(key, record, budget)
                if prepared is None:
                    return StepReport(self._reload(key, record), PersonaOutcome.WAITING, "budget exhausted")
                record = prepared
            return self._submit_and_settle(key, record, budget)
        except ProviderUnavailable as exc:
            self.log.info("provider unavailable, persona left as is", extra={"persona_id": record.id, "error": str(exc)})
            return StepReport(self._reload(key, record), PersonaOutcome.PROVIDER_UNAVAILABLE, str(exc))
        except TransientProviderError as exc:
            self.log.warning("transient provider error, retry next pass", extra={"persona_id": record.id, "error": str(exc)})
            return StepReport(self._reload(key, record), PersonaOutcome.WAITING, str(exc))
        except PermanentProviderError as exc:
            self.log.error("setup rejected by provider", extra={"persona_id": record.id, "error": str(exc)})
            failed, notified = self._fail_unresolved(key, record, f"setup failed: {exc}")
            return StepReport(failed, PersonaOutcome.ADVANCED, str(exc), notified)

    # setup

    def _setup_done(self, record: PersonaRecord) -> bool:
        state = record.provider_state
        return all(getattr(state, step.field) for step in self.setup_steps)

    def _run_setup(self, key: str, record: PersonaRecord, budget: InvocationBudget) -> PersonaRecord | None:
        if not self.likeness.enabled():
            raise ProviderUnavailable("likeness provider is not configured")
        for step in self.setup_steps:
            if budget.exhausted():
                return None
            record = self._run_once(key, record, step.name, step.field, step.run, budget)
        if budget.exhausted():
            return None
        record = self._clone_voice(key, record, budget)
        return self._build_system_prompt(key, record)

    def _run_once(
        self,
        key: str,
        record: PersonaRecord,
        name: str,
        field: str,
        produce: Callable[[PersonaRecord], str],
        budget: InvocationBudget,
    ) -> PersonaRecord:
        fresh = self._reload(key, record)
        if getattr(fresh.provider_state, field):
            return fresh
        value = call_with_retry(
            lambda: produce(fresh),
            step=name,
            attempts=self.retry_attempts,
            base_delay=self.retry_base_delay,
            budget=budget,
            logger=self.log,
            **self._sleep_kwargs(),
        )
        latest = self._reload(key, fresh)
        if getattr(latest.provider_state, field):
            self.log.warning(
                "setup step raced, keeping stored result",
                extra={"persona_id": latest.id, "step": name, "discarded": value},
            )
            return latest
        baseline, previous = snapshot(latest), latest.status
        setattr(latest.provider_state, field, value)
        self.writer.commit(key, latest, baseline, previous)
        self.log.info("setup step completed", extra={"persona_id": latest.id, "step": name})
        return latest

    def _upload_asset(self, record: PersonaRecord) -> str:
        blob = self.repo.read_typed_blob(record.photo_key)
        if not blob or not blob[0]:
            inline = (record.model_extra or {}).get("image")
            blob = split_data_url(inline) if isinstance(inline, str) else None
        if not blob or not blob[0]:
            raise PermanentProviderError("persona has no photo")
        photo, declared = blob
        return self.likeness.upload_asset(photo, image_content_type(photo, declared))

    def _create_likeness_group(self, record: PersonaRecord) -> str:
        return self.likeness.create_likeness_group(record.provider_state.asset_handle, record.display_name or "DOP Avatar")

    def _resolve_renderable_id(self, record: PersonaRecord) -> str:
        return self.likeness.resolve_renderable_id(record.provider_state.group_handle)

    def _clone_voice(self, key: str, record: PersonaRecord, budget: InvocationBudget) -> PersonaRecord:
        state = record.provider_state
        if state.voice_handle or state.voice_clone_error or not record.voice_key:
            return record
        if self.voice is None or not self.voice.enabled():
            return record
        sample = self.repo.read_blob(record.voice_key)
        if not sample:
            self.log.warning("voice sample missing, using default voice", extra={"persona_id": record.id})
            return record
        try:
            return self._run_once(
                key,
                record,
                "clone_voice",
                "voice_handle",
                lambda fresh: self.voice.clone_voice(sample, fresh.display_name),
                budget,
            )
        except (PermanentProviderError, ProviderUnavailable) as exc:
            self.log.warning(
                "voice clone rejected, using default voice",
                extra={"persona_id": record.id, "error": str(exc)},
            )
            return self._record_voice_rejection(key, record, str(exc))

    def _record_voice_rejection(self, key: str, record: PersonaRecord, reason: str) -> PersonaRecord:
        latest = self._reload(key, record)
        state = latest.provider_state
        if state.voice_handle or state.voice_clone_error:
            return latest
        baseline, previous = snapshot(latest), latest.status
        state.voice_clone_error = reason[:300] or "voice clone rejected"
        self.writer.commit(key, latest, baseline, previous)
        return latest

    def _build_system_prompt(self, key: str, record: PersonaRecord) -> PersonaRecord:
        if record.system_prompt or self.chat is None:
            return record
        topics = [script.text for script in record.scripts]
        prompt = self.chat.build_persona_prompt(record.display_name, record.bio, topics)
        latest = self._reload(key, record)
        if latest.system_prompt:
            return latest
        baseline, previous = snapshot(latest), latest.status
        latest.system_prompt = prompt
        self.writer.commit(key, latest, baseline, previous)
        return latest

    # renders

    def _submit_and_settle(self, key: str, record: PersonaRecord, budget: InvocationBudget) -> StepReport:
        submitted = 0
        for script in record.scripts:
            if record.is_resolved(script.key):
                continue
            if budget.exhausted():
                return StepReport(self._reload(key, record), PersonaOutcome.WAITING, "budget exhausted")
            fresh = self._reload(key, record)
            if fresh.is_resolved(script.key):
                record = fresh
                continue
            record = self._submit_one(key, fresh, script.key, script.text, budget)
            submitted += 1

        latest = self._reload(key, record)
        baseline, previous = snapshot(latest), latest.status
        target = resolve_status(latest)
        if target == PersonaStatus.UPLOADED:
            target = PersonaStatus.PROCESSING
        latest.status = target
        result = self.writer.commit(key, latest, baseline, previous)
        changed = submitted > 0 or result.written
        outcome = PersonaOutcome.ADVANCED if changed else PersonaOutcome.UNCHANGED
        return StepReport(latest, outcome, notified=result.notified)

    def _submit_one(self, key: str, record: PersonaRecord, script_key: str, text: str, budget: InvocationBudget) -> PersonaRecord:
        voice_handle = record.provider_state.voice_handle or self.default_voice_id
        reason = None
        try:
            job_id = call_with_retry(
                lambda: self.likeness.submit_render(record.provider_state.renderable_id, voice_handle, text),
                step="submit_render",
                attempts=self.retry_attempts,
                base_delay=self.retry_base_delay,
                budget=budget,
                logger=self.log,
                **self._sleep_kwargs(),
            )
        except PermanentProviderError as exc:
            job_id, reason = None, str(exc)

        latest = self._reload(key, record)
        if latest.is_resolved(script_key):
            self.log.warning(
                "render submission raced, job left orphaned",
                extra={"persona_id": latest.id, "script_key": script_key, "job_id": job_id},
            )
            return latest
        baseline, previous = snapshot(latest), latest.status
        if job_id:
            latest.pending[script_key] = PendingRender(job_id=job_id, started_at=self._now())
            self.log.info("render submitted", extra={"persona_id": latest.id, "script_key": script_key, "job_id": job_id})
        else:
            latest.failures[script_key] = reason or "render submission returned no job id"
            self.log.warning("render submission failed", extra={"persona_id": latest.id, "script_key": script_key})
        self.writer.commit(key, latest, baseline, previous)
        return latest

    def _fail_unresolved(self, key: str, record: PersonaRecord, reason: str) -> tuple[PersonaRecord, bool]:
        latest = self._reload(key, record)
        baseline, previous = snapshot(latest), latest.status
        for script_key in latest.unresolved_keys():
            latest.failures[script_key] = reason
        latest.status = resolve_status(latest)
        if latest.status == PersonaStatus.UPLOADED:
            latest.status = PersonaStatus.PROCESSING
        result = self.writer.commit(key, latest, baseline, previous)
        return latest, result.notified

    def _reload(self, key: str, fallback: PersonaRecord | None) -> PersonaRecord:
        fresh = self.repo.load(key)
        if fresh is not None:
            return fresh
        if fallback is None:
            raise LookupError(f"persona {key} disappeared from the store")
        return fallback

    def _sleep_kwargs(self) -> dict:
        return {"sleep": self._sleep} if self._sleep is not None else {}
