from __future__ import annotations

import logging

from fastapi import Depends, FastAPI, Header, Query
from fastapi.responses import JSONResponse

from avatar_pipeline.clients.base import ProviderAdapter
from avatar_pipeline.clients.elevenlabs import ElevenLabsClient
from avatar_pipeline.clients.heygen import HeyGenClient
from avatar_pipeline.clients.object_store import ObjectStore, StorageError
from avatar_pipeline.clients.openai_chat import OpenAIChatClient
from avatar_pipeline.config import Settings, get_settings
from avatar_pipeline.events.notifier import KafkaReadyNotifier, LoggingNotifier, ReadyNotifier
from avatar_pipeline.models.api import HealthResponse, ProcessResponse, ScheduleMode
from avatar_pipeline.services.poller import ConcurrencyLimiter, RenderPoller
from avatar_pipeline.services.reconciliation import ReconciliationWriter
from avatar_pipeline.services.scheduler import TimeBoxedScheduler
from avatar_pipeline.services.state_machine import PipelineStateMachine
from avatar_pipeline.storage.repository import PersonaRepository

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)

log = logging.getLogger(__name__)

app = FastAPI()

_scheduler: TimeBoxedScheduler | None = None


def build_store(settings: Settings) -> ObjectStore:
    return ObjectStore(
        bucket=settings.s3_bucket,
        access_key=settings.s3_access_key,
        secret_key=settings.s3_secret_key,
        endpoint_url=settings.s3_endpoint_url,
        region_name=settings.s3_region,
        addressing_style=settings.s3_addressing_style,
    )


def build_notifier(settings: Settings) -> ReadyNotifier:
    if settings.kafka_enabled:
        return KafkaReadyNotifier(
            bootstrap_servers=settings.kafka_bootstrap_servers,
            topic=settings.kafka_ready_topic,
            public_url=settings.public_url,
        )
    return LoggingNotifier(public_url=settings.public_url)


def build_scheduler(
    settings: Settings,
    store: ObjectStore | None = None,
    likeness: ProviderAdapter | None = None,
    voice: ElevenLabsClient | None = None,
    chat: OpenAIChatClient | None = None,
    notifier: ReadyNotifier | None = None,
) -> TimeBoxedScheduler:
    repo = PersonaRepository(store or build_store(settings), prefix=settings.persona_prefix)
    likeness = likeness or HeyGenClient(
        api_key=settings.heygen_api_key,
        base_url=settings.heygen_base_url,
        upload_url=settings.heygen_upload_url,
        timeout=settings.provider_timeout,
    )
    voice = voice or ElevenLabsClient(
        api_key=settings.elevenlabs_api_key,
        base_url=settings.elevenlabs_base_url,
        timeout=settings.provider_timeout,
    )
    chat = chat or OpenAIChatClient(
        api_key=settings.openai_api_key,
        model=settings.openai_model,
        base_url=settings.openai_base_url,
        timeout=settings.provider_timeout,
    )
    writer = ReconciliationWriter(repo, notifier or build_notifier(settings))
    machine = PipelineStateMachine(
        repo=repo,
        writer=writer,
        likeness=likeness,
        voice=voice,
        chat=chat,
        default_voice_id=settings.default_voice_id,
        retry_attempts=settings.provider_retry_attempts,
        retry_base_delay=settings.provider_retry_base_delay,
    )
    poller = RenderPoller(
        likeness=likeness,
        limiter=ConcurrencyLimiter(settings.poll_concurrency),
        max_pending_age_seconds=settings.max_pending_age_seconds,
    )
    return TimeBoxedScheduler(
        repo=repo,
        machine=machine,
        poller=poller,
        writer=writer,
        budgets={
            ScheduleMode.QUICK: settings.quick_budget_seconds,
            ScheduleMode.SWEEP: settings.sweep_budget_seconds,
        },
        safety_margin_seconds=settings.safety_margin_seconds,
        max_sort_candidates=settings.max_sort_candidates,
        poll_reserve_fraction=settings.poll_reserve_fraction,
    )


def get_scheduler(settings: Settings = Depends(get_settings)) -> TimeBoxedScheduler:
    global _scheduler
    if _scheduler is None:
        _scheduler = build_scheduler(settings)
    return _scheduler


def resolve_mode(query_mode: ScheduleMode | None, header_mode: str | None) -> ScheduleMode:
    if query_mode is not None:
        return query_mode
    if header_mode and header_mode.strip().lower() in (ScheduleMode.SWEEP.value, "schedule", "scheduled"):
        return ScheduleMode.SWEEP
    return ScheduleMode.QUICK


@app.api_route("/process", methods=["GET", "POST"], response_model=ProcessResponse)
def process_personas(
    mode: ScheduleMode | None = Query(default=None),
    x_schedule_mode: str | None = Header(default=None, alias="X-Schedule-Mode"),
    scheduler: TimeBoxedScheduler = Depends(get_scheduler),
):
    try:
        return scheduler.run(resolve_mode(mode, x_schedule_mode))
    except StorageError as exc:
        log.error("persona listing failed", extra={"error": str(exc)})
        return JSONResponse(status_code=500, content={"error": "processor_failed", "message": str(exc)})


@app.get("/health", response_model=HealthResponse)
def health(settings: Settings = Depends(get_settings)) -> HealthResponse:
    return HealthResponse(
        providers={
            "likeness": bool(settings.heygen_api_key),
            "voice": bool(settings.elevenlabs_api_key),
            "chat": bool(settings.openai_api_key),
            "store": bool(settings.s3_bucket and settings.s3_access_key and settings.s3_secret_key),
        }
    )
