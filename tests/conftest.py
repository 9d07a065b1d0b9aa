import json
import threading
import time
from collections import Counter
from datetime import datetime, timezone

import pytest

from avatar_pipeline.clients.base import ProviderAdapter, RenderStatus
from avatar_pipeline.clients.object_store import ObjectStore
from avatar_pipeline.clients.openai_chat import OpenAIChatClient
from avatar_pipeline.events.notifier import ReadyNotifier
from avatar_pipeline.models.api import ScheduleMode
from avatar_pipeline.models.domain import PersonaRecord, utcnow
from avatar_pipeline.services.poller import ConcurrencyLimiter, RenderPoller
from avatar_pipeline.services.reconciliation import ReconciliationWriter
from avatar_pipeline.services.scheduler import TimeBoxedScheduler
from avatar_pipeline.services.state_machine import PipelineStateMachine
from avatar_pipeline.storage.repository import PersonaRepository

PHOTO = b"\xff\xd8\xff\xe0fake-jpeg"


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeLikeness(ProviderAdapter):
    """In-process likeness provider that counts billable calls."""

    def __init__(self, clock: FakeClock | None = None, call_cost: float = 0.0) -> None:
        self.calls = Counter()
        self.call_times = []
        self.statuses = {}
        self.errors = {}
        self.hooks = {}
        self.is_enabled = True
        self.submitted = []
        self.uploaded_types = []
        self.texts_without_job = set()
        self.nth_call_errors = {}
        self._clock = clock
        self._call_cost = call_cost
        self._serial = Counter()
        self._lock = threading.Lock()

    def enabled(self) -> bool:
        return self.is_enabled

    def upload_asset(self, data, content_type="image/jpeg"):
        self._enter("upload_asset")
        self.uploaded_types.append(content_type)
        return self._next("asset")

    def create_likeness_group(self, asset_handle, display_name):
        self._enter("create_likeness_group")
        return self._next("group")

    def resolve_renderable_id(self, group_handle):
        self._enter("resolve_renderable_id")
        return self._next("look")

    def submit_render(self, renderable_id, voice_handle, script_text):
        self._enter("submit_render")
        self.submitted.append((renderable_id, voice_handle, script_text))
        if script_text in self.texts_without_job:
            return None
        return self._next("job")

    def poll_render(self, job_id):
        self._enter("poll_render")
        return self.statuses.get(job_id, RenderStatus(terminal=False))

    def _enter(self, name):
        with self._lock:
            self.calls[name] += 1
            if self._clock is not None:
                self.call_times.append(self._clock())
                self._clock.advance(self._call_cost)
            error = self.errors.get(name) or self.nth_call_errors.get((name, self.calls[name]))
        if error is not None:
            raise error
        hook = self.hooks.pop(name, None)
        if hook is not None:
            hook()

    def _next(self, prefix):
        with self._lock:
            self._serial[prefix] += 1
            return f"{prefix}-{self._serial[prefix]}"


class FakeVoice:
    def __init__(self, voice_id="voice-clone-1", error=None):
        self.voice_id = voice_id
        self.error = error
        self.samples = []

    def enabled(self):
        return True

    def clone_voice(self, sample, name, content_type="audio/mpeg"):
        self.samples.append(sample)
        if self.error is not None:
            raise self.error
        return self.voice_id


class RecordingNotifier(ReadyNotifier):
    def __init__(self, error=None):
        self.calls = []
        self.error = error

    def notify_ready(self, entity_id, contact_address, display_name):
        if self.error is not None:
            raise self.error
        self.calls.append((entity_id, contact_address, display_name))


@pytest.fixture
def store():
    return ObjectStore(bucket="", access_key=None, secret_key=None)


@pytest.fixture
def repo(store):
    return PersonaRepository(store)


@pytest.fixture
def likeness():
    return FakeLikeness()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def seed(store):
    """Store a persona record (and its photo) and return its key."""

    def _seed(persona_id, scripts=("fun",), photo=True, **fields):
        payload = {
            "id": persona_id,
            "status": "uploaded",
            "name": f"Persona {persona_id}",
            "ownerEmail": f"{persona_id}@example.com",
            "scripts": [{"key": key, "text": f"Tell me about {key}"} for key in scripts],
            "createdAt": datetime(2024, 5, 1, tzinfo=timezone.utc).isoformat(),
        }
        if photo:
            payload["photoKey"] = f"uploads/{persona_id}/photo.jpg"
            store.set(payload["photoKey"], PHOTO, content_type="image/jpeg")
        payload.update(fields)
        key = f"personas/{persona_id}.json"
        store.set(key, json.dumps(payload).encode("utf-8"))
        return key

    return _seed


@pytest.fixture
def load(repo):
    def _load(key) -> PersonaRecord:
        return repo.load(key)

    return _load


@pytest.fixture
def build(store, likeness, notifier):
    """Assemble a scheduler over the in-memory store with fake providers."""

    def _build(
        *,
        voice=None,
        clock=None,
        budget=25.0,
        margin=0.0,
        reserve=0.0,
        now=utcnow,
        max_pending_age=None,
        retry_attempts=0,
        concurrency=2,
        provider=None,
    ):
        provider = provider or likeness
        repo = PersonaRepository(store)
        writer = ReconciliationWriter(repo, notifier)
        machine = PipelineStateMachine(
            repo=repo,
            writer=writer,
            likeness=provider,
            voice=voice,
            chat=OpenAIChatClient(api_key=None),
            default_voice_id="default-voice",
            retry_attempts=retry_attempts,
            retry_base_delay=0.01,
            sleep=lambda _delay: None,
            now=now,
        )
        poller = RenderPoller(
            likeness=provider,
            limiter=ConcurrencyLimiter(concurrency),
            max_pending_age_seconds=max_pending_age,
            now=now,
        )
        return TimeBoxedScheduler(
            repo=repo,
            machine=machine,
            poller=poller,
            writer=writer,
            budgets={ScheduleMode.QUICK: budget, ScheduleMode.SWEEP: budget * 4},
            safety_margin_seconds=margin,
            poll_reserve_fraction=reserve,
            clock=clock or time.monotonic,
        )

    return _build


def assert_keys_exclusive(record: PersonaRecord) -> None:
    for key in record.script_keys():
        homes = [key in record.renders, key in record.pending, key in record.failures]
        assert sum(homes) <= 1, f"script {key} is in more than one map"
