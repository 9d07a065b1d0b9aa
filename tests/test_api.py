from fastapi.testclient import TestClient

from avatar_pipeline.clients.object_store import ObjectStore, StorageError
from avatar_pipeline.config import Settings, get_settings
from avatar_pipeline.events.notifier import LoggingNotifier
from avatar_pipeline.main import app, build_notifier, build_scheduler, get_scheduler, resolve_mode
from avatar_pipeline.models.api import ScheduleMode

from conftest import FakeLikeness, RecordingNotifier


client = TestClient(app)


class BrokenStore(ObjectStore):
    def list(self, prefix=None):
        raise StorageError("S3 list failed: access denied")


def _use_scheduler(store, likeness, notifier):
    scheduler = build_scheduler(Settings(), store=store, likeness=likeness, notifier=notifier)
    app.dependency_overrides[get_scheduler] = lambda: scheduler
    return scheduler


def test_process_runs_a_pass(store, seed):
    seed("p1")
    likeness = FakeLikeness()
    _use_scheduler(store, likeness, RecordingNotifier())
    try:
        resp = client.post("/process")
    finally:
        app.dependency_overrides.clear()

    assert resp.status_code == 200
    body = resp.json()
    assert body["mode"] == "quick"
    assert body["processed"] == 1
    assert isinstance(body["elapsed"], int)
    assert body["summary"]["statusCounts"] == {"processing": 1}
    assert body["summary"]["videosPending"] == 1
    assert body["summary"]["budgetExhausted"] is False
    assert body["results"][0]["personaId"] == "p1"
    assert likeness.calls["submit_render"] == 1


def test_schedule_header_selects_sweep(store):
    _use_scheduler(store, FakeLikeness(), RecordingNotifier())
    try:
        header_resp = client.get("/process", headers={"X-Schedule-Mode": "sweep"})
        query_resp = client.get("/process", params={"mode": "sweep"})
    finally:
        app.dependency_overrides.clear()

    assert header_resp.status_code == 200
    assert header_resp.json()["mode"] == "sweep"
    assert query_resp.json()["mode"] == "sweep"
    assert header_resp.json()["processed"] == 0


def test_listing_failure_returns_500():
    broken = BrokenStore(bucket="", access_key=None, secret_key=None)
    _use_scheduler(broken, FakeLikeness(), RecordingNotifier())
    try:
        resp = client.post("/process")
    finally:
        app.dependency_overrides.clear()

    assert resp.status_code == 500
    assert resp.json() == {"error": "processor_failed", "message": "S3 list failed: access denied"}


def test_health_reports_configured_providers():
    app.dependency_overrides[get_settings] = lambda: Settings(heygen_api_key="hg-key", openai_api_key="")
    try:
        resp = client.get("/health")
    finally:
        app.dependency_overrides.clear()

    assert resp.status_code == 200
    providers = resp.json()["providers"]
    assert providers["likeness"] is True
    assert providers["chat"] is False


def test_resolve_mode():
    assert resolve_mode(None, None) == ScheduleMode.QUICK
    assert resolve_mode(None, "Sweep") == ScheduleMode.SWEEP
    assert resolve_mode(ScheduleMode.QUICK, "sweep") == ScheduleMode.QUICK


def test_default_notifier_logs_the_chat_link():
    notifier = build_notifier(Settings(kafka_enabled=False, public_url="https://dop.example.com/"))

    assert isinstance(notifier, LoggingNotifier)
    assert notifier.chat_url("p1") == "https://dop.example.com/chat.html?id=p1"
