from __future__ import annotations

import pytest

from jobsync.channel.base import classify_close, global_events_url, job_events_url
from jobsync.channel.websocket_channel import close_code_for_http_status
from jobsync.models import CloseKind, ServiceStatus
from jobsync.registry.health import ServiceHealthStore, normalize_service_status
from jobsync.settings import Settings


@pytest.mark.parametrize(
    "code,reason,kind",
    [
        (1000, "", CloseKind.normal),
        (1001, "going away", CloseKind.normal),
        (1006, "", CloseKind.network),
        (1011, "server error", CloseKind.network),
        (4000, "heartbeat timeout", CloseKind.network),
        (4001, "Invalid token", CloseKind.auth),
        (4003, "", CloseKind.auth),
        (1008, "Authentication required", CloseKind.auth),
        (1008, "message too big", CloseKind.network),
        (4004, "Job not found", CloseKind.not_found),
    ],
)
def test_classify_close(code: int, reason: str, kind: CloseKind) -> None:
    assert classify_close(code, reason) is kind


def test_handshake_status_maps_to_close_codes() -> None:
    assert close_code_for_http_status(401) == 4001
    assert close_code_for_http_status(403) == 4001
    assert close_code_for_http_status(404) == 4004
    assert close_code_for_http_status(500) == 1006
    assert close_code_for_http_status(None) == 1006


def test_event_urls() -> None:
    s = Settings(base_url="https://worker.example:8443/", api_key="k/ey")
    assert global_events_url(s) == "wss://worker.example:8443/api/v1/events?token=k%2Fey"
    assert job_events_url(s, "job 1") == "wss://worker.example:8443/api/v1/downloads/jobs/job%201/events?token=k%2Fey"

    s = Settings(base_url="http://localhost:8888", api_key="dev")
    assert global_events_url(s) == "ws://localhost:8888/api/v1/events?token=dev"


def test_settings_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("JOBSYNC_BASE_URL", "http://10.0.0.5:9000")
    monkeypatch.setenv("JOBSYNC_POLL_ALWAYS", "true")
    monkeypatch.setenv("JOBSYNC_RECONNECT_MAX_ATTEMPTS", "3")
    s = Settings()
    assert s.base_url == "http://10.0.0.5:9000"
    assert s.poll_always is True
    assert s.reconnect_max_attempts == 3


def test_service_health_store() -> None:
    assert normalize_service_status("OK") is ServiceStatus.available
    assert normalize_service_status("down") is ServiceStatus.unavailable
    assert normalize_service_status("mystery") is None

    store = ServiceHealthStore()
    store.update("tidal", ServiceStatus.degraded, error="slow")
    store.update("qobuz", ServiceStatus.available, auth_status="valid")
    store.update("tidal", ServiceStatus.available)
    assert [r.service_id for r in store.all()] == ["qobuz", "tidal"]
    assert store.get("tidal").status is ServiceStatus.available
    assert store.get("tidal").error is None
