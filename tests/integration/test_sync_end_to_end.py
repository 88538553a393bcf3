from __future__ import annotations

from typing import Any, Dict, List

import httpx

from jobsync.api.jobs_client import JobsApiClient
from jobsync.models import ConnectionState, JobBucket, JobStatus, SyncStatus
from jobsync.settings import Settings
from jobsync.sync.client import JobSyncClient
from jobsync.telemetry.audit import read_audit_tail


def _worker(state: Dict[str, Any]) -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        state["calls"] += 1
        if state.get("reject_auth"):
            return httpx.Response(401, json={"detail": "invalid api key"})
        if request.method == "GET" and request.url.path == "/api/download/jobs":
            return httpx.Response(200, json={"jobs": state["jobs"]})
        return httpx.Response(404, json={"message": "unhandled"})

    return httpx.MockTransport(handler)


def _client(tmp_path, scheduler, channels, audit, state: Dict[str, Any]) -> JobSyncClient:
    s = Settings(
        base_url="http://worker:8888",
        api_key="secret",
        audit_log_path=str(tmp_path / "audit.jsonl"),
        heartbeat_enabled=False,
    )
    api = JobsApiClient.from_settings(s, transport=_worker(state))
    return JobSyncClient(s, scheduler=scheduler, channel_factory=channels, api=api, audit=audit)


def test_push_then_fallback_then_push_again(tmp_path, scheduler, channels, audit) -> None:
    state: Dict[str, Any] = {"calls": 0, "jobs": []}
    c = _client(tmp_path, scheduler, channels, audit, state)
    indicators: List[SyncStatus] = []
    c.subscribe(indicators.append)

    c.connect_to_global()
    assert channels.last.url == "ws://worker:8888/api/v1/events?token=secret"
    assert c.connection_state is ConnectionState.connecting
    assert c.is_polling
    scheduler.drain()
    assert state["calls"] == 1

    channels.last.accept()
    assert c.is_connected
    assert not c.is_polling

    channels.last.deliver({"event_type": "job_status", "data": {"job_id": "a", "status": "downloading", "progress": 10}})
    channels.last.deliver({"event_type": "job_progress", "data": {"job_id": "a", "progress": 55}})
    job = c.registry.get("a")
    assert job is not None
    assert job.status is JobStatus.downloading
    assert job.progress == 55.0

    state["jobs"] = [{"id": "a", "status": "completed"}]
    channels.last.drop(1006, "network lost")
    assert c.connection_state is ConnectionState.reconnecting
    assert c.is_polling
    assert c.current_polling_interval == 3.0
    scheduler.drain()
    assert c.registry.bucket_of("a") is JobBucket.completed
    assert c.is_polling

    scheduler.advance(2.0)
    assert c.connection_state is ConnectionState.connecting
    assert c.is_polling

    channels.last.accept()
    assert c.is_connected
    assert not c.is_polling
    assert scheduler.pending() == []

    assert indicators, "status listeners should see connection and polling changes"
    assert indicators[-1].connection.state is ConnectionState.connected
    assert indicators[-1].polling.active is False

    events = [r["event_type"] for r in read_audit_tail(audit.path, max_lines=1000)]
    assert "connection.reconnect_scheduled" in events
    assert "poll.started" in events and "poll.stopped" in events


def test_auth_rejection_is_terminal_but_polling_continues(tmp_path, scheduler, channels, audit) -> None:
    state: Dict[str, Any] = {"calls": 0, "jobs": [], "reject_auth": True}
    c = _client(tmp_path, scheduler, channels, audit, state)
    c.connect_to_global()
    channels.last.drop(4001, "Invalid token")
    assert c.connection_state is ConnectionState.auth_failed
    assert c.is_polling

    scheduler.drain()
    snap = c.snapshot()
    assert snap.connection.last_error == "Invalid token"
    assert snap.polling.last_error is not None
    assert "invalid api key" in snap.polling.last_error

    scheduler.advance(600.0)
    assert len(channels.channels) == 1
    assert c.connection_state is ConnectionState.auth_failed

    # An explicit connect after fixing credentials restarts the session.
    state["reject_auth"] = False
    c.connect_to_global()
    assert c.connection_state is ConnectionState.connecting
    assert len(channels.channels) == 2


def test_job_session_not_found(tmp_path, scheduler, channels, audit) -> None:
    state: Dict[str, Any] = {"calls": 0, "jobs": [{"job_id": "other", "status": "pending"}]}
    c = _client(tmp_path, scheduler, channels, audit, state)
    c.connect_to_job("gone")
    assert channels.last.url == "ws://worker:8888/api/v1/downloads/jobs/gone/events?token=secret"
    channels.last.drop(4004, "Job not found")
    assert c.connection_state is ConnectionState.target_not_found
    scheduler.drain()
    assert c.is_polling
    assert "other" in c.registry


def test_job_session_confirmation_carries_status(tmp_path, scheduler, channels, audit) -> None:
    state: Dict[str, Any] = {"calls": 0, "jobs": []}
    c = _client(tmp_path, scheduler, channels, audit, state)
    c.connect_to_job("j1")
    channels.last.accept()
    channels.last.deliver({"event_type": "connection_confirmed", "data": {"message": "subscribed", "status": "completed"}})
    assert c.registry.bucket_of("j1") is JobBucket.completed


def test_close_stops_everything(tmp_path, scheduler, channels, audit) -> None:
    state: Dict[str, Any] = {"calls": 0, "jobs": []}
    c = _client(tmp_path, scheduler, channels, audit, state)
    c.connect_to_global()
    scheduler.drain()
    c.close()
    assert c.connection_state is ConnectionState.disconnected
    assert not c.is_polling
    assert scheduler.pending() == []
