from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="JOBSYNC_", extra="ignore")

    # Download worker API
    base_url: str = "http://localhost:8888"
    api_prefix: str = "/api"
    api_key: str = "development-key-change-me"
    http_timeout_s: float = 30.0

    # Event channel paths (token is appended as ?token=<api_key>)
    events_path: str = "/api/v1/events"
    job_events_path_template: str = "/api/v1/downloads/jobs/{job_id}/events"
    # Seconds to wait for the websocket handshake before treating it as a network failure.
    channel_open_timeout_s: float = 10.0

    # Reconnection backoff: delay = min(base * factor^attempt, max)
    reconnect_base_s: float = 2.0
    reconnect_factor: float = 2.0
    reconnect_max_s: float = 30.0
    reconnect_max_attempts: int = 10

    # In-channel heartbeat (ping/pong). Unrelated to GET /health.
    heartbeat_enabled: bool = True
    heartbeat_interval_s: float = 30.0
    heartbeat_timeout_s: float = 10.0

    # Polling fallback (GET /download/jobs while the channel is unusable)
    polling_enabled: bool = True
    poll_interval_s: float = 3.0
    poll_max_interval_s: float = 15.0
    poll_backoff_multiplier: float = 1.5
    # If true, poll even while the channel is connected.
    poll_always: bool = False

    audit_log_path: str = "var/audit/jobsync_audit.jsonl"

    # Status HTTP surface
    connect_on_startup: bool = True
