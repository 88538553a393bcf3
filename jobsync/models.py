from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class JobStatus(str, Enum):
    queued = "queued"
    downloading = "downloading"
    completed = "completed"
    failed = "failed"


class JobBucket(str, Enum):
    active = "active"
    queued = "queued"
    completed = "completed"
    failed = "failed"


class Job(BaseModel):
    """
    Canonical client-side view of one background download job.
    Fields other than id/status are optional because push events arrive partially.
    """

    id: str
    status: JobStatus = JobStatus.queued
    progress: Optional[float] = Field(default=0.0, ge=0.0, le=100.0)
    current_file: Optional[str] = None
    total_files: Optional[int] = None
    downloaded_bytes: Optional[int] = None
    total_bytes: Optional[int] = None
    error: Optional[str] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None

    # Descriptive fields reported by the worker (never required)
    service: Optional[str] = None
    content_id: Optional[str] = None
    content_title: Optional[str] = None


class JobStats(BaseModel):
    total_jobs: int = 0
    total_completed: int = 0
    total_failed: int = 0
    total_bytes: int = 0
    downloaded_bytes: int = 0


class ServiceStatus(str, Enum):
    available = "available"
    degraded = "degraded"
    unavailable = "unavailable"


class ServiceHealth(BaseModel):
    service_id: str
    status: ServiceStatus
    auth_status: Optional[str] = None
    error: Optional[str] = None
    updated_at: Optional[float] = None


class ConnectionState(str, Enum):
    disconnected = "disconnected"
    connecting = "connecting"
    connected = "connected"
    reconnecting = "reconnecting"
    auth_failed = "auth_failed"
    target_not_found = "target_not_found"
    error = "error"


TERMINAL_STATES = (ConnectionState.auth_failed, ConnectionState.target_not_found)


class CloseKind(str, Enum):
    normal = "normal"
    network = "network"
    auth = "auth"
    not_found = "not_found"


class SessionMode(str, Enum):
    global_ = "global"
    job = "job"


# ---- Inbound channel frames ----


class ChannelFrame(BaseModel):
    """
    Decoded event-channel frame: an event-type tag plus an untyped payload.
    The router validates `data` against the payload model registered for the tag.
    """

    event_type: str
    job_id: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)
    timestamp: Optional[float] = None


class _Payload(BaseModel):
    # Workers sometimes send numeric ids.
    model_config = ConfigDict(extra="allow", coerce_numbers_to_str=True)


class JobStatusData(_Payload):
    job_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("job_id", "id"))
    status: str


class JobProgressData(_Payload):
    job_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("job_id", "id"))
    progress: float


class ConnectionConfirmedData(_Payload):
    job_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("job_id", "id"))
    message: Optional[str] = None
    status: Optional[str] = None


class ServiceStatusData(_Payload):
    service_id: str = Field(validation_alias=AliasChoices("service_id", "id"))
    status: str
    auth_status: Optional[str] = None
    error: Optional[str] = None


class NotificationData(_Payload):
    level: Optional[str] = None
    message: Optional[str] = None


# ---- Read-only snapshots ----


class PollingSnapshot(BaseModel):
    active: bool
    current_interval_s: float
    last_success_at: Optional[float] = None
    last_error: Optional[str] = None


class ConnectionSnapshot(BaseModel):
    state: ConnectionState
    mode: Optional[SessionMode] = None
    job_id: Optional[str] = None
    reconnect_attempt: int = 0
    last_connected_at: Optional[float] = None
    last_disconnected_at: Optional[float] = None
    last_heartbeat_ack: Optional[float] = None
    last_error: Optional[str] = None


class SyncStatus(BaseModel):
    connection: ConnectionSnapshot
    polling: PollingSnapshot
    stats: JobStats
    buckets: Dict[JobBucket, List[str]] = Field(default_factory=dict)
    services: List[ServiceHealth] = Field(default_factory=list)
