from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Union

from pydantic import ValidationError

from jobsync.models import (
    ChannelFrame,
    ConnectionConfirmedData,
    JobProgressData,
    JobStatusData,
    NotificationData,
    ServiceStatusData,
    SessionMode,
)
from jobsync.parsers.frames import FrameDecodeError, decode_frame
from jobsync.parsers.job_payload import normalize_job_fields
from jobsync.registry.health import ServiceHealthStore, normalize_service_status
from jobsync.registry.store import JobRegistry
from jobsync.sync.heartbeat import HeartbeatMonitor
from jobsync.telemetry.audit import AuditLogger


# Fields a progress frame may touch; status changes only arrive via status frames.
_PROGRESS_FIELDS = ("progress", "current_file", "total_files", "downloaded_bytes", "total_bytes")


@dataclass(frozen=True)
class RouteContext:
    mode: SessionMode = SessionMode.global_
    job_id: Optional[str] = None
    correlation_id: str = "router"


NotificationListener = Callable[[ChannelFrame], None]


class MessageRouter:
    """
    Applies decoded channel frames to the registry and health store.

    Unknown tags and payloads that fail validation are logged and dropped; they
    never raise into the channel.
    """

    def __init__(
        self,
        *,
        registry: JobRegistry,
        health: ServiceHealthStore,
        heartbeat: HeartbeatMonitor | None = None,
        audit: AuditLogger | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self.registry = registry
        self.health = health
        self.heartbeat = heartbeat
        self._audit = audit
        self._clock = clock
        self._notification_listeners: List[NotificationListener] = []
        self._handlers: Dict[str, Callable[[ChannelFrame, RouteContext], None]] = {
            "job_status": self._on_job_status,
            "initial_status": self._on_job_status,
            "job_update": self._on_job_status,
            "job_progress": self._on_job_progress,
            "connection_confirmed": self._on_connection_confirmed,
            "service_status": self._on_service_status,
            "system_notification": self._on_notification,
            "queue_update": self._on_notification,
            "ping": self._on_ping,
            "pong": self._on_pong,
        }

    def subscribe_notifications(self, listener: NotificationListener) -> Callable[[], None]:
        self._notification_listeners.append(listener)

        def _unsubscribe() -> None:
            try:
                self._notification_listeners.remove(listener)
            except ValueError:
                pass

        return _unsubscribe

    def route_raw(self, raw: Union[str, bytes], ctx: RouteContext | None = None) -> bool:
        ctx = ctx or RouteContext()
        try:
            frame = decode_frame(raw)
        except FrameDecodeError as e:
            self._write(ctx, "router.malformed_frame", {"error": str(e)})
            return False
        return self.route(frame, ctx)

    def route(self, frame: ChannelFrame, ctx: RouteContext | None = None) -> bool:
        """Dispatch one frame. Returns False when the frame was dropped."""
        ctx = ctx or RouteContext()
        handler = self._handlers.get(frame.event_type)
        if handler is None:
            self._write(ctx, "router.unknown_event", {"event_type": frame.event_type})
            return False
        try:
            handler(frame, ctx)
        except (ValidationError, ValueError) as e:
            self._write(
                ctx,
                "router.malformed_frame",
                {"event_type": frame.event_type, "error": f"{type(e).__name__}: {e}"},
            )
            return False
        return True

    # ---- handlers ----

    def _resolve_job_id(self, payload_id: Optional[str], frame: ChannelFrame, ctx: RouteContext) -> str:
        jid = payload_id or frame.job_id
        if not jid and ctx.mode is SessionMode.job:
            jid = ctx.job_id
        if not jid:
            raise ValueError("frame does not identify a job")
        return str(jid)

    def _on_job_status(self, frame: ChannelFrame, ctx: RouteContext) -> None:
        data = JobStatusData.model_validate(frame.data)
        jid = self._resolve_job_id(data.job_id, frame, ctx)
        _, update = normalize_job_fields(frame.data, job_id=jid)
        self.registry.upsert(jid, update)

    def _on_job_progress(self, frame: ChannelFrame, ctx: RouteContext) -> None:
        data = JobProgressData.model_validate(frame.data)
        jid = self._resolve_job_id(data.job_id, frame, ctx)
        _, update = normalize_job_fields(frame.data, job_id=jid)
        update = {k: v for k, v in update.items() if k in _PROGRESS_FIELDS}
        if "progress" not in update:
            raise ValueError(f"unusable progress value: {data.progress!r}")
        self.registry.upsert(jid, update)

    def _on_connection_confirmed(self, frame: ChannelFrame, ctx: RouteContext) -> None:
        if ctx.mode is not SessionMode.job:
            return
        data = ConnectionConfirmedData.model_validate(frame.data)
        if data.status is None:
            return
        jid = self._resolve_job_id(data.job_id, frame, ctx)
        _, update = normalize_job_fields(frame.data, job_id=jid)
        self.registry.upsert(jid, update)

    def _on_service_status(self, frame: ChannelFrame, ctx: RouteContext) -> None:
        data = ServiceStatusData.model_validate(frame.data)
        status = normalize_service_status(data.status)
        if status is None:
            raise ValueError(f"unknown service status: {data.status!r}")
        self.health.update(
            data.service_id,
            status,
            auth_status=data.auth_status,
            error=data.error,
            at=frame.timestamp if frame.timestamp is not None else self._now(),
        )

    def _on_notification(self, frame: ChannelFrame, ctx: RouteContext) -> None:
        data = NotificationData.model_validate(frame.data)
        payload: Dict[str, Any] = {"event_type": frame.event_type, "level": data.level, "message": data.message}
        self._write(ctx, "router.notification", payload)
        for listener in list(self._notification_listeners):
            try:
                listener(frame)
            except Exception as e:  # noqa: BLE001
                self._write(ctx, "router.listener_failed", {"error": f"{type(e).__name__}: {e}"})

    def _on_ping(self, frame: ChannelFrame, ctx: RouteContext) -> None:
        if self.heartbeat is not None:
            self.heartbeat.handle_ping(frame)

    def _on_pong(self, frame: ChannelFrame, ctx: RouteContext) -> None:
        if self.heartbeat is not None:
            self.heartbeat.handle_pong(frame)

    def _now(self) -> Optional[float]:
        return self._clock() if self._clock is not None else None

    def _write(self, ctx: RouteContext, event_type: str, payload: Dict[str, Any]) -> None:
        if self._audit is not None:
            self._audit.write(ctx.correlation_id, event_type, payload)
