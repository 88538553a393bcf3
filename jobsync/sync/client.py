from __future__ import annotations

from typing import Callable, List

from jobsync.api.jobs_client import JobsApiClient
from jobsync.channel.base import ChannelFactory, global_events_url, job_events_url
from jobsync.channel.websocket_channel import WebSocketChannel
from jobsync.models import ConnectionState, Job, SessionMode, SyncStatus
from jobsync.registry.health import ServiceHealthStore
from jobsync.registry.store import JobRegistry
from jobsync.settings import Settings
from jobsync.sync.connection import ConnectionSession, ConnectionStateMachine, ReconnectPolicy
from jobsync.sync.heartbeat import HeartbeatConfig
from jobsync.sync.polling import PollingConfig, PollingFallbackCoordinator
from jobsync.sync.router import MessageRouter, RouteContext
from jobsync.sync.scheduler import AsyncioScheduler, Scheduler
from jobsync.telemetry.audit import AuditLogger


StatusListener = Callable[[SyncStatus], None]


class JobSyncClient:
    """
    The sync subsystem as one object: one event-channel session, the polling
    fallback, and the shared job registry both paths write into.

    Must be used from a single event loop thread.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        scheduler: Scheduler | None = None,
        channel_factory: ChannelFactory | None = None,
        api: JobsApiClient | None = None,
        audit: AuditLogger | None = None,
        registry: JobRegistry | None = None,
        health: ServiceHealthStore | None = None,
    ) -> None:
        self.settings = settings or Settings()
        s = self.settings
        self.audit = audit or AuditLogger(s.audit_log_path)
        self.scheduler = scheduler or AsyncioScheduler()
        self.api = api or JobsApiClient.from_settings(s)
        self.registry = registry or JobRegistry(audit=self.audit)
        self.health = health or ServiceHealthStore()
        if channel_factory is None:
            timeout_s = s.channel_open_timeout_s

            def channel_factory() -> WebSocketChannel:
                return WebSocketChannel(open_timeout_s=timeout_s)

        self.connection = ConnectionStateMachine(
            channel_factory=channel_factory,
            scheduler=self.scheduler,
            policy=ReconnectPolicy.from_settings(s),
            heartbeat=HeartbeatConfig.from_settings(s),
            audit=self.audit,
        )
        self.router = MessageRouter(
            registry=self.registry,
            health=self.health,
            heartbeat=self.connection.heartbeat,
            audit=self.audit,
            clock=self.scheduler.now,
        )
        self.polling = PollingFallbackCoordinator(
            fetch=self.api.list_jobs,
            registry=self.registry,
            scheduler=self.scheduler,
            config=PollingConfig.from_settings(s),
            audit=self.audit,
            on_change=self._emit,
        )
        self.connection.set_frame_handler(self._on_frame)
        self.connection.subscribe(self._on_state_change)
        self._listeners: List[StatusListener] = []
        self._started = False

    # ---- lifecycle ----

    def start(self) -> None:
        """Begin tracking: polling engages right away if the channel is not connected."""
        if self._started:
            return
        self._started = True
        self.polling.on_state_change(self.connection.state)

    def close(self) -> None:
        self._started = False
        self.connection.disconnect("client closed")
        self.polling.stop()

    # ---- connection ----

    def connect_to_global(self) -> None:
        self.start()
        self.connection.connect(global_events_url(self.settings), mode=SessionMode.global_)

    def connect_to_job(self, job_id: str) -> None:
        self.start()
        self.connection.connect(job_events_url(self.settings, job_id), mode=SessionMode.job, job_id=str(job_id))

    def disconnect(self) -> None:
        self.connection.disconnect()

    @property
    def connection_state(self) -> ConnectionState:
        return self.connection.state

    @property
    def is_connected(self) -> bool:
        return self.connection.is_connected

    @property
    def is_polling(self) -> bool:
        return self.polling.active

    @property
    def current_polling_interval(self) -> float:
        return self.polling.current_interval_s

    # ---- jobs ----

    def jobs(self) -> List[Job]:
        return self.registry.jobs()

    async def cancel_job(self, job_id: str) -> None:
        await self.api.cancel_job(job_id)
        self.registry.remove(job_id)

    async def retry_job(self, job_id: str) -> Job:
        await self.api.retry_job(job_id)
        return self.registry.retry(job_id)

    def clear_completed(self) -> List[str]:
        return self.registry.clear_completed()

    async def refresh_now(self) -> bool:
        return await self.polling.refresh()

    # ---- status ----

    def snapshot(self) -> SyncStatus:
        return SyncStatus(
            connection=self.connection.snapshot(),
            polling=self.polling.snapshot(),
            stats=self.registry.stats(),
            buckets=self.registry.bucket_ids(),
            services=self.health.all(),
        )

    def subscribe(self, listener: StatusListener) -> Callable[[], None]:
        """Called with a fresh snapshot on every connection or polling change."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass

        return _unsubscribe

    # ---- internals ----

    def _on_frame(self, raw: str, session: ConnectionSession) -> None:
        self.router.route_raw(raw, RouteContext(mode=session.mode, job_id=session.job_id, correlation_id=session.session_id))

    def _on_state_change(self, old: ConnectionState, new: ConnectionState) -> None:
        if self._started:
            self.polling.on_state_change(new)
        self._emit()

    def _emit(self) -> None:
        if not self._listeners:
            return
        status = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(status)
            except Exception as e:  # noqa: BLE001
                self.audit.write("client", "client.listener_failed", {"error": f"{type(e).__name__}: {e}"})
