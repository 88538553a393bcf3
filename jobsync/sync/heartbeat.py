from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional

from jobsync.channel.base import ChannelError
from jobsync.models import ChannelFrame
from jobsync.parsers.frames import encode_control_frame
from jobsync.settings import Settings
from jobsync.sync.scheduler import Scheduler, TimerHandle
from jobsync.telemetry.audit import AuditLogger


@dataclass(frozen=True)
class HeartbeatConfig:
    enabled: bool = True
    interval_s: float = 30.0
    timeout_s: float = 10.0

    @classmethod
    def from_settings(cls, s: Settings) -> "HeartbeatConfig":
        return cls(enabled=s.heartbeat_enabled, interval_s=s.heartbeat_interval_s, timeout_s=s.heartbeat_timeout_s)


class HeartbeatMonitor:
    """
    Detects half-open channels. While running, sends a ping every `interval_s`
    and arms a `timeout_s` timer that only a pong disarms. An expired timer
    calls `on_timeout`; the owner is expected to force-close the channel.

    Timers carry the epoch they were armed in, so a callback that fires after
    stop() (or after a restart) does nothing.
    """

    def __init__(
        self,
        *,
        scheduler: Scheduler,
        config: HeartbeatConfig,
        send: Callable[[str], None],
        on_timeout: Callable[[], None],
        audit: AuditLogger | None = None,
    ) -> None:
        self.scheduler = scheduler
        self.config = config
        self._send = send
        self._on_timeout = on_timeout
        self._audit = audit
        self._epoch = 0
        self._running = False
        self._interval_timer: Optional[TimerHandle] = None
        self._timeout_timer: Optional[TimerHandle] = None
        self.last_ack: Optional[float] = None
        self.last_probe_at: Optional[float] = None

    @property
    def running(self) -> bool:
        return self._running

    @property
    def awaiting_pong(self) -> bool:
        return self._timeout_timer is not None

    def start(self) -> None:
        self.stop()
        if not self.config.enabled:
            return
        self._running = True
        self.last_ack = self.scheduler.now()
        self._schedule_probe(self._epoch)

    def stop(self) -> None:
        self._epoch += 1
        self._running = False
        for t in (self._interval_timer, self._timeout_timer):
            if t is not None:
                t.cancel()
        self._interval_timer = None
        self._timeout_timer = None

    def handle_pong(self, frame: ChannelFrame | None = None) -> None:
        if self._timeout_timer is not None:
            self._timeout_timer.cancel()
            self._timeout_timer = None
        self.last_ack = self.scheduler.now()

    def handle_ping(self, frame: ChannelFrame | None = None) -> None:
        # Server-initiated probe: answer regardless of our own probing.
        self._safe_send(encode_control_frame("pong", timestamp_ms=int(self.scheduler.now() * 1000)))

    def _schedule_probe(self, epoch: int) -> None:
        self._interval_timer = self.scheduler.call_later(self.config.interval_s, lambda: self._probe(epoch))

    def _probe(self, epoch: int) -> None:
        if epoch != self._epoch or not self._running:
            return
        self._interval_timer = None
        self.last_probe_at = self.scheduler.now()
        self._safe_send(encode_control_frame("ping", timestamp_ms=int(self.last_probe_at * 1000)))
        # A failed send still arms the timeout: no pong will come back either way.
        if self._timeout_timer is None:
            self._timeout_timer = self.scheduler.call_later(self.config.timeout_s, lambda: self._expired(epoch))
        self._schedule_probe(epoch)

    def _expired(self, epoch: int) -> None:
        if epoch != self._epoch or not self._running:
            return
        self._timeout_timer = None
        if self._audit is not None:
            self._audit.write(
                "heartbeat",
                "heartbeat.timeout",
                {"timeout_s": self.config.timeout_s, "last_ack": self.last_ack, "last_probe_at": self.last_probe_at},
            )
        self.stop()
        self._on_timeout()

    def _safe_send(self, text: str) -> None:
        try:
            self._send(text)
        except ChannelError as e:
            if self._audit is not None:
                self._audit.write("heartbeat", "heartbeat.send_failed", {"error": str(e)})
