from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Callable, List, Optional

from jobsync.channel.base import (
    CLOSE_ABNORMAL,
    CLOSE_HEARTBEAT_TIMEOUT,
    CLOSE_NORMAL,
    ChannelError,
    ChannelFactory,
    ChannelHandlers,
    EventChannel,
    classify_close,
)
from jobsync.models import CloseKind, ConnectionSnapshot, ConnectionState, SessionMode, TERMINAL_STATES
from jobsync.settings import Settings
from jobsync.sync.heartbeat import HeartbeatConfig, HeartbeatMonitor
from jobsync.sync.scheduler import Scheduler, TimerHandle
from jobsync.telemetry.audit import AuditLogger


@dataclass(frozen=True)
class ReconnectPolicy:
    base_s: float = 2.0
    factor: float = 2.0
    max_s: float = 30.0
    max_attempts: int = 10

    @classmethod
    def from_settings(cls, s: Settings) -> "ReconnectPolicy":
        return cls(
            base_s=s.reconnect_base_s,
            factor=s.reconnect_factor,
            max_s=s.reconnect_max_s,
            max_attempts=s.reconnect_max_attempts,
        )

    def delay(self, attempt: int) -> float:
        """Delay before retry number `attempt` (0-based)."""
        return min(float(self.max_s), float(self.base_s) * (float(self.factor) ** max(0, int(attempt))))


@dataclass
class ConnectionSession:
    session_id: str
    mode: SessionMode
    url: str
    job_id: Optional[str] = None
    # Bumped on every open and on every handled close; channel callbacks
    # carrying an older value are ignored.
    generation: int = 0
    reconnect_attempt: int = 0
    next_retry_delay_s: Optional[float] = None
    last_connected_at: Optional[float] = None
    last_disconnected_at: Optional[float] = None
    last_error: Optional[str] = None
    channel: Optional[EventChannel] = None
    reconnect_timer: Optional[TimerHandle] = None


StateListener = Callable[[ConnectionState, ConnectionState], None]
FrameHandler = Callable[[str, ConnectionSession], None]


class ConnectionStateMachine:
    """
    Owns the lifecycle of the single event-channel session.

    disconnected|error -> connecting           connect()
    connecting -> connected                   channel opened
    connecting|connected -> reconnecting      non-auth close, attempts left
    reconnecting -> connecting                backoff timer fired
    any -> auth_failed | target_not_found     auth / not-found close (no retry)
    reconnecting -> error                     attempt cap reached
    any -> disconnected                       disconnect()
    """

    def __init__(
        self,
        *,
        channel_factory: ChannelFactory,
        scheduler: Scheduler,
        policy: ReconnectPolicy | None = None,
        heartbeat: HeartbeatConfig | None = None,
        audit: AuditLogger | None = None,
    ) -> None:
        self._channel_factory = channel_factory
        self.scheduler = scheduler
        self.policy = policy or ReconnectPolicy()
        self._audit = audit
        self._state = ConnectionState.disconnected
        self._session: Optional[ConnectionSession] = None
        self._generation = 0
        self._listeners: List[StateListener] = []
        self._on_frame: Optional[FrameHandler] = None
        self.heartbeat = HeartbeatMonitor(
            scheduler=scheduler,
            config=heartbeat or HeartbeatConfig(),
            send=self.send,
            on_timeout=self._on_heartbeat_timeout,
            audit=audit,
        )

    # ---- queries ----

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def session(self) -> Optional[ConnectionSession]:
        return self._session

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.connected

    def snapshot(self) -> ConnectionSnapshot:
        s = self._session
        if s is None:
            return ConnectionSnapshot(state=self._state)
        return ConnectionSnapshot(
            state=self._state,
            mode=s.mode,
            job_id=s.job_id,
            reconnect_attempt=s.reconnect_attempt,
            last_connected_at=s.last_connected_at,
            last_disconnected_at=s.last_disconnected_at,
            last_heartbeat_ack=self.heartbeat.last_ack,
            last_error=s.last_error,
        )

    # ---- wiring ----

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass

        return _unsubscribe

    def set_frame_handler(self, handler: Optional[FrameHandler]) -> None:
        self._on_frame = handler

    # ---- commands ----

    def connect(self, url: str, *, mode: SessionMode = SessionMode.global_, job_id: Optional[str] = None) -> None:
        s = self._session
        if s is not None and s.url == url and s.mode is mode and s.job_id == job_id:
            if self._state in (ConnectionState.connecting, ConnectionState.connected, ConnectionState.reconnecting):
                return
        if self._state in (ConnectionState.disconnected, ConnectionState.error):
            self._teardown("superseded")
        else:
            # Terminal states and a different target both require a full teardown first.
            self.disconnect()
        self._session = ConnectionSession(session_id=uuid.uuid4().hex, mode=mode, url=url, job_id=job_id)
        self._open()

    def disconnect(self, reason: str = "client disconnect") -> None:
        self._teardown(reason)
        self._transition(ConnectionState.disconnected, reason=reason)

    def _teardown(self, reason: str) -> None:
        s = self._session
        self.heartbeat.stop()
        self._generation += 1
        if s is not None:
            self._cancel_reconnect(s)
            ch, s.channel = s.channel, None
            if ch is not None:
                try:
                    ch.close(CLOSE_NORMAL, reason)
                except Exception as e:  # noqa: BLE001
                    self._write("channel.close_failed", {"error": f"{type(e).__name__}: {e}"})
            if self._state is ConnectionState.connected:
                s.last_disconnected_at = self.scheduler.now()
        self._session = None

    def send(self, text: str) -> None:
        s = self._session
        if s is None or s.channel is None or self._state is not ConnectionState.connected:
            raise ChannelError("no open channel")
        s.channel.send(text)

    # ---- channel callbacks ----

    def _open(self) -> None:
        s = self._session
        assert s is not None
        self._generation += 1
        gen = s.generation = self._generation
        s.reconnect_timer = None
        self._transition(ConnectionState.connecting)
        channel = self._channel_factory()
        s.channel = channel
        handlers = ChannelHandlers(
            on_open=lambda: self._handle_open(gen),
            on_message=lambda text: self._handle_message(gen, text),
            on_close=lambda code, reason: self._handle_close(gen, code, reason),
            on_error=lambda exc: self._handle_error(gen, exc),
        )
        try:
            channel.open(s.url, handlers)
        except Exception as e:  # noqa: BLE001
            self._handle_error(gen, e)
            self._handle_close(gen, CLOSE_ABNORMAL, f"open failed: {type(e).__name__}")

    def _current(self, gen: int) -> Optional[ConnectionSession]:
        s = self._session
        if s is None or s.generation != gen:
            return None
        return s

    def _handle_open(self, gen: int) -> None:
        s = self._current(gen)
        if s is None or self._state is not ConnectionState.connecting:
            return
        s.reconnect_attempt = 0
        s.next_retry_delay_s = None
        s.last_error = None
        s.last_connected_at = self.scheduler.now()
        self._write("channel.opened", {"mode": s.mode.value, "job_id": s.job_id})
        self._transition(ConnectionState.connected)
        self.heartbeat.start()

    def _handle_message(self, gen: int, text: str) -> None:
        s = self._current(gen)
        if s is None or self._state is not ConnectionState.connected or self._on_frame is None:
            return
        self._on_frame(text, s)

    def _handle_error(self, gen: int, exc: BaseException) -> None:
        s = self._current(gen)
        if s is None:
            return
        # Errors never change state on their own; the close that follows does.
        s.last_error = f"{type(exc).__name__}: {exc}"
        self._write("channel.error", {"error": s.last_error})

    def _handle_close(self, gen: int, code: int, reason: str) -> None:
        s = self._current(gen)
        if s is None:
            return
        self._generation += 1
        s.generation = self._generation
        self.heartbeat.stop()
        s.channel = None
        if self._state is ConnectionState.connected:
            s.last_disconnected_at = self.scheduler.now()
        kind = classify_close(code, reason)
        self._write("channel.closed", {"code": code, "reason": reason, "kind": kind.value})

        if kind is CloseKind.auth:
            s.last_error = reason or "authentication rejected"
            self._transition(ConnectionState.auth_failed, reason=s.last_error)
            return
        if kind is CloseKind.not_found:
            s.last_error = reason or "job not found"
            self._transition(ConnectionState.target_not_found, reason=s.last_error)
            return
        if kind is CloseKind.network and not s.last_error:
            s.last_error = reason or f"connection closed ({code})"
        self._schedule_reconnect(s)

    def _on_heartbeat_timeout(self) -> None:
        s = self._session
        if s is None or self._state is not ConnectionState.connected:
            return
        ch = s.channel
        if ch is not None:
            try:
                ch.close(CLOSE_HEARTBEAT_TIMEOUT, "heartbeat timeout")
            except Exception as e:  # noqa: BLE001
                self._write("channel.close_failed", {"error": f"{type(e).__name__}: {e}"})
        # Proceed as if the network dropped; the real close (if it ever arrives) is stale by then.
        s.last_error = "heartbeat timeout"
        self._handle_close(s.generation, CLOSE_HEARTBEAT_TIMEOUT, "heartbeat timeout")

    # ---- reconnection ----

    def _schedule_reconnect(self, s: ConnectionSession) -> None:
        self._cancel_reconnect(s)
        if s.reconnect_attempt >= self.policy.max_attempts:
            s.last_error = "max reconnect attempts reached"
            self._transition(ConnectionState.error, reason=s.last_error)
            return
        delay = self.policy.delay(s.reconnect_attempt)
        s.reconnect_attempt += 1
        s.next_retry_delay_s = delay
        gen = s.generation
        s.reconnect_timer = self.scheduler.call_later(delay, lambda: self._fire_reconnect(gen))
        self._write(
            "connection.reconnect_scheduled",
            {"attempt": s.reconnect_attempt, "delay_s": round(delay, 3), "max_attempts": self.policy.max_attempts},
        )
        self._transition(ConnectionState.reconnecting)

    def _fire_reconnect(self, gen: int) -> None:
        s = self._current(gen)
        if s is None or self._state is not ConnectionState.reconnecting:
            return
        s.reconnect_timer = None
        self._open()

    def _cancel_reconnect(self, s: ConnectionSession) -> None:
        if s.reconnect_timer is not None:
            s.reconnect_timer.cancel()
            s.reconnect_timer = None

    # ---- helpers ----

    def _transition(self, new: ConnectionState, *, reason: Optional[str] = None) -> None:
        old = self._state
        if new is old:
            return
        self._state = new
        payload = {"from": old.value, "to": new.value}
        if reason:
            payload["reason"] = reason
        if new in TERMINAL_STATES:
            payload["terminal"] = True
        self._write("connection.state_changed", payload)
        for listener in list(self._listeners):
            try:
                listener(old, new)
            except Exception as e:  # noqa: BLE001
                self._write("connection.listener_failed", {"error": f"{type(e).__name__}: {e}"})

    def _write(self, event_type: str, payload: dict) -> None:
        if self._audit is None:
            return
        s = self._session
        self._audit.write(s.session_id if s is not None else "connection", event_type, payload)
