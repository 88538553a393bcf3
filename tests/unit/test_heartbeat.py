from __future__ import annotations

from jobsync.models import ConnectionState
from jobsync.sync.connection import ConnectionStateMachine, ReconnectPolicy
from jobsync.sync.heartbeat import HeartbeatConfig

URL = "ws://worker/api/v1/events?token=k"


def _machine(scheduler, channels, audit) -> ConnectionStateMachine:
    return ConnectionStateMachine(
        channel_factory=channels,
        scheduler=scheduler,
        policy=ReconnectPolicy(base_s=2.0, factor=2.0, max_s=30.0, max_attempts=10),
        heartbeat=HeartbeatConfig(enabled=True, interval_s=30.0, timeout_s=10.0),
        audit=audit,
    )


def _connected(scheduler, channels, audit) -> ConnectionStateMachine:
    m = _machine(scheduler, channels, audit)
    m.set_frame_handler(lambda raw, s: None)
    m.connect(URL)
    channels.last.accept()
    return m


def test_probe_sent_every_interval(scheduler, channels, audit) -> None:
    m = _connected(scheduler, channels, audit)
    scheduler.advance(29.0)
    assert channels.last.sent == []
    scheduler.advance(1.0)
    frames = channels.last.sent_frames()
    assert [f["type"] for f in frames] == ["ping"]
    assert isinstance(frames[0]["timestamp"], int)
    assert m.heartbeat.awaiting_pong


def test_pong_disarms_timeout(scheduler, channels, audit) -> None:
    m = _connected(scheduler, channels, audit)
    scheduler.advance(30.0)
    m.heartbeat.handle_pong()
    assert not m.heartbeat.awaiting_pong
    assert m.heartbeat.last_ack == scheduler.now()
    scheduler.advance(15.0)
    assert m.state is ConnectionState.connected


def test_missing_pong_forces_reconnect_within_timeout(scheduler, channels, audit) -> None:
    m = _connected(scheduler, channels, audit)
    first = channels.last
    scheduler.advance(30.0)
    scheduler.advance(9.5)
    assert m.state is ConnectionState.connected
    scheduler.advance(0.5)
    assert m.state is ConnectionState.reconnecting
    assert first.closed == (4000, "heartbeat timeout")
    assert m.session is not None and m.session.last_error == "heartbeat timeout"

    # The real close arriving afterwards is stale.
    first.drop(4000, "heartbeat timeout")
    assert m.session.reconnect_attempt == 1


def test_heartbeat_stops_on_disconnect(scheduler, channels, audit) -> None:
    m = _connected(scheduler, channels, audit)
    m.disconnect()
    assert scheduler.pending() == []
    assert not m.heartbeat.running


def test_single_heartbeat_timer_across_reconnects(scheduler, channels, audit) -> None:
    m = _connected(scheduler, channels, audit)
    for _ in range(3):
        channels.last.drop(1006, "flap")
        scheduler.advance(m.session.next_retry_delay_s)
        channels.last.accept()
    # One probe timer, no reconnect timer, no stray timeouts.
    assert len(scheduler.pending()) == 1


def test_server_ping_is_answered(scheduler, channels, audit) -> None:
    m = _connected(scheduler, channels, audit)
    m.heartbeat.handle_ping()
    assert [f["type"] for f in channels.last.sent_frames()] == ["pong"]


def test_disabled_heartbeat_never_probes(scheduler, channels, audit) -> None:
    m = ConnectionStateMachine(
        channel_factory=channels,
        scheduler=scheduler,
        heartbeat=HeartbeatConfig(enabled=False),
        audit=audit,
    )
    m.connect(URL)
    channels.last.accept()
    scheduler.advance(300.0)
    assert channels.last.sent == []
    assert m.state is ConnectionState.connected
