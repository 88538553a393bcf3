from __future__ import annotations

import asyncio
import json
import os
from typing import Any, Callable, Coroutine, List, Optional, Tuple

import pytest

from jobsync.channel.base import ChannelError, ChannelHandlers
from jobsync.telemetry.audit import AuditLogger


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """
    Keep tests deterministic and isolated from developer machine env.
    """
    for k in list(os.environ.keys()):
        if k.startswith("JOBSYNC_"):
            monkeypatch.delenv(k, raising=False)


class _Timer:
    def __init__(self, due: float, seq: int, callback: Callable[[], None]) -> None:
        self.due = due
        self.seq = seq
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class _Spawned:
    def __init__(self, coro: Coroutine[Any, Any, Any]) -> None:
        self.coro = coro
        self.cancelled = False
        self.done = False

    def cancel(self) -> None:
        if not self.done:
            self.cancelled = True


class ManualScheduler:
    """
    Virtual clock. Timers fire only from advance(); spawned coroutines run to
    completion on a private loop whenever the clock is driven.
    """

    def __init__(self, start: float = 1000.0) -> None:
        self._now = start
        self._seq = 0
        self._timers: List[_Timer] = []
        self._spawned: List[_Spawned] = []
        self.loop = asyncio.new_event_loop()

    def now(self) -> float:
        return self._now

    def call_later(self, delay_s: float, callback: Callable[[], None]) -> _Timer:
        self._seq += 1
        t = _Timer(self._now + max(0.0, float(delay_s)), self._seq, callback)
        self._timers.append(t)
        return t

    def spawn(self, coro: Coroutine[Any, Any, Any]) -> _Spawned:
        h = _Spawned(coro)
        self._spawned.append(h)
        return h

    def pending(self) -> List[_Timer]:
        return [t for t in self._timers if not t.cancelled]

    def drain(self) -> None:
        while self._spawned:
            h = self._spawned.pop(0)
            if h.cancelled:
                h.coro.close()
                continue
            self.loop.run_until_complete(h.coro)
            h.done = True

    def advance(self, seconds: float) -> None:
        target = self._now + float(seconds)
        self.drain()
        while True:
            live = sorted((t for t in self._timers if not t.cancelled and t.due <= target), key=lambda t: (t.due, t.seq))
            if not live:
                break
            t = live[0]
            self._timers.remove(t)
            self._now = t.due
            t.callback()
            self.drain()
        self._timers = [t for t in self._timers if not t.cancelled]
        self._now = target

    def run(self, coro: Coroutine[Any, Any, Any]) -> Any:
        return self.loop.run_until_complete(coro)

    def close(self) -> None:
        for h in self._spawned:
            h.coro.close()
        self.loop.close()


class FakeChannel:
    """In-memory EventChannel. Tests play the server via accept/deliver/drop."""

    def __init__(self) -> None:
        self.url: Optional[str] = None
        self.handlers: Optional[ChannelHandlers] = None
        self.sent: List[str] = []
        self.closed: Optional[Tuple[int, str]] = None

    def open(self, url: str, handlers: ChannelHandlers) -> None:
        self.url = url
        self.handlers = handlers

    def send(self, text: str) -> None:
        if self.handlers is None or self.closed is not None:
            raise ChannelError("fake channel is not open")
        self.sent.append(text)

    def close(self, code: int = 1000, reason: str = "") -> None:
        self.closed = (code, reason)

    def accept(self) -> None:
        assert self.handlers is not None
        self.handlers.on_open()

    def deliver(self, frame: Any) -> None:
        assert self.handlers is not None
        self.handlers.on_message(frame if isinstance(frame, str) else json.dumps(frame))

    def drop(self, code: int = 1006, reason: str = "") -> None:
        assert self.handlers is not None
        self.handlers.on_close(code, reason)

    def fail(self, exc: BaseException) -> None:
        assert self.handlers is not None
        self.handlers.on_error(exc)

    def sent_frames(self) -> List[dict]:
        return [json.loads(s) for s in self.sent]


class ChannelFactoryStub:
    def __init__(self) -> None:
        self.channels: List[FakeChannel] = []

    def __call__(self) -> FakeChannel:
        ch = FakeChannel()
        self.channels.append(ch)
        return ch

    @property
    def last(self) -> FakeChannel:
        return self.channels[-1]


@pytest.fixture
def scheduler() -> ManualScheduler:
    s = ManualScheduler()
    yield s
    s.close()


@pytest.fixture
def channels() -> ChannelFactoryStub:
    return ChannelFactoryStub()


@pytest.fixture
def audit(tmp_path) -> AuditLogger:
    return AuditLogger(str(tmp_path / "audit.jsonl"))
