from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional

from jobsync.models import ConnectionState, Job, PollingSnapshot
from jobsync.registry.store import JobRegistry
from jobsync.settings import Settings
from jobsync.sync.scheduler import Scheduler, TimerHandle
from jobsync.telemetry.audit import AuditLogger


JobsFetcher = Callable[[], Awaitable[List[Job]]]


@dataclass(frozen=True)
class PollingConfig:
    enabled: bool = True
    interval_s: float = 3.0
    max_interval_s: float = 15.0
    backoff_multiplier: float = 1.5
    # Poll even while the channel is connected.
    always: bool = False

    @classmethod
    def from_settings(cls, s: Settings) -> "PollingConfig":
        return cls(
            enabled=s.polling_enabled,
            interval_s=s.poll_interval_s,
            max_interval_s=s.poll_max_interval_s,
            backoff_multiplier=s.poll_backoff_multiplier,
            always=s.poll_always,
        )


def should_poll(state: ConnectionState, cfg: PollingConfig) -> bool:
    return bool(cfg.enabled) and (bool(cfg.always) or state is not ConnectionState.connected)


class PollingFallbackCoordinator:
    """
    Keeps the registry fresh over REST while the event channel cannot deliver.

    Driven by connection state: active exactly while `should_poll` holds. Each
    cycle fetches the full job list and replaces the registry. Failures grow the
    interval by `backoff_multiplier` up to `max_interval_s`; a success snaps it
    back to `interval_s`. A fetch that completes after deactivation is discarded.
    """

    def __init__(
        self,
        *,
        fetch: JobsFetcher,
        registry: JobRegistry,
        scheduler: Scheduler,
        config: PollingConfig | None = None,
        audit: AuditLogger | None = None,
        on_change: Callable[[], None] | None = None,
    ) -> None:
        self._fetch = fetch
        self.registry = registry
        self.scheduler = scheduler
        self.config = config or PollingConfig()
        self._audit = audit
        self._on_change = on_change
        self._active = False
        self._epoch = 0
        self._interval_s: float = float(self.config.interval_s)
        self._timer: Optional[TimerHandle] = None
        self._task: Optional[TimerHandle] = None
        self.last_success_at: Optional[float] = None
        self.last_error: Optional[str] = None
        # Error log dedupe: same signature is written at most once a minute.
        self._last_error_sig: Optional[str] = None
        self._last_error_ts: float = 0.0

    @property
    def active(self) -> bool:
        return self._active

    @property
    def current_interval_s(self) -> float:
        return self._interval_s

    @property
    def in_flight(self) -> bool:
        return self._task is not None

    def snapshot(self) -> PollingSnapshot:
        return PollingSnapshot(
            active=self._active,
            current_interval_s=self._interval_s,
            last_success_at=self.last_success_at,
            last_error=self.last_error,
        )

    def on_state_change(self, state: ConnectionState) -> None:
        if should_poll(state, self.config):
            self.start()
        else:
            self.stop()

    def start(self) -> None:
        if self._active:
            return
        self._active = True
        self._epoch += 1
        self._interval_s = float(self.config.interval_s)
        self._write("poll.started", {"interval_s": self._interval_s})
        self._notify()
        self._poll_now(self._epoch)

    def stop(self) -> None:
        if not self._active:
            return
        self._active = False
        self._epoch += 1
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._task is not None:
            self._task.cancel()
            self._task = None
        self._write("poll.stopped", {"interval_s": self._interval_s})
        self._notify()

    async def refresh(self) -> bool:
        """One out-of-band fetch; does not touch the schedule or the interval."""
        try:
            jobs = await self._fetch()
        except asyncio.CancelledError:
            raise
        except Exception as e:  # noqa: BLE001
            self.last_error = f"{type(e).__name__}: {e}"
            self._log_error(self.last_error)
            return False
        self.registry.set_all(jobs)
        self.last_success_at = self.scheduler.now()
        self.last_error = None
        return True

    # ---- cycle ----

    def _poll_now(self, epoch: int) -> None:
        if epoch != self._epoch or not self._active:
            return
        self._timer = None
        self._task = self.scheduler.spawn(self._cycle(epoch))

    async def _cycle(self, epoch: int) -> None:
        try:
            jobs = await self._fetch()
        except asyncio.CancelledError:
            raise
        except Exception as e:  # noqa: BLE001
            if epoch != self._epoch:
                return
            self._on_failure(e)
        else:
            if epoch != self._epoch:
                return
            self.registry.set_all(jobs)
            self.last_success_at = self.scheduler.now()
            self.last_error = None
            if self._interval_s != float(self.config.interval_s):
                self._interval_s = float(self.config.interval_s)
                self._notify()
        if epoch != self._epoch or not self._active:
            return
        self._task = None
        self._timer = self.scheduler.call_later(self._interval_s, lambda: self._poll_now(epoch))

    def _on_failure(self, e: Exception) -> None:
        self.last_error = f"{type(e).__name__}: {e}"
        self._log_error(self.last_error)
        grown = min(float(self.config.max_interval_s), self._interval_s * float(self.config.backoff_multiplier))
        if grown != self._interval_s:
            self._interval_s = grown
            self._write("poll.backoff", {"interval_s": round(grown, 3), "reason": type(e).__name__})
            self._notify()

    def _log_error(self, err_sig: str) -> None:
        now_s = self.scheduler.now()
        if (self._last_error_sig != err_sig) or (now_s - self._last_error_ts > 60.0):
            self._write("poll.error", {"error": err_sig, "interval_s": round(self._interval_s, 3)})
            self._last_error_sig = err_sig
            self._last_error_ts = now_s

    def _write(self, event_type: str, payload: dict) -> None:
        if self._audit is not None:
            self._audit.write("poller", event_type, payload)

    def _notify(self) -> None:
        if self._on_change is None:
            return
        try:
            self._on_change()
        except Exception as e:  # noqa: BLE001
            self._write("poll.listener_failed", {"error": f"{type(e).__name__}: {e}"})
