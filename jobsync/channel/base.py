from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Protocol
from urllib.parse import quote, urlsplit, urlunsplit

from jobsync.models import CloseKind
from jobsync.settings import Settings


# Close codes. 4xxx are application codes sent by the worker (or synthesized
# by the channel from an HTTP handshake rejection).
CLOSE_NORMAL = 1000
CLOSE_GOING_AWAY = 1001
CLOSE_ABNORMAL = 1006
CLOSE_POLICY_VIOLATION = 1008
CLOSE_INTERNAL_ERROR = 1011
CLOSE_HEARTBEAT_TIMEOUT = 4000
CLOSE_AUTH_FAILED = 4001
CLOSE_FORBIDDEN = 4003
CLOSE_JOB_NOT_FOUND = 4004

_AUTH_HINTS = ("auth", "token", "unauthor", "forbidden")


class ChannelError(RuntimeError):
    """Raised by EventChannel.send when the channel is not open."""


@dataclass(frozen=True)
class ChannelHandlers:
    on_open: Callable[[], None]
    on_message: Callable[[str], None]
    on_close: Callable[[int, str], None]
    on_error: Callable[[BaseException], None]


class EventChannel(Protocol):
    """
    One bidirectional message channel to the worker.

    A channel instance is opened at most once. `on_close` fires exactly once per
    successful or failed `open`, after which the instance is discarded.
    """

    def open(self, url: str, handlers: ChannelHandlers) -> None:
        ...

    def send(self, text: str) -> None:
        ...

    def close(self, code: int = CLOSE_NORMAL, reason: str = "") -> None:
        ...


ChannelFactory = Callable[[], EventChannel]


def classify_close(code: int, reason: str = "") -> CloseKind:
    if code in (CLOSE_AUTH_FAILED, CLOSE_FORBIDDEN):
        return CloseKind.auth
    if code == CLOSE_JOB_NOT_FOUND:
        return CloseKind.not_found
    if code == CLOSE_POLICY_VIOLATION and any(h in (reason or "").lower() for h in _AUTH_HINTS):
        return CloseKind.auth
    if code in (CLOSE_NORMAL, CLOSE_GOING_AWAY):
        return CloseKind.normal
    return CloseKind.network


def _ws_base(base_url: str) -> str:
    parts = urlsplit(base_url.rstrip("/"))
    scheme = {"http": "ws", "https": "wss"}.get(parts.scheme, parts.scheme or "ws")
    return urlunsplit((scheme, parts.netloc, parts.path, "", ""))


def global_events_url(settings: Settings) -> str:
    return f"{_ws_base(settings.base_url)}{settings.events_path}?token={quote(settings.api_key, safe='')}"


def job_events_url(settings: Settings, job_id: str) -> str:
    path = settings.job_events_path_template.format(job_id=quote(str(job_id), safe=""))
    return f"{_ws_base(settings.base_url)}{path}?token={quote(settings.api_key, safe='')}"
