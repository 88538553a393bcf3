from __future__ import annotations

import asyncio
from typing import Any, Optional, Set

import websockets
from websockets.exceptions import ConnectionClosed, InvalidHandshake

from jobsync.channel.base import (
    CLOSE_ABNORMAL,
    CLOSE_AUTH_FAILED,
    CLOSE_INTERNAL_ERROR,
    CLOSE_JOB_NOT_FOUND,
    CLOSE_NORMAL,
    ChannelError,
    ChannelHandlers,
)


def _handshake_status(exc: BaseException) -> Optional[int]:
    # websockets >= 13 exposes the rejected response; older releases set status_code directly.
    response = getattr(exc, "response", None)
    status = getattr(response, "status_code", None)
    if status is None:
        status = getattr(exc, "status_code", None)
    return int(status) if isinstance(status, int) else None


def close_code_for_http_status(status: Optional[int]) -> int:
    if status in (401, 403):
        return CLOSE_AUTH_FAILED
    if status == 404:
        return CLOSE_JOB_NOT_FOUND
    return CLOSE_ABNORMAL


class WebSocketChannel:
    """
    EventChannel over the `websockets` asyncio client.

    open() returns immediately; the connection runs as a task on the current
    event loop and reports back through the handlers.
    """

    def __init__(self, *, open_timeout_s: float = 10.0, close_timeout_s: float = 5.0) -> None:
        self.open_timeout_s = float(open_timeout_s)
        self.close_timeout_s = float(close_timeout_s)
        self._ws: Any = None
        self._task: Optional[asyncio.Task] = None
        self._pending: Set[asyncio.Task] = set()
        self._started = False
        self._closing = False

    def open(self, url: str, handlers: ChannelHandlers) -> None:
        if self._task is not None:
            raise ChannelError("channel already opened")
        self._task = asyncio.get_running_loop().create_task(self._run(url, handlers))

    def send(self, text: str) -> None:
        if self._ws is None or self._closing:
            raise ChannelError("channel is not open")
        self._track(self._ws.send(text))

    def close(self, code: int = CLOSE_NORMAL, reason: str = "") -> None:
        if self._closing:
            return
        self._closing = True
        if self._ws is not None:
            self._track(self._ws.close(code=code, reason=reason))
        elif self._task is not None and self._started:
            # A task cancelled before its first step never runs its handlers;
            # an unstarted _run sees _closing instead.
            self._task.cancel()

    def _track(self, coro: Any) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _run(self, url: str, h: ChannelHandlers) -> None:
        self._started = True
        if self._closing:
            h.on_close(CLOSE_NORMAL, "closed before open")
            return
        try:
            ws = await websockets.connect(
                url,
                open_timeout=self.open_timeout_s,
                close_timeout=self.close_timeout_s,
                # Liveness is handled by the in-channel ping/pong frames.
                ping_interval=None,
            )
        except asyncio.CancelledError:
            h.on_close(CLOSE_NORMAL, "closed before open")
            return
        except InvalidHandshake as e:
            status = _handshake_status(e)
            h.on_error(e)
            h.on_close(close_code_for_http_status(status), f"handshake rejected: HTTP {status}" if status else str(e))
            return
        except Exception as e:  # noqa: BLE001
            # Includes InvalidURI, which is not a handshake failure.
            h.on_error(e)
            h.on_close(CLOSE_ABNORMAL, f"{type(e).__name__}: {e}")
            return

        self._ws = ws
        failure: Optional[BaseException] = None
        try:
            if self._closing:
                await ws.close()
            else:
                h.on_open()
            async for message in ws:
                if isinstance(message, bytes):
                    message = message.decode("utf-8", errors="replace")
                h.on_message(message)
        except ConnectionClosed:
            pass
        except asyncio.CancelledError:
            await ws.close()
        except Exception as e:  # noqa: BLE001
            failure = e
            h.on_error(e)
            await ws.close(code=CLOSE_INTERNAL_ERROR, reason="client error")
        finally:
            self._ws = None
            if failure is not None:
                h.on_close(CLOSE_ABNORMAL, f"{type(failure).__name__}: {failure}")
            else:
                code = ws.close_code if ws.close_code is not None else CLOSE_ABNORMAL
                h.on_close(int(code), ws.close_reason or "")
