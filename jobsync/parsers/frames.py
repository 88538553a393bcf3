from __future__ import annotations

import json
from typing import Any, Dict, Union

from jobsync.models import ChannelFrame


class FrameDecodeError(ValueError):
    pass


def decode_frame(raw: Union[str, bytes]) -> ChannelFrame:
    """
    Decode one inbound channel message.

    The tag is read from `event_type`; older workers send `type` instead.
    Raises FrameDecodeError for anything that is not a tagged JSON object.
    """
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise FrameDecodeError(f"frame is not utf-8: {e}") from e
    try:
        obj = json.loads(raw)
    except (TypeError, json.JSONDecodeError) as e:
        raise FrameDecodeError(f"frame is not JSON: {e}") from e
    if not isinstance(obj, dict):
        raise FrameDecodeError(f"frame is not an object: {type(obj).__name__}")

    tag = obj.get("event_type") or obj.get("type")
    if not isinstance(tag, str) or not tag.strip():
        raise FrameDecodeError("frame has no event_type/type tag")

    data = obj.get("data")
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise FrameDecodeError(f"frame data is not an object: {type(data).__name__}")

    job_id = obj.get("job_id")
    ts = obj.get("timestamp")
    return ChannelFrame(
        event_type=tag.strip(),
        job_id=str(job_id) if job_id not in (None, "") else None,
        data=data,
        timestamp=float(ts) if isinstance(ts, (int, float)) and not isinstance(ts, bool) else None,
    )


def encode_control_frame(kind: str, *, timestamp_ms: int, extra: Dict[str, Any] | None = None) -> str:
    """Outbound ping/pong: {"type": kind, "timestamp": <ms>}."""
    body: Dict[str, Any] = {"type": kind, "timestamp": int(timestamp_ms)}
    if extra:
        body.update(extra)
    return json.dumps(body)
