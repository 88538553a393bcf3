from __future__ import annotations

import json

import pytest

from jobsync.parsers.frames import FrameDecodeError, decode_frame, encode_control_frame


def test_decode_event_type_frame() -> None:
    f = decode_frame(json.dumps({"event_type": "job_progress", "job_id": 7, "data": {"progress": 5}, "timestamp": 1700000000}))
    assert f.event_type == "job_progress"
    assert f.job_id == "7"
    assert f.data == {"progress": 5}
    assert f.timestamp == 1700000000.0


def test_decode_legacy_type_tag_and_bytes() -> None:
    f = decode_frame(b'{"type": "pong", "timestamp": "soon"}')
    assert f.event_type == "pong"
    assert f.data == {}
    assert f.timestamp is None


@pytest.mark.parametrize(
    "raw",
    [
        "not json",
        "[1, 2]",
        '{"data": {}}',
        '{"event_type": "job_status", "data": [1]}',
        b"\xff\xfe",
    ],
)
def test_decode_rejects_malformed(raw) -> None:
    with pytest.raises(FrameDecodeError):
        decode_frame(raw)


def test_encode_control_frame() -> None:
    assert json.loads(encode_control_frame("ping", timestamp_ms=1234)) == {"type": "ping", "timestamp": 1234}
