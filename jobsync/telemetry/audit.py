from __future__ import annotations

import json
import os
import uuid
from collections import deque
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


class AuditLogger:
    """
    Append-only JSONL event log. One record per line:
    {"ts", "correlation_id", "actor", "event_type", "payload"}.
    """

    def __init__(self, path: str, *, actor: str = "jobsync"):
        self.path = path
        self.actor = actor
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)

    def new_correlation_id(self) -> str:
        return uuid.uuid4().hex

    def write(
        self,
        correlation_id: str,
        event_type: str,
        payload: Dict[str, Any],
        *,
        actor: Optional[str] = None,
        timestamp: Optional[str] = None,
    ) -> None:
        record = {
            "ts": timestamp or datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "correlation_id": correlation_id,
            "actor": actor or self.actor,
            "event_type": event_type,
            "payload": payload,
        }
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(json.dumps(record, ensure_ascii=False, default=str) + "\n")


def read_audit_tail(path: str, *, max_lines: int = 200) -> List[Dict[str, Any]]:
    """Last `max_lines` parseable records of an audit log; missing file -> []."""
    if not os.path.exists(path):
        return []
    tail: deque[str] = deque(maxlen=max(1, int(max_lines)))
    with open(path, "r", encoding="utf-8", errors="replace") as f:
        for line in f:
            if line.strip():
                tail.append(line)
    out: List[Dict[str, Any]] = []
    for line in tail:
        try:
            rec = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(rec, dict):
            out.append(rec)
    return out
