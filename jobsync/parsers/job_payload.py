from __future__ import annotations

import math
from typing import Any, Dict, List, Optional, Tuple

from pydantic import ValidationError

from jobsync.models import Job, JobStatus


# Worker status vocabulary -> canonical status. Unknown values are rejected by the caller.
_STATUS_ALIASES: Dict[str, JobStatus] = {
    "queued": JobStatus.queued,
    "pending": JobStatus.queued,
    "waiting": JobStatus.queued,
    "downloading": JobStatus.downloading,
    "running": JobStatus.downloading,
    "in_progress": JobStatus.downloading,
    "completed": JobStatus.completed,
    "complete": JobStatus.completed,
    "finished": JobStatus.completed,
    "success": JobStatus.completed,
    "failed": JobStatus.failed,
    "error": JobStatus.failed,
    "cancelled": JobStatus.failed,
    "canceled": JobStatus.failed,
}

_CANCELLED = {"cancelled", "canceled"}

# Worker field names -> Job field names
_FIELD_ALIASES: Dict[str, str] = {
    "job_id": "id",
    "files_total": "total_files",
    "error_message": "error",
    "started_at": "start_time",
    "created_time": "start_time",
    "completed_at": "end_time",
    "current_track": "current_file",
    "title": "content_title",
    "title_id": "content_id",
}

_INT_FIELDS = ("total_files", "downloaded_bytes", "total_bytes")
_JOB_FIELDS = set(Job.model_fields)


def normalize_status(raw: Any) -> Optional[JobStatus]:
    if isinstance(raw, JobStatus):
        return raw
    if not isinstance(raw, str):
        return None
    return _STATUS_ALIASES.get(raw.strip().lower())


def _as_int(v: Any) -> Optional[int]:
    if isinstance(v, bool):
        return None
    try:
        return int(v)
    except (TypeError, ValueError):
        return None


def _as_progress(v: Any) -> Optional[float]:
    if isinstance(v, bool):
        return None
    try:
        p = float(v)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(p):
        return None
    return max(0.0, min(100.0, p))


def normalize_job_fields(payload: Dict[str, Any], *, job_id: Optional[str] = None) -> Tuple[Optional[str], Dict[str, Any]]:
    """
    Map a worker payload onto Job field names.

    Returns (job_id, partial_update). The update never contains `id` and never
    contains None values, so merging it only touches fields the worker reported.
    Unknown keys are dropped. Raises ValueError for a status outside the vocabulary.
    """
    update: Dict[str, Any] = {}
    for key, value in (payload or {}).items():
        if value is None:
            continue
        field = _FIELD_ALIASES.get(key, key)
        # Canonical names win over aliases when both are present.
        if field != key and field in payload and payload.get(field) is not None:
            continue
        if field in _JOB_FIELDS:
            update[field] = value

    pid = update.pop("id", None)
    resolved_id = str(pid) if pid not in (None, "") else job_id

    if "status" in update:
        raw_status = update["status"]
        status = normalize_status(raw_status)
        if status is None:
            raise ValueError(f"unknown job status: {raw_status!r}")
        update["status"] = status
        if isinstance(raw_status, str) and raw_status.strip().lower() in _CANCELLED:
            update.setdefault("error", "Cancelled")

    if "progress" in update:
        p = _as_progress(update["progress"])
        if p is None:
            update.pop("progress")
        else:
            update["progress"] = p

    for field in _INT_FIELDS:
        if field in update:
            n = _as_int(update[field])
            if n is None:
                update.pop(field)
            else:
                update[field] = n

    for field in ("current_file", "error", "start_time", "end_time", "service", "content_id", "content_title"):
        if field in update and not isinstance(update[field], str):
            update[field] = str(update[field])

    return resolved_id, update


def parse_job(raw: Any) -> Optional[Job]:
    """Full Job from one list entry; None for entries without an id or with invalid fields."""
    if not isinstance(raw, dict):
        return None
    try:
        job_id, update = normalize_job_fields(raw)
    except ValueError:
        return None
    if not job_id:
        return None
    try:
        return Job.model_validate({"id": job_id, **update})
    except ValidationError:
        return None


def parse_job_list(payload: Any) -> List[Job]:
    """
    Accepts the shapes the worker has used for its job list:
    a bare list, {"jobs": [...]}, or the {"status": ..., "data": [...]} envelope.
    """
    items: Any = payload
    if isinstance(payload, dict):
        if isinstance(payload.get("jobs"), list):
            items = payload["jobs"]
        elif isinstance(payload.get("data"), list):
            items = payload["data"]
        elif isinstance(payload.get("data"), dict) and isinstance(payload["data"].get("jobs"), list):
            items = payload["data"]["jobs"]
        else:
            items = []
    if not isinstance(items, list):
        return []
    out: List[Job] = []
    for raw in items:
        job = parse_job(raw)
        if job is not None:
            out.append(job)
    return out
