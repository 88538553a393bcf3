from __future__ import annotations

from typing import Dict, List, Optional

from jobsync.models import ServiceHealth, ServiceStatus


_STATUS_ALIASES: Dict[str, ServiceStatus] = {
    "available": ServiceStatus.available,
    "ok": ServiceStatus.available,
    "healthy": ServiceStatus.available,
    "degraded": ServiceStatus.degraded,
    "unavailable": ServiceStatus.unavailable,
    "error": ServiceStatus.unavailable,
    "down": ServiceStatus.unavailable,
}


def normalize_service_status(raw: str) -> Optional[ServiceStatus]:
    return _STATUS_ALIASES.get((raw or "").strip().lower())


class ServiceHealthStore:
    """Per-service health as reported over the event channel. Never written by polling."""

    def __init__(self) -> None:
        self._records: Dict[str, ServiceHealth] = {}

    def update(
        self,
        service_id: str,
        status: ServiceStatus,
        *,
        auth_status: Optional[str] = None,
        error: Optional[str] = None,
        at: Optional[float] = None,
    ) -> ServiceHealth:
        rec = ServiceHealth(service_id=service_id, status=status, auth_status=auth_status, error=error, updated_at=at)
        self._records[service_id] = rec
        return rec

    def get(self, service_id: str) -> Optional[ServiceHealth]:
        return self._records.get(service_id)

    def all(self) -> List[ServiceHealth]:
        return sorted(self._records.values(), key=lambda r: r.service_id)
