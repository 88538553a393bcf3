from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx

from jobsync.api.errors import ApiError, ApiErrorKind
from jobsync.models import Job
from jobsync.parsers.job_payload import parse_job, parse_job_list
from jobsync.settings import Settings


@dataclass(frozen=True)
class JobsApiClient:
    """
    Async REST wrapper for the download worker.

    Every failure surfaces as ApiError. Mockable in tests via the transport override.
    """

    base_url: str
    api_key: str
    api_prefix: str = "/api"
    timeout_s: float = 30.0
    transport: httpx.AsyncBaseTransport | None = None

    @classmethod
    def from_settings(cls, s: Settings, *, transport: httpx.AsyncBaseTransport | None = None) -> "JobsApiClient":
        return cls(
            base_url=s.base_url,
            api_key=s.api_key,
            api_prefix=s.api_prefix,
            timeout_s=s.http_timeout_s,
            transport=transport,
        )

    def _url(self, path: str) -> str:
        prefix = "/" + self.api_prefix.strip("/") if self.api_prefix.strip("/") else ""
        return f"{self.base_url.rstrip('/')}{prefix}{path}"

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}", "Accept": "application/json"}

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout_s, transport=self.transport)

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            async with self._client() as c:
                r = await c.request(method, self._url(path), headers=self._headers(), **kwargs)
        except httpx.TransportError as e:
            raise ApiError.from_transport_error(e) from e
        if r.status_code >= 400:
            raise ApiError.from_response(r)
        if not r.content:
            return None
        try:
            body = r.json()
        except ValueError as e:
            raise ApiError(ApiErrorKind.unknown, "response is not JSON", status_code=r.status_code) from e
        # Envelope form: {"status": "error", "error": {...}} with a 2xx code.
        if isinstance(body, dict) and body.get("status") == "error":
            err = body.get("error") or {}
            msg = err.get("message") if isinstance(err, dict) else str(err)
            raise ApiError(ApiErrorKind.unknown, msg or "request failed", status_code=r.status_code, details=body)
        return body

    async def list_jobs(self) -> List[Job]:
        return parse_job_list(await self._request("GET", "/download/jobs"))

    async def get_job(self, job_id: str) -> Optional[Job]:
        body = await self._request("GET", f"/download/jobs/{quote(job_id, safe='')}")
        if isinstance(body, dict) and isinstance(body.get("data"), dict):
            body = body["data"]
        if isinstance(body, dict) and isinstance(body.get("job"), dict):
            body = body["job"]
        return parse_job(body)

    async def cancel_job(self, job_id: str) -> None:
        await self._request("DELETE", f"/download/jobs/{quote(job_id, safe='')}")

    async def retry_job(self, job_id: str) -> None:
        await self._request("POST", f"/download/jobs/{quote(job_id, safe='')}/retry")

    async def health(self) -> Dict[str, Any]:
        body = await self._request("GET", "/health")
        return body if isinstance(body, dict) else {}
