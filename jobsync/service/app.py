from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from jobsync.api.errors import ApiError, ApiErrorKind
from jobsync.models import JobBucket
from jobsync.settings import Settings
from jobsync.sync.client import JobSyncClient
from jobsync.telemetry.audit import read_audit_tail


_HTTP_FOR_KIND: Dict[ApiErrorKind, int] = {
    ApiErrorKind.auth: 401,
    ApiErrorKind.forbidden: 403,
    ApiErrorKind.not_found: 404,
    ApiErrorKind.validation: 422,
    ApiErrorKind.rate_limit: 429,
    ApiErrorKind.timeout: 504,
}


class ConnectRequest(BaseModel):
    job_id: Optional[str] = None


def _client(request: Request) -> JobSyncClient:
    return request.app.state.client


def create_app(settings: Settings | None = None, client: JobSyncClient | None = None) -> FastAPI:
    """
    App factory used by uvicorn, the CLI and tests.

    The sync client must live on the server's event loop, so unless one is
    injected it is built inside the lifespan.
    """
    s = settings or (client.settings if client is not None else Settings())

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        c = client or JobSyncClient(s)
        app.state.client = c
        c.start()
        if s.connect_on_startup:
            c.connect_to_global()
        try:
            yield
        finally:
            c.close()

    app = FastAPI(title="jobsync", version="0.1.0", lifespan=lifespan)
    app.state.settings = s

    @app.exception_handler(ApiError)
    async def _api_error(request: Request, exc: ApiError) -> JSONResponse:
        status = _HTTP_FOR_KIND.get(exc.kind, 502)
        return JSONResponse({"ok": False, "error": exc.to_dict(), "message": exc.user_message()}, status_code=status)

    @app.get("/health")
    async def health() -> Dict[str, Any]:
        return {"ok": True, "version": "0.1.0"}

    @app.get("/sync/status")
    async def sync_status(request: Request) -> JSONResponse:
        return JSONResponse(_client(request).snapshot().model_dump(mode="json"))

    @app.post("/sync/connect")
    async def sync_connect(request: Request, body: ConnectRequest | None = None) -> JSONResponse:
        c = _client(request)
        if body is not None and body.job_id:
            c.connect_to_job(body.job_id)
        else:
            c.connect_to_global()
        return JSONResponse({"ok": True, "state": c.connection_state.value})

    @app.post("/sync/disconnect")
    async def sync_disconnect(request: Request) -> JSONResponse:
        c = _client(request)
        c.disconnect()
        return JSONResponse({"ok": True, "state": c.connection_state.value})

    @app.post("/sync/refresh")
    async def sync_refresh(request: Request) -> JSONResponse:
        c = _client(request)
        ok = await c.refresh_now()
        return JSONResponse({"ok": ok, "error": c.polling.last_error, "jobs": len(c.registry)})

    @app.get("/jobs")
    async def list_jobs(request: Request) -> JSONResponse:
        reg = _client(request).registry
        return JSONResponse(
            {
                "stats": reg.stats().model_dump(mode="json"),
                **{b.value: [j.model_dump(mode="json") for j in reg.bucket(b)] for b in JobBucket},
            }
        )

    @app.get("/jobs/{job_id}")
    async def get_job(request: Request, job_id: str) -> JSONResponse:
        job = _client(request).registry.get(job_id)
        if job is None:
            raise HTTPException(status_code=404, detail="job not found")
        return JSONResponse(job.model_dump(mode="json"))

    @app.post("/jobs/clear-completed")
    async def clear_completed(request: Request) -> JSONResponse:
        return JSONResponse({"ok": True, "removed": _client(request).clear_completed()})

    @app.post("/jobs/{job_id}/cancel")
    async def cancel_job(request: Request, job_id: str) -> JSONResponse:
        await _client(request).cancel_job(job_id)
        return JSONResponse({"ok": True, "job_id": job_id})

    @app.post("/jobs/{job_id}/retry")
    async def retry_job(request: Request, job_id: str) -> JSONResponse:
        job = await _client(request).retry_job(job_id)
        return JSONResponse({"ok": True, "job": job.model_dump(mode="json")})

    @app.get("/api/audit/recent")
    async def audit_recent(request: Request, n: int = 200) -> JSONResponse:
        return JSONResponse({"records": read_audit_tail(_client(request).audit.path, max_lines=max(1, min(n, 2000)))})

    return app
