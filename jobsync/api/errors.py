from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional

import httpx


class ApiErrorKind(str, Enum):
    network = "network"
    timeout = "timeout"
    auth = "auth"
    forbidden = "forbidden"
    not_found = "not_found"
    validation = "validation"
    rate_limit = "rate_limit"
    server = "server"
    unknown = "unknown"


_RETRYABLE = {ApiErrorKind.network, ApiErrorKind.timeout, ApiErrorKind.rate_limit, ApiErrorKind.server}

_USER_MESSAGES: Dict[ApiErrorKind, str] = {
    ApiErrorKind.network: "Unable to reach the download service. Check that it is running.",
    ApiErrorKind.timeout: "The download service took too long to respond.",
    ApiErrorKind.auth: "Authentication failed. Check the API key.",
    ApiErrorKind.forbidden: "This API key is not allowed to perform that action.",
    ApiErrorKind.not_found: "The requested job was not found.",
    ApiErrorKind.validation: "The request was rejected as invalid.",
    ApiErrorKind.rate_limit: "Too many requests. Try again shortly.",
    ApiErrorKind.server: "The download service reported an internal error.",
    ApiErrorKind.unknown: "An unexpected error occurred.",
}


def kind_for_status(status_code: int) -> ApiErrorKind:
    if status_code == 401:
        return ApiErrorKind.auth
    if status_code == 403:
        return ApiErrorKind.forbidden
    if status_code == 404:
        return ApiErrorKind.not_found
    if status_code in (400, 422):
        return ApiErrorKind.validation
    if status_code == 429:
        return ApiErrorKind.rate_limit
    if status_code in (408, 504):
        return ApiErrorKind.timeout
    if status_code >= 500:
        return ApiErrorKind.server
    return ApiErrorKind.unknown


def _extract_message(body: Any) -> Optional[str]:
    if not isinstance(body, dict):
        return None
    err = body.get("error")
    if isinstance(err, dict) and isinstance(err.get("message"), str):
        return err["message"]
    if isinstance(err, str):
        return err
    for key in ("message", "detail"):
        v = body.get(key)
        if isinstance(v, str):
            return v
    return None


class ApiError(RuntimeError):
    """A failed call to the worker's REST API, classified for retry decisions and display."""

    def __init__(
        self,
        kind: ApiErrorKind,
        message: str,
        *,
        status_code: Optional[int] = None,
        details: Any = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.status_code = status_code
        self.details = details

    @property
    def retryable(self) -> bool:
        return self.kind in _RETRYABLE

    def user_message(self) -> str:
        return _USER_MESSAGES[self.kind]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "status_code": self.status_code,
            "retryable": self.retryable,
        }

    @classmethod
    def from_response(cls, response: httpx.Response) -> "ApiError":
        try:
            body = response.json()
        except ValueError:
            body = None
        msg = _extract_message(body) or f"HTTP {response.status_code}"
        return cls(kind_for_status(response.status_code), msg, status_code=response.status_code, details=body)

    @classmethod
    def from_transport_error(cls, exc: httpx.TransportError) -> "ApiError":
        kind = ApiErrorKind.timeout if isinstance(exc, httpx.TimeoutException) else ApiErrorKind.network
        return cls(kind, f"{type(exc).__name__}: {exc}")
