"""Request ids, request logging, and the JSON error envelope.

Every error response has the shape::

    {"error": {"code": "...", "message": "...", "details": {..., "request_id": "..."}}}

and carries the ``X-Request-Id`` header. Domain errors (``AppError``) map to
their own status and code; request-schema failures become ``VALIDATION_ERROR``;
unknown routes become ``NOT_FOUND``; anything else is a logged 500.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from time import perf_counter
from typing import TYPE_CHECKING, Any
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError, ResponseValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from marketplace.core.config import settings
from marketplace.core.errors import AppError, ErrorCode, RateLimitedError
from marketplace.core.logging import get_audit_logger, get_logger

if TYPE_CHECKING:
    from starlette.types import ASGIApp, Message, Receive, Scope, Send

logger = get_logger(__name__)
audit_logger = get_audit_logger()

REQUEST_ID_HEADER = "X-Request-Id"
_REQUEST_ID_HEADER_BYTES = REQUEST_ID_HEADER.lower().encode("latin-1")
_SAFE_REQUEST_ID = re.compile(r"^[A-Za-z0-9._-]{1,128}$")
_HEALTH_PATHS = frozenset({"/health", "/healthz", "/readyz"})

_HTTP_STATUS_CODES: dict[int, ErrorCode] = {
    400: ErrorCode.VALIDATION_ERROR,
    401: ErrorCode.UNAUTHORIZED,
    403: ErrorCode.FORBIDDEN,
    404: ErrorCode.NOT_FOUND,
    405: ErrorCode.NOT_FOUND,
    429: ErrorCode.RATE_LIMITED,
}


def _safe_request_id(raw: str | None) -> str:
    if raw is not None:
        candidate = raw.strip()
        if _SAFE_REQUEST_ID.match(candidate):
            return candidate
    return str(uuid4())


class RequestIdMiddleware:
    """Assign a request id, echo it back, and emit per-request logs."""

    def __init__(self, app: ASGIApp) -> None:
        self._app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self._app(scope, receive, send)
            return

        request_id = _safe_request_id(_header_value(scope, _REQUEST_ID_HEADER_BYTES))
        scope.setdefault("state", {})["request_id"] = request_id

        path = str(scope.get("path", ""))
        method = str(scope.get("method", ""))
        should_log = settings.request_log_include_health or path not in _HEALTH_PATHS
        status_code = 500
        started = perf_counter()
        if should_log:
            logger.debug(
                "http.request.start",
                extra={"request_id": request_id, "method": method, "path": path},
            )

        async def send_with_request_id(message: Message) -> None:
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = int(message["status"])
                headers = list(message.get("headers", []))
                if not any(key.lower() == _REQUEST_ID_HEADER_BYTES for key, _ in headers):
                    headers.append((_REQUEST_ID_HEADER_BYTES, request_id.encode("latin-1")))
                message["headers"] = headers
            await send(message)

        try:
            await self._app(scope, receive, send_with_request_id)
        finally:
            if should_log:
                duration_ms = round((perf_counter() - started) * 1000, 2)
                fields = {
                    "request_id": request_id,
                    "method": method,
                    "path": path,
                    "status_code": status_code,
                    "duration_ms": duration_ms,
                }
                logger.info("http.request.finish", extra=fields)
                threshold = settings.request_log_slow_ms
                if threshold and duration_ms >= threshold:
                    logger.warning(
                        "http.request.slow",
                        extra={**fields, "slow_threshold_ms": threshold},
                    )


def _header_value(scope: Scope, name: bytes) -> str | None:
    for key, value in scope.get("headers", []):
        if key.lower() == name:
            return value.decode("latin-1")
    return None


def _get_request_id(request: Request) -> str | None:
    request_id = getattr(request.state, "request_id", None)
    if isinstance(request_id, str) and request_id:
        return request_id
    return None


def _json_safe(value: object) -> object:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).decode("utf-8", errors="replace")
    if isinstance(value, Mapping):
        return {str(key): _json_safe(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_json_safe(item) for item in value]
    return str(value)


def _error_payload(
    *,
    code: ErrorCode,
    message: str,
    details: Mapping[str, Any] | None,
    request_id: str | None,
) -> dict[str, Any]:
    body_details: dict[str, Any] = {
        str(key): _json_safe(value) for key, value in (details or {}).items()
    }
    if request_id is not None:
        body_details["request_id"] = request_id
    return {"error": {"code": code.value, "message": message, "details": body_details}}


def _error_response(
    request: Request,
    *,
    status_code: int,
    code: ErrorCode,
    message: str,
    details: Mapping[str, Any] | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    request_id = _get_request_id(request)
    response_headers = dict(headers or {})
    if request_id is not None:
        response_headers[REQUEST_ID_HEADER] = request_id
    return JSONResponse(
        status_code=status_code,
        content=_error_payload(
            code=code,
            message=message,
            details=details,
            request_id=request_id,
        ),
        headers=response_headers,
    )


async def _app_error_handler(request: Request, exc: Exception) -> JSONResponse:
    if not isinstance(exc, AppError):
        msg = f"Expected AppError, got {type(exc).__name__}"
        raise TypeError(msg)
    headers: dict[str, str] | None = None
    if isinstance(exc, RateLimitedError):
        headers = {"Retry-After": str(exc.retry_after_seconds)}
    if exc.status_code >= 500:
        _log_internal_error(request, exc)
    return _error_response(
        request,
        status_code=exc.status_code,
        code=exc.code,
        message=exc.message,
        details=exc.details,
        headers=headers,
    )


_REQUEST_LOCATIONS = frozenset({"body", "query", "path", "header"})


def _issue_field(issue: Mapping[str, Any]) -> str | None:
    parts = [str(part) for part in issue.get("loc", ()) if part not in _REQUEST_LOCATIONS]
    return ".".join(parts) or None


def _first_validation_issue(issues: list[Mapping[str, Any]]) -> tuple[str, str | None]:
    if not issues:
        return "Request validation failed.", None
    field = _issue_field(issues[0])
    message = str(issues[0].get("msg") or "Invalid value").rstrip(".")
    if field:
        return f"{field}: {message}.", field
    return f"{message}.", None


async def _request_validation_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    if not isinstance(exc, RequestValidationError):
        msg = f"Expected RequestValidationError, got {type(exc).__name__}"
        raise TypeError(msg)
    issues = [issue for issue in exc.errors() if isinstance(issue, Mapping)]
    message, field = _first_validation_issue(issues)
    details: dict[str, Any] = {
        "issues": [
            {"field": _issue_field(issue), "message": str(issue.get("msg", ""))}
            for issue in issues
        ],
    }
    if field:
        details["field"] = field
    return _error_response(
        request,
        status_code=400,
        code=ErrorCode.VALIDATION_ERROR,
        message=message,
        details=details,
    )


async def _response_validation_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    if not isinstance(exc, ResponseValidationError):
        msg = f"Expected ResponseValidationError, got {type(exc).__name__}"
        raise TypeError(msg)
    _log_internal_error(request, exc)
    return _error_response(
        request,
        status_code=500,
        code=ErrorCode.INTERNAL_ERROR,
        message="Internal server error.",
    )


async def _http_exception_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    if not isinstance(exc, StarletteHTTPException):
        msg = f"Expected StarletteHTTPException, got {type(exc).__name__}"
        raise TypeError(msg)
    code = _HTTP_STATUS_CODES.get(exc.status_code, ErrorCode.INTERNAL_ERROR)
    if exc.status_code in (404, 405):
        message = "Route not found."
    elif isinstance(exc.detail, str) and exc.detail:
        message = exc.detail
    else:
        message = "Request failed."
    return _error_response(
        request,
        status_code=exc.status_code,
        code=code,
        message=message,
        headers=dict(exc.headers) if exc.headers else None,
    )


async def _unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    _log_internal_error(request, exc)
    return _error_response(
        request,
        status_code=500,
        code=ErrorCode.INTERNAL_ERROR,
        message="Internal server error.",
    )


def _log_internal_error(request: Request, exc: BaseException) -> None:
    audit_logger.error(
        "audit.http.internal_error",
        extra={
            "request_id": _get_request_id(request),
            "method": request.method,
            "path": request.url.path,
            "error_type": type(exc).__name__,
            "error": str(exc),
        },
        exc_info=None if settings.is_production else exc,
    )


def install_error_handling(app: FastAPI) -> None:
    """Register request-id middleware and JSON exception handlers on ``app``."""
    app.add_middleware(RequestIdMiddleware)
    app.add_exception_handler(AppError, _app_error_handler)
    app.add_exception_handler(RequestValidationError, _request_validation_exception_handler)
    app.add_exception_handler(ResponseValidationError, _response_validation_exception_handler)
    app.add_exception_handler(StarletteHTTPException, _http_exception_exception_handler)
    app.add_exception_handler(Exception, _unhandled_exception_handler)
