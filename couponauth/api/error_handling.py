from __future__ import annotations

from typing import Any, Optional, Tuple

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from couponauth.api.schemas import Envelope, ErrorBody
from couponauth.logging import get_correlation_id, get_logger
from couponauth.service.errors import AccountLockedError, RateLimitedError, ServiceError

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    422: "validation_error",
    429: "rate_limited",
    500: "server_error",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
    headers: dict | None = None,
) -> JSONResponse:
    envelope = Envelope(
        status="error",
        error=ErrorBody(
            code=code or _error_code_for_status(status_code), message=message, details=details
        ),
    )
    request_id = get_correlation_id()
    if request_id:
        envelope.request_id = request_id
    return JSONResponse(status_code=status_code, content=envelope.model_dump(), headers=headers)


def _log_failure(request: Request, event: str, status_code: int, **fields: Any) -> None:
    # Client mistakes are routine on an auth API; only server faults are errors
    log_fn = logger.error if status_code >= 500 else logger.warning
    log_fn(event, path=request.url.path, method=request.method, status_code=status_code, **fields)


def _retry_headers(exc: ServiceError) -> dict | None:
    """Headers telling the client when a throttled or locked request may be retried."""
    if isinstance(exc, RateLimitedError):
        seconds = str(exc.retry_after_seconds)
        return {"Retry-After": seconds, "X-RateLimit-Retry-After-Seconds": seconds}
    if isinstance(exc, AccountLockedError) and "retry_after_seconds" in exc.detail:
        return {"Retry-After": str(exc.detail["retry_after_seconds"])}
    return None


def service_error_response(exc: ServiceError) -> JSONResponse:
    """Render a ServiceError as an envelope; also used by middleware that cannot raise."""
    return _error_response(
        exc.status_code,
        exc.message,
        exc.detail or None,
        code=exc.error_code,
        headers=_retry_headers(exc),
    )


def _unpack_http_detail(detail: Any) -> Tuple[str, Optional[str], Any]:
    """Split an HTTPException detail into (message, code, details).

    Routes raise envelope-shaped details via `routes._http_error`; routing
    itself raises plain strings for 404/405.
    """
    if isinstance(detail, dict) and isinstance(detail.get("error"), dict):
        error = detail["error"]
        return error.get("message", "http error"), error.get("code"), error.get("details")
    if isinstance(detail, str):
        return detail, None, None
    return "http error", None, detail if isinstance(detail, (dict, list)) else None


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        _log_failure(
            request, "service_error", exc.status_code, error_code=exc.error_code, message=exc.message
        )
        return service_error_response(exc)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = [
            {"loc": list(err.get("loc", ())), "msg": err.get("msg", "invalid value")}
            for err in exc.errors()
        ]
        _log_failure(request, "request_validation_error", 400, error_count=len(errors))
        return _error_response(400, "invalid request", errors, code="validation_error")

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        message, code, details = _unpack_http_detail(exc.detail)
        if exc.status_code >= 400:
            _log_failure(request, "http_error", exc.status_code, error_code=code, message=message)
        return _error_response(exc.status_code, message, details, code=code, headers=exc.headers)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        return _error_response(500, "internal server error", code="server_error")
