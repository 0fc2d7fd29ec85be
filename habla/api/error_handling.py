from __future__ import annotations

import traceback
from typing import Any, Dict, List

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from habla.api.schemas import Envelope, ErrorBody
from habla.config import get_settings
from habla.logging import get_logger
from habla.service.errors import RateLimitedError, ServiceError
from habla.storage.errors import ConstraintViolation

logger = get_logger(__name__)

# Stable error codes mapped to HTTP status codes
_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    405: "not_found",
    429: "rate_limited",
    500: "server_error",
    502: "upstream_unavailable",
}


UNIQUE_USER_FIELDS = frozenset({"email", "username"})

MISSING_REFERENCE_MESSAGES = {
    "user_id": "User not found",
    "conversation_id": "Conversation not found or not accessible",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
    headers: Dict[str, str] | None = None,
) -> JSONResponse:
    """Build the JSON error envelope."""
    error_code = code or _error_code_for_status(status_code)
    error_body = ErrorBody(code=error_code, message=message, details=details)
    envelope = Envelope(success=False, message=message, error=error_body)
    return JSONResponse(status_code=status_code, content=envelope.model_dump(), headers=headers)


def rate_limited_response(exc: RateLimitedError) -> JSONResponse:
    return error_response(
        429,
        exc.message,
        exc.detail,
        code="rate_limited",
        headers={"Retry-After": str(exc.retry_after)},
    )


def _field_errors(exc: RequestValidationError) -> List[Dict[str, Any]]:
    errors = []
    for err in exc.errors():
        loc = [part for part in err.get("loc", ()) if part not in ("body", "query", "path")]
        field = ".".join(str(part) for part in loc) or "body"
        # Surface the validator's own message rather than pydantic's "Value error, ..." prefix
        cause = (err.get("ctx") or {}).get("error")
        if isinstance(cause, Exception):
            message = str(cause)
        else:
            message = str(cause or err.get("msg", "invalid value"))
            message = message.removeprefix("Value error, ")
        errors.append({"field": field, "message": message})
    return errors


def _audit_server_error(request: Request, message: str, exc: BaseException) -> None:
    # Logging must never turn into a second failure
    try:
        from habla.service.runtime import get_runtime

        get_runtime().audit.error(
            message,
            exc=exc,
            method=request.method,
            path=request.url.path,
            user_id=getattr(request.state, "user_id", None),
        )
    except Exception as audit_exc:
        logger.warning("audit_error_record_failed", error=str(audit_exc))


def register_exception_handlers(app: FastAPI) -> None:
    """Install consistent exception handlers for domain and storage errors."""

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = _field_errors(exc)
        logger.info(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            fields=[e["field"] for e in errors],
        )
        return error_response(400, "Validation failed", errors, code="validation_error")

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        if exc.field in UNIQUE_USER_FIELDS:
            return error_response(400, exc.message, exc.detail, code="duplicate_user")
        # Foreign key miss: the referenced row vanished or never existed
        message = MISSING_REFERENCE_MESSAGES.get(exc.field, exc.message)
        return error_response(404, message, exc.detail, code="not_found")

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        if isinstance(exc, RateLimitedError):
            logger.warning(
                "rate_limited",
                path=request.url.path,
                method=request.method,
                retry_after=exc.retry_after,
            )
            return rate_limited_response(exc)
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
            detail=exc.detail,
        )
        if exc.status_code >= 500:
            _audit_server_error(request, exc.message, exc)
        return error_response(exc.status_code, exc.message, exc.detail, code=exc.error_code)

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            message = "Route not found"
            details = {"path": request.url.path}
        else:
            message = exc.detail if isinstance(exc.detail, str) else "http error"
            details = exc.detail if isinstance(exc.detail, (dict, list)) else None
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
        return error_response(exc.status_code, message, details, headers=exc.headers)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        _audit_server_error(request, "Unhandled exception", exc)
        details = None
        if get_settings().is_development:
            details = {
                "error": str(exc),
                "stack": "".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
            }
        return error_response(500, "Internal server error", details, code="server_error")
