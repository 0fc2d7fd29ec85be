from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins an HTTP ``status_code`` and a stable ``error_code``
    that clients can switch on:
    - validation_error (400)
    - duplicate_user (400)
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - rate_limited (429)
    - upstream_unavailable (502)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class DuplicateUserError(ServiceError):
    """Email or username already registered (400)."""
    status_code = 400
    error_code = "duplicate_user"


class AuthenticationError(ServiceError):
    """Authentication missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialsError(AuthenticationError):
    """Unknown email, inactive account or wrong password; deliberately indistinguishable."""
    pass


class InvalidTokenError(ServiceError):
    """Bearer token malformed, forged or expired (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(self, message: str, *, retry_after: int, **kwargs) -> None:
        detail = {**(kwargs.pop("detail", None) or {}), "retryAfter": retry_after}
        super().__init__(message, detail=detail, **kwargs)
        self.retry_after = retry_after


class UpstreamUnavailableError(ServiceError):
    """The conversation workflow service failed or could not be reached (502)."""
    status_code = 502
    error_code = "upstream_unavailable"


__all__ = [
    "ServiceError",
    "ValidationError",
    "DuplicateUserError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "InvalidTokenError",
    "NotFoundError",
    "RateLimitedError",
    "UpstreamUnavailableError",
]
