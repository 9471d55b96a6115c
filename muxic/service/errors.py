from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code``
    that clients can branch on:
    - validation_error (400)
    - unauthorized (401)
    - forbidden (403), or unverified for logins blocked on email verification
    - not_found (404)
    - conflict (409)
    - expired (410)
    - rate_limited (429)
    - server_error (500)
    - upstream_error (502)
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


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Authenticated but not allowed: banned, deactivated or unverified (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Duplicate email or username (409)."""
    status_code = 409
    error_code = "conflict"


class ExpiredError(ServiceError):
    """A one-time credential outlived its validity window (410)."""
    status_code = 410
    error_code = "expired"


class RateLimitedError(ServiceError):
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    status_code = 500
    error_code = "server_error"


class UpstreamError(ServiceError):
    """Identity provider call failed; only ever surfaced as a redirect."""
    status_code = 502
    error_code = "upstream_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "ExpiredError",
    "RateLimitedError",
    "ServerError",
    "UpstreamError",
]
