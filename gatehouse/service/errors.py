from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code``
    that clients can branch on:
    - validation_error (400)
    - invalid_or_expired (400)
    - unauthorized (401)
    - unverified / deactivated (403)
    - not_found (404)
    - conflict (409)
    - rate_limited (429)
    - server_error (500)
    - dependency_unavailable (503)
    - timeout (504)
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


class BadRequestError(ValidationError):
    """Alias for ValidationError - request is malformed or invalid."""
    pass


class InvalidOrExpiredError(ServiceError):
    """Verification token is unknown, already redeemed, expired or tampered with (400)."""
    status_code = 400
    error_code = "invalid_or_expired"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class UnauthenticatedError(AuthenticationError):
    """No usable access token on a protected request (401)."""
    pass


class InvalidTokenError(AuthenticationError):
    """Refresh token is invalid, expired or no longer the live one (401)."""
    pass


class UnverifiedError(ServiceError):
    """Account email has not been confirmed yet (403)."""
    status_code = 403
    error_code = "unverified"


class DeactivatedError(ServiceError):
    """Account has been deactivated (403)."""
    status_code = 403
    error_code = "deactivated"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate registration (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class DependencyUnavailableError(ServiceError):
    """Cache store or dispatch channel unreachable on a load-bearing path (503)."""
    status_code = 503
    error_code = "dependency_unavailable"


class CredentialCheckTimeoutError(ServiceError):
    """Password comparison exceeded its time limit (504)."""
    status_code = 504
    error_code = "timeout"


__all__ = [
    "ServiceError",
    "ValidationError",
    "BadRequestError",
    "InvalidOrExpiredError",
    "AuthenticationError",
    "UnauthenticatedError",
    "InvalidTokenError",
    "UnverifiedError",
    "DeactivatedError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
    "DependencyUnavailableError",
    "CredentialCheckTimeoutError",
]
