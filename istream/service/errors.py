from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins an HTTP ``status_code`` and a stable ``error_code`` that
    the API layer copies into the error envelope:
    - validation_error / invalid_otp / invalid_operation (400)
    - unauthorized (401)
    - not_found (404)
    - conflict (409)
    - server_error (500)
    - dependency_error (502)
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
    """Malformed or missing input (400)."""
    status_code = 400
    error_code = "validation_error"


class InvalidOtpError(ValidationError):
    """OTP is wrong, expired, or was already consumed (400)."""
    error_code = "invalid_otp"


class InvalidOperationError(ServiceError):
    """Well-formed request that the current state does not allow (400)."""
    status_code = 400
    error_code = "invalid_operation"


class AuthenticationError(ServiceError):
    """Credentials or token rejected (401)."""
    status_code = 401
    error_code = "unauthorized"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Uniqueness conflict, e.g. duplicate email or subscription (409)."""
    status_code = 409
    error_code = "conflict"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class DependencyError(ServiceError):
    """An external collaborator (email, object storage, OAuth provider, database) failed or timed out (502)."""
    status_code = 502
    error_code = "dependency_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "InvalidOtpError",
    "InvalidOperationError",
    "AuthenticationError",
    "NotFoundError",
    "ConflictError",
    "ServerError",
    "DependencyError",
]
