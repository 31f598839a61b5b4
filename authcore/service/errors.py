from __future__ import annotations

from enum import Enum
from typing import Optional


class AuthFailure(str, Enum):
    """Outward-facing failure kinds of the token lifecycle operations.

    Each kind deliberately hides the precise cause: a missing account, an
    inactive account and a wrong password are all ``INVALID_CREDENTIALS``.
    ``STORAGE_FAILURE`` is kept distinct so clients can tell "try again"
    apart from "not authorized".
    """

    INVALID_CREDENTIALS = "invalid_credentials"
    INVALID_REFRESH_TOKEN = "invalid_refresh_token"
    INVALID_TOKEN = "invalid_token"
    DUPLICATE_ACCOUNT = "duplicate_account"
    INVALID_ACCOUNT_DATA = "invalid_account_data"
    STORAGE_FAILURE = "storage_failure"


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code:
    - validation_error (400)
    - unauthorized (401)
    - conflict (409)
    - service_unavailable (503)
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
    """Input validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class ServiceUnavailableError(ServiceError):
    """Transient backend failure; the request may be retried (503)."""
    status_code = 503
    error_code = "service_unavailable"


_FAILURE_ERRORS: dict[AuthFailure, tuple[type[ServiceError], str]] = {
    AuthFailure.INVALID_CREDENTIALS: (AuthenticationError, "Invalid email or password"),
    AuthFailure.INVALID_REFRESH_TOKEN: (
        AuthenticationError,
        "Invalid or expired refresh token",
    ),
    AuthFailure.INVALID_TOKEN: (AuthenticationError, "Invalid or expired token"),
    AuthFailure.DUPLICATE_ACCOUNT: (ConflictError, "Registration failed"),
    AuthFailure.INVALID_ACCOUNT_DATA: (ValidationError, "Registration failed"),
    AuthFailure.STORAGE_FAILURE: (
        ServiceUnavailableError,
        "Temporarily unable to process request",
    ),
}


def error_for_failure(failure: AuthFailure) -> ServiceError:
    """Build the uniform, reason-free error an outer layer should surface."""
    error_cls, message = _FAILURE_ERRORS[failure]
    return error_cls(message, detail={"failure": failure.value})


__all__ = [
    "AuthFailure",
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ConflictError",
    "ServiceUnavailableError",
    "error_for_failure",
]
