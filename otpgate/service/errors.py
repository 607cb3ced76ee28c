from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class carries both an HTTP status_code and a stable
    error_code that clients can branch on:
    - validation_error (400)
    - otp_not_found / otp_expired / otp_invalid (400)
    - unauthorized / invalid_token / token_expired (401)
    - forbidden (403)
    - not_found (404)
    - server_error (500)
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


class MissingInputError(ValidationError):
    """A required input was not supplied (400)."""
    pass


class UnauthenticatedError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidTokenError(UnauthenticatedError):
    """Token signature, structure, type or stored value did not check out (401)."""
    error_code = "invalid_token"


class TokenExpiredError(UnauthenticatedError):
    """Token is authentic but past its expiry (401)."""
    error_code = "token_expired"


class ForbiddenError(ServiceError):
    """Access denied - insufficient role (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested identity not found (404)."""
    status_code = 404
    error_code = "not_found"


class OtpError(ValidationError):
    """Base for OTP challenge failures, all surfaced as 400."""


class NoChallengeError(OtpError):
    error_code = "otp_not_found"


class OtpExpiredError(OtpError):
    error_code = "otp_expired"


class InvalidCodeError(OtpError):
    error_code = "otp_invalid"


class InternalError(ServiceError):
    """Unexpected persistence or transport failure (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "MissingInputError",
    "UnauthenticatedError",
    "InvalidTokenError",
    "TokenExpiredError",
    "ForbiddenError",
    "NotFoundError",
    "OtpError",
    "NoChallengeError",
    "OtpExpiredError",
    "InvalidCodeError",
    "InternalError",
]
