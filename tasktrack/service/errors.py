from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins an HTTP ``status_code`` and a stable ``error_code`` that
    clients can branch on without parsing messages.
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


class AuthenticationFailure(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentials(AuthenticationFailure):
    """Unknown email or wrong password; the two are never distinguished."""
    error_code = "invalid_credentials"


class InvalidRefreshToken(AuthenticationFailure):
    """Refresh token expired, already used, or forged."""
    error_code = "invalid_refresh_token"


class TwoFactorRequired(AuthenticationFailure):
    error_code = "two_factor_required"


class InvalidTwoFactorCode(AuthenticationFailure):
    error_code = "invalid_two_factor_code"


class BackupCodeInvalid(AuthenticationFailure):
    error_code = "invalid_backup_code"


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class NoSuchUserFound(NotFoundError):
    pass


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class UserAlreadyExists(ConflictError):
    pass


class TwoFactorAlreadyEnabled(ConflictError):
    pass


class TwoFactorNotEnabled(ServiceError):
    status_code = 400
    error_code = "two_factor_not_enabled"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class TokenCreationFailure(ServerError):
    """A token pair could not be issued because its refresh record was not stored."""


class PasswordHashingFailure(ServerError):
    pass


class QRCodeGenerationFailure(ServerError):
    pass


class DatabaseError(ServerError):
    """Opaque wrapper for unexpected store failures."""


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationFailure",
    "InvalidCredentials",
    "InvalidRefreshToken",
    "TwoFactorRequired",
    "InvalidTwoFactorCode",
    "BackupCodeInvalid",
    "ForbiddenError",
    "NotFoundError",
    "NoSuchUserFound",
    "ConflictError",
    "UserAlreadyExists",
    "TwoFactorAlreadyEnabled",
    "TwoFactorNotEnabled",
    "ServerError",
    "TokenCreationFailure",
    "PasswordHashingFailure",
    "QRCodeGenerationFailure",
    "DatabaseError",
]
