from __future__ import annotations

from enum import Enum
from typing import Optional


class AuthErrorKind(str, Enum):
    """Tag carried by every authentication failure.

    Callers branch on ``exc.kind`` rather than on message text so each
    outcome of an auth operation is handled explicitly.
    """

    INVALID_CREDENTIALS = "invalid_credentials"
    MFA_REQUIRED = "mfa_required"
    INVALID_MFA = "invalid_mfa"
    CONFLICT = "conflict"
    INVALID_TOKEN = "invalid_token"
    TOKEN_EXPIRED = "token_expired"
    INVALID_REFRESH_TOKEN = "invalid_refresh_token"
    REUSE_DETECTED = "reuse_detected"
    ACCOUNT_NOT_FOUND = "account_not_found"


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP ``status_code`` and a stable
    ``error_code``:
    - validation_error (400)
    - unauthorized family (401): invalid_credentials, mfa_required,
      invalid_mfa, invalid_token, token_expired, invalid_refresh_token
    - not_found (404)
    - conflict (409)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"
    kind: Optional[AuthErrorKind] = None

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


class InvalidCredentialsError(AuthenticationError):
    """Unknown email or wrong password. Never says which."""
    error_code = "invalid_credentials"
    kind = AuthErrorKind.INVALID_CREDENTIALS

    def __init__(self, message: str = "invalid email or password", **kwargs) -> None:
        super().__init__(message, **kwargs)


class MfaRequiredError(AuthenticationError):
    """Password accepted but a second factor must be supplied."""
    error_code = "mfa_required"
    kind = AuthErrorKind.MFA_REQUIRED

    def __init__(self, message: str = "mfa code required", **kwargs) -> None:
        kwargs.setdefault("detail", {"mfa_required": True})
        super().__init__(message, **kwargs)


class InvalidMfaError(AuthenticationError):
    error_code = "invalid_mfa"
    kind = AuthErrorKind.INVALID_MFA

    def __init__(self, message: str = "invalid mfa code", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidTokenError(AuthenticationError):
    """Malformed, forged, wrong-realm or revoked bearer token."""
    error_code = "invalid_token"
    kind = AuthErrorKind.INVALID_TOKEN

    def __init__(self, message: str = "invalid token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenExpiredError(InvalidTokenError):
    """Signature valid but ``exp`` has passed; the client should refresh."""
    error_code = "token_expired"
    kind = AuthErrorKind.TOKEN_EXPIRED


class InvalidRefreshTokenError(AuthenticationError):
    error_code = "invalid_refresh_token"
    kind = AuthErrorKind.INVALID_REFRESH_TOKEN

    def __init__(self, message: str = "invalid refresh token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ReuseDetectedError(InvalidRefreshTokenError):
    """A rotated-away refresh token was presented again.

    Raised by the session registry after it has revoked the session; callers
    outside the service only ever see ``invalid_refresh_token``.
    """
    kind = AuthErrorKind.REUSE_DETECTED

    def __init__(self, session_id: str, account_id: str) -> None:
        super().__init__()
        self.session_id = session_id
        self.account_id = account_id


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class AccountNotFoundError(NotFoundError):
    kind = AuthErrorKind.ACCOUNT_NOT_FOUND

    def __init__(self, message: str = "account not found", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate username or email (409)."""
    status_code = 409
    error_code = "conflict"
    kind = AuthErrorKind.CONFLICT


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class CorruptDigestError(Exception):
    """Stored password digest could not be parsed."""


__all__ = [
    "AuthErrorKind",
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "MfaRequiredError",
    "InvalidMfaError",
    "InvalidTokenError",
    "TokenExpiredError",
    "InvalidRefreshTokenError",
    "ReuseDetectedError",
    "NotFoundError",
    "AccountNotFoundError",
    "ConflictError",
    "ServerError",
    "CorruptDigestError",
]
