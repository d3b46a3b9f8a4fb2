from __future__ import annotations

from enum import Enum
from typing import Dict, Optional, Type


class ErrorKind(str, Enum):
    """Stable failure taxonomy shared by results, exceptions and the HTTP envelope."""

    INVALID_CREDENTIALS = "invalid_credentials"
    TOKEN_INVALID = "token_invalid"
    TOKEN_EXPIRED = "token_expired"
    TOKEN_REVOKED = "token_revoked"
    PERMISSION_DENIED = "permission_denied"
    RATE_LIMITED = "rate_limited"
    MFA_REQUIRED = "mfa_required"
    MFA_CHALLENGE_FAILED = "mfa_challenge_failed"
    MFA_ATTEMPTS_EXHAUSTED = "mfa_attempts_exhausted"
    INVITATION_INVALID = "invitation_invalid"
    INVITATION_EXPIRED = "invitation_expired"
    INVITATION_ALREADY_USED = "invitation_already_used"
    INVITATION_CONFLICT = "invitation_conflict"
    NOT_FOUND = "not_found"
    VALIDATION_ERROR = "validation_error"
    CONFLICT = "conflict"
    INTERNAL_ERROR = "internal_error"


class ServiceError(Exception):
    """Exception form of a failed Result, carrying its HTTP status.

    Each exception class defines both an HTTP status_code and an error_code
    drawn from :class:`ErrorKind`:
    - validation_error (400)
    - invalid_credentials, token_*, mfa_* (401)
    - permission_denied (403)
    - not_found (404)
    - conflict, invitation_conflict, invitation_already_used (409)
    - invitation_expired (410)
    - rate_limited (429)
    - internal_error (500)
    """

    status_code: int = 400
    error_code: str = ErrorKind.VALIDATION_ERROR.value

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
    """Malformed input or a rejected password (400)."""
    status_code = 400
    error_code = ErrorKind.VALIDATION_ERROR.value


class AuthenticationError(ServiceError):
    """Caller could not be authenticated (401); defaults to token_invalid."""
    status_code = 401
    error_code = ErrorKind.TOKEN_INVALID.value


class InvalidCredentialsError(AuthenticationError):
    error_code = ErrorKind.INVALID_CREDENTIALS.value


class TokenExpiredError(AuthenticationError):
    error_code = ErrorKind.TOKEN_EXPIRED.value


class TokenRevokedError(AuthenticationError):
    error_code = ErrorKind.TOKEN_REVOKED.value


class MFARequiredError(AuthenticationError):
    """Password accepted; a second factor must be supplied."""
    error_code = ErrorKind.MFA_REQUIRED.value


class MFAChallengeFailedError(AuthenticationError):
    error_code = ErrorKind.MFA_CHALLENGE_FAILED.value


class MFAAttemptsExhaustedError(AuthenticationError):
    error_code = ErrorKind.MFA_ATTEMPTS_EXHAUSTED.value


class InvitationInvalidError(ValidationError):
    error_code = ErrorKind.INVITATION_INVALID.value


class ForbiddenError(ServiceError):
    """Authenticated but not allowed (403)."""
    status_code = 403
    error_code = ErrorKind.PERMISSION_DENIED.value


class PermissionDeniedError(ForbiddenError):
    """Denied permission check; detail carries resource and action when known."""


class NotFoundError(ServiceError):
    """Named role, module or record does not exist (404)."""
    status_code = 404
    error_code = ErrorKind.NOT_FOUND.value


class ConflictError(ServiceError):
    """Duplicate creation such as an email that is already registered (409)."""
    status_code = 409
    error_code = ErrorKind.CONFLICT.value


class InvitationConflictError(ConflictError):
    error_code = ErrorKind.INVITATION_CONFLICT.value


class InvitationAlreadyUsedError(ConflictError):
    error_code = ErrorKind.INVITATION_ALREADY_USED.value


class GoneError(ServiceError):
    """Resource existed but is no longer usable (410)."""
    status_code = 410
    error_code = "gone"


class InvitationExpiredError(GoneError):
    error_code = ErrorKind.INVITATION_EXPIRED.value


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429); detail carries retry_after seconds."""
    status_code = 429
    error_code = ErrorKind.RATE_LIMITED.value

    @property
    def retry_after(self) -> int:
        return int(self.detail.get("retry_after", 0))


class ServerError(ServiceError):
    """Unexpected failure while evaluating a request (500)."""
    status_code = 500
    error_code = ErrorKind.INTERNAL_ERROR.value


_ERROR_TYPES: Dict[ErrorKind, Type[ServiceError]] = {
    ErrorKind.INVALID_CREDENTIALS: InvalidCredentialsError,
    ErrorKind.TOKEN_INVALID: AuthenticationError,
    ErrorKind.TOKEN_EXPIRED: TokenExpiredError,
    ErrorKind.TOKEN_REVOKED: TokenRevokedError,
    ErrorKind.PERMISSION_DENIED: PermissionDeniedError,
    ErrorKind.RATE_LIMITED: RateLimitedError,
    ErrorKind.MFA_REQUIRED: MFARequiredError,
    ErrorKind.MFA_CHALLENGE_FAILED: MFAChallengeFailedError,
    ErrorKind.MFA_ATTEMPTS_EXHAUSTED: MFAAttemptsExhaustedError,
    ErrorKind.INVITATION_INVALID: InvitationInvalidError,
    ErrorKind.INVITATION_EXPIRED: InvitationExpiredError,
    ErrorKind.INVITATION_ALREADY_USED: InvitationAlreadyUsedError,
    ErrorKind.INVITATION_CONFLICT: InvitationConflictError,
    ErrorKind.NOT_FOUND: NotFoundError,
    ErrorKind.VALIDATION_ERROR: ValidationError,
    ErrorKind.CONFLICT: ConflictError,
    ErrorKind.INTERNAL_ERROR: ServerError,
}


def error_for_kind(kind: ErrorKind, message: str, detail: Optional[dict] = None) -> ServiceError:
    """Build the exception that represents ``kind`` at the transport boundary."""
    return _ERROR_TYPES[kind](message, detail=detail)


__all__ = [
    "ErrorKind",
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "TokenExpiredError",
    "TokenRevokedError",
    "MFARequiredError",
    "MFAChallengeFailedError",
    "MFAAttemptsExhaustedError",
    "InvitationInvalidError",
    "ForbiddenError",
    "PermissionDeniedError",
    "NotFoundError",
    "ConflictError",
    "InvitationConflictError",
    "InvitationAlreadyUsedError",
    "GoneError",
    "InvitationExpiredError",
    "RateLimitedError",
    "ServerError",
    "error_for_kind",
]
