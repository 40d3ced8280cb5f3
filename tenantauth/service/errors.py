from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP ``status_code`` and a stable
    ``error_code`` that callers can branch on without parsing messages. The
    broad codes are:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - validation_error (400)
    - conflict (409)
    - server_error (500)

    Domain failures below refine these with their own codes while keeping the
    HTTP status of their base class.
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


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


# credentials


class InvalidCredentialsError(AuthenticationError):
    """Email or password did not match. Never says which."""
    error_code = "invalid_credentials"

    def __init__(self, message: str = "Invalid credentials", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AccountLockedError(ForbiddenError):
    error_code = "account_locked"

    def __init__(self, message: str = "Account is locked", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AccountInactiveError(ForbiddenError):
    error_code = "account_inactive"

    def __init__(self, message: str = "Account is deactivated", **kwargs) -> None:
        super().__init__(message, **kwargs)


class EmailAlreadyRegisteredError(ConflictError):
    error_code = "email_in_use"

    def __init__(self, message: str = "Email already in use", **kwargs) -> None:
        super().__init__(message, **kwargs)


class PasswordReuseError(ConflictError):
    error_code = "password_reuse"

    def __init__(self, message: str = "Cannot reuse a previous password", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidOrExpiredTokenError(BadRequestError):
    """Reset, verification or recovery token is unknown, used, or past its expiry."""
    error_code = "invalid_or_expired_token"

    def __init__(self, message: str = "Invalid or expired token", **kwargs) -> None:
        super().__init__(message, **kwargs)


# sessions and tokens


class SessionInvalidError(AuthenticationError):
    error_code = "session_invalid"

    def __init__(self, message: str = "Session is no longer valid", **kwargs) -> None:
        super().__init__(message, **kwargs)


class SessionExpiredError(SessionInvalidError):
    error_code = "session_expired"

    def __init__(self, message: str = "Session has expired", **kwargs) -> None:
        super().__init__(message, **kwargs)


class SessionRevokedError(SessionInvalidError):
    error_code = "session_revoked"

    def __init__(self, message: str = "Session has been revoked", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidTokenError(AuthenticationError):
    """Access token failed signature, expiry or type checks."""
    error_code = "invalid_token"

    def __init__(self, message: str = "Invalid token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class RefreshTokenInvalidError(AuthenticationError):
    error_code = "refresh_token_invalid"

    def __init__(self, message: str = "Invalid refresh token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class RefreshTokenRevokedError(RefreshTokenInvalidError):
    error_code = "refresh_token_revoked"

    def __init__(self, message: str = "Refresh token has been revoked", **kwargs) -> None:
        super().__init__(message, **kwargs)


class RefreshTokenExpiredError(RefreshTokenInvalidError):
    error_code = "refresh_token_expired"

    def __init__(self, message: str = "Refresh token has expired", **kwargs) -> None:
        super().__init__(message, **kwargs)


class RefreshTokenReuseError(RefreshTokenRevokedError):
    """A rotated refresh token was presented again; its session is now revoked."""
    error_code = "refresh_token_reuse"

    def __init__(
        self, message: str = "Refresh token reuse detected", **kwargs
    ) -> None:
        super().__init__(message, **kwargs)


# mfa


class MfaRequiredError(AuthenticationError):
    error_code = "mfa_required"

    def __init__(self, message: str = "MFA code is required", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidMfaError(AuthenticationError):
    error_code = "invalid_mfa"

    def __init__(self, message: str = "Invalid MFA code", **kwargs) -> None:
        super().__init__(message, **kwargs)


# tenant access


class TenantContextRequiredError(ForbiddenError):
    error_code = "tenant_context_required"

    def __init__(self, message: str = "Tenant context is required", **kwargs) -> None:
        super().__init__(message, **kwargs)


class UserContextRequiredError(ForbiddenError):
    error_code = "user_context_required"

    def __init__(self, message: str = "User context is required", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TenantAccessDeniedError(ForbiddenError):
    error_code = "tenant_access_denied"

    def __init__(
        self, message: str = "User does not have access to this tenant", **kwargs
    ) -> None:
        super().__init__(message, **kwargs)


class NotAMemberError(ForbiddenError):
    error_code = "not_a_member"

    def __init__(
        self, message: str = "User is not a member of this tenant", **kwargs
    ) -> None:
        super().__init__(message, **kwargs)


class InsufficientRoleError(ForbiddenError):
    error_code = "insufficient_role"

    def __init__(
        self,
        message: str = "User does not have the required role for this tenant",
        **kwargs,
    ) -> None:
        super().__init__(message, **kwargs)


# configuration


class ConfigurationError(ServerError):
    """Configuration is unusable; fatal and never retried."""
    error_code = "configuration_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "BadRequestError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "ServerError",
    "InvalidCredentialsError",
    "AccountLockedError",
    "AccountInactiveError",
    "EmailAlreadyRegisteredError",
    "PasswordReuseError",
    "InvalidOrExpiredTokenError",
    "SessionInvalidError",
    "SessionExpiredError",
    "SessionRevokedError",
    "InvalidTokenError",
    "RefreshTokenInvalidError",
    "RefreshTokenRevokedError",
    "RefreshTokenExpiredError",
    "RefreshTokenReuseError",
    "MfaRequiredError",
    "InvalidMfaError",
    "TenantContextRequiredError",
    "UserContextRequiredError",
    "TenantAccessDeniedError",
    "NotAMemberError",
    "InsufficientRoleError",
    "ConfigurationError",
]
