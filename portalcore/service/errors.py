from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass fixes an HTTP ``status_code`` and a stable ``error_code``
    that clients may branch on. ``message`` is safe to show to a caller;
    ``detail`` carries structured, non-sensitive context.
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


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialsError(AuthenticationError):
    """Unknown email, wrong password or password attempt on a federated account."""
    error_code = "invalid_credentials"

    def __init__(self, *, detail: Optional[dict] = None) -> None:
        super().__init__("invalid credentials", detail=detail)


class AccountInactiveError(ServiceError):
    status_code = 403
    error_code = "account_inactive"

    def __init__(self, message: str = "account is not active", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidTokenError(AuthenticationError):
    """Bad signature, revoked session or expired token (401)."""
    error_code = "invalid_token"

    def __init__(self, message: str = "invalid token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class SessionExpiredError(AuthenticationError):
    """Refresh attempted on a session past its expiry (401)."""
    error_code = "session_expired"

    def __init__(self, message: str = "session expired", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ProvisioningError(ServiceError):
    """Tenant schema could not be created; the registry row was rolled back (502)."""
    status_code = 502
    error_code = "provisioning_failure"


class CSRFRejectedError(ServiceError):
    status_code = 403
    error_code = "csrf_rejected"

    def __init__(self, message: str = "Invalid SSO session", **kwargs) -> None:
        super().__init__(message, **kwargs)


class DomainNotAllowedError(ServiceError):
    status_code = 403
    error_code = "domain_not_allowed"

    def __init__(self, message: str = "Email domain not allowed", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AccountConflictError(ServiceError):
    """Email already belongs to an account with a different auth mode (409)."""
    status_code = 409
    error_code = "account_conflict"


class SSOProviderError(ServiceError):
    """Provider unknown/unconfigured (400) or an upstream exchange failed (502)."""
    status_code = 400
    error_code = "sso_provider_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "NotFoundError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "AccountInactiveError",
    "InvalidTokenError",
    "SessionExpiredError",
    "ProvisioningError",
    "CSRFRejectedError",
    "DomainNotAllowedError",
    "AccountConflictError",
    "SSOProviderError",
]
