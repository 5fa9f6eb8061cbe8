from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions.

    Every error carries a stable ``error_code`` for tool results and an HTTP
    ``status_code`` for the REST surface:

    - identity_required (400)
    - validation_error (400)
    - unauthorized / session_invalid (401)
    - not_found (404)
    - conflict / cross_domain_session_missing (409)
    - server_error (500)
    - portal_unavailable (503)
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


class IdentityRequiredError(ValidationError):
    """No identity was given and none could be resolved (400).

    A caller error, never retried.
    """
    error_code = "identity_required"


class AuthenticationError(ServiceError):
    """Login failed, timed out or was cancelled (401)."""
    status_code = 401
    error_code = "unauthorized"


class SessionInvalidError(AuthenticationError):
    """A previously trusted session was rejected by the portal (401)."""
    error_code = "session_invalid"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ToolNotFoundError(NotFoundError):
    """No tool registered under the requested name (404)."""
    error_code = "tool_not_found"


class ConflictError(ServiceError):
    """Resource conflict (409)."""
    status_code = 409
    error_code = "conflict"


class CrossDomainSessionError(ConflictError):
    """A cross-host request has no stored session cookies to attach (409)."""
    error_code = "cross_domain_session_missing"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class PortalUnavailableError(ServiceError):
    """The portal timed out or the network failed (503); transient."""
    status_code = 503
    error_code = "portal_unavailable"


__all__ = [
    "ServiceError",
    "ValidationError",
    "IdentityRequiredError",
    "AuthenticationError",
    "SessionInvalidError",
    "NotFoundError",
    "ToolNotFoundError",
    "ConflictError",
    "CrossDomainSessionError",
    "ServerError",
    "PortalUnavailableError",
]
