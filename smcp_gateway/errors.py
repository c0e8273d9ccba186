"""
Defines project-specific exception classes.

Every failure that crosses a component boundary is one of the
:class:`GatewayError` kinds below.  Each kind carries the HTTP status it
maps to and a *public* message that is safe to return to callers; the
internal reason lives in ``detail`` and only ever reaches the audit log.
"""

from typing import Optional


class GatewayError(Exception):
    """Base class for all errors surfaced by SMCP Gateway."""

    status_code: int = 500
    code: str = "internal_error"
    public_message: str = "Internal server error"
    retryable: bool = False

    def __init__(self, detail: Optional[str] = None, *, retry_after: Optional[int] = None):
        self.detail = detail or self.public_message
        self.retry_after = retry_after
        super().__init__(self.detail)


class ConfigurationError(GatewayError):
    """Raised when loading or validating the configuration file fails."""

    code = "configuration_error"


class ValidationError(GatewayError):
    """Malformed header, body or path."""

    status_code = 400
    code = "validation_error"
    public_message = "Invalid request"

    def __init__(self, detail: Optional[str] = None, **kwargs):
        super().__init__(detail, **kwargs)
        # Format problems are safe to describe; they reveal nothing stored.
        if detail:
            self.public_message = detail


class AuthenticationError(GatewayError):
    """Missing, unknown, expired or otherwise invalid credential."""

    status_code = 401
    code = "authentication_error"
    public_message = "Authentication failed"


class AuthorizationError(GatewayError):
    """Valid credential, but the tenant is inactive or the scope is insufficient."""

    status_code = 403
    code = "authorization_error"
    public_message = "Access denied"


class RateLimitError(GatewayError):
    """A tenant quota was exceeded."""

    status_code = 429
    code = "rate_limited"
    public_message = "Quota exceeded"
    retryable = True


class StorageTimeoutError(GatewayError):
    """A persistence lookup did not complete within its time bound."""

    status_code = 503
    code = "storage_timeout"
    public_message = "Storage timeout, retry later"
    retryable = True


class InstanceError(GatewayError):
    """Lifecycle or forwarding failure for a server instance."""

    status_code = 503
    code = "instance_error"
    public_message = "Instance error"

    def __init__(
        self,
        detail: Optional[str] = None,
        *,
        tenant_id: Optional[str] = None,
        server_id: Optional[str] = None,
        retry_after: Optional[int] = None,
    ):
        self.tenant_id = tenant_id
        self.server_id = server_id
        super().__init__(detail, retry_after=retry_after)


class InstanceUnavailableError(InstanceError):
    """Protocol call for an instance that is not running."""

    code = "instance_unavailable"
    public_message = "Instance not available"


class InstanceStartTimeoutError(InstanceError):
    """The instance did not come up within the start timeout."""

    code = "instance_start_timeout"
    public_message = "Instance start timeout, retry later"
    retryable = True


class InstanceBusyError(InstanceError):
    """Another operation held the instance longer than the lock timeout."""

    code = "instance_busy"
    public_message = "Instance busy, retry later"
    retryable = True


class InstanceFailedError(InstanceError):
    """The instance is in the ``error`` state and needs operator intervention."""

    code = "instance_failed"
    public_message = "Instance failed, operator intervention required"


class InternalError(GatewayError):
    """Unexpected fault; the caller only ever sees a generic message."""
