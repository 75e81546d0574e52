"""Access-control error taxonomy.

Every failure the core can report is one of these types. The authorization
gate (``dabao_access.auth.gate``) is the only place that turns them into HTTP
responses.
"""

from fastapi import status


class AccessError(Exception):
    """Base class for typed access-control outcomes."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    code: str = "INTERNAL_ERROR"
    message: str = "Internal server error"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.message)
        if message:
            self.message = message


class TenantNotFound(AccessError):
    """No verified domain binding, or the tenant is inactive."""

    status_code = status.HTTP_404_NOT_FOUND
    code = "TENANT_NOT_FOUND"
    message = "Domain not recognized"


class NotFound(AccessError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "NOT_FOUND"
    message = "Resource not found"


class Unauthenticated(AccessError):
    status_code = status.HTTP_401_UNAUTHORIZED
    code = "UNAUTHENTICATED"
    message = "Authentication required"


class Forbidden(AccessError):
    """Valid credential, insufficient permission.

    ``resource_type`` and ``action`` are kept for audit logging. They are not
    echoed back to the client.
    """

    status_code = status.HTTP_403_FORBIDDEN
    code = "FORBIDDEN"
    message = "Insufficient permissions"

    def __init__(self, resource_type=None, action=None, message: str | None = None):
        super().__init__(message)
        self.resource_type = resource_type
        self.action = action


class LastOwnerProtection(AccessError):
    """Mutation would leave a scope without an owner (or administrator)."""

    status_code = status.HTTP_409_CONFLICT
    code = "LAST_OWNER_PROTECTION"
    message = "A scope must keep at least one owner"


class ValidationError(AccessError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "VALIDATION_ERROR"
    message = "Invalid request data"


class StoreUnavailable(AccessError):
    """Transient data store failure. Safe to retry."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    code = "STORE_UNAVAILABLE"
    message = "Data store unavailable"


class AuthProviderUnavailable(AccessError):
    """Identity provider could not be reached. Safe to retry."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    code = "AUTH_PROVIDER_UNAVAILABLE"
    message = "Identity provider unavailable"


class VerificationUnavailable(AccessError):
    """DNS lookup for a domain challenge failed. Safe to retry."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    code = "VERIFICATION_UNAVAILABLE"
    message = "Domain verification lookup unavailable"


class Conflict(AccessError):
    status_code = status.HTTP_409_CONFLICT
    code = "CONFLICT"
    message = "Resource already exists"
