# services/errors.py
# ============================================================================
# STOREFRONT — ERROR TAXONOMY
# ============================================================================
# Every error a service raises on purpose derives from ServiceError and knows
# the HTTP status it maps to. The API layer renders them as {"message": ...}.
# ============================================================================


class ServiceError(Exception):
    """Base class for expected, caller-visible failures."""

    status_code: int = 500
    default_message: str = "Internal server error"

    def __init__(self, message: str = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(ServiceError):
    """Malformed or incomplete input."""
    status_code = 400
    default_message = "Invalid request"


class AuthError(ServiceError):
    """Missing session, bad webhook token, or admin scope required."""
    status_code = 401
    default_message = "Unauthorized"


class ForbiddenError(ServiceError):
    """Authenticated, but the resource belongs to someone else."""
    status_code = 403
    default_message = "Forbidden"


class NotFoundError(ServiceError):
    status_code = 404
    default_message = "Not found"


class ConflictError(ServiceError):
    """
    A state-transition guard rejected a write.

    Services treat this as the idempotent no-op path, never as a failure
    surfaced to the caller.
    """
    status_code = 409
    default_message = "Conflict"


class InternalError(ServiceError):
    """Persistence or infrastructure failure."""
    status_code = 500
    default_message = "Internal server error"
