# services/__init__.py
# ============================================================================
# STOREFRONT — SERVICES MODULE
# ============================================================================
# Order lifecycle, payment reconciliation, inventory, invoices, carts and
# notifications. Only the error taxonomy is re-exported here; service modules
# import from ``storage`` and are imported directly.
# ============================================================================

from services.errors import (
    AuthError,
    ConflictError,
    ForbiddenError,
    InternalError,
    NotFoundError,
    ServiceError,
    ValidationError,
)

__all__ = [
    "AuthError",
    "ConflictError",
    "ForbiddenError",
    "InternalError",
    "NotFoundError",
    "ServiceError",
    "ValidationError",
]
