# storage/__init__.py
# ============================================================================
# STOREFRONT — STORAGE MODULE
# ============================================================================
# Repository interfaces with in-memory and PostgreSQL implementations, plus
# the Redis-backed session lookup.
# ============================================================================

from storage.repositories import (
    ICartStore,
    INotificationRepository,
    IOrderRepository,
    IPaymentRepository,
    IProductRepository,
    InMemoryCartStore,
    InMemoryNotificationRepository,
    InMemoryOrderRepository,
    InMemoryPaymentRepository,
    InMemoryProductRepository,
)

__all__ = [
    "ICartStore",
    "INotificationRepository",
    "IOrderRepository",
    "IPaymentRepository",
    "IProductRepository",
    "InMemoryCartStore",
    "InMemoryNotificationRepository",
    "InMemoryOrderRepository",
    "InMemoryPaymentRepository",
    "InMemoryProductRepository",
]
