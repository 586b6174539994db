# schemas/__init__.py
from schemas.domain import (
    Caller,
    Cart,
    CartItem,
    Notification,
    NotificationType,
    Order,
    OrderItem,
    OrderStatus,
    Payment,
    PaymentStatus,
    Product,
)

__all__ = [
    "Caller",
    "Cart",
    "CartItem",
    "Notification",
    "NotificationType",
    "Order",
    "OrderItem",
    "OrderStatus",
    "Payment",
    "PaymentStatus",
    "Product",
]
