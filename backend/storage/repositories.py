"""
Repositories
============
Persistence interfaces for the storefront core plus task-safe in-memory
implementations (used by the test-suite and local demos; swap for the
PostgreSQL versions in ``storage.postgres`` in production).

Every state-changing method is a compare-and-set: it applies only when the
stored record still matches the expected state and reports whether anything
changed. Nothing in the core ever does read-check-then-write.
"""

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional

from schemas.domain import (
    Cart,
    CartItem,
    Notification,
    Order,
    OrderStatus,
    Payment,
    PaymentStatus,
    Product,
    utcnow,
)
from services.errors import ConflictError, NotFoundError


# =============================================================================
# PERSISTENCE INTERFACES
# =============================================================================

class IOrderRepository(ABC):
    """Order storage"""

    @abstractmethod
    async def create(self, order: Order) -> Order:
        pass

    @abstractmethod
    async def get(self, order_id: str) -> Optional[Order]:
        pass

    @abstractmethod
    async def list_for_user(self, user_id: str) -> List[Order]:
        """Orders placed by one user, newest first."""
        pass

    @abstractmethod
    async def list_all(
        self,
        status: Optional[OrderStatus] = None,
        offset: int = 0,
        limit: Optional[int] = None,
    ) -> List[Order]:
        """All orders, newest first, optionally filtered by status."""
        pass

    @abstractmethod
    async def count(self, status: Optional[OrderStatus] = None) -> int:
        pass

    @abstractmethod
    async def transition(
        self,
        order_id: str,
        expected: OrderStatus,
        target: OrderStatus,
        **fields: Any,
    ) -> Optional[Order]:
        """
        Move an order from ``expected`` to ``target`` atomically.

        ``fields`` may carry paid_at, cancelled_at and payment_method.
        Returns the updated order, or None when the order is missing or no
        longer in ``expected``.
        """
        pass


class IPaymentRepository(ABC):
    """Payment storage keyed by the provider's payment id"""

    @abstractmethod
    async def create(self, payment: Payment) -> Payment:
        pass

    @abstractmethod
    async def get_by_provider_id(self, provider_payment_id: str) -> Optional[Payment]:
        pass

    @abstractmethod
    async def find_pending_for_order(self, order_id: str) -> Optional[Payment]:
        pass

    @abstractmethod
    async def transition(
        self,
        provider_payment_id: str,
        target: PaymentStatus,
        method: Optional[str] = None,
        paid_at: Optional[datetime] = None,
    ) -> Optional[Payment]:
        """
        The idempotency gate.

        Applies ``target`` (and method/paid_at when given) only while the
        payment is still pending. Returns the updated payment when a
        transition happened, None otherwise.
        """
        pass


class IProductRepository(ABC):
    """Product storage with atomic stock counters"""

    @abstractmethod
    async def create(self, product: Product) -> Product:
        pass

    @abstractmethod
    async def get(self, product_id: str) -> Optional[Product]:
        pass

    @abstractmethod
    async def record_sale(self, product_id: str, quantity: int) -> Product:
        """
        Atomically ``stock -= quantity`` and ``sold_quantity += quantity``.

        Raises NotFoundError for an unknown product and ConflictError when the
        remaining stock cannot cover ``quantity``.
        """
        pass


class INotificationRepository(ABC):
    """Append-only notification feed"""

    @abstractmethod
    async def add(self, notification: Notification) -> Notification:
        pass

    @abstractmethod
    async def list_recent(self, limit: int = 50) -> List[Notification]:
        pass

    @abstractmethod
    async def mark_read(self, notification_id: str) -> Optional[Notification]:
        pass


class ICartStore(ABC):
    """Per-user pending line items"""

    @abstractmethod
    async def get(self, user_id: str) -> Cart:
        pass

    @abstractmethod
    async def save(self, user_id: str, items: List[CartItem]) -> Cart:
        pass

    @abstractmethod
    async def clear(self, user_id: str) -> None:
        pass


# =============================================================================
# IN-MEMORY IMPLEMENTATIONS
# =============================================================================

class InMemoryOrderRepository(IOrderRepository):
    """Task-safe in-memory order repository"""

    def __init__(self):
        self._orders: Dict[str, Order] = {}
        self._lock = asyncio.Lock()

    async def create(self, order: Order) -> Order:
        async with self._lock:
            self._orders[order.id] = order
            return order

    async def get(self, order_id: str) -> Optional[Order]:
        async with self._lock:
            return self._orders.get(order_id)

    async def list_for_user(self, user_id: str) -> List[Order]:
        async with self._lock:
            orders = [o for o in self._orders.values() if o.user_id == user_id]
        return sorted(orders, key=lambda o: o.created_at, reverse=True)

    async def list_all(
        self,
        status: Optional[OrderStatus] = None,
        offset: int = 0,
        limit: Optional[int] = None,
    ) -> List[Order]:
        async with self._lock:
            orders = [
                o for o in self._orders.values()
                if status is None or o.status == status
            ]
        orders.sort(key=lambda o: o.created_at, reverse=True)
        end = offset + limit if limit is not None else None
        return orders[offset:end]

    async def count(self, status: Optional[OrderStatus] = None) -> int:
        async with self._lock:
            return sum(
                1 for o in self._orders.values()
                if status is None or o.status == status
            )

    async def transition(
        self,
        order_id: str,
        expected: OrderStatus,
        target: OrderStatus,
        **fields: Any,
    ) -> Optional[Order]:
        async with self._lock:
            order = self._orders.get(order_id)
            if order is None or order.status != expected:
                return None

            update = {k: v for k, v in fields.items() if v is not None}
            update.update(status=target, updated_at=utcnow())
            updated = order.model_copy(update=update)
            self._orders[order_id] = updated
            return updated


class InMemoryPaymentRepository(IPaymentRepository):
    """Task-safe in-memory payment repository"""

    def __init__(self):
        self._payments: Dict[str, Payment] = {}
        self._lock = asyncio.Lock()

    async def create(self, payment: Payment) -> Payment:
        async with self._lock:
            if payment.provider_payment_id in self._payments:
                raise ConflictError(
                    f"Duplicate provider payment id: {payment.provider_payment_id}"
                )
            self._payments[payment.provider_payment_id] = payment
            return payment

    async def get_by_provider_id(self, provider_payment_id: str) -> Optional[Payment]:
        async with self._lock:
            return self._payments.get(provider_payment_id)

    async def find_pending_for_order(self, order_id: str) -> Optional[Payment]:
        async with self._lock:
            for payment in self._payments.values():
                if payment.order_id == order_id and payment.status == PaymentStatus.PENDING:
                    return payment
            return None

    async def transition(
        self,
        provider_payment_id: str,
        target: PaymentStatus,
        method: Optional[str] = None,
        paid_at: Optional[datetime] = None,
    ) -> Optional[Payment]:
        async with self._lock:
            payment = self._payments.get(provider_payment_id)
            if payment is None or payment.status != PaymentStatus.PENDING:
                return None

            update: Dict[str, Any] = {"status": target, "updated_at": utcnow()}
            if method:
                update["method"] = method
            if paid_at:
                update["paid_at"] = paid_at
            updated = payment.model_copy(update=update)
            self._payments[provider_payment_id] = updated
            return updated


class InMemoryProductRepository(IProductRepository):
    """Task-safe in-memory product repository"""

    def __init__(self):
        self._products: Dict[str, Product] = {}
        self._lock = asyncio.Lock()

    async def create(self, product: Product) -> Product:
        async with self._lock:
            self._products[product.id] = product
            return product

    async def get(self, product_id: str) -> Optional[Product]:
        async with self._lock:
            return self._products.get(product_id)

    async def record_sale(self, product_id: str, quantity: int) -> Product:
        async with self._lock:
            product = self._products.get(product_id)
            if product is None:
                raise NotFoundError(f"Product not found: {product_id}")
            if product.stock < quantity:
                raise ConflictError(
                    f"Insufficient stock for {product_id}: "
                    f"have {product.stock}, need {quantity}"
                )

            stock = product.stock - quantity
            updated = product.model_copy(update={
                "stock": stock,
                "sold_quantity": product.sold_quantity + quantity,
                "in_stock": stock > 0,
                "updated_at": utcnow(),
            })
            self._products[product_id] = updated
            return updated


class InMemoryNotificationRepository(INotificationRepository):
    """Append-only in-memory notification feed"""

    def __init__(self):
        self._notifications: List[Notification] = []
        self._lock = asyncio.Lock()

    async def add(self, notification: Notification) -> Notification:
        async with self._lock:
            self._notifications.append(notification)
            return notification

    async def list_recent(self, limit: int = 50) -> List[Notification]:
        async with self._lock:
            recent = sorted(self._notifications, key=lambda n: n.created_at, reverse=True)
            return recent[:limit]

    async def mark_read(self, notification_id: str) -> Optional[Notification]:
        async with self._lock:
            for index, notification in enumerate(self._notifications):
                if notification.id == notification_id:
                    updated = notification.model_copy(update={"read": True})
                    self._notifications[index] = updated
                    return updated
            return None

    # Testing utilities
    def all(self) -> List[Notification]:
        return list(self._notifications)


class InMemoryCartStore(ICartStore):
    """In-memory cart store"""

    def __init__(self):
        self._carts: Dict[str, Cart] = {}
        self._lock = asyncio.Lock()

    async def get(self, user_id: str) -> Cart:
        async with self._lock:
            return self._carts.get(user_id) or Cart(user_id=user_id)

    async def save(self, user_id: str, items: List[CartItem]) -> Cart:
        async with self._lock:
            cart = Cart(user_id=user_id, items=list(items))
            self._carts[user_id] = cart
            return cart

    async def clear(self, user_id: str) -> None:
        async with self._lock:
            self._carts.pop(user_id, None)
