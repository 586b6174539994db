"""
PostgreSQL Repositories
=======================
asyncpg-backed implementations of the storage interfaces.

Every conditional write is a single ``UPDATE ... WHERE <guard> RETURNING *``
so concurrent webhook deliveries and concurrent orders on the same product
are serialized by the database row lock, never by application code.
"""

import json
from datetime import datetime
from typing import Any, List, Optional

import asyncpg

from database import Database
from schemas.domain import (
    Address,
    Cart,
    CartItem,
    Location,
    Notification,
    NotificationType,
    Order,
    OrderItem,
    OrderStatus,
    Payment,
    PaymentStatus,
    Product,
    utcnow,
)
from services.errors import ConflictError, NotFoundError
from storage.repositories import (
    ICartStore,
    INotificationRepository,
    IOrderRepository,
    IPaymentRepository,
    IProductRepository,
)


def _json_in(value: Any) -> Optional[str]:
    return json.dumps(value) if value is not None else None


def _json_out(value: Any) -> Any:
    if isinstance(value, str):
        return json.loads(value)
    return value


# =============================================================================
# ORDERS
# =============================================================================

ORDER_TRANSITION_FIELDS = ("paid_at", "cancelled_at", "payment_method")


def _row_to_order(row: asyncpg.Record) -> Order:
    location = _json_out(row["location"])
    return Order(
        id=row["id"],
        user_id=row["user_id"],
        items=[OrderItem.model_validate(i) for i in _json_out(row["items"])],
        total_amount=row["total_amount"],
        payment_method=row["payment_method"],
        status=OrderStatus(row["status"]),
        address=Address.model_validate(_json_out(row["address"])),
        location=Location.model_validate(location) if location else None,
        paid_at=row["paid_at"],
        cancelled_at=row["cancelled_at"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class PostgresOrderRepository(IOrderRepository):

    def __init__(self, db: Database):
        self._db = db

    async def create(self, order: Order) -> Order:
        row = await self._db.fetch_one(
            """
            INSERT INTO orders
            (id, user_id, items, total_amount, payment_method, status,
             address, location, created_at, updated_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
            RETURNING *
            """,
            order.id,
            order.user_id,
            _json_in([i.to_json() for i in order.items]),
            order.total_amount,
            order.payment_method,
            order.status.value,
            _json_in(order.address.to_json()),
            _json_in(order.location.to_json() if order.location else None),
            order.created_at,
            order.updated_at,
        )
        return _row_to_order(row)

    async def get(self, order_id: str) -> Optional[Order]:
        row = await self._db.fetch_one("SELECT * FROM orders WHERE id = $1", order_id)
        return _row_to_order(row) if row else None

    async def list_for_user(self, user_id: str) -> List[Order]:
        rows = await self._db.fetch_all(
            "SELECT * FROM orders WHERE user_id = $1 ORDER BY created_at DESC",
            user_id,
        )
        return [_row_to_order(r) for r in rows]

    async def list_all(
        self,
        status: Optional[OrderStatus] = None,
        offset: int = 0,
        limit: Optional[int] = None,
    ) -> List[Order]:
        # LIMIT NULL means no limit in PostgreSQL
        if status is None:
            rows = await self._db.fetch_all(
                "SELECT * FROM orders ORDER BY created_at DESC OFFSET $1 LIMIT $2",
                offset,
                limit,
            )
        else:
            rows = await self._db.fetch_all(
                """
                SELECT * FROM orders WHERE status = $1
                ORDER BY created_at DESC OFFSET $2 LIMIT $3
                """,
                status.value,
                offset,
                limit,
            )
        return [_row_to_order(r) for r in rows]

    async def count(self, status: Optional[OrderStatus] = None) -> int:
        if status is None:
            return await self._db.fetch_value("SELECT COUNT(*) FROM orders")
        return await self._db.fetch_value(
            "SELECT COUNT(*) FROM orders WHERE status = $1", status.value
        )

    async def transition(
        self,
        order_id: str,
        expected: OrderStatus,
        target: OrderStatus,
        **fields: Any,
    ) -> Optional[Order]:
        set_clauses = ["status = $1", "updated_at = $2"]
        params: List[Any] = [target.value, utcnow()]
        param_num = 3

        for key in ORDER_TRANSITION_FIELDS:
            value = fields.get(key)
            if value is not None:
                set_clauses.append(f"{key} = ${param_num}")
                params.append(value)
                param_num += 1

        params.extend([order_id, expected.value])
        row = await self._db.fetch_one(
            f"""
            UPDATE orders
            SET {', '.join(set_clauses)}
            WHERE id = ${param_num} AND status = ${param_num + 1}
            RETURNING *
            """,
            *params,
        )
        return _row_to_order(row) if row else None


# =============================================================================
# PAYMENTS
# =============================================================================

def _row_to_payment(row: asyncpg.Record) -> Payment:
    return Payment(
        id=row["id"],
        order_id=row["order_id"],
        user_id=row["user_id"],
        provider_payment_id=row["provider_payment_id"],
        status=PaymentStatus(row["status"]),
        method=row["method"],
        amount=row["amount"],
        currency=row["currency"],
        provider_response=_json_out(row["provider_response"]),
        paid_at=row["paid_at"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class PostgresPaymentRepository(IPaymentRepository):

    def __init__(self, db: Database):
        self._db = db

    async def create(self, payment: Payment) -> Payment:
        row = await self._db.fetch_one(
            """
            INSERT INTO payments
            (id, order_id, user_id, provider_payment_id, status, method,
             amount, currency, provider_response, created_at, updated_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
            ON CONFLICT (provider_payment_id) DO NOTHING
            RETURNING *
            """,
            payment.id,
            payment.order_id,
            payment.user_id,
            payment.provider_payment_id,
            payment.status.value,
            payment.method,
            payment.amount,
            payment.currency,
            _json_in(payment.provider_response),
            payment.created_at,
            payment.updated_at,
        )
        if row is None:
            raise ConflictError(
                f"Duplicate provider payment id: {payment.provider_payment_id}"
            )
        return _row_to_payment(row)

    async def get_by_provider_id(self, provider_payment_id: str) -> Optional[Payment]:
        row = await self._db.fetch_one(
            "SELECT * FROM payments WHERE provider_payment_id = $1",
            provider_payment_id,
        )
        return _row_to_payment(row) if row else None

    async def find_pending_for_order(self, order_id: str) -> Optional[Payment]:
        row = await self._db.fetch_one(
            """
            SELECT * FROM payments
            WHERE order_id = $1 AND status = 'pending'
            ORDER BY created_at DESC
            LIMIT 1
            """,
            order_id,
        )
        return _row_to_payment(row) if row else None

    async def transition(
        self,
        provider_payment_id: str,
        target: PaymentStatus,
        method: Optional[str] = None,
        paid_at: Optional[datetime] = None,
    ) -> Optional[Payment]:
        row = await self._db.fetch_one(
            """
            UPDATE payments
            SET status = $1,
                method = COALESCE($2, method),
                paid_at = COALESCE($3, paid_at),
                updated_at = $4
            WHERE provider_payment_id = $5
              AND status = 'pending'
              AND status <> $1
            RETURNING *
            """,
            target.value,
            method,
            paid_at,
            utcnow(),
            provider_payment_id,
        )
        return _row_to_payment(row) if row else None


# =============================================================================
# PRODUCTS
# =============================================================================

def _row_to_product(row: asyncpg.Record) -> Product:
    return Product(
        id=row["id"],
        name=row["name"],
        price=row["price"],
        stock=row["stock"],
        sold_quantity=row["sold_quantity"],
        restock_threshold=row["restock_threshold"],
        in_stock=row["in_stock"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class PostgresProductRepository(IProductRepository):

    def __init__(self, db: Database):
        self._db = db

    async def create(self, product: Product) -> Product:
        row = await self._db.fetch_one(
            """
            INSERT INTO products
            (id, name, price, stock, sold_quantity, restock_threshold,
             in_stock, created_at, updated_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
            RETURNING *
            """,
            product.id,
            product.name,
            product.price,
            product.stock,
            product.sold_quantity,
            product.restock_threshold,
            product.in_stock,
            product.created_at,
            product.updated_at,
        )
        return _row_to_product(row)

    async def get(self, product_id: str) -> Optional[Product]:
        row = await self._db.fetch_one("SELECT * FROM products WHERE id = $1", product_id)
        return _row_to_product(row) if row else None

    async def record_sale(self, product_id: str, quantity: int) -> Product:
        row = await self._db.fetch_one(
            """
            UPDATE products
            SET stock = stock - $2,
                sold_quantity = sold_quantity + $2,
                in_stock = (stock - $2) > 0,
                updated_at = NOW()
            WHERE id = $1 AND stock >= $2
            RETURNING *
            """,
            product_id,
            quantity,
        )
        if row:
            return _row_to_product(row)

        # The guard failed: tell the caller which way
        exists = await self._db.fetch_value(
            "SELECT stock FROM products WHERE id = $1", product_id
        )
        if exists is None:
            raise NotFoundError(f"Product not found: {product_id}")
        raise ConflictError(
            f"Insufficient stock for {product_id}: have {exists}, need {quantity}"
        )


# =============================================================================
# NOTIFICATIONS
# =============================================================================

def _row_to_notification(row: asyncpg.Record) -> Notification:
    return Notification(
        id=row["id"],
        type=NotificationType(row["type"]),
        message=row["message"],
        meta=_json_out(row["meta"]) or {},
        read=row["read"],
        target_admin_id=row["target_admin_id"],
        created_at=row["created_at"],
    )


class PostgresNotificationRepository(INotificationRepository):

    def __init__(self, db: Database):
        self._db = db

    async def add(self, notification: Notification) -> Notification:
        row = await self._db.fetch_one(
            """
            INSERT INTO notifications
            (id, type, message, meta, read, target_admin_id, created_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7)
            RETURNING *
            """,
            notification.id,
            notification.type.value,
            notification.message,
            _json_in(notification.meta),
            notification.read,
            notification.target_admin_id,
            notification.created_at,
        )
        return _row_to_notification(row)

    async def list_recent(self, limit: int = 50) -> List[Notification]:
        rows = await self._db.fetch_all(
            "SELECT * FROM notifications ORDER BY created_at DESC LIMIT $1",
            limit,
        )
        return [_row_to_notification(r) for r in rows]

    async def mark_read(self, notification_id: str) -> Optional[Notification]:
        row = await self._db.fetch_one(
            "UPDATE notifications SET read = TRUE WHERE id = $1 RETURNING *",
            notification_id,
        )
        return _row_to_notification(row) if row else None


# =============================================================================
# CARTS
# =============================================================================

class PostgresCartStore(ICartStore):

    def __init__(self, db: Database):
        self._db = db

    async def get(self, user_id: str) -> Cart:
        row = await self._db.fetch_one("SELECT * FROM carts WHERE user_id = $1", user_id)
        if not row:
            return Cart(user_id=user_id)
        return Cart(
            user_id=row["user_id"],
            items=[CartItem.model_validate(i) for i in _json_out(row["items"])],
            updated_at=row["updated_at"],
        )

    async def save(self, user_id: str, items: List[CartItem]) -> Cart:
        row = await self._db.fetch_one(
            """
            INSERT INTO carts (user_id, items, updated_at)
            VALUES ($1, $2, NOW())
            ON CONFLICT (user_id)
            DO UPDATE SET items = EXCLUDED.items, updated_at = NOW()
            RETURNING *
            """,
            user_id,
            _json_in([i.to_json() for i in items]),
        )
        return Cart(
            user_id=row["user_id"],
            items=[CartItem.model_validate(i) for i in _json_out(row["items"])],
            updated_at=row["updated_at"],
        )

    async def clear(self, user_id: str) -> None:
        await self._db.execute("DELETE FROM carts WHERE user_id = $1", user_id)
