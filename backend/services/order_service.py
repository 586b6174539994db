"""
Order Service
=============
Validates and creates orders, scopes order listings to the caller and
handles the customer-initiated cancel.

Contract for checkout completion: the persisted order is the source of
truth. Clearing the cart afterwards is cleanup; if it fails the order still
stands and the failure is only logged.
"""

import math
from typing import List, Optional, Tuple

import structlog

from schemas.domain import (
    Address,
    Caller,
    Order,
    OrderItem,
    OrderStatus,
    utcnow,
)
from schemas.requests import AddressDraft, OrderDraft
from services.errors import AuthError, ForbiddenError, NotFoundError, ValidationError
from storage.repositories import ICartStore, IOrderRepository

REQUIRED_ADDRESS_FIELDS = ("street", "brgy", "city", "province", "postal_code")
DEFAULT_PAYMENT_METHOD = "cod"
DEFAULT_COUNTRY = "Philippines"


def _blank(value: Optional[str]) -> bool:
    return value is None or not str(value).strip()


class OrderService:

    def __init__(self, orders: IOrderRepository, carts: ICartStore):
        self._orders = orders
        self._carts = carts
        self._logger = structlog.get_logger().bind(component="order_service")

    # =========================================================================
    # CREATE
    # =========================================================================

    async def create(self, caller: Caller, draft: OrderDraft) -> Order:
        """Validate a draft and persist it as a pending order."""
        items = self._validate_items(draft)
        address = self._validate_address(draft.address)

        if draft.total_amount is None or not math.isfinite(draft.total_amount) or draft.total_amount < 0:
            raise ValidationError("A non-negative totalAmount is required")

        if draft.status and draft.status != OrderStatus.PENDING.value:
            self._logger.warning("client_status_ignored",
                                 user_id=caller.user_id,
                                 requested_status=draft.status)

        order = Order(
            user_id=caller.user_id,
            items=items,
            total_amount=draft.total_amount,
            payment_method=(draft.payment_method or DEFAULT_PAYMENT_METHOD).strip().lower(),
            status=OrderStatus.PENDING,
            address=address,
            location=draft.location,
        )
        order = await self._orders.create(order)

        self._logger.info("order_created",
                          order_id=order.id,
                          user_id=caller.user_id,
                          items=len(order.items),
                          total_amount=order.total_amount,
                          payment_method=order.payment_method)

        await self._clear_cart(caller.user_id, order.id)
        return order

    def _validate_items(self, draft: OrderDraft) -> List[OrderItem]:
        if not draft.items:
            raise ValidationError("No items in order")

        items = []
        for index, item in enumerate(draft.items):
            if _blank(item.product_id) or _blank(item.name):
                raise ValidationError(f"Item {index + 1} is missing productId or name")
            if item.price is None or not math.isfinite(item.price) or item.price < 0:
                raise ValidationError(f"Item {index + 1} needs a non-negative price")
            if item.quantity is None or item.quantity < 1:
                raise ValidationError(f"Item {index + 1} needs a quantity of at least 1")

            items.append(OrderItem(
                product_id=item.product_id,
                name=item.name,
                price=item.price,
                quantity=item.quantity,
            ))
        return items

    def _validate_address(self, draft: Optional[AddressDraft]) -> Address:
        if draft is None:
            raise ValidationError("Incomplete address")

        missing = [f for f in REQUIRED_ADDRESS_FIELDS if _blank(getattr(draft, f))]
        if missing:
            raise ValidationError(f"Incomplete address: missing {', '.join(missing)}")

        return Address(
            street=draft.street.strip(),
            brgy=draft.brgy.strip(),
            city=draft.city.strip(),
            province=draft.province.strip(),
            postal_code=draft.postal_code.strip(),
            country=DEFAULT_COUNTRY if _blank(draft.country) else draft.country.strip(),
        )

    async def _clear_cart(self, user_id: str, order_id: str) -> None:
        try:
            await self._carts.clear(user_id)
        except Exception as e:
            self._logger.warning("cart_clear_failed",
                                 user_id=user_id,
                                 order_id=order_id,
                                 error=str(e))

    # =========================================================================
    # READ
    # =========================================================================

    async def list(self, caller: Caller) -> List[Order]:
        """Admins see every order; customers see their own. Newest first."""
        if caller.is_admin:
            return await self._orders.list_all()
        return await self._orders.list_for_user(caller.user_id)

    async def get(self, caller: Caller, order_id: str) -> Order:
        order = await self._orders.get(order_id)
        if order is None:
            raise NotFoundError("Order not found")
        if not caller.is_admin and not order.is_owned_by(caller.user_id):
            raise ForbiddenError()
        return order

    async def list_all(
        self,
        caller: Caller,
        status: Optional[OrderStatus] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Tuple[List[Order], int]:
        """Paginated admin listing."""
        if not caller.is_admin:
            raise AuthError()
        if page < 1 or limit < 1:
            raise ValidationError("page and limit must be positive")

        orders = await self._orders.list_all(status=status, offset=(page - 1) * limit, limit=limit)
        total = await self._orders.count(status=status)
        return orders, total

    # =========================================================================
    # CANCEL
    # =========================================================================

    async def cancel(self, caller: Caller, order_id: str) -> Order:
        order = await self.get(caller, order_id)

        cancelled = await self._orders.transition(
            order.id,
            expected=OrderStatus.PENDING,
            target=OrderStatus.CANCELLED,
            cancelled_at=utcnow(),
        )
        if cancelled is not None:
            self._logger.info("order_cancelled", order_id=order.id, by=caller.user_id)
            return cancelled

        # Lost the race or was never pending: explain using the current state
        current = await self._orders.get(order.id)
        status = current.status if current else order.status
        if status == OrderStatus.CANCELLED:
            raise ValidationError("Order is already cancelled")
        if status == OrderStatus.PAID:
            raise ValidationError("Cannot cancel paid orders")
        raise ValidationError("Only pending orders can be cancelled")
