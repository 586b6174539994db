# services/inventory.py
# ============================================================================
# STOREFRONT — INVENTORY ADJUSTMENT
# ============================================================================
# Runs once per paid order. Each line item is one atomic counter update; a
# failing item is reported and skipped so the rest of the order still gets
# its stock corrected.
# ============================================================================

from typing import List, Optional

import structlog
from pydantic import BaseModel, Field

from schemas.domain import NotificationType, Order, OrderItem, Product
from services.errors import ServiceError
from services.notifications import NotificationSink
from storage.repositories import IProductRepository


class StockAdjustment(BaseModel):
    product_id: str
    quantity: int
    stock: int
    sold_quantity: int


class FailedAdjustment(BaseModel):
    product_id: str
    quantity: int
    reason: str


class InventoryResult(BaseModel):
    adjusted: List[StockAdjustment] = Field(default_factory=list)
    failed: List[FailedAdjustment] = Field(default_factory=list)


class InventoryAdjuster:
    """Applies sold quantities to product stock after a successful payment"""

    def __init__(self, products: IProductRepository, notifications: NotificationSink):
        self._products = products
        self._notifications = notifications
        self._logger = structlog.get_logger().bind(component="inventory")

    async def apply_order(self, order: Order, correlation_id: Optional[str] = None) -> InventoryResult:
        log = self._logger.bind(order_id=order.id, correlation_id=correlation_id)
        result = InventoryResult()

        for item in order.items:
            try:
                product = await self._products.record_sale(item.product_id, item.quantity)
            except ServiceError as e:
                await self._report_failure(order, item, e.message, correlation_id)
                result.failed.append(FailedAdjustment(
                    product_id=item.product_id, quantity=item.quantity, reason=e.message,
                ))
                continue
            except Exception as e:
                log.exception("stock_adjust_error", product_id=item.product_id)
                await self._report_failure(order, item, str(e), correlation_id)
                result.failed.append(FailedAdjustment(
                    product_id=item.product_id, quantity=item.quantity, reason=str(e),
                ))
                continue

            log.info("stock_adjusted",
                     product_id=product.id,
                     quantity=item.quantity,
                     stock=product.stock,
                     sold_quantity=product.sold_quantity)
            result.adjusted.append(StockAdjustment(
                product_id=product.id,
                quantity=item.quantity,
                stock=product.stock,
                sold_quantity=product.sold_quantity,
            ))
            await self._check_thresholds(product, correlation_id)

        return result

    async def _check_thresholds(self, product: Product, correlation_id: Optional[str]) -> None:
        meta = {"productId": product.id, "name": product.name, "stock": product.stock}

        if product.stock == 0:
            await self._notifications.emit(
                NotificationType.OUT_OF_STOCK,
                f'"{product.name}" is now out of stock.',
                meta,
                correlation_id,
            )
        elif product.stock <= product.restock_threshold:
            await self._notifications.emit(
                NotificationType.LOW_STOCK,
                f'"{product.name}" is running low ({product.stock} left).',
                meta,
                correlation_id,
            )

    async def _report_failure(
        self,
        order: Order,
        item: OrderItem,
        reason: str,
        correlation_id: Optional[str],
    ) -> None:
        self._logger.warning("stock_adjust_failed",
                             order_id=order.id,
                             product_id=item.product_id,
                             quantity=item.quantity,
                             reason=reason,
                             correlation_id=correlation_id)
        await self._notifications.emit(
            NotificationType.INVENTORY_CONFLICT,
            f'Stock for "{item.name}" could not be adjusted for order {order.id}: {reason}',
            {
                "orderId": order.id,
                "productId": item.product_id,
                "quantity": item.quantity,
                "reason": reason,
            },
            correlation_id,
        )
