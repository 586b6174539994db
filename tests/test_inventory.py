import asyncio

import pytest

from conftest import order_draft, seed_product
from schemas.domain import NotificationType, Order
from services.errors import ConflictError, NotFoundError


async def make_order(container, customer, items) -> Order:
    return await container.order_service.create(customer, order_draft(items=items))


def notifications_of(container, type_):
    return [n for n in container.notification_store.all() if n.type == type_]


# =============================================================================
# COUNTERS
# =============================================================================

async def test_record_sale_moves_stock_to_sold(container):
    await seed_product(container, stock=10)

    product = await container.products.record_sale("prod-1", 3)

    assert product.stock == 7
    assert product.sold_quantity == 3
    assert product.in_stock is True


async def test_record_sale_never_goes_negative(container):
    await seed_product(container, stock=2)

    with pytest.raises(ConflictError):
        await container.products.record_sale("prod-1", 3)
    assert (await container.products.get("prod-1")).stock == 2


async def test_record_sale_unknown_product(container):
    with pytest.raises(NotFoundError):
        await container.products.record_sale("missing", 1)


async def test_concurrent_sales_are_serialized(container):
    await seed_product(container, stock=5)

    results = await asyncio.gather(
        *[container.products.record_sale("prod-1", 1) for _ in range(8)],
        return_exceptions=True,
    )

    assert sum(1 for r in results if not isinstance(r, Exception)) == 5
    assert sum(1 for r in results if isinstance(r, ConflictError)) == 3
    product = await container.products.get("prod-1")
    assert product.stock == 0
    assert product.sold_quantity == 5
    assert product.in_stock is False


# =============================================================================
# THRESHOLDS
# =============================================================================

@pytest.mark.parametrize("stock,quantity,expected", [
    (8, 2, None),                           # 6 left, above threshold
    (8, 4, NotificationType.LOW_STOCK),
    (10, 5, NotificationType.LOW_STOCK),    # exactly at threshold
    (10, 9, NotificationType.LOW_STOCK),    # 1 left
    (5, 5, NotificationType.OUT_OF_STOCK),
])
async def test_threshold_notifications(container, customer, stock, quantity, expected):
    await seed_product(container, stock=stock, threshold=5)
    order = await make_order(container, customer, [("prod-1", "Rice Cooker", 1500.0, quantity)])

    result = await container.inventory.apply_order(order)

    assert [a.stock for a in result.adjusted] == [stock - quantity]
    emitted = [
        n.type for n in container.notification_store.all()
        if n.type in (NotificationType.LOW_STOCK, NotificationType.OUT_OF_STOCK)
    ]
    assert emitted == ([expected] if expected else [])


async def test_stock_notification_meta(container, customer):
    await seed_product(container, stock=3, threshold=5)
    order = await make_order(container, customer, [("prod-1", "Rice Cooker", 1500.0, 3)])

    await container.inventory.apply_order(order)

    [notification] = notifications_of(container, NotificationType.OUT_OF_STOCK)
    assert notification.meta == {"productId": "prod-1", "name": "Rice Cooker", "stock": 0}


# =============================================================================
# PER-ITEM ISOLATION
# =============================================================================

async def test_failing_item_does_not_block_the_rest(container, customer):
    await seed_product(container, "prod-1", "Rice Cooker", stock=1)
    await seed_product(container, "prod-2", "Electric Fan", stock=20)
    order = await make_order(container, customer, [
        ("prod-1", "Rice Cooker", 1500.0, 2),   # insufficient
        ("prod-missing", "Ghost", 10.0, 1),     # unknown
        ("prod-2", "Electric Fan", 900.0, 3),
    ])

    result = await container.inventory.apply_order(order, correlation_id="inv-xyz")

    assert [a.product_id for a in result.adjusted] == ["prod-2"]
    assert [f.product_id for f in result.failed] == ["prod-1", "prod-missing"]
    assert (await container.products.get("prod-1")).stock == 1
    assert (await container.products.get("prod-2")).stock == 17

    conflicts = notifications_of(container, NotificationType.INVENTORY_CONFLICT)
    assert [c.meta["productId"] for c in conflicts] == ["prod-1", "prod-missing"]
    assert all(c.meta["orderId"] == order.id for c in conflicts)


async def test_unexpected_storage_error_is_isolated(container, customer):
    await seed_product(container, "prod-2", "Electric Fan", stock=20)
    order = await make_order(container, customer, [
        ("prod-1", "Rice Cooker", 1500.0, 1),
        ("prod-2", "Electric Fan", 900.0, 1),
    ])

    original = container.products.record_sale

    async def flaky_record_sale(product_id, quantity):
        if product_id == "prod-1":
            raise RuntimeError("connection reset")
        return await original(product_id, quantity)

    container.products.record_sale = flaky_record_sale

    result = await container.inventory.apply_order(order)

    assert [f.reason for f in result.failed] == ["connection reset"]
    assert [a.product_id for a in result.adjusted] == ["prod-2"]
