import asyncio

import pytest

from conftest import CALLBACK_TOKEN, open_payment, place_order, seed_product, webhook_payload
from schemas.domain import NotificationType, OrderStatus, PaymentStatus, utcnow
from services.errors import AuthError, InternalError, NotFoundError, ValidationError
from services.payment_webhook import PaymentWebhookProcessor, WebhookOutcome


def types_of(container):
    return [n.type for n in container.notification_store.all()]


@pytest.fixture
async def paid_setup(container, customer):
    await seed_product(container, "prod-1", "Rice Cooker", stock=10)
    order = await place_order(container, customer, items=[("prod-1", "Rice Cooker", 1500.0, 2)])
    await open_payment(container, order, "inv-001")
    return order


# =============================================================================
# HAPPY PATH
# =============================================================================

async def test_paid_webhook_settles_order_and_adjusts_stock(container, paid_setup):
    result = await container.webhooks.process(webhook_payload(), CALLBACK_TOKEN)

    assert result.outcome == WebhookOutcome.PROCESSED
    assert result.message == "Webhook processed successfully"

    payment = await container.payments.get_by_provider_id("inv-001")
    assert payment.status == PaymentStatus.SUCCEEDED
    assert payment.method == "gcash"
    assert payment.paid_at is not None

    order = await container.orders.get(paid_setup.id)
    assert order.status == OrderStatus.PAID
    assert order.payment_method == "gcash"
    assert order.paid_at is not None

    product = await container.products.get("prod-1")
    assert product.stock == 8
    assert product.sold_quantity == 2

    paid = [n for n in container.notification_store.all() if n.type == NotificationType.ORDER_PAID]
    assert len(paid) == 1
    assert paid[0].meta == {
        "orderId": order.id,
        "userId": order.user_id,
        "totalAmount": order.total_amount,
        "paymentMethod": "gcash",
    }


async def test_status_and_channel_are_case_insensitive(container, paid_setup):
    result = await container.webhooks.process(
        webhook_payload(status="pAiD", channel="PayMaya"), CALLBACK_TOKEN,
    )

    assert result.outcome == WebhookOutcome.PROCESSED
    order = await container.orders.get(paid_setup.id)
    assert order.payment_method == "paymaya"


async def test_missing_channel_keeps_existing_method(container, paid_setup):
    await container.webhooks.process(webhook_payload(channel=None), CALLBACK_TOKEN)

    order = await container.orders.get(paid_setup.id)
    assert order.status == OrderStatus.PAID
    assert order.payment_method == "cod"


async def test_order_paid_is_published_on_the_bus(container, paid_setup):
    await container.webhooks.process(webhook_payload(), CALLBACK_TOKEN)

    events = container.bus.get_published_events()
    order_paid = [e for e in events if e.event_type == NotificationType.ORDER_PAID]
    assert len(order_paid) == 1
    assert order_paid[0].routing_key == "notification.order_paid"
    assert order_paid[0].correlation_id == "inv-001"


# =============================================================================
# IDEMPOTENCE
# =============================================================================

async def test_replays_do_not_repeat_side_effects(container, paid_setup):
    first = await container.webhooks.process(webhook_payload(), CALLBACK_TOKEN)
    replays = [
        await container.webhooks.process(webhook_payload(), CALLBACK_TOKEN)
        for _ in range(5)
    ]

    assert first.outcome == WebhookOutcome.PROCESSED
    assert all(r.outcome == WebhookOutcome.ALREADY_PROCESSED for r in replays)

    product = await container.products.get("prod-1")
    assert product.stock == 8
    assert product.sold_quantity == 2
    assert types_of(container).count(NotificationType.ORDER_PAID) == 1


async def test_concurrent_duplicate_deliveries_apply_once(container, paid_setup):
    results = await asyncio.gather(*[
        container.webhooks.process(webhook_payload(), CALLBACK_TOKEN)
        for _ in range(10)
    ])

    outcomes = [r.outcome for r in results]
    assert outcomes.count(WebhookOutcome.PROCESSED) == 1
    assert outcomes.count(WebhookOutcome.ALREADY_PROCESSED) == 9

    product = await container.products.get("prod-1")
    assert product.stock == 8
    assert types_of(container).count(NotificationType.ORDER_PAID) == 1


async def test_redelivery_settles_order_left_pending_by_a_crash(container, paid_setup):
    original = container.orders.transition

    async def crashing_transition(*args, **kwargs):
        raise InternalError("connection reset")

    container.orders.transition = crashing_transition
    with pytest.raises(InternalError):
        await container.webhooks.process(webhook_payload(), CALLBACK_TOKEN)

    payment = await container.payments.get_by_provider_id("inv-001")
    assert payment.status == PaymentStatus.SUCCEEDED
    assert (await container.orders.get(paid_setup.id)).status == OrderStatus.PENDING
    assert (await container.products.get("prod-1")).stock == 10

    container.orders.transition = original
    result = await container.webhooks.process(webhook_payload(), CALLBACK_TOKEN)

    assert result.outcome == WebhookOutcome.PROCESSED
    order = await container.orders.get(paid_setup.id)
    assert order.status == OrderStatus.PAID
    assert order.paid_at == payment.paid_at
    assert order.payment_method == "gcash"
    assert (await container.products.get("prod-1")).stock == 8
    assert types_of(container).count(NotificationType.ORDER_PAID) == 1
    assert NotificationType.PAYMENT_CONFLICT not in types_of(container)

    again = await container.webhooks.process(webhook_payload(), CALLBACK_TOKEN)
    assert again.outcome == WebhookOutcome.ALREADY_PROCESSED
    assert (await container.products.get("prod-1")).stock == 8
    assert types_of(container).count(NotificationType.ORDER_PAID) == 1


async def test_concurrent_redeliveries_resume_settlement_once(container, paid_setup):
    await container.payments.transition("inv-001", PaymentStatus.SUCCEEDED, method="gcash", paid_at=utcnow())

    results = await asyncio.gather(*[
        container.webhooks.process(webhook_payload(), CALLBACK_TOKEN)
        for _ in range(5)
    ])

    outcomes = [r.outcome for r in results]
    assert outcomes.count(WebhookOutcome.PROCESSED) == 1
    assert outcomes.count(WebhookOutcome.ALREADY_PROCESSED) == 4
    assert (await container.products.get("prod-1")).stock == 8
    assert NotificationType.PAYMENT_CONFLICT not in types_of(container)


async def test_losing_the_order_update_to_a_redelivery_is_a_duplicate(container, paid_setup):
    original = container.orders.transition
    redelivered = []

    async def transition_after_redelivery(*args, **kwargs):
        container.orders.transition = original
        redelivered.append(await container.webhooks.process(webhook_payload(), CALLBACK_TOKEN))
        return await original(*args, **kwargs)

    container.orders.transition = transition_after_redelivery
    result = await container.webhooks.process(webhook_payload(), CALLBACK_TOKEN)

    assert redelivered[0].outcome == WebhookOutcome.PROCESSED
    assert result.outcome == WebhookOutcome.ALREADY_PROCESSED
    assert (await container.products.get("prod-1")).stock == 8
    assert types_of(container).count(NotificationType.ORDER_PAID) == 1
    assert NotificationType.PAYMENT_CONFLICT not in types_of(container)
    assert NotificationType.PAYMENT_CONFLICT not in types_of(container)


# =============================================================================
# GATE AND AUTH)
# =============================================================================

async def test_unknown_payment_is_not_found_and_nothing_changes(container, paid_setup):
    with pytest.raises(NotFoundError):
        await container.webhooks.process(webhook_payload("inv-unknown"), CALLBACK_TOKEN)

    order = await container.orders.get(paid_setup.id)
    assert order.status == OrderStatus.PENDING
    assert await container.payments.get_by_provider_id("inv-unknown") is None
    assert (await container.products.get("prod-1")).stock == 10
    assert container.notification_store.all() == []


@pytest.mark.parametrize("token", [None, "", "wrong-token", CALLBACK_TOKEN + "x"])
async def test_bad_token_is_rejected_before_anything_is_touched(container, paid_setup, token):
    with pytest.raises(AuthError):
        await container.webhooks.process(webhook_payload(), token)

    payment = await container.payments.get_by_provider_id("inv-001")
    assert payment.status == PaymentStatus.PENDING


async def test_unconfigured_secret_rejects_everything(container, paid_setup):
    processor = PaymentWebhookProcessor(
        container.payments, container.orders, container.inventory, container.notifications,
        callback_token="",
    )
    with pytest.raises(AuthError):
        await processor.process(webhook_payload(), "")


@pytest.mark.parametrize("payload", [
    {},
    {"id": "inv-001"},
    {"status": "PAID"},
    {"id": "", "status": "PAID"},
    {"id": "inv-001", "status": "   "},
    {"id": 42, "status": "PAID"},
    ["inv-001", "PAID"],
])
async def test_malformed_payload_is_rejected(container, paid_setup, payload):
    with pytest.raises(ValidationError):
        await container.webhooks.process(payload, CALLBACK_TOKEN)


@pytest.mark.parametrize("status", ["PENDING", "settled", "refunded"])
async def test_other_statuses_are_acknowledged_and_ignored(container, paid_setup, status):
    result = await container.webhooks.process(webhook_payload(status=status), CALLBACK_TOKEN)

    assert result.outcome == WebhookOutcome.IGNORED
    assert result.message == "Ignored status"
    payment = await container.payments.get_by_provider_id("inv-001")
    assert payment.status == PaymentStatus.PENDING


# =============================================================================
# FAILED PAYMENTS AND TERMINAL STATES
# =============================================================================

@pytest.mark.parametrize("status", ["EXPIRED", "FAILED"])
async def test_failed_payment_leaves_order_pending(container, paid_setup, status):
    result = await container.webhooks.process(webhook_payload(status=status), CALLBACK_TOKEN)

    assert result.outcome == WebhookOutcome.PROCESSED
    payment = await container.payments.get_by_provider_id("inv-001")
    assert payment.status == PaymentStatus.FAILED
    assert payment.paid_at is None

    order = await container.orders.get(paid_setup.id)
    assert order.status == OrderStatus.PENDING
    assert (await container.products.get("prod-1")).stock == 10


async def test_paid_after_expired_is_flagged_not_applied(container, paid_setup):
    await container.webhooks.process(webhook_payload(status="EXPIRED"), CALLBACK_TOKEN)
    result = await container.webhooks.process(webhook_payload(status="PAID"), CALLBACK_TOKEN)

    assert result.outcome == WebhookOutcome.CONFLICT
    payment = await container.payments.get_by_provider_id("inv-001")
    assert payment.status == PaymentStatus.FAILED

    order = await container.orders.get(paid_setup.id)
    assert order.status == OrderStatus.PENDING
    assert types_of(container) == [NotificationType.PAYMENT_CONFLICT]


async def test_expired_after_paid_does_not_regress(container, paid_setup):
    await container.webhooks.process(webhook_payload(status="PAID"), CALLBACK_TOKEN)
    result = await container.webhooks.process(webhook_payload(status="EXPIRED"), CALLBACK_TOKEN)

    assert result.outcome == WebhookOutcome.CONFLICT
    payment = await container.payments.get_by_provider_id("inv-001")
    assert payment.status == PaymentStatus.SUCCEEDED
    assert (await container.orders.get(paid_setup.id)).status == OrderStatus.PAID


async def test_payment_for_cancelled_order_is_flagged(container, customer, paid_setup):
    await container.order_service.cancel(customer, paid_setup.id)

    result = await container.webhooks.process(webhook_payload(), CALLBACK_TOKEN)

    assert result.outcome == WebhookOutcome.CONFLICT
    order = await container.orders.get(paid_setup.id)
    assert order.status == OrderStatus.CANCELLED
    assert order.paid_at is None
    assert (await container.products.get("prod-1")).stock == 10

    conflicts = [n for n in container.notification_store.all()
                 if n.type == NotificationType.PAYMENT_CONFLICT]
    assert len(conflicts) == 1
    assert conflicts[0].meta["orderStatus"] == "cancelled"
    assert NotificationType.ORDER_PAID not in types_of(container)


async def test_second_payment_for_paid_order_does_not_double_count(container, paid_setup):
    await open_payment(container, paid_setup, "inv-002")

    await container.webhooks.process(webhook_payload("inv-001"), CALLBACK_TOKEN)
    result = await container.webhooks.process(webhook_payload("inv-002"), CALLBACK_TOKEN)

    assert result.outcome == WebhookOutcome.CONFLICT
    product = await container.products.get("prod-1")
    assert product.stock == 8
    assert types_of(container).count(NotificationType.ORDER_PAID) == 1


# =============================================================================
# SIDE-EFFECT ISOLATION
# =============================================================================

async def test_inventory_failure_does_not_undo_payment(container, customer):
    await seed_product(container, "prod-1", "Rice Cooker", stock=10)
    order = await place_order(container, customer, items=[
        ("prod-1", "Rice Cooker", 1500.0, 1),
        ("prod-missing", "Ghost Item", 10.0, 1),
    ])
    await open_payment(container, order, "inv-001")

    result = await container.webhooks.process(webhook_payload(), CALLBACK_TOKEN)

    assert result.outcome == WebhookOutcome.PROCESSED
    assert [a.product_id for a in result.inventory.adjusted] == ["prod-1"]
    assert [f.product_id for f in result.inventory.failed] == ["prod-missing"]
    assert (await container.orders.get(order.id)).status == OrderStatus.PAID
    assert NotificationType.INVENTORY_CONFLICT in types_of(container)


async def test_broken_notification_store_does_not_fail_webhook(container, paid_setup):
    async def broken_add(notification):
        raise RuntimeError("notifications table unavailable")

    container.notification_store.add = broken_add

    result = await container.webhooks.process(webhook_payload(), CALLBACK_TOKEN)

    assert result.outcome == WebhookOutcome.PROCESSED
    assert (await container.orders.get(paid_setup.id)).status == OrderStatus.PAID
    assert (await container.products.get("prod-1")).stock == 8
