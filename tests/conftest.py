import pytest
from fastapi.testclient import TestClient

from api.dependencies import build_memory_container
from api.server import create_app
from schemas.domain import Caller, Payment, Product
from schemas.requests import AddressDraft, OrderDraft, OrderItemDraft

CALLBACK_TOKEN = "test-callback-token"
CUSTOMER_TOKEN = "customer-token"
OTHER_TOKEN = "other-token"
ADMIN_TOKEN = "admin-token"


@pytest.fixture
def customer():
    return Caller(user_id="user-1", email="juan@example.com", name="Juan Dela Cruz")


@pytest.fixture
def other_customer():
    return Caller(user_id="user-2", email="maria@example.com", name="Maria Santos")


@pytest.fixture
def admin():
    return Caller(user_id="admin-1", is_admin=True, email="admin@example.com")


@pytest.fixture
async def container():
    container = build_memory_container(callback_token=CALLBACK_TOKEN)
    await container.bus.connect()
    yield container
    await container.notifications.drain()


def address_draft(**overrides) -> AddressDraft:
    fields = dict(
        street="123 Rizal St",
        brgy="San Isidro",
        city="Makati",
        province="Metro Manila",
        postal_code="1200",
    )
    fields.update(overrides)
    return AddressDraft(**fields)


def order_draft(items=None, total_amount=None, **overrides) -> OrderDraft:
    items = items if items is not None else [("prod-1", "Rice Cooker", 1500.0, 2)]
    drafts = [
        OrderItemDraft(product_id=pid, name=name, price=price, quantity=qty)
        for pid, name, price, qty in items
    ]
    if total_amount is None:
        total_amount = sum(d.price * d.quantity for d in drafts)

    fields = dict(items=drafts, total_amount=total_amount, address=address_draft())
    fields.update(overrides)
    return OrderDraft(**fields)


async def seed_product(container, product_id="prod-1", name="Rice Cooker", stock=10, threshold=5):
    return await container.products.create(Product(
        id=product_id, name=name, price=1500.0, stock=stock, restock_threshold=threshold,
    ))


async def place_order(container, caller, items=None):
    return await container.order_service.create(caller, order_draft(items=items))


async def open_payment(container, order, provider_payment_id="inv-001"):
    return await container.payments.create(Payment(
        order_id=order.id,
        user_id=order.user_id,
        provider_payment_id=provider_payment_id,
        amount=order.total_amount,
    ))


def webhook_payload(provider_payment_id="inv-001", status="PAID", channel="GCASH"):
    payload = {"id": provider_payment_id, "status": status}
    if channel is not None:
        payload["payment_channel"] = channel
    return payload


@pytest.fixture
def api(customer, other_customer, admin):
    """TestClient over an in-memory container with three known sessions"""
    container = build_memory_container(callback_token=CALLBACK_TOKEN)
    container.sessions.add(CUSTOMER_TOKEN, customer)
    container.sessions.add(OTHER_TOKEN, other_customer)
    container.sessions.add(ADMIN_TOKEN, admin)

    with TestClient(create_app(container)) as client:
        client.container = container
        yield client


def bearer(token):
    return {"Authorization": f"Bearer {token}"}
