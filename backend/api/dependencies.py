"""
Service wiring for the HTTP layer.

A ``Container`` holds one instance of every repository and service. The app
factory builds the production container (PostgreSQL, Redis, RabbitMQ, Xendit)
inside its lifespan; tests hand in ``build_memory_container()`` instead.
"""

from dataclasses import dataclass, field
from typing import Optional

from fastapi import Header, Request

from database import Database
from pipeline.event_bus_adapter import IEventBus, InMemoryEventBus, create_event_bus
from schemas.domain import Caller
from services.cart import CartService
from services.errors import AuthError
from services.inventory import InventoryAdjuster
from services.invoices import FakeInvoiceProvider, IInvoiceProvider, InvoiceService, XenditInvoiceClient
from services.notifications import NotificationCenter, NotificationSink
from services.order_service import OrderService
from services.payment_webhook import PaymentWebhookProcessor
from storage.postgres import (
    PostgresCartStore,
    PostgresNotificationRepository,
    PostgresOrderRepository,
    PostgresPaymentRepository,
    PostgresProductRepository,
)
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
from storage.sessions import InMemorySessionStore, ISessionStore, RedisSessionStore


@dataclass
class Container:
    orders: IOrderRepository
    payments: IPaymentRepository
    products: IProductRepository
    notification_store: INotificationRepository
    carts: ICartStore
    sessions: ISessionStore
    bus: IEventBus
    invoice_provider: IInvoiceProvider
    callback_token: Optional[str] = None
    background_notifications: bool = True
    db: Optional[Database] = None

    notifications: NotificationSink = field(init=False)
    notification_center: NotificationCenter = field(init=False)
    order_service: OrderService = field(init=False)
    cart_service: CartService = field(init=False)
    inventory: InventoryAdjuster = field(init=False)
    webhooks: PaymentWebhookProcessor = field(init=False)
    invoices: InvoiceService = field(init=False)

    def __post_init__(self):
        self.notifications = NotificationSink(
            self.notification_store, self.bus, background=self.background_notifications,
        )
        self.notification_center = NotificationCenter(self.notification_store)
        self.order_service = OrderService(self.orders, self.carts)
        self.cart_service = CartService(self.carts)
        self.inventory = InventoryAdjuster(self.products, self.notifications)
        self.webhooks = PaymentWebhookProcessor(
            self.payments,
            self.orders,
            self.inventory,
            self.notifications,
            callback_token=self.callback_token,
        )
        self.invoices = InvoiceService(self.orders, self.payments, self.invoice_provider)

    async def start(self):
        if self.db is not None:
            await self.db.connect()
        await self.sessions.initialize()
        await self.bus.connect()

    async def stop(self):
        await self.notifications.drain()
        await self.invoice_provider.close()
        await self.bus.disconnect()
        await self.sessions.close()
        if self.db is not None:
            await self.db.close()


def build_memory_container(
    callback_token: Optional[str] = "test-callback-token",
    background_notifications: bool = False,
    invoice_provider: Optional[IInvoiceProvider] = None,
) -> Container:
    return Container(
        orders=InMemoryOrderRepository(),
        payments=InMemoryPaymentRepository(),
        products=InMemoryProductRepository(),
        notification_store=InMemoryNotificationRepository(),
        carts=InMemoryCartStore(),
        sessions=InMemorySessionStore(),
        bus=InMemoryEventBus(),
        invoice_provider=invoice_provider or FakeInvoiceProvider(),
        callback_token=callback_token,
        background_notifications=background_notifications,
    )


def build_production_container() -> Container:
    db = Database()
    return Container(
        orders=PostgresOrderRepository(db),
        payments=PostgresPaymentRepository(db),
        products=PostgresProductRepository(db),
        notification_store=PostgresNotificationRepository(db),
        carts=PostgresCartStore(db),
        sessions=RedisSessionStore(),
        bus=create_event_bus(),
        invoice_provider=XenditInvoiceClient(),
        db=db,
    )


# =============================================================================
# REQUEST DEPENDENCIES
# =============================================================================

def get_container(request: Request) -> Container:
    return request.app.state.container


async def get_caller(request: Request, authorization: Optional[str] = Header(default=None)) -> Caller:
    """Resolve ``Authorization: Bearer <token>`` to the session's Caller"""
    if not authorization or not authorization.lower().startswith("bearer "):
        raise AuthError()

    token = authorization[7:].strip()
    if not token:
        raise AuthError()

    caller = await get_container(request).sessions.get_caller(token)
    if caller is None:
        raise AuthError()
    return caller
