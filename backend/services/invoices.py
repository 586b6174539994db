"""
Invoice Service
===============
Opens a hosted-checkout invoice for a pending order and records the matching
pending Payment. The Payment's provider id is what later webhooks are
reconciled against.

One pending Payment per order: asking again for the same order hands back
the existing checkout link instead of opening a second invoice.
"""

import os
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import httpx
import structlog
from pydantic import BaseModel

from schemas.domain import Caller, OrderStatus, Payment, new_id
from services.errors import ForbiddenError, InternalError, NotFoundError, ValidationError
from storage.repositories import IOrderRepository, IPaymentRepository


# =============================================================================
# CONFIGURATION
# =============================================================================

class InvoiceConfig:
    SECRET_KEY: str = os.getenv("XENDIT_SECRET_KEY", "")
    API_URL: str = os.getenv("XENDIT_API_URL", "https://api.xendit.co")
    CHECKOUT_BASE_URL: str = os.getenv(
        "INVOICE_CHECKOUT_BASE_URL", "https://checkout-staging.xendit.co/web"
    )
    APP_BASE_URL: str = os.getenv("APP_BASE_URL", "http://localhost:3000")
    TIMEOUT_SECONDS: float = 15.0
    METHOD: str = "gcash"
    CURRENCY: str = "PHP"


class Invoice(BaseModel):
    id: str
    invoice_url: str


class InvoiceResult(BaseModel):
    invoice_url: str
    payment_id: str
    reused: bool = False

    def to_json(self) -> Dict[str, Any]:
        return {"invoiceURL": self.invoice_url, "paymentId": self.payment_id, "reused": self.reused}


# =============================================================================
# PROVIDER CLIENTS
# =============================================================================

class IInvoiceProvider(ABC):

    @abstractmethod
    async def create_invoice(
        self,
        external_id: str,
        amount: float,
        payer_email: str,
        payer_name: str,
        description: str,
        success_redirect_url: str,
    ) -> Invoice:
        pass

    async def close(self) -> None:
        pass


class XenditInvoiceClient(IInvoiceProvider):
    """Xendit Invoice API over httpx (basic auth, secret key as username)"""

    def __init__(
        self,
        secret_key: str = InvoiceConfig.SECRET_KEY,
        api_url: str = InvoiceConfig.API_URL,
        timeout_seconds: float = InvoiceConfig.TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._client = httpx.AsyncClient(
            base_url=api_url,
            timeout=timeout_seconds,
            auth=(secret_key, ""),
            transport=transport,
        )
        self._logger = structlog.get_logger().bind(component="xendit_invoice_client")

    async def create_invoice(
        self,
        external_id: str,
        amount: float,
        payer_email: str,
        payer_name: str,
        description: str,
        success_redirect_url: str,
    ) -> Invoice:
        body = {
            "external_id": external_id,
            "amount": amount,
            "payer_email": payer_email,
            "description": description,
            "currency": InvoiceConfig.CURRENCY,
            "customer": {"given_names": payer_name, "email": payer_email},
            "success_redirect_url": success_redirect_url,
        }
        response = await self._client.post("/v2/invoices", json=body)
        response.raise_for_status()
        data = response.json()

        self._logger.info("invoice_created", external_id=external_id, invoice_id=data.get("id"))
        return Invoice(id=data["id"], invoice_url=data["invoice_url"])

    async def close(self) -> None:
        await self._client.aclose()


class FakeInvoiceProvider(IInvoiceProvider):
    """In-process provider for tests and local runs"""

    def __init__(self, checkout_base_url: str = InvoiceConfig.CHECKOUT_BASE_URL, fail: bool = False):
        self._checkout_base_url = checkout_base_url
        self.fail = fail
        self.calls: list = []

    async def create_invoice(
        self,
        external_id: str,
        amount: float,
        payer_email: str,
        payer_name: str,
        description: str,
        success_redirect_url: str,
    ) -> Invoice:
        self.calls.append({"external_id": external_id, "amount": amount, "payer_email": payer_email})
        if self.fail:
            raise httpx.ConnectError("invoice provider unavailable")
        invoice_id = f"inv-{new_id()}"
        return Invoice(id=invoice_id, invoice_url=f"{self._checkout_base_url}/{invoice_id}")


# =============================================================================
# SERVICE
# =============================================================================

class InvoiceService:

    def __init__(
        self,
        orders: IOrderRepository,
        payments: IPaymentRepository,
        provider: IInvoiceProvider,
        checkout_base_url: str = InvoiceConfig.CHECKOUT_BASE_URL,
        app_base_url: str = InvoiceConfig.APP_BASE_URL,
    ):
        self._orders = orders
        self._payments = payments
        self._provider = provider
        self._checkout_base_url = checkout_base_url.rstrip("/")
        self._app_base_url = app_base_url.rstrip("/")
        self._logger = structlog.get_logger().bind(component="invoice_service")

    async def create_invoice(
        self,
        caller: Caller,
        order_id: Optional[str],
        customer_name: Optional[str],
        customer_email: Optional[str],
    ) -> InvoiceResult:
        if not order_id or not customer_name or not customer_email:
            raise ValidationError("Missing required fields")

        order = await self._orders.get(order_id)
        if order is None:
            raise NotFoundError("Order not found")
        if not caller.is_admin and not order.is_owned_by(caller.user_id):
            raise ForbiddenError()
        if order.status != OrderStatus.PENDING:
            raise ValidationError(f"Order is {order.status.value}; only pending orders can be paid")

        existing = await self._payments.find_pending_for_order(order.id)
        if existing is not None:
            self._logger.info("invoice_reused", order_id=order.id, payment_id=existing.id)
            return InvoiceResult(
                invoice_url=f"{self._checkout_base_url}/{existing.provider_payment_id}",
                payment_id=existing.id,
                reused=True,
            )

        try:
            invoice = await self._provider.create_invoice(
                external_id=f"order-{order.id}",
                amount=order.total_amount,
                payer_email=customer_email,
                payer_name=customer_name,
                description=f"Payment for Order {order.id}",
                success_redirect_url=f"{self._app_base_url}/order/success",
            )
        except (httpx.HTTPError, KeyError, ValueError) as e:
            self._logger.error("invoice_creation_failed", order_id=order.id, error=str(e))
            raise InternalError("Failed to create invoice") from e

        payment = await self._payments.create(Payment(
            order_id=order.id,
            user_id=order.user_id,
            provider_payment_id=invoice.id,
            method=InvoiceConfig.METHOD,
            amount=order.total_amount,
            currency=InvoiceConfig.CURRENCY,
            provider_response={"invoiceId": invoice.id, "payerName": customer_name},
        ))

        self._logger.info("payment_opened",
                          order_id=order.id,
                          payment_id=payment.id,
                          provider_payment_id=invoice.id,
                          amount=payment.amount)
        return InvoiceResult(invoice_url=invoice.invoice_url, payment_id=payment.id)
