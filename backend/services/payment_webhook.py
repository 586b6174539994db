"""
Payment Webhook Processor
=========================
Reconciles payment-provider callbacks with Payment, Order and Product state.

Deliveries are at-least-once and may arrive out of order, so every step is
a guarded write:

1. authenticate the callback token (constant-time compare)
2. validate the payload
3. normalize the provider status (paid / expired / failed, else ignore)
4. Payment CAS pending -> target; only a real transition goes further
5. Order CAS pending -> paid
6. order_paid notification + per-item stock adjustment, only when step 5
   changed the order in this invocation

A redelivery finds the Payment already terminal at step 4 and stops there,
unless an earlier attempt died between steps 4 and 5 and left the Order
pending; then step 5 is resumed. The Order CAS is the once-only gate for
step 6, which is what keeps stock from being decremented twice. An Order
CAS that loses to another delivery of the same Payment (the order carries
that Payment's paid_at) is a duplicate, not a conflict.
"""

import hmac
import os
from enum import Enum
from typing import Any, Optional

import structlog
from pydantic import BaseModel

from schemas.domain import NotificationType, Order, OrderStatus, Payment, PaymentStatus, utcnow
from services.errors import AuthError, NotFoundError, ValidationError
from services.inventory import InventoryAdjuster, InventoryResult
from services.notifications import NotificationSink
from storage.repositories import IOrderRepository, IPaymentRepository


# =============================================================================
# CONFIGURATION
# =============================================================================

class WebhookSettings:
    CALLBACK_TOKEN: Optional[str] = os.getenv("XENDIT_CALLBACK_TOKEN") or None


settings = WebhookSettings()

# Provider vocabulary -> internal Payment status
STATUS_MAP = {
    "paid": PaymentStatus.SUCCEEDED,
    "expired": PaymentStatus.FAILED,
    "failed": PaymentStatus.FAILED,
}


class WebhookOutcome(str, Enum):
    PROCESSED = "processed"
    IGNORED = "ignored"
    ALREADY_PROCESSED = "already_processed"
    CONFLICT = "conflict"


OUTCOME_MESSAGES = {
    WebhookOutcome.PROCESSED: "Webhook processed successfully",
    WebhookOutcome.IGNORED: "Ignored status",
    WebhookOutcome.ALREADY_PROCESSED: "Already processed",
    WebhookOutcome.CONFLICT: "Webhook acknowledged; flagged for review",
}


class WebhookResult(BaseModel):
    outcome: WebhookOutcome
    provider_payment_id: Optional[str] = None
    payment_status: Optional[PaymentStatus] = None
    order_id: Optional[str] = None
    inventory: Optional[InventoryResult] = None

    @property
    def message(self) -> str:
        return OUTCOME_MESSAGES[self.outcome]


# =============================================================================
# PROCESSOR
# =============================================================================

class PaymentWebhookProcessor:

    def __init__(
        self,
        payments: IPaymentRepository,
        orders: IOrderRepository,
        inventory: InventoryAdjuster,
        notifications: NotificationSink,
        callback_token: Optional[str] = None,
    ):
        self._payments = payments
        self._orders = orders
        self._inventory = inventory
        self._notifications = notifications
        self._callback_token = callback_token if callback_token is not None else settings.CALLBACK_TOKEN
        self._base_logger = structlog.get_logger()

    def _get_logger(self, correlation_id: str = None):
        return self._base_logger.bind(component="payment_webhook", correlation_id=correlation_id)

    # =========================================================================
    # STEPS 1-3: AUTHENTICATE, VALIDATE, NORMALIZE
    # =========================================================================

    def authenticate(self, token: Optional[str]) -> None:
        if not self._callback_token or not token:
            raise AuthError("Invalid callback token")
        if not hmac.compare_digest(token.encode(), self._callback_token.encode()):
            raise AuthError("Invalid callback token")

    @staticmethod
    def parse(payload: Any) -> tuple:
        """Return (provider_payment_id, raw_status, channel) or raise ValidationError."""
        if not isinstance(payload, dict):
            raise ValidationError("Invalid payload")

        provider_payment_id = payload.get("id")
        raw_status = payload.get("status")
        if not isinstance(provider_payment_id, str) or not provider_payment_id.strip():
            raise ValidationError("Invalid payload")
        if not isinstance(raw_status, str) or not raw_status.strip():
            raise ValidationError("Invalid payload")

        channel = payload.get("payment_channel")
        channel = channel.strip().lower() if isinstance(channel, str) and channel.strip() else None
        return provider_payment_id.strip(), raw_status.strip().lower(), channel

    # =========================================================================
    # ENTRYPOINT
    # =========================================================================

    async def process(self, payload: Any, token: Optional[str]) -> WebhookResult:
        log = self._get_logger()
        try:
            self.authenticate(token)
        except AuthError:
            log.warning("webhook_auth_failed")
            raise

        provider_payment_id, raw_status, channel = self.parse(payload)
        log = self._get_logger(provider_payment_id)
        log.info("webhook_received", raw_status=raw_status, channel=channel)

        target = STATUS_MAP.get(raw_status)
        if target is None:
            log.info("webhook_ignored", raw_status=raw_status)
            return WebhookResult(outcome=WebhookOutcome.IGNORED, provider_payment_id=provider_payment_id)

        # Step 4: idempotency gate
        existing = await self._payments.get_by_provider_id(provider_payment_id)
        if existing is None:
            log.warning("payment_not_found")
            raise NotFoundError("Payment not found")

        paid_at = utcnow() if target == PaymentStatus.SUCCEEDED else None
        payment = await self._payments.transition(
            provider_payment_id, target, method=channel, paid_at=paid_at,
        )

        if payment is None:
            return await self._handle_no_transition(provider_payment_id, target, channel, log)

        log.info("payment_transitioned",
                 payment_id=payment.id,
                 order_id=payment.order_id,
                 status=payment.status.value)

        if target != PaymentStatus.SUCCEEDED:
            return WebhookResult(
                outcome=WebhookOutcome.PROCESSED,
                provider_payment_id=provider_payment_id,
                payment_status=payment.status,
                order_id=payment.order_id,
            )

        return await self._settle_order(payment, channel, log)

    # =========================================================================
    # STEP 4 (no-op branch)
    # =========================================================================

    async def _handle_no_transition(
        self,
        provider_payment_id: str,
        target: PaymentStatus,
        channel: Optional[str],
        log,
    ) -> WebhookResult:
        current = await self._payments.get_by_provider_id(provider_payment_id)
        if current is None:
            raise NotFoundError("Payment not found")

        if current.status == target:
            if target == PaymentStatus.SUCCEEDED:
                order = await self._orders.get(current.order_id)
                if order is not None and not order.status.is_terminal:
                    log.warning("order_settlement_resumed", order_id=order.id)
                    return await self._settle_order(current, channel, log)

            log.info("webhook_duplicate", status=current.status.value)
            return WebhookResult(
                outcome=WebhookOutcome.ALREADY_PROCESSED,
                provider_payment_id=provider_payment_id,
                payment_status=current.status,
                order_id=current.order_id,
            )

        # Terminal in the other direction, e.g. paid after expired
        log.warning("payment_status_conflict",
                    current_status=current.status.value,
                    requested_status=target.value)
        await self._notifications.emit(
            NotificationType.PAYMENT_CONFLICT,
            f"Payment {provider_payment_id} is {current.status.value} but the provider "
            f"reported {target.value}; review manually.",
            {
                "orderId": current.order_id,
                "userId": current.user_id,
                "providerPaymentId": provider_payment_id,
                "currentStatus": current.status.value,
                "reportedStatus": target.value,
            },
            provider_payment_id,
        )
        return WebhookResult(
            outcome=WebhookOutcome.CONFLICT,
            provider_payment_id=provider_payment_id,
            payment_status=current.status,
            order_id=current.order_id,
        )

    # =========================================================================
    # STEPS 5-6: ORDER + SIDE EFFECTS
    # =========================================================================

    async def _settle_order(
        self,
        payment: Payment,
        channel: Optional[str],
        log,
    ) -> WebhookResult:
        order = await self._orders.transition(
            payment.order_id,
            expected=OrderStatus.PENDING,
            target=OrderStatus.PAID,
            paid_at=payment.paid_at,
            payment_method=channel,
        )

        if order is None:
            current = await self._orders.get(payment.order_id)
            if (current is not None and current.status == OrderStatus.PAID
                    and current.paid_at == payment.paid_at):
                # Another delivery of this same payment settled it first
                log.info("webhook_duplicate", status=payment.status.value)
                return WebhookResult(
                    outcome=WebhookOutcome.ALREADY_PROCESSED,
                    provider_payment_id=payment.provider_payment_id,
                    payment_status=payment.status,
                    order_id=payment.order_id,
                )
            return await self._report_order_conflict(payment, current, log)

        log.info("order_paid", order_id=order.id, payment_method=order.payment_method)

        await self._notifications.emit(
            NotificationType.ORDER_PAID,
            f"Order {order.id} has been paid.",
            {
                "orderId": order.id,
                "userId": order.user_id,
                "totalAmount": order.total_amount,
                "paymentMethod": order.payment_method,
            },
            payment.provider_payment_id,
        )

        inventory = await self._inventory.apply_order(order, correlation_id=payment.provider_payment_id)
        if inventory.failed:
            log.warning("inventory_partially_applied",
                        adjusted=len(inventory.adjusted),
                        failed=len(inventory.failed))

        return WebhookResult(
            outcome=WebhookOutcome.PROCESSED,
            provider_payment_id=payment.provider_payment_id,
            payment_status=payment.status,
            order_id=order.id,
            inventory=inventory,
        )

    async def _report_order_conflict(self, payment: Payment, current: Optional[Order], log) -> WebhookResult:
        order_status = current.status.value if current else "missing"

        log.warning("order_not_payable",
                    order_id=payment.order_id,
                    order_status=order_status)
        await self._notifications.emit(
            NotificationType.PAYMENT_CONFLICT,
            f"Payment {payment.provider_payment_id} succeeded but order "
            f"{payment.order_id} is {order_status}; review manually.",
            {
                "orderId": payment.order_id,
                "userId": payment.user_id,
                "providerPaymentId": payment.provider_payment_id,
                "orderStatus": order_status,
                "amount": payment.amount,
            },
            payment.provider_payment_id,
        )
        return WebhookResult(
            outcome=WebhookOutcome.CONFLICT,
            provider_payment_id=payment.provider_payment_id,
            payment_status=payment.status,
            order_id=payment.order_id,
        )
