# schemas/requests.py
# ============================================================================
# STOREFRONT — REQUEST PAYLOADS
# ============================================================================
# Deliberately lenient: every field is optional so the services, not the
# parser, decide what a complete request is and answer with a readable 400.
# ============================================================================

from typing import List, Optional

from pydantic import Field

from schemas.domain import CartItem, Location, StorefrontModel


class OrderItemDraft(StorefrontModel):
    product_id: Optional[str] = None
    name: Optional[str] = None
    price: Optional[float] = None
    quantity: Optional[int] = None


class AddressDraft(StorefrontModel):
    street: Optional[str] = None
    brgy: Optional[str] = None
    city: Optional[str] = None
    province: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None


class OrderDraft(StorefrontModel):
    """Body of POST /order."""
    items: Optional[List[OrderItemDraft]] = None
    total_amount: Optional[float] = None
    payment_method: Optional[str] = None
    # Accepted for compatibility with older clients and ignored
    status: Optional[str] = None
    address: Optional[AddressDraft] = None
    location: Optional[Location] = None


class OrderActionRequest(StorefrontModel):
    action: Optional[str] = None


class InvoiceRequest(StorefrontModel):
    order_id: Optional[str] = None
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None


class CartUpdateRequest(StorefrontModel):
    items: List[CartItem] = Field(default_factory=list)
