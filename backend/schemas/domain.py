# schemas/domain.py
# ============================================================================
# STOREFRONT — DOMAIN SCHEMAS
# ============================================================================
# Orders, payments, products, notifications and carts.
# Field names serialize as camelCase to match the storefront's JSON contract.
# ============================================================================

import os
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


DEFAULT_RESTOCK_THRESHOLD = int(os.getenv("RESTOCK_THRESHOLD", "5"))


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class StorefrontModel(BaseModel):
    """Base model: camelCase on the wire, snake_case in Python."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        use_enum_values=False,
    )

    def to_json(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


# ============================================================================
# SECTION 1: ENUMS
# ============================================================================

class OrderStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not OrderStatus.PENDING


class PaymentStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class NotificationType(str, Enum):
    ORDER_PAID = "order_paid"
    OUT_OF_STOCK = "out_of_stock"
    LOW_STOCK = "low_stock"
    # Raised when payment and order/inventory state diverge and need a human
    PAYMENT_CONFLICT = "payment_conflict"
    INVENTORY_CONFLICT = "inventory_conflict"


# ============================================================================
# SECTION 2: ORDERS
# ============================================================================

class OrderItem(StorefrontModel):
    """Line item snapshot. Name and price are frozen at order time."""
    product_id: str
    name: str
    price: float = Field(ge=0)
    quantity: int = Field(ge=1)


class Address(StorefrontModel):
    street: str
    brgy: str
    city: str
    province: str
    postal_code: str
    country: str = "Philippines"


class Location(StorefrontModel):
    lat: float
    lng: float
    formatted_address: Optional[str] = None


class Order(StorefrontModel):
    id: str = Field(default_factory=new_id)
    user_id: str
    items: List[OrderItem]
    total_amount: float = Field(ge=0)
    payment_method: str = "cod"
    status: OrderStatus = OrderStatus.PENDING
    address: Address
    location: Optional[Location] = None
    paid_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def is_owned_by(self, user_id: str) -> bool:
        return self.user_id == user_id


# ============================================================================
# SECTION 3: PAYMENTS
# ============================================================================

class Payment(StorefrontModel):
    id: str = Field(default_factory=new_id)
    order_id: str
    user_id: str
    provider_payment_id: str
    status: PaymentStatus = PaymentStatus.PENDING
    method: str = "gcash"
    amount: float = Field(ge=0)
    currency: str = "PHP"
    provider_response: Optional[Dict[str, Any]] = None
    paid_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


# ============================================================================
# SECTION 4: PRODUCTS
# ============================================================================

class Product(StorefrontModel):
    id: str = Field(default_factory=new_id)
    name: str
    price: float = Field(default=0, ge=0)
    stock: int = Field(default=0, ge=0)
    sold_quantity: int = Field(default=0, ge=0)
    restock_threshold: int = Field(default=DEFAULT_RESTOCK_THRESHOLD, ge=0)
    in_stock: bool = True
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


# ============================================================================
# SECTION 5: NOTIFICATIONS
# ============================================================================

class Notification(StorefrontModel):
    id: str = Field(default_factory=new_id)
    type: NotificationType
    message: str
    meta: Dict[str, Any] = Field(default_factory=dict)
    read: bool = False
    target_admin_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


# ============================================================================
# SECTION 6: CARTS AND CALLERS
# ============================================================================

class CartItem(StorefrontModel):
    product_id: str
    name: str
    price: float = Field(ge=0)
    quantity: int = Field(ge=1)
    image: Optional[str] = None


class Cart(StorefrontModel):
    user_id: str
    items: List[CartItem] = Field(default_factory=list)
    updated_at: datetime = Field(default_factory=utcnow)


class Caller(StorefrontModel):
    """Authenticated principal of a request. Sessions are issued elsewhere."""
    user_id: str
    is_admin: bool = False
    email: Optional[str] = None
    name: Optional[str] = None
