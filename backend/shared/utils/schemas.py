"""
Shared Pydantic schemas used across the application.

API payloads use camelCase on the wire (``restaurantId``, ``idempotencyKey``);
Python code uses snake_case field names. Money is always in minor units.
"""

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel


# =============================================================================
# Common Types
# =============================================================================

OrderStatus = Literal["PENDING", "ACCEPTED", "PREPARING", "SERVED", "CANCELLED"]
OrderType = Literal["DINE_IN", "TAKEAWAY", "DELIVERY"]
BillStatus = Literal["OPEN", "CLOSED"]
PaymentStatus = Literal["PENDING", "PROCESSING", "SUCCEEDED", "FAILED"]
PaymentMethod = Literal["CASH", "UPI", "CARD", "QR", "WALLET", "NETBANKING"]


class CamelModel(BaseModel):
    """Base model serialized with camelCase aliases."""

    model_config = {
        "populate_by_name": True,  # Allow both field name and alias
        "alias_generator": to_camel,
        "from_attributes": True,
    }


# =============================================================================
# Order Schemas
# =============================================================================


class OrderItemInput(CamelModel):
    """A single requested line: menu item and quantity."""

    menu_item_id: str = Field(min_length=1, max_length=64)
    quantity: int


class CreateOrderRequest(CamelModel):
    """Request body for POST /api/orders."""

    restaurant_id: str = Field(min_length=1, max_length=64)
    type: OrderType = "DINE_IN"
    items: list[OrderItemInput]
    idempotency_key: str
    table_id: str | None = None
    is_priority: bool = False
    notes: str | None = None


class UpdateOrderStatusRequest(CamelModel):
    """Request body for PATCH /api/orders/{id}/status."""

    status: OrderStatus


class OrderItemOutput(CamelModel):
    id: str
    menu_item_id: str
    quantity: int
    price_cents: int


class OrderOutput(CamelModel):
    """Order as returned by the API."""

    id: str
    restaurant_id: str
    table_id: str | None = None
    status: OrderStatus
    type: OrderType
    is_priority: bool
    notes: str | None = None
    idempotency_key: str
    total_cents: int
    items: list[OrderItemOutput]
    created_at: datetime
    updated_at: datetime | None = None


class OrderResponse(CamelModel):
    order: OrderOutput


# =============================================================================
# Bill Schemas
# =============================================================================


class BillItemOutput(CamelModel):
    menu_item_id: str
    name: str
    quantity: int
    price_cents: int
    total_cents: int


class BillOutput(CamelModel):
    """Bill with derived balance."""

    id: str
    bill_number: str
    order_id: str
    table_id: str | None = None
    status: BillStatus
    subtotal_cents: int
    tax_rate: int
    cgst_cents: int
    sgst_cents: int
    total_cents: int
    paid_cents: int
    balance_cents: int
    parent_bill_id: str | None = None
    items: list[BillItemOutput] = []
    created_at: datetime
    closed_at: datetime | None = None


class BillResponse(CamelModel):
    bill: BillOutput
    order_id: str


# =============================================================================
# Payment Schemas
# =============================================================================


class CreatePaymentRequest(CamelModel):
    """Request body for POST /api/payments."""

    bill_id: str = Field(min_length=1, max_length=64)
    method: PaymentMethod
    amount: int  # minor units
    provider: str | None = None
    idempotency_key: str | None = Field(default=None, max_length=128)


class PaymentOutput(CamelModel):
    id: str
    bill_id: str
    method: PaymentMethod
    amount_cents: int
    status: PaymentStatus
    gateway: str
    gateway_payment_id: str | None = None
    payment_link: str | None = None
    idempotency_key: str | None = None
    created_at: datetime
    succeeded_at: datetime | None = None
    failed_at: datetime | None = None


class PaymentResponse(CamelModel):
    payment: PaymentOutput


class VerifyPaymentRequest(CamelModel):
    """Request body for POST /api/payments/verify."""

    payment_id: str = Field(min_length=1, max_length=64)
    # Any JSON value; the reconciler answers 502 for anything but an object
    gateway_response: Any = None


class VerifyPaymentResponse(CamelModel):
    """Outcome of a verification; ``amount`` is in minor units."""

    success: bool
    payment_id: str
    status: PaymentStatus
    amount: int
    method: PaymentMethod


class WebhookAck(CamelModel):
    received: bool = True
