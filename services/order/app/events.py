"""
Order Service — event definitions

Published (domain "orders"):
  OrderCreated, OrderConfirmed, OrderFailed, OrderCancelled,
  OrderCompleted, OrderStatusChanged

Consumed:
  StockReserved, StockReservationFailed   (domain "inventory")
  PaymentCompleted, PaymentFailed         (domain "payments")

Events are named in the past tense and never change once written.
"""

from datetime import datetime
from decimal import Decimal

from pydantic import Field

from services.common.events import CamelModel, EventItem, utcnow


class OrderLine(CamelModel):
    product_id: str
    product_name: str
    sku: str
    quantity: int
    unit_price: Decimal


# ── Published ────────────────────────────────────


class OrderCreated(CamelModel):
    """An order was placed and is waiting for stock reservation."""
    order_id: str
    order_number: str
    user_id: str
    user_email: str
    items: list[OrderLine]
    total: Decimal
    grand_total: Decimal
    timestamp: datetime = Field(default_factory=utcnow)


class OrderConfirmed(CamelModel):
    """Stock for every item is held; the order moved to RESERVED."""
    order_id: str
    order_number: str
    user_id: str
    user_email: str
    items: list[EventItem]
    timestamp: datetime = Field(default_factory=utcnow)


class OrderFailed(CamelModel):
    order_id: str
    order_number: str
    user_id: str
    user_email: str
    reason: str
    items: list[EventItem]
    timestamp: datetime = Field(default_factory=utcnow)


class OrderCancelled(CamelModel):
    order_id: str
    order_number: str
    user_id: str
    user_email: str
    reason: str
    previous_status: str
    items: list[EventItem]
    timestamp: datetime = Field(default_factory=utcnow)


class OrderStatusChanged(CamelModel):
    order_id: str
    order_number: str
    status: str
    previous_status: str
    notes: str = ""
    timestamp: datetime = Field(default_factory=utcnow)


class OrderCompleted(CamelModel):
    order_id: str
    order_number: str
    user_id: str
    grand_total: Decimal
    timestamp: datetime = Field(default_factory=utcnow)


# ── Consumed ─────────────────────────────────────


class StockReserved(CamelModel):
    order_id: str
    items: list[EventItem] = []


class StockReservationFailed(CamelModel):
    order_id: str
    items: list[EventItem] = []
    reason: str = "Stock reservation failed"


class PaymentCompleted(CamelModel):
    order_id: str
    payment_id: str
    amount: Decimal | None = None


class PaymentFailed(CamelModel):
    order_id: str
    reason: str = "Payment failed"
    payment_id: str | None = None
