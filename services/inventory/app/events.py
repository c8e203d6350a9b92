"""
Inventory Service — event definitions

Published (domain "inventory"):
  StockReserved, StockReservationFailed, StockReleased, LowStockAlert

Consumed:
  OrderCreated, OrderFailed, OrderCancelled   (domain "orders")
  ProductCreated, ProductUpdated              (domain "products")
"""

from datetime import datetime

from pydantic import Field

from services.common.events import CamelModel, EventItem, utcnow


class ItemOutcome(CamelModel):
    """Per-item line of an aggregate reservation outcome."""
    product_id: str
    quantity: int
    success: bool
    message: str = ""


# ── Published ────────────────────────────────────


class StockReserved(CamelModel):
    """Every item of the order is held."""
    order_id: str
    items: list[EventItem]
    timestamp: datetime = Field(default_factory=utcnow)


class StockReservationFailed(CamelModel):
    """At least one item could not be held; nothing of the order is held."""
    order_id: str
    items: list[EventItem]
    reason: str
    details: list[ItemOutcome] = []
    timestamp: datetime = Field(default_factory=utcnow)


class StockReleased(CamelModel):
    product_id: str
    sku: str
    quantity: int
    order_id: str | None = None
    available_stock: int
    timestamp: datetime = Field(default_factory=utcnow)


class LowStockAlert(CamelModel):
    product_id: str
    sku: str
    current_stock: int
    min_stock: int
    reorder_point: int
    location: str | None = None
    alert_type: str
    timestamp: datetime = Field(default_factory=utcnow)


# ── Consumed ─────────────────────────────────────


class OrderCreated(CamelModel):
    order_id: str
    items: list[EventItem]


class OrderFailed(CamelModel):
    order_id: str
    items: list[EventItem] = []
    reason: str = ""


class OrderCancelled(CamelModel):
    order_id: str
    items: list[EventItem] = []
    reason: str = ""


class ProductCreated(CamelModel):
    product_id: str
    sku: str
    stock: int = 0


class ProductUpdated(CamelModel):
    product_id: str
    sku: str
