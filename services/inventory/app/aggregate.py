"""
Inventory Service — Inventory entity

Stock bookkeeping for one product:

    available = quantity - reserved        0 <= reserved <= quantity

Business conditions (insufficient stock, releasing more than is held, bad
quantities) are returned as results, never raised: the reservation saga has
to branch on them, not unwind.
"""

import enum
from dataclasses import dataclass, field
from datetime import datetime

from services.common.events import new_id, utcnow

DEFAULT_MIN_STOCK = 10
DEFAULT_REORDER_POINT = 20


class MovementType(str, enum.Enum):
    IN = "IN"
    OUT = "OUT"
    RESERVE = "RESERVE"
    RELEASE = "RELEASE"
    ADJUSTMENT = "ADJUSTMENT"


class AlertLevel(str, enum.Enum):
    LOW_STOCK = "LOW_STOCK"
    CRITICAL_STOCK = "CRITICAL_STOCK"


class InventoryError(Exception):
    pass


class InventoryNotFound(InventoryError):
    def __init__(self, product_id: str) -> None:
        super().__init__(f"Inventory not found for product {product_id}")
        self.product_id = product_id


class InventoryExists(InventoryError):
    pass


@dataclass(frozen=True)
class StockChange:
    ok: bool
    message: str = ""
    delta: int = 0

    @classmethod
    def failed(cls, message: str) -> "StockChange":
        return cls(False, message)


@dataclass
class Inventory:
    product_id: str
    sku: str
    quantity: int = 0
    reserved: int = 0
    min_stock: int = DEFAULT_MIN_STOCK
    reorder_point: int = DEFAULT_REORDER_POINT
    location: str | None = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def available(self) -> int:
        return self.quantity - self.reserved

    # ── Reservation ──────────────────────────────────

    def can_reserve(self, quantity: int) -> bool:
        return self.available >= quantity

    def reserve(self, quantity: int) -> StockChange:
        if quantity <= 0:
            return StockChange.failed("Quantity must be positive")
        if not self.can_reserve(quantity):
            return StockChange.failed("Insufficient stock")
        self.reserved += quantity
        return StockChange(True, delta=quantity)

    def release(self, quantity: int) -> StockChange:
        if quantity <= 0:
            return StockChange.failed("Quantity must be positive")
        if self.reserved < quantity:
            return StockChange.failed(
                f"Cannot release more than reserved. Reserved: {self.reserved}, "
                f"Requested: {quantity}"
            )
        self.reserved -= quantity
        return StockChange(True, delta=-quantity)

    # ── Stock levels ─────────────────────────────────

    def add_stock(self, quantity: int) -> StockChange:
        if quantity <= 0:
            return StockChange.failed("Quantity must be positive")
        self.quantity += quantity
        return StockChange(True, delta=quantity)

    def remove_stock(self, quantity: int) -> StockChange:
        if quantity <= 0:
            return StockChange.failed("Quantity must be positive")
        if self.available < quantity:
            return StockChange.failed(
                f"Insufficient available stock. Available: {self.available}, "
                f"Requested: {quantity}"
            )
        self.quantity -= quantity
        return StockChange(True, delta=-quantity)

    def adjust_stock(self, new_quantity: int, reason: str = "") -> StockChange:
        """Set quantity outright (stock count). Delta is new - old, signed."""
        if new_quantity < 0:
            return StockChange.failed("Quantity cannot be negative")
        if new_quantity < self.reserved:
            return StockChange.failed(
                f"Quantity cannot drop below reserved stock ({self.reserved})"
            )
        delta = new_quantity - self.quantity
        self.quantity = new_quantity
        return StockChange(True, reason, delta)

    # ── Alerts ───────────────────────────────────────

    def is_low_stock(self) -> bool:
        return self.available <= self.min_stock

    def needs_reorder(self) -> bool:
        return self.available <= self.reorder_point

    def alert_level(self) -> AlertLevel | None:
        if self.available <= self.min_stock / 2:
            return AlertLevel.CRITICAL_STOCK
        if self.is_low_stock():
            return AlertLevel.LOW_STOCK
        return None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "sku": self.sku,
            "quantity": self.quantity,
            "reserved": self.reserved,
            "available": self.available,
            "min_stock": self.min_stock,
            "reorder_point": self.reorder_point,
            "location": self.location,
            "is_low_stock": self.is_low_stock(),
            "needs_reorder": self.needs_reorder(),
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
