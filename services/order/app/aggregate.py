"""
Order Service — Order aggregate

The Order owns its line items and its status history; neither has a
lifecycle of its own. The aggregate is immutable per version: every status
change returns a new Order carrying one more history entry, and the old
version is left exactly as it was.

Status transitions:

    PENDING   → RESERVED, FAILED, CANCELLED
    RESERVED  → CONFIRMED, CANCELLED
    CONFIRMED → PAID, CANCELLED
    PAID      → SHIPPED, CANCELLED
    SHIPPED   → DELIVERED
    FAILED    → CANCELLED, PENDING (retry)
    DELIVERED, CANCELLED → (terminal)
"""

import enum
import random
import string
import time
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from services.common.events import new_id, utcnow

CENT = Decimal("0.01")
DEFAULT_TAX_RATE = Decimal("0.10")


class OrderStatus(str, enum.Enum):
    PENDING = "PENDING"
    RESERVED = "RESERVED"
    CONFIRMED = "CONFIRMED"
    PAID = "PAID"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"
    FAILED = "FAILED"


TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset(
        {OrderStatus.RESERVED, OrderStatus.FAILED, OrderStatus.CANCELLED}
    ),
    OrderStatus.RESERVED: frozenset({OrderStatus.CONFIRMED, OrderStatus.CANCELLED}),
    OrderStatus.CONFIRMED: frozenset({OrderStatus.PAID, OrderStatus.CANCELLED}),
    OrderStatus.PAID: frozenset({OrderStatus.SHIPPED, OrderStatus.CANCELLED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED}),
    OrderStatus.FAILED: frozenset({OrderStatus.CANCELLED, OrderStatus.PENDING}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

CANCELLABLE = frozenset(
    {OrderStatus.PENDING, OrderStatus.RESERVED, OrderStatus.CONFIRMED, OrderStatus.PAID}
)
FINAL = frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED})

# status reached → timestamp field stamped
TIMESTAMP_FIELDS = {
    OrderStatus.PAID: "paid_at",
    OrderStatus.SHIPPED: "shipped_at",
    OrderStatus.DELIVERED: "delivered_at",
    OrderStatus.CANCELLED: "cancelled_at",
}


class OrderError(Exception):
    """Base class for order domain errors."""


class ValidationError(OrderError):
    """The request violates an order invariant."""


class OrderNotFound(OrderError):
    def __init__(self, order_id: str) -> None:
        super().__init__(f"Order not found: {order_id}")
        self.order_id = order_id


class AccessDenied(OrderError):
    """The caller does not own the order (or cart) it refers to."""


class InvalidTransition(OrderError):
    def __init__(self, from_status: OrderStatus, to_status: OrderStatus) -> None:
        super().__init__(
            f"Invalid status transition from {from_status.value} to {to_status.value}"
        )
        self.from_status = from_status
        self.to_status = to_status


def money(value: Any) -> Decimal:
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class OrderItem:
    product_id: str
    product_name: str
    product_sku: str
    quantity: int
    unit_price: Decimal
    subtotal: Decimal
    id: str = field(default_factory=new_id)

    @classmethod
    def create(
        cls,
        product_id: str,
        product_name: str,
        product_sku: str,
        quantity: int,
        unit_price: Any,
    ) -> "OrderItem":
        if quantity <= 0:
            raise ValidationError(f"Quantity for {product_id} must be positive")
        price = money(unit_price)
        if price < 0:
            raise ValidationError(f"Unit price for {product_id} cannot be negative")
        return cls(
            product_id=product_id,
            product_name=product_name,
            product_sku=product_sku,
            quantity=quantity,
            unit_price=price,
            subtotal=money(price * quantity),
        )


@dataclass(frozen=True)
class OrderStatusHistoryEntry:
    status: OrderStatus
    previous_status: OrderStatus | None
    notes: str = ""
    created_by: str = "system"
    created_at: datetime = field(default_factory=utcnow)
    id: str = field(default_factory=new_id)


@dataclass(frozen=True)
class Totals:
    total: Decimal
    tax: Decimal
    shipping: Decimal
    grand_total: Decimal


def calculate_totals(
    items: list[OrderItem],
    tax_rate: Decimal = DEFAULT_TAX_RATE,
    shipping: Any = 0,
) -> Totals:
    total = money(sum((item.subtotal for item in items), Decimal("0")))
    tax = money(total * Decimal(str(tax_rate)))
    shipping = money(shipping)
    return Totals(total=total, tax=tax, shipping=shipping, grand_total=money(total + tax + shipping))


_BASE36 = string.digits + string.ascii_uppercase


def _base36(number: int) -> str:
    digits = []
    while number:
        number, remainder = divmod(number, 36)
        digits.append(_BASE36[remainder])
    return "".join(reversed(digits)) or "0"


def generate_order_number() -> str:
    """Human-readable order number, e.g. ORD-LZ3K9F2A-7QX1."""
    timestamp = _base36(int(time.time() * 1000))
    suffix = "".join(random.choices(_BASE36, k=4))
    return f"ORD-{timestamp}-{suffix}"


@dataclass(frozen=True)
class Order:
    id: str
    order_number: str
    user_id: str
    user_email: str
    status: OrderStatus
    items: tuple[OrderItem, ...]
    total: Decimal
    tax: Decimal
    shipping: Decimal
    grand_total: Decimal
    status_history: tuple[OrderStatusHistoryEntry, ...] = ()
    shipping_address: dict | None = None
    billing_address: dict | None = None
    notes: str | None = None
    paid_at: datetime | None = None
    shipped_at: datetime | None = None
    delivered_at: datetime | None = None
    cancelled_at: datetime | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    # ── Factory ──────────────────────────────────────

    @classmethod
    def create(
        cls,
        user_id: str,
        user_email: str,
        items: list[OrderItem],
        shipping_address: dict | None = None,
        billing_address: dict | None = None,
        notes: str | None = None,
        tax_rate: Decimal = DEFAULT_TAX_RATE,
        shipping: Any = 0,
        created_by: str = "system",
        history_note: str = "Order created",
    ) -> "Order":
        if not items:
            raise ValidationError("Order must have at least one item")
        totals = calculate_totals(items, tax_rate, shipping)
        now = utcnow()
        return cls(
            id=new_id(),
            order_number=generate_order_number(),
            user_id=user_id,
            user_email=user_email,
            status=OrderStatus.PENDING,
            items=tuple(items),
            total=totals.total,
            tax=totals.tax,
            shipping=totals.shipping,
            grand_total=totals.grand_total,
            status_history=(
                OrderStatusHistoryEntry(
                    status=OrderStatus.PENDING,
                    previous_status=None,
                    notes=history_note,
                    created_by=created_by,
                    created_at=now,
                ),
            ),
            shipping_address=shipping_address,
            billing_address=billing_address,
            notes=notes,
            created_at=now,
            updated_at=now,
        )

    # ── State machine ────────────────────────────────

    def can_transition_to(self, status: OrderStatus) -> bool:
        return status in TRANSITIONS[self.status]

    def transition_to(
        self,
        status: OrderStatus,
        notes: str = "",
        created_by: str = "system",
    ) -> "Order":
        if not self.can_transition_to(status):
            raise InvalidTransition(self.status, status)

        now = utcnow()
        entry = OrderStatusHistoryEntry(
            status=status,
            previous_status=self.status,
            notes=notes,
            created_by=created_by,
            created_at=now,
        )
        changes: dict[str, Any] = {
            "status": status,
            "status_history": self.status_history + (entry,),
            "updated_at": now,
        }
        if status in TIMESTAMP_FIELDS:
            changes[TIMESTAMP_FIELDS[status]] = now
        return replace(self, **changes)

    def cancel(self, reason: str = "", cancelled_by: str = "system") -> "Order":
        if not self.is_cancellable():
            raise InvalidTransition(self.status, OrderStatus.CANCELLED)
        return self.transition_to(
            OrderStatus.CANCELLED, reason or "Order cancelled", cancelled_by
        )

    def is_cancellable(self) -> bool:
        return self.status in CANCELLABLE

    def is_final(self) -> bool:
        return self.status in FINAL

    @property
    def last_history_entry(self) -> OrderStatusHistoryEntry:
        return self.status_history[-1]

    def item_refs(self) -> list[dict]:
        """Items as carried on the wire by order events."""
        return [
            {"productId": item.product_id, "quantity": item.quantity, "sku": item.product_sku}
            for item in self.items
        ]

    def to_dict(self) -> dict:
        def iso(value: datetime | None) -> str | None:
            return value.isoformat() if value else None

        return {
            "id": self.id,
            "order_number": self.order_number,
            "user_id": self.user_id,
            "user_email": self.user_email,
            "status": self.status.value,
            "items": [
                {
                    "id": item.id,
                    "product_id": item.product_id,
                    "product_name": item.product_name,
                    "product_sku": item.product_sku,
                    "quantity": item.quantity,
                    "unit_price": str(item.unit_price),
                    "subtotal": str(item.subtotal),
                }
                for item in self.items
            ],
            "total": str(self.total),
            "tax": str(self.tax),
            "shipping": str(self.shipping),
            "grand_total": str(self.grand_total),
            "shipping_address": self.shipping_address,
            "billing_address": self.billing_address,
            "notes": self.notes,
            "status_history": [
                {
                    "status": h.status.value,
                    "previous_status": h.previous_status.value if h.previous_status else None,
                    "notes": h.notes,
                    "created_by": h.created_by,
                    "created_at": iso(h.created_at),
                }
                for h in self.status_history
            ],
            "paid_at": iso(self.paid_at),
            "shipped_at": iso(self.shipped_at),
            "delivered_at": iso(self.delivered_at),
            "cancelled_at": iso(self.cancelled_at),
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
        }
