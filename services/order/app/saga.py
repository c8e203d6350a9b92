"""
Order Service — order saga orchestrator

Order saga (choreography over the broker, orchestrated from here):
  The order service cannot share a transaction with inventory, so the order
  moves forward one local transaction at a time. Every step is a state
  transition plus an outbox row, committed together by the idempotency
  ledger of the inbound event.

  ┌──────────────────────────────────────────────────────────────┐
  │  1. create order (PENDING)           → OrderCreated           │
  │  2. inventory answers                                         │
  │     ├─ StockReserved          → RESERVED, OrderConfirmed      │
  │     └─ StockReservationFailed → FAILED,   OrderFailed         │
  │  3. payment answers                                           │
  │     ├─ PaymentCompleted       → PAID                          │
  │     └─ PaymentFailed          → CANCELLED, OrderCancelled     │
  │                                 (inventory releases the hold) │
  └──────────────────────────────────────────────────────────────┘

An outcome that arrives for an order no longer in the expected state is a
conflict (a duplicate that escaped the ledger, or a reordered delivery). It
is accepted as a no-op, logged, and kept for operators to review. The one
exception is StockReserved for a cancelled or failed order: the release is
re-sent so the stock does not stay held.

Nothing here commits: the caller owns the transaction.
"""

import logging
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from services.common.events import EventItem, utcnow
from services.common.outbox import OutboxStore

from . import repository
from .aggregate import Order, OrderStatus
from .events import (
    OrderCancelled,
    OrderConfirmed,
    OrderCreated,
    OrderFailed,
    OrderLine,
    OrderStatusChanged,
    PaymentCompleted,
    PaymentFailed,
    StockReservationFailed,
    StockReserved,
)
from .schema import orders

logger = logging.getLogger(__name__)

MAX_CONFLICTS = 100


@dataclass
class SagaState:
    order_id: str
    order_number: str
    status: str = "STARTED"
    started_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class SagaConflict:
    order_id: str
    current_status: str
    event_type: str
    recorded_at: datetime = field(default_factory=utcnow)


def event_items(order: Order) -> list[EventItem]:
    return [
        EventItem(product_id=item.product_id, quantity=item.quantity, sku=item.product_sku)
        for item in order.items
    ]


class OrderSagaOrchestrator:
    def __init__(self, outbox: OutboxStore, max_conflicts: int = MAX_CONFLICTS) -> None:
        self.outbox = outbox
        self._active: dict[str, SagaState] = {}
        self._conflicts: deque[SagaConflict] = deque(maxlen=max_conflicts)

    # ── Step 1: order placed ─────────────────────────

    async def start_order_saga(self, session: AsyncSession, order: Order) -> None:
        """
        Append OrderCreated in the order-creation transaction. The saga is
        tracked by track_saga() once that transaction has committed.
        """
        event = OrderCreated(
            order_id=order.id,
            order_number=order.order_number,
            user_id=order.user_id,
            user_email=order.user_email,
            items=[
                OrderLine(
                    product_id=item.product_id,
                    product_name=item.product_name,
                    sku=item.product_sku,
                    quantity=item.quantity,
                    unit_price=item.unit_price,
                )
                for item in order.items
            ],
            total=order.total,
            grand_total=order.grand_total,
        )
        await self.outbox.append(session, "OrderCreated", order.id, event.to_payload())

    def track_saga(self, order: Order) -> None:
        self._active[order.id] = SagaState(order.id, order.order_number)
        logger.info("Order saga started: %s (%s)", order.order_number, order.id)

    # ── Step 2: inventory outcome ────────────────────

    async def handle_stock_reserved(
        self, session: AsyncSession, event: StockReserved
    ) -> Order | None:
        order = await repository.load_order(session, event.order_id, for_update=True)
        if order.status is not OrderStatus.PENDING:
            self._record_conflict(order, "StockReserved")
            if order.status in (OrderStatus.CANCELLED, OrderStatus.FAILED):
                await self._release_late_reservation(session, order)
            return None

        order = order.transition_to(OrderStatus.RESERVED, "Stock reserved successfully")
        await repository.save_transition(session, order)
        confirmed = OrderConfirmed(
            order_id=order.id,
            order_number=order.order_number,
            user_id=order.user_id,
            user_email=order.user_email,
            items=event_items(order),
        )
        await self.outbox.append(session, "OrderConfirmed", order.id, confirmed.to_payload())
        self.finish_saga(order.id, "COMPLETED")
        return order

    async def _release_late_reservation(self, session: AsyncSession, order: Order) -> None:
        """
        Stock was reserved for an order that had already ended, e.g. its
        OrderCancelled overtook OrderCreated on the way to inventory. The
        release it sent then found nothing held, so send it again.
        Inventory caps every release at what the order still holds.
        """
        reason = "Releasing stock reserved after the order ended"
        if order.status is OrderStatus.CANCELLED:
            event_type = "OrderCancelled"
            payload = OrderCancelled(
                order_id=order.id,
                order_number=order.order_number,
                user_id=order.user_id,
                user_email=order.user_email,
                reason=reason,
                previous_status=order.status.value,
                items=event_items(order),
            ).to_payload()
        else:
            event_type = "OrderFailed"
            payload = OrderFailed(
                order_id=order.id,
                order_number=order.order_number,
                user_id=order.user_id,
                user_email=order.user_email,
                reason=reason,
                items=event_items(order),
            ).to_payload()
        await self.outbox.append(session, event_type, order.id, payload)
        logger.warning(
            "Late stock reservation for %s order %s, %s re-sent",
            order.status.value,
            order.id,
            event_type,
        )

    async def handle_stock_reservation_failed(
        self, session: AsyncSession, event: StockReservationFailed
    ) -> Order | None:
        order = await repository.load_order(session, event.order_id, for_update=True)
        if order.status is not OrderStatus.PENDING:
            self._record_conflict(order, "StockReservationFailed")
            return None

        order = order.transition_to(
            OrderStatus.FAILED, f"Stock reservation failed: {event.reason}"
        )
        await repository.save_transition(session, order)
        failed = OrderFailed(
            order_id=order.id,
            order_number=order.order_number,
            user_id=order.user_id,
            user_email=order.user_email,
            reason=event.reason,
            items=event_items(order),
        )
        await self.outbox.append(session, "OrderFailed", order.id, failed.to_payload())
        self.finish_saga(order.id, "FAILED")
        return order

    # ── Step 3: payment outcome ──────────────────────

    async def handle_payment_completed(
        self, session: AsyncSession, event: PaymentCompleted
    ) -> Order | None:
        order = await repository.load_order(session, event.order_id, for_update=True)
        if not order.can_transition_to(OrderStatus.PAID):
            self._record_conflict(order, "PaymentCompleted")
            return None

        previous = order.status
        order = order.transition_to(
            OrderStatus.PAID, f"Payment completed: {event.payment_id}"
        )
        await repository.save_transition(session, order)
        changed = OrderStatusChanged(
            order_id=order.id,
            order_number=order.order_number,
            status=order.status.value,
            previous_status=previous.value,
            notes=order.last_history_entry.notes,
        )
        await self.outbox.append(session, "OrderStatusChanged", order.id, changed.to_payload())
        return order

    async def handle_payment_failed(
        self, session: AsyncSession, event: PaymentFailed
    ) -> Order | None:
        order = await repository.load_order(session, event.order_id, for_update=True)
        if not order.is_cancellable():
            self._record_conflict(order, "PaymentFailed")
            return None

        previous = order.status
        reason = f"Payment failed: {event.reason}"
        order = order.cancel(reason)
        await repository.save_transition(session, order)
        cancelled = OrderCancelled(
            order_id=order.id,
            order_number=order.order_number,
            user_id=order.user_id,
            user_email=order.user_email,
            reason=reason,
            previous_status=previous.value,
            items=event_items(order),
        )
        await self.outbox.append(session, "OrderCancelled", order.id, cancelled.to_payload())
        self.finish_saga(order.id, "CANCELLED")
        return order

    # ── Bookkeeping ──────────────────────────────────

    def finish_saga(self, order_id: str, outcome: str) -> None:
        state = self._active.pop(order_id, None)
        if state is not None:
            logger.info("Order saga %s: %s (%s)", outcome.lower(), state.order_number, order_id)

    def _record_conflict(self, order: Order, event_type: str) -> None:
        logger.warning(
            "Saga conflict: %s ignored for order %s in status %s",
            event_type,
            order.id,
            order.status.value,
        )
        self._conflicts.append(SagaConflict(order.id, order.status.value, event_type))

    def active_sagas(self) -> list[dict]:
        return [asdict(state) for state in self._active.values()]

    def conflicts(self) -> list[dict]:
        return [asdict(conflict) for conflict in self._conflicts]

    async def rebuild(self, session: AsyncSession) -> int:
        """Repopulate the in-memory view from orders still waiting on inventory."""
        pending = await repository.find_orders(session, orders.c.status == OrderStatus.PENDING.value)
        self._active = {
            order.id: SagaState(
                order.id, order.order_number, started_at=order.created_at, updated_at=order.updated_at
            )
            for order in pending
        }
        logger.info("Rebuilt %d active sagas from storage", len(self._active))
        return len(self._active)
