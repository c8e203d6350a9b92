"""
Order Service — command handlers (write side)

Each command loads or builds the aggregate, persists the new version and
appends its domain events to the outbox in the same transaction, then
commits. Publishing happens later, from the outbox processor.
"""

import logging
from collections.abc import Iterable, Mapping
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from services.common.outbox import OutboxStore

from . import repository
from .aggregate import (
    AccessDenied,
    InvalidTransition,
    Order,
    OrderItem,
    OrderStatus,
    ValidationError,
)
from .cart_client import CartClient
from .events import OrderCancelled, OrderCompleted, OrderStatusChanged
from .saga import OrderSagaOrchestrator, event_items

logger = logging.getLogger(__name__)


def build_items(items: Iterable[Mapping[str, Any]]) -> list[OrderItem]:
    return [
        OrderItem.create(
            product_id=item["product_id"],
            product_name=item["product_name"],
            product_sku=item["product_sku"],
            quantity=item["quantity"],
            unit_price=item["unit_price"],
        )
        for item in items
    ]


async def create_order(
    session: AsyncSession,
    saga: OrderSagaOrchestrator,
    user_id: str,
    user_email: str,
    items: Iterable[Mapping[str, Any]],
    shipping_address: dict | None = None,
    billing_address: dict | None = None,
    notes: str | None = None,
    history_note: str = "Order created",
) -> Order:
    """
    Place a new order.

    1. build the PENDING order (validates items, computes totals)
    2. insert order, items and initial history
    3. start the saga: OrderCreated goes into the outbox
    4. commit all of it at once
    """
    order = Order.create(
        user_id=user_id,
        user_email=user_email,
        items=build_items(items),
        shipping_address=shipping_address,
        billing_address=billing_address,
        notes=notes,
        history_note=history_note,
    )
    await repository.insert_order(session, order)
    await saga.start_order_saga(session, order)
    await session.commit()
    saga.track_saga(order)

    logger.info("Order created: %s (%s)", order.order_number, order.id)
    return order


async def create_order_from_cart(
    session: AsyncSession,
    saga: OrderSagaOrchestrator,
    cart_client: CartClient,
    cart_id: str,
    token: str,
    user_id: str,
    user_email: str,
    shipping_address: dict | None = None,
    billing_address: dict | None = None,
    notes: str | None = None,
) -> Order:
    cart = await cart_client.get_cart(cart_id, token)
    if cart.user_id != user_id:
        raise AccessDenied("Cart does not belong to user")
    if not cart.items:
        raise ValidationError("Cart is empty")

    order = await create_order(
        session,
        saga,
        user_id,
        user_email,
        [item.model_dump() for item in cart.items],
        shipping_address,
        billing_address,
        notes,
        history_note="Order created from cart",
    )

    # the order stands even if the cart cannot be cleared
    try:
        await cart_client.clear_cart(cart_id, token)
    except Exception as exc:
        logger.warning("Failed to clear cart %s after order %s: %s", cart_id, order.id, exc)
    return order


async def update_order_status(
    session: AsyncSession,
    outbox: OutboxStore,
    order_id: str,
    status: OrderStatus,
    notes: str = "",
    updated_by: str = "system",
) -> Order:
    order = await repository.load_order(session, order_id, for_update=True)
    previous = order.status
    order = order.transition_to(status, notes, updated_by)
    await repository.save_transition(session, order)

    changed = OrderStatusChanged(
        order_id=order.id,
        order_number=order.order_number,
        status=order.status.value,
        previous_status=previous.value,
        notes=notes,
    )
    await outbox.append(session, "OrderStatusChanged", order.id, changed.to_payload())

    if status is OrderStatus.DELIVERED:
        completed = OrderCompleted(
            order_id=order.id,
            order_number=order.order_number,
            user_id=order.user_id,
            grand_total=order.grand_total,
        )
        await outbox.append(session, "OrderCompleted", order.id, completed.to_payload())

    await session.commit()
    logger.info("Order %s status changed: %s -> %s", order.id, previous.value, status.value)
    return order


async def cancel_order(
    session: AsyncSession,
    outbox: OutboxStore,
    saga: OrderSagaOrchestrator,
    order_id: str,
    reason: str = "",
    cancelled_by: str = "system",
) -> Order:
    """
    Cancel an order on behalf of a user.

    OrderCancelled carries the items so inventory can release whatever it
    still holds for this order.
    """
    order = await repository.load_order(session, order_id, for_update=True)
    if not order.is_cancellable():
        raise InvalidTransition(order.status, OrderStatus.CANCELLED)

    previous = order.status
    order = order.cancel(reason, cancelled_by)
    await repository.save_transition(session, order)

    cancelled = OrderCancelled(
        order_id=order.id,
        order_number=order.order_number,
        user_id=order.user_id,
        user_email=order.user_email,
        reason=order.last_history_entry.notes,
        previous_status=previous.value,
        items=event_items(order),
    )
    await outbox.append(session, "OrderCancelled", order.id, cancelled.to_payload())
    await session.commit()

    saga.finish_saga(order.id, "CANCELLED")
    logger.info("Order cancelled: %s (was %s)", order.id, previous.value)
    return order
