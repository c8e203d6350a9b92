"""
Order Service — persistence of the Order aggregate

The aggregate is stored across three tables (orders, order_items,
order_status_history). Items are written once, at creation; history is
append-only, so saving a new version inserts exactly one history row.
"""

from decimal import Decimal
from typing import Any

from sqlalchemy import insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from services.common.events import as_utc

from .aggregate import Order, OrderItem, OrderNotFound, OrderStatus, OrderStatusHistoryEntry
from .schema import order_items, order_status_history, orders


def _history_row(order_id: str, position: int, entry: OrderStatusHistoryEntry) -> dict:
    return {
        "id": entry.id,
        "order_id": order_id,
        "position": position,
        "status": entry.status.value,
        "previous_status": entry.previous_status.value if entry.previous_status else None,
        "notes": entry.notes,
        "created_by": entry.created_by,
        "created_at": entry.created_at,
    }


async def insert_order(session: AsyncSession, order: Order) -> None:
    await session.execute(
        insert(orders).values(
            id=order.id,
            order_number=order.order_number,
            user_id=order.user_id,
            user_email=order.user_email,
            status=order.status.value,
            total=order.total,
            tax=order.tax,
            shipping=order.shipping,
            grand_total=order.grand_total,
            shipping_address=order.shipping_address,
            billing_address=order.billing_address,
            notes=order.notes,
            paid_at=order.paid_at,
            shipped_at=order.shipped_at,
            delivered_at=order.delivered_at,
            cancelled_at=order.cancelled_at,
            created_at=order.created_at,
            updated_at=order.updated_at,
        )
    )
    await session.execute(
        insert(order_items),
        [
            {
                "id": item.id,
                "order_id": order.id,
                "position": position,
                "product_id": item.product_id,
                "product_name": item.product_name,
                "product_sku": item.product_sku,
                "quantity": item.quantity,
                "unit_price": item.unit_price,
                "subtotal": item.subtotal,
            }
            for position, item in enumerate(order.items)
        ],
    )
    await session.execute(
        insert(order_status_history),
        [
            _history_row(order.id, position, entry)
            for position, entry in enumerate(order.status_history)
        ],
    )


async def save_transition(session: AsyncSession, order: Order) -> None:
    """Persist a version produced by Order.transition_to()."""
    await session.execute(
        update(orders)
        .where(orders.c.id == order.id)
        .values(
            status=order.status.value,
            paid_at=order.paid_at,
            shipped_at=order.shipped_at,
            delivered_at=order.delivered_at,
            cancelled_at=order.cancelled_at,
            updated_at=order.updated_at,
        )
    )
    position = len(order.status_history) - 1
    await session.execute(
        insert(order_status_history).values(
            **_history_row(order.id, position, order.last_history_entry)
        )
    )


def _decimal(value: Any) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value))


async def _assemble(session: AsyncSession, row: Any) -> Order:
    item_rows = await session.execute(
        select(order_items)
        .where(order_items.c.order_id == row.id)
        .order_by(order_items.c.position)
    )
    history_rows = await session.execute(
        select(order_status_history)
        .where(order_status_history.c.order_id == row.id)
        .order_by(order_status_history.c.position)
    )
    return Order(
        id=row.id,
        order_number=row.order_number,
        user_id=row.user_id,
        user_email=row.user_email,
        status=OrderStatus(row.status),
        items=tuple(
            OrderItem(
                id=i.id,
                product_id=i.product_id,
                product_name=i.product_name,
                product_sku=i.product_sku,
                quantity=i.quantity,
                unit_price=_decimal(i.unit_price),
                subtotal=_decimal(i.subtotal),
            )
            for i in item_rows
        ),
        total=_decimal(row.total),
        tax=_decimal(row.tax),
        shipping=_decimal(row.shipping),
        grand_total=_decimal(row.grand_total),
        status_history=tuple(
            OrderStatusHistoryEntry(
                id=h.id,
                status=OrderStatus(h.status),
                previous_status=OrderStatus(h.previous_status) if h.previous_status else None,
                notes=h.notes,
                created_by=h.created_by,
                created_at=as_utc(h.created_at),
            )
            for h in history_rows
        ),
        shipping_address=row.shipping_address,
        billing_address=row.billing_address,
        notes=row.notes,
        paid_at=as_utc(row.paid_at),
        shipped_at=as_utc(row.shipped_at),
        delivered_at=as_utc(row.delivered_at),
        cancelled_at=as_utc(row.cancelled_at),
        created_at=as_utc(row.created_at),
        updated_at=as_utc(row.updated_at),
    )


async def load_order(
    session: AsyncSession, order_id: str, for_update: bool = False
) -> Order:
    """Load an order; with for_update the row stays locked until commit."""
    stmt = select(orders).where(orders.c.id == order_id)
    if for_update:
        stmt = stmt.with_for_update()
    row = (await session.execute(stmt)).fetchone()
    if row is None:
        raise OrderNotFound(order_id)
    return await _assemble(session, row)


async def find_orders(
    session: AsyncSession,
    *criteria: Any,
    limit: int | None = None,
    offset: int = 0,
) -> list[Order]:
    stmt = select(orders).where(*criteria).order_by(orders.c.created_at.desc())
    if limit is not None:
        stmt = stmt.limit(limit).offset(offset)
    rows = (await session.execute(stmt)).fetchall()
    return [await _assemble(session, row) for row in rows]
