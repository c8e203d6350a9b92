"""
Order Service — query handlers (read side)

Reads go straight to the order tables; nothing here writes.
"""

import math
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from . import repository
from .aggregate import AccessDenied, OrderStatus, money
from .schema import orders


async def get_order(session: AsyncSession, order_id: str, user_id: str | None = None) -> dict:
    """Fetch one order. With user_id given, the order must belong to that user."""
    order = await repository.load_order(session, order_id)
    if user_id is not None and order.user_id != user_id:
        raise AccessDenied("Access denied")
    return order.to_dict()


async def list_orders(
    session: AsyncSession,
    user_id: str | None = None,
    status: OrderStatus | None = None,
    page: int = 1,
    limit: int = 10,
) -> dict:
    criteria = []
    if user_id is not None:
        criteria.append(orders.c.user_id == user_id)
    if status is not None:
        criteria.append(orders.c.status == status.value)

    total = (
        await session.execute(select(func.count()).select_from(orders).where(*criteria))
    ).scalar_one()
    found = await repository.find_orders(
        session, *criteria, limit=limit, offset=(page - 1) * limit
    )
    return {
        "orders": [order.to_dict() for order in found],
        "total": total,
        "page": page,
        "limit": limit,
        "total_pages": math.ceil(total / limit) if limit else 0,
    }


async def order_statistics(session: AsyncSession) -> dict:
    total_orders = (
        await session.execute(select(func.count()).select_from(orders))
    ).scalar_one()
    by_status = await session.execute(
        select(orders.c.status, func.count()).group_by(orders.c.status)
    )
    revenue = await session.execute(
        select(func.sum(orders.c.grand_total), func.count()).where(
            orders.c.status != OrderStatus.CANCELLED.value
        )
    )
    revenue_sum, revenue_count = revenue.one()
    revenue_sum = money(revenue_sum or Decimal("0"))
    return {
        "total_orders": total_orders,
        "orders_by_status": {status: count for status, count in by_status.all()},
        "total_revenue": str(revenue_sum),
        "average_order_value": str(
            money(revenue_sum / revenue_count) if revenue_count else money(0)
        ),
    }
