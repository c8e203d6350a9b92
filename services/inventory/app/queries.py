"""
Inventory Service — query handlers (read side)
"""

import math

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from services.common.events import as_utc

from .aggregate import InventoryNotFound
from .commands import load_inventory, to_entity
from .schema import inventory, inventory_movements


async def get_inventory(session: AsyncSession, product_id: str) -> dict:
    inv = await load_inventory(session, product_id)
    if inv is None:
        raise InventoryNotFound(product_id)
    return inv.to_dict()


async def list_inventory(session: AsyncSession, page: int = 1, limit: int = 20) -> dict:
    total = (await session.execute(select(func.count()).select_from(inventory))).scalar_one()
    result = await session.execute(
        select(inventory)
        .order_by(inventory.c.updated_at.desc())
        .limit(limit)
        .offset((page - 1) * limit)
    )
    return {
        "items": [to_entity(row).to_dict() for row in result.fetchall()],
        "total": total,
        "page": page,
        "limit": limit,
        "total_pages": math.ceil(total / limit) if limit else 0,
    }


async def list_movements(session: AsyncSession, product_id: str) -> dict:
    """Stock movement history, newest first."""
    inv = await load_inventory(session, product_id)
    if inv is None:
        raise InventoryNotFound(product_id)
    m = inventory_movements
    result = await session.execute(
        select(m).where(m.c.inventory_id == inv.id).order_by(m.c.created_at.desc())
    )
    return {
        "product_id": inv.product_id,
        "sku": inv.sku,
        "movements": [
            {
                "id": row.id,
                "type": row.type,
                "quantity": row.quantity,
                "reason": row.reason,
                "order_id": row.order_id,
                "created_at": as_utc(row.created_at).isoformat(),
            }
            for row in result.fetchall()
        ],
    }


async def low_stock_alerts(session: AsyncSession) -> list[dict]:
    available = inventory.c.quantity - inventory.c.reserved
    result = await session.execute(
        select(inventory).where(available <= inventory.c.min_stock).order_by(available)
    )
    alerts = []
    for row in result.fetchall():
        inv = to_entity(row)
        alerts.append(
            {
                "product_id": inv.product_id,
                "sku": inv.sku,
                "current_stock": inv.available,
                "min_stock": inv.min_stock,
                "reorder_point": inv.reorder_point,
                "location": inv.location,
                "alert_type": inv.alert_level().value,
            }
        )
    return alerts
