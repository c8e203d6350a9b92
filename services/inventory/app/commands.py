"""
Inventory Service — command handlers (write side)

Every mutation locks the inventory row (SELECT ... FOR UPDATE), updates it,
writes one movement row and appends its outbox events, all on the caller's
session. Nothing here commits: HTTP routes wrap a command in
session.begin(), inbound events run inside the idempotency ledger's
transaction.

Reservation for an order is all-or-nothing. Items are reserved one by one;
if any of them fails, the ones that succeeded are released again (RELEASE
movement + StockReleased) and the whole order is reported as failed with a
single StockReservationFailed.
"""

import logging
from collections.abc import Sequence
from dataclasses import asdict, dataclass, replace

from sqlalchemy import case, func, insert, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from services.common.events import EventItem, as_utc, new_id, utcnow
from services.common.outbox import OutboxStore

from .aggregate import (
    Inventory,
    InventoryExists,
    InventoryNotFound,
    MovementType,
)
from .events import (
    ItemOutcome,
    LowStockAlert,
    ProductCreated,
    ProductUpdated,
    StockReleased,
    StockReservationFailed,
    StockReserved,
)
from .schema import inventory, inventory_movements

logger = logging.getLogger(__name__)

INVENTORY_NOT_FOUND = "Inventory not found"
ROLLED_BACK = "Reservation rolled back due to other items failing"


@dataclass(frozen=True)
class StockReservationResult:
    success: bool
    product_id: str
    requested_quantity: int
    reserved_quantity: int
    available_stock: int
    order_id: str
    message: str

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class StockReleaseResult:
    success: bool
    product_id: str
    released_quantity: int
    order_id: str | None
    message: str

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class StockAdjustmentResult:
    success: bool
    product_id: str
    previous_quantity: int
    new_quantity: int
    adjustment: int
    type: MovementType
    reason: str
    message: str

    def to_dict(self) -> dict:
        return {**asdict(self), "type": self.type.value}


# ── Row access ───────────────────────────────────


def to_entity(row) -> Inventory:
    return Inventory(
        id=row.id,
        product_id=row.product_id,
        sku=row.sku,
        quantity=row.quantity,
        reserved=row.reserved,
        min_stock=row.min_stock,
        reorder_point=row.reorder_point,
        location=row.location,
        created_at=as_utc(row.created_at),
        updated_at=as_utc(row.updated_at),
    )


async def load_inventory(
    session: AsyncSession, product_id: str, for_update: bool = False
) -> Inventory | None:
    stmt = select(inventory).where(inventory.c.product_id == product_id)
    if for_update:
        stmt = stmt.with_for_update()
    row = (await session.execute(stmt)).fetchone()
    return to_entity(row) if row else None


async def _save_levels(session: AsyncSession, inv: Inventory) -> None:
    inv.updated_at = utcnow()
    await session.execute(
        update(inventory)
        .where(inventory.c.id == inv.id)
        .values(quantity=inv.quantity, reserved=inv.reserved, updated_at=inv.updated_at)
    )


async def _record_movement(
    session: AsyncSession,
    inv: Inventory,
    movement_type: MovementType,
    quantity: int,
    reason: str,
    order_id: str | None = None,
) -> None:
    await session.execute(
        insert(inventory_movements).values(
            id=new_id(),
            inventory_id=inv.id,
            type=movement_type.value,
            quantity=abs(quantity),
            reason=reason,
            order_id=order_id,
            created_at=utcnow(),
        )
    )


async def _alert_if_low(session: AsyncSession, outbox: OutboxStore, inv: Inventory) -> None:
    level = inv.alert_level()
    if level is None:
        return
    logger.warning(
        "%s: product %s has %d available (min %d)",
        level.value,
        inv.product_id,
        inv.available,
        inv.min_stock,
    )
    alert = LowStockAlert(
        product_id=inv.product_id,
        sku=inv.sku,
        current_stock=inv.available,
        min_stock=inv.min_stock,
        reorder_point=inv.reorder_point,
        location=inv.location,
        alert_type=level.value,
    )
    await outbox.append(session, "LowStockAlert", inv.product_id, alert.to_payload())


# ── Inventory records ────────────────────────────


async def create_inventory(
    session: AsyncSession,
    product_id: str,
    sku: str,
    quantity: int = 0,
    min_stock: int | None = None,
    reorder_point: int | None = None,
    location: str | None = None,
) -> Inventory:
    existing = await session.execute(
        select(inventory.c.id).where(
            or_(inventory.c.product_id == product_id, inventory.c.sku == sku)
        )
    )
    if existing.first() is not None:
        raise InventoryExists(
            f"Inventory already exists for product {product_id} or SKU {sku}"
        )

    inv = Inventory(product_id=product_id, sku=sku, quantity=quantity, location=location)
    if min_stock is not None:
        inv.min_stock = min_stock
    if reorder_point is not None:
        inv.reorder_point = reorder_point

    await session.execute(
        insert(inventory).values(
            id=inv.id,
            product_id=inv.product_id,
            sku=inv.sku,
            quantity=inv.quantity,
            reserved=0,
            min_stock=inv.min_stock,
            reorder_point=inv.reorder_point,
            location=inv.location,
            created_at=inv.created_at,
            updated_at=inv.updated_at,
        )
    )
    if quantity > 0:
        await _record_movement(session, inv, MovementType.IN, quantity, "Initial stock entry")
    logger.info("Inventory created for product %s (%s), quantity %d", product_id, sku, quantity)
    return inv


async def update_inventory(
    session: AsyncSession,
    product_id: str,
    min_stock: int | None = None,
    reorder_point: int | None = None,
    location: str | None = None,
    sku: str | None = None,
) -> Inventory:
    inv = await load_inventory(session, product_id, for_update=True)
    if inv is None:
        raise InventoryNotFound(product_id)

    if min_stock is not None:
        inv.min_stock = min_stock
    if reorder_point is not None:
        inv.reorder_point = reorder_point
    if location is not None:
        inv.location = location
    if sku is not None:
        inv.sku = sku
    inv.updated_at = utcnow()

    await session.execute(
        update(inventory)
        .where(inventory.c.id == inv.id)
        .values(
            min_stock=inv.min_stock,
            reorder_point=inv.reorder_point,
            location=inv.location,
            sku=inv.sku,
            updated_at=inv.updated_at,
        )
    )
    logger.info("Inventory updated for product %s", product_id)
    return inv


# ── Stock operations ─────────────────────────────


async def reserve_stock(
    session: AsyncSession,
    outbox: OutboxStore,
    product_id: str,
    quantity: int,
    order_id: str,
    alert: bool = True,
) -> StockReservationResult:
    def failed(message: str, available: int = 0) -> StockReservationResult:
        logger.info(
            "Reservation failed for product %s (order %s): %s", product_id, order_id, message
        )
        return StockReservationResult(
            False, product_id, quantity, 0, available, order_id, message
        )

    inv = await load_inventory(session, product_id, for_update=True)
    if inv is None:
        return failed(INVENTORY_NOT_FOUND)

    change = inv.reserve(quantity)
    if not change.ok:
        return failed(change.message, inv.available)

    await _save_levels(session, inv)
    await _record_movement(
        session, inv, MovementType.RESERVE, quantity,
        f"Stock reserved for order {order_id}", order_id,
    )
    if alert:
        await _alert_if_low(session, outbox, inv)

    logger.info("Reserved %d of product %s for order %s", quantity, product_id, order_id)
    return StockReservationResult(
        True, product_id, quantity, quantity, inv.available, order_id,
        "Stock reserved successfully",
    )


async def release_stock(
    session: AsyncSession,
    outbox: OutboxStore,
    product_id: str,
    quantity: int,
    order_id: str | None = None,
    reason: str | None = None,
) -> StockReleaseResult:
    inv = await load_inventory(session, product_id, for_update=True)
    if inv is None:
        return StockReleaseResult(False, product_id, 0, order_id, INVENTORY_NOT_FOUND)

    change = inv.release(quantity)
    if not change.ok:
        logger.warning("Release failed for product %s: %s", product_id, change.message)
        return StockReleaseResult(False, product_id, 0, order_id, change.message)

    await _save_levels(session, inv)
    await _record_movement(
        session, inv, MovementType.RELEASE, quantity,
        reason or f"Stock released for order {order_id}", order_id,
    )
    released = StockReleased(
        product_id=product_id,
        sku=inv.sku,
        quantity=quantity,
        order_id=order_id,
        available_stock=inv.available,
    )
    await outbox.append(session, "StockReleased", product_id, released.to_payload())

    logger.info("Released %d of product %s (order %s)", quantity, product_id, order_id)
    return StockReleaseResult(
        True, product_id, quantity, order_id, "Stock released successfully"
    )


async def adjust_stock(
    session: AsyncSession,
    outbox: OutboxStore,
    product_id: str,
    quantity: int,
    reason: str,
    movement_type: MovementType,
) -> StockAdjustmentResult:
    """
    IN adds `quantity`, OUT removes it from available stock, ADJUSTMENT sets
    the counted quantity. The movement stores the magnitude; the result
    carries the signed adjustment.
    """
    inv = await load_inventory(session, product_id, for_update=True)
    if inv is None:
        raise InventoryNotFound(product_id)

    previous = inv.quantity
    if movement_type is MovementType.IN:
        change = inv.add_stock(quantity)
    elif movement_type is MovementType.OUT:
        change = inv.remove_stock(quantity)
    elif movement_type is MovementType.ADJUSTMENT:
        change = inv.adjust_stock(quantity, reason)
    else:
        raise ValueError(f"{movement_type.value} is not a stock adjustment")

    if not change.ok:
        return StockAdjustmentResult(
            False, product_id, previous, previous, 0, movement_type, reason, change.message
        )

    await _save_levels(session, inv)
    await _record_movement(session, inv, movement_type, change.delta, reason)
    await _alert_if_low(session, outbox, inv)

    logger.info(
        "Stock adjusted for product %s: %s %+d (%s)",
        product_id, movement_type.value, change.delta, reason,
    )
    return StockAdjustmentResult(
        True, product_id, previous, inv.quantity, change.delta, movement_type, reason,
        "Stock adjusted successfully",
    )


# ── Order events ─────────────────────────────────


async def handle_order_created(
    session: AsyncSession,
    outbox: OutboxStore,
    order_id: str,
    items: Sequence[EventItem],
) -> list[StockReservationResult]:
    logger.info("Reserving stock for order %s (%d items)", order_id, len(items))

    # lock rows in a stable order; report in the order received
    by_product = sorted(range(len(items)), key=lambda i: items[i].product_id)
    results: list[StockReservationResult | None] = [None] * len(items)
    for index in by_product:
        item = items[index]
        results[index] = await reserve_stock(
            session, outbox, item.product_id, item.quantity, order_id, alert=False
        )

    failures = [r for r in results if not r.success]
    if not failures:
        # alerts only once the whole order is known to hold
        for product_id in sorted({item.product_id for item in items}):
            await _alert_if_low(session, outbox, await load_inventory(session, product_id))
        reserved = StockReserved(order_id=order_id, items=list(items))
        await outbox.append(session, "StockReserved", order_id, reserved.to_payload())
        logger.info("All items reserved for order %s", order_id)
        return results

    reason = "; ".join(dict.fromkeys(r.message for r in failures))
    logger.warning("Reservation failed for order %s (%s), releasing held items", order_id, reason)

    compensated = []
    for result in results:
        if result.success:
            await release_stock(
                session, outbox, result.product_id, result.reserved_quantity, order_id,
                reason=f"Reservation rolled back for order {order_id}",
            )
            result = replace(result, success=False, reserved_quantity=0, message=ROLLED_BACK)
        compensated.append(result)

    failed = StockReservationFailed(
        order_id=order_id,
        items=list(items),
        reason=reason,
        details=[
            ItemOutcome(
                product_id=r.product_id,
                quantity=r.requested_quantity,
                success=False,
                message=r.message,
            )
            for r in compensated
        ],
    )
    await outbox.append(session, "StockReservationFailed", order_id, failed.to_payload())
    return compensated


async def held_for_order(session: AsyncSession, inventory_id: str, order_id: str) -> int:
    """Units of this inventory still reserved for the order (RESERVE - RELEASE)."""
    m = inventory_movements
    signed = case(
        (m.c.type == MovementType.RESERVE.value, m.c.quantity),
        (m.c.type == MovementType.RELEASE.value, -m.c.quantity),
        else_=0,
    )
    result = await session.execute(
        select(func.coalesce(func.sum(signed), 0)).where(
            m.c.inventory_id == inventory_id, m.c.order_id == order_id
        )
    )
    return int(result.scalar_one())


async def handle_order_failed(
    session: AsyncSession,
    outbox: OutboxStore,
    order_id: str,
    items: Sequence[EventItem],
) -> list[StockReleaseResult]:
    """
    Give back what the order holds. Each release is capped at the order's own
    outstanding reservation, so a redelivered or late event can never eat
    into stock held for other orders.
    """
    logger.info("Releasing stock for order %s (%d items)", order_id, len(items))
    results = []
    for item in items:
        inv = await load_inventory(session, item.product_id, for_update=True)
        if inv is None:
            results.append(
                StockReleaseResult(False, item.product_id, 0, order_id, INVENTORY_NOT_FOUND)
            )
            continue

        quantity = min(item.quantity, await held_for_order(session, inv.id, order_id))
        if quantity <= 0:
            logger.info("Nothing held for order %s on product %s", order_id, item.product_id)
            results.append(
                StockReleaseResult(
                    False, item.product_id, 0, order_id, "No stock held for this order"
                )
            )
            continue
        results.append(
            await release_stock(session, outbox, item.product_id, quantity, order_id)
        )
    return results


# ── Product events ───────────────────────────────


async def handle_product_created(session: AsyncSession, event: ProductCreated) -> Inventory | None:
    if await load_inventory(session, event.product_id) is not None:
        logger.info("Inventory for product %s already exists", event.product_id)
        return None
    return await create_inventory(session, event.product_id, event.sku, max(event.stock, 0))


async def handle_product_updated(session: AsyncSession, event: ProductUpdated) -> Inventory | None:
    inv = await load_inventory(session, event.product_id)
    if inv is None:
        return await create_inventory(session, event.product_id, event.sku)
    if inv.sku == event.sku:
        return None
    return await update_inventory(session, event.product_id, sku=event.sku)
