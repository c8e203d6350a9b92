"""
Order and inventory services wired together over one in-memory broker,
each with its own database, outbox processor and dispatcher.
"""

import pytest

from services.common.dispatcher import EventDispatcher
from services.common.outbox import OutboxProcessor
from services.common.resilience import RetryPolicy
from services.inventory.app import commands as inventory_commands
from services.inventory.app.handlers import InventoryEventHandlers
from services.order.app import commands as order_commands
from services.order.app import repository
from services.order.app.aggregate import OrderStatus
from services.order.app.handlers import OrderEventHandlers


class System:
    def __init__(self, order_db, inventory_db, broker, order_outbox, inventory_outbox,
                 order_ledger, inventory_ledger, saga) -> None:
        self.order_db = order_db
        self.inventory_db = inventory_db
        self.broker = broker
        self.order_outbox = order_outbox
        self.saga = saga
        policy = RetryPolicy(max_attempts=1)
        self.processors = [
            OutboxProcessor(order_db, order_outbox, broker, "orders", publish_policy=policy),
            OutboxProcessor(
                inventory_db, inventory_outbox, broker, "inventory", publish_policy=policy
            ),
        ]
        self.order_dispatcher = EventDispatcher(broker)
        OrderEventHandlers(order_db, order_ledger, saga).register_all(self.order_dispatcher)
        self.inventory_dispatcher = EventDispatcher(broker)
        InventoryEventHandlers(inventory_db, inventory_ledger, inventory_outbox).register_all(
            self.inventory_dispatcher
        )

    async def settle(self) -> None:
        """Publish and consume until nothing moves."""
        for _ in range(20):
            moved = 0
            for processor in self.processors:
                moved += await processor.process_once()
            moved += await self.inventory_dispatcher.poll_once()
            moved += await self.order_dispatcher.poll_once()
            if not moved:
                return
        raise AssertionError("system did not settle")

    async def stock(self, product_id: str, quantity: int) -> None:
        async with self.inventory_db.begin() as session:
            await inventory_commands.create_inventory(
                session, product_id, f"SKU-{product_id}", quantity
            )

    async def levels(self, product_id: str) -> tuple[int, int]:
        async with self.inventory_db() as session:
            inv = await inventory_commands.load_inventory(session, product_id)
        return inv.quantity, inv.reserved

    async def place(self, *lines: tuple[str, int]):
        async with self.order_db() as session:
            return await order_commands.create_order(
                session,
                self.saga,
                "user-1",
                "user@example.com",
                [
                    {
                        "product_id": product_id,
                        "product_name": product_id.title(),
                        "product_sku": f"SKU-{product_id}",
                        "quantity": quantity,
                        "unit_price": "5.00",
                    }
                    for product_id, quantity in lines
                ],
            )

    async def order(self, order_id: str):
        async with self.order_db() as session:
            return await repository.load_order(session, order_id)


@pytest.fixture
def system(order_db, inventory_db, broker, order_outbox, inventory_outbox,
           order_ledger, inventory_ledger, saga):
    return System(order_db, inventory_db, broker, order_outbox, inventory_outbox,
                  order_ledger, inventory_ledger, saga)


async def test_happy_path_reserves_stock_and_order(system):
    await system.stock("p-1", 10)
    await system.stock("p-2", 10)

    placed = await system.place(("p-1", 2), ("p-2", 3))
    await system.settle()

    order = await system.order(placed.id)
    assert order.status is OrderStatus.RESERVED
    assert [h.status for h in order.status_history] == [OrderStatus.PENDING, OrderStatus.RESERVED]
    assert await system.levels("p-1") == (10, 2)
    assert await system.levels("p-2") == (10, 3)
    assert len(system.broker.envelopes("orders.orderconfirmed")) == 1
    assert system.broker.dead == []


async def test_insufficient_stock_fails_order_and_holds_nothing(system):
    await system.stock("p-1", 10)
    await system.stock("p-2", 1)

    placed = await system.place(("p-1", 2), ("p-2", 3))
    await system.settle()

    order = await system.order(placed.id)
    assert order.status is OrderStatus.FAILED
    assert order.last_history_entry.notes == "Stock reservation failed: Insufficient stock"
    assert await system.levels("p-1") == (10, 0)
    assert await system.levels("p-2") == (1, 0)

    [failed] = system.broker.envelopes("inventory.stockreservationfailed")
    assert failed.payload["orderId"] == placed.id
    # OrderFailed reached inventory too and released nothing twice
    assert len(system.broker.envelopes("orders.orderfailed")) == 1
    assert len(system.broker.envelopes("inventory.stockreleased")) == 1


async def test_cancellation_releases_held_stock(system):
    await system.stock("p-1", 10)
    placed = await system.place(("p-1", 4))
    await system.settle()
    assert await system.levels("p-1") == (10, 4)

    async with system.order_db() as session:
        await order_commands.cancel_order(
            session, system.order_outbox, system.saga, placed.id, "changed my mind", "user-1"
        )
    await system.settle()

    assert (await system.order(placed.id)).status is OrderStatus.CANCELLED
    assert await system.levels("p-1") == (10, 0)


async def test_cancellation_overtaking_creation_still_frees_stock(system):
    await system.stock("p-1", 10)
    placed = await system.place(("p-1", 4))
    async with system.order_db() as session:
        await order_commands.cancel_order(
            session, system.order_outbox, system.saga, placed.id, "changed my mind", "user-1"
        )
    for processor in system.processors:
        await processor.process_once()

    # inventory sees the cancellation before the order it cancels
    [cancelled] = [d for d in system.broker.queued if d.routing_key == "orders.ordercancelled"]
    system.broker.queued.remove(cancelled)
    system.broker.queued.insert(0, cancelled)
    await system.settle()

    assert (await system.order(placed.id)).status is OrderStatus.CANCELLED
    assert await system.levels("p-1") == (10, 0)
    assert len(system.broker.envelopes("orders.ordercancelled")) == 2
    assert system.saga.conflicts()[-1]["event_type"] == "StockReserved"


async def test_redelivered_order_created_is_not_reserved_twice(system):
    await system.stock("p-1", 10)
    placed = await system.place(("p-1", 4))
    await system.settle()

    [delivery] = [
        d for d in system.broker.published if d.routing_key == "orders.ordercreated"
    ]
    system.broker.queued.append(delivery)
    await system.settle()

    assert await system.levels("p-1") == (10, 4)
    assert len(system.broker.envelopes("inventory.stockreserved")) == 1
    assert (await system.order(placed.id)).status is OrderStatus.RESERVED
