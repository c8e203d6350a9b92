"""
Inventory Service — inbound event handlers

The whole reaction to an event (every reservation, every compensation and
every outbox row) commits together with the processed-event record.
"""

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from services.common.dispatcher import EventDispatcher, parse_payload
from services.common.events import ORDERS, PRODUCTS, EventEnvelope
from services.common.idempotency import IdempotencyLedger
from services.common.outbox import OutboxStore

from . import commands
from .events import OrderCancelled, OrderCreated, OrderFailed, ProductCreated, ProductUpdated


class InventoryEventHandlers:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ledger: IdempotencyLedger,
        outbox: OutboxStore,
    ) -> None:
        self.session_factory = session_factory
        self.ledger = ledger
        self.outbox = outbox

    async def _once(self, envelope: EventEnvelope, fn) -> None:
        await self.ledger.process_with_idempotency(
            self.session_factory,
            envelope.event_id,
            envelope.event_type,
            fn,
            payload=envelope.payload,
        )

    async def on_order_created(self, envelope: EventEnvelope) -> None:
        event = parse_payload(envelope, OrderCreated)
        await self._once(
            envelope,
            lambda session: commands.handle_order_created(
                session, self.outbox, event.order_id, event.items
            ),
        )

    async def on_order_failed(self, envelope: EventEnvelope) -> None:
        event = parse_payload(envelope, OrderFailed)
        await self._once(
            envelope,
            lambda session: commands.handle_order_failed(
                session, self.outbox, event.order_id, event.items
            ),
        )

    async def on_order_cancelled(self, envelope: EventEnvelope) -> None:
        event = parse_payload(envelope, OrderCancelled)
        await self._once(
            envelope,
            lambda session: commands.handle_order_failed(
                session, self.outbox, event.order_id, event.items
            ),
        )

    async def on_product_created(self, envelope: EventEnvelope) -> None:
        event = parse_payload(envelope, ProductCreated)
        await self._once(
            envelope, lambda session: commands.handle_product_created(session, event)
        )

    async def on_product_updated(self, envelope: EventEnvelope) -> None:
        event = parse_payload(envelope, ProductUpdated)
        await self._once(
            envelope, lambda session: commands.handle_product_updated(session, event)
        )

    def register_all(self, dispatcher: EventDispatcher) -> None:
        dispatcher.register("OrderCreated", self.on_order_created, ORDERS)
        dispatcher.register("OrderFailed", self.on_order_failed, ORDERS)
        dispatcher.register("OrderCancelled", self.on_order_cancelled, ORDERS)
        dispatcher.register("ProductCreated", self.on_product_created, PRODUCTS)
        dispatcher.register("ProductUpdated", self.on_product_updated, PRODUCTS)
