"""
Order Service — inbound event handlers

Every handler runs its saga step through the idempotency ledger, so the
state change, the outbox rows it produces and the processed-event record
commit together. A redelivered event is a no-op.
"""

import logging
from collections.abc import Awaitable, Callable
from typing import Any

from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from services.common.dispatcher import EventDispatcher, parse_payload
from services.common.events import INVENTORY, PAYMENTS, EventEnvelope
from services.common.idempotency import IdempotencyLedger

from .events import PaymentCompleted, PaymentFailed, StockReservationFailed, StockReserved
from .saga import OrderSagaOrchestrator

logger = logging.getLogger(__name__)


class OrderEventHandlers:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ledger: IdempotencyLedger,
        saga: OrderSagaOrchestrator,
    ) -> None:
        self.session_factory = session_factory
        self.ledger = ledger
        self.saga = saga

    async def _process(
        self,
        envelope: EventEnvelope,
        model: type[BaseModel],
        step: Callable[[AsyncSession, Any], Awaitable[Any]],
    ) -> None:
        event = parse_payload(envelope, model)
        outcome = await self.ledger.process_with_idempotency(
            self.session_factory,
            envelope.event_id,
            envelope.event_type,
            lambda session: step(session, event),
            payload=envelope.payload,
        )
        if not outcome.duplicate:
            logger.info("%s handled for order %s", envelope.event_type, event.order_id)

    async def on_stock_reserved(self, envelope: EventEnvelope) -> None:
        await self._process(envelope, StockReserved, self.saga.handle_stock_reserved)

    async def on_stock_reservation_failed(self, envelope: EventEnvelope) -> None:
        await self._process(
            envelope, StockReservationFailed, self.saga.handle_stock_reservation_failed
        )

    async def on_payment_completed(self, envelope: EventEnvelope) -> None:
        await self._process(envelope, PaymentCompleted, self.saga.handle_payment_completed)

    async def on_payment_failed(self, envelope: EventEnvelope) -> None:
        await self._process(envelope, PaymentFailed, self.saga.handle_payment_failed)

    def register_all(self, dispatcher: EventDispatcher) -> None:
        dispatcher.register("StockReserved", self.on_stock_reserved, INVENTORY)
        dispatcher.register(
            "StockReservationFailed", self.on_stock_reservation_failed, INVENTORY
        )
        dispatcher.register("PaymentCompleted", self.on_payment_completed, PAYMENTS)
        dispatcher.register("PaymentFailed", self.on_payment_failed, PAYMENTS)
