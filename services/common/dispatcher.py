"""
Shared — inbound event dispatcher

Routes each delivery to the handler registered for its eventType.

  ┌─────────────┐  fetch  ┌────────────┐  eventType  ┌─────────┐
  │   broker    │───────▶│ dispatcher │───────────▶│ handler │
  └─────────────┘         └────────────┘             └─────────┘
        ▲  ack / republish(x-retry-count+1) / dead-letter  │
        └──────────────────────────────────────────────────┘

  - unparseable envelope, unknown eventType or a payload the handler rejects
    as InvalidPayload → dead-letter immediately (a contract/configuration
    error must never loop forever)
  - handler raised, retry count below the ceiling → republish the same body
    with the counter incremented, then ack the original
  - handler raised at the ceiling → dead-letter
  - handler succeeded → ack, once, after the handler (and its ledger commit)

Handlers are registered once at startup; the registry is sealed by start().
The consumer loop keeps retrying its stream bindings until the broker is
reachable, so a broker that is down at boot only delays consumption.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from pydantic import BaseModel, ValidationError

from .broker import RETRY_HEADER, Broker, Delivery
from .events import EventEnvelope, routing_key
from .resilience import RetryPolicy, with_retry

logger = logging.getLogger(__name__)

EventHandler = Callable[[EventEnvelope], Awaitable[None]]
ModelT = TypeVar("ModelT", bound=BaseModel)


class InvalidPayload(Exception):
    """The payload does not match the event's contract. Never retried."""


def parse_payload(envelope: EventEnvelope, model: type[ModelT]) -> ModelT:
    try:
        return model.model_validate(envelope.payload)
    except ValidationError as exc:
        raise InvalidPayload(
            f"{envelope.event_type} payload does not match {model.__name__}: {exc}"
        ) from exc


@dataclass(frozen=True)
class Registration:
    event_type: str
    source_domain: str
    handler: EventHandler

    @property
    def routing_key(self) -> str:
        return routing_key(self.source_domain, self.event_type)


class EventDispatcher:
    def __init__(
        self,
        broker: Broker,
        max_retries: int = 3,
        batch_size: int = 10,
        block_ms: int = 1000,
        bind_policy: RetryPolicy = RetryPolicy(max_attempts=5, base_delay=0.5, max_delay=5.0),
        idle_sleep: float = 0.1,
    ) -> None:
        self.broker = broker
        self.max_retries = max_retries
        self.batch_size = batch_size
        self.block_ms = block_ms
        self.bind_policy = bind_policy
        self.idle_sleep = idle_sleep
        self._registry: dict[str, Registration] = {}
        self._sealed = False
        self._bound = False
        self._shutdown: asyncio.Event | None = None
        self._task: asyncio.Task | None = None

    def register(self, event_type: str, handler: EventHandler, source_domain: str) -> None:
        if self._sealed:
            raise RuntimeError(
                f"Cannot register handler for {event_type}: dispatcher already started"
            )
        if event_type in self._registry:
            raise RuntimeError(f"Handler for {event_type} is already registered")
        self._registry[event_type] = Registration(event_type, source_domain, handler)
        logger.info("Registered handler for %s", event_type)

    @property
    def routing_keys(self) -> list[str]:
        return [r.routing_key for r in self._registry.values()]

    @property
    def event_types(self) -> list[str]:
        return list(self._registry)

    # ── Message handling ─────────────────────────────

    async def handle(self, delivery: Delivery) -> None:
        try:
            envelope = EventEnvelope.from_json(delivery.body)
        except ValidationError as exc:
            logger.error(
                "Malformed event envelope on %s: %s", delivery.routing_key, exc
            )
            await self.broker.dead_letter(delivery, f"Malformed envelope: {exc}")
            return

        registration = self._registry.get(envelope.event_type)
        if registration is None:
            logger.error(
                "No handler registered for event type %s (event %s) - configuration error",
                envelope.event_type,
                envelope.event_id,
            )
            await self.broker.dead_letter(
                delivery, f"No handler registered for {envelope.event_type}"
            )
            return

        logger.info("Event received: %s (%s)", envelope.event_type, envelope.event_id)
        try:
            await registration.handler(envelope)
        except InvalidPayload as exc:
            logger.error(
                "Invalid payload for %s (%s): %s", envelope.event_type, envelope.event_id, exc
            )
            await self.broker.dead_letter(delivery, f"Invalid payload: {exc}")
            return
        except Exception as exc:
            await self._handle_failure(delivery, envelope, exc)
            return

        await self.broker.ack(delivery)
        logger.info("Event processed: %s (%s)", envelope.event_type, envelope.event_id)

    async def _handle_failure(
        self, delivery: Delivery, envelope: EventEnvelope, exc: Exception
    ) -> None:
        retry_count = delivery.retry_count
        if retry_count < self.max_retries:
            logger.warning(
                "Handler for %s (%s) failed, retry %d/%d: %s",
                envelope.event_type,
                envelope.event_id,
                retry_count + 1,
                self.max_retries,
                exc,
            )
            headers = {**delivery.headers, RETRY_HEADER: str(retry_count + 1)}
            await self.broker.publish(delivery.routing_key, delivery.body, headers)
            await self.broker.ack(delivery)
        else:
            logger.error(
                "Handler for %s (%s) failed after %d retries: %s",
                envelope.event_type,
                envelope.event_id,
                retry_count,
                exc,
            )
            await self.broker.dead_letter(
                delivery, f"Handler failed after {retry_count} retries: {exc}"
            )

    # ── Consumer loop ────────────────────────────────

    async def poll_once(self) -> int:
        deliveries = await self.broker.fetch(
            self.routing_keys, count=self.batch_size, block_ms=self.block_ms
        )
        for delivery in deliveries:
            await self.handle(delivery)
        return len(deliveries)

    async def _bind(self) -> None:
        await with_retry(
            lambda: self.broker.ensure_bindings(self.routing_keys), self.bind_policy
        )
        self._bound = True
        logger.info("Dispatcher consuming %s", ", ".join(self.routing_keys))

    async def run(self, shutdown_event: asyncio.Event) -> None:
        """Bind, then poll until shutdown. Broker errors never end the loop."""
        self._sealed = True
        while not shutdown_event.is_set():
            try:
                if not self._bound:
                    await self._bind()
                handled = await self.poll_once()
            except Exception:
                logger.exception("Dispatcher poll failed")
                handled = 0
            if not handled:
                await asyncio.sleep(self.idle_sleep)
        logger.info("Dispatcher stopped")

    def start(self) -> None:
        self._sealed = True
        self._shutdown = asyncio.Event()
        self._task = asyncio.create_task(self.run(self._shutdown))
        self._task.add_done_callback(self._log_crash)

    @staticmethod
    def _log_crash(task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Dispatcher task crashed", exc_info=exc)

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def stop(self) -> None:
        if self._task is None:
            return
        self._shutdown.set()
        await self._task
        self._task = None
