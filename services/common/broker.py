"""
Shared — message broker over Redis Streams

Redis Pub/Sub is fire-and-forget: a subscriber that is down loses messages.
The saga needs at-least-once delivery with explicit acknowledgement, so the
broker is built on Redis Streams instead:

  - one stream per routing key            (XADD orders.ordercreated ...)
  - one consumer group per service queue  (XGROUP CREATE ... inventory.queue)
  - ack removes the entry from the group's pending list (XACK)
  - dead letters are copied to "<queue>.dlq" with the reason, then acked

Entries that were read but never acked (the process died between handler
and ack) are delivered again:

  - on start, a consumer first re-reads its own pending entries (id "0");
    the consumer name is stable across restarts for this to work
  - every claim_idle_ms, entries idle that long under any consumer of the
    group are taken over with XAUTOCLAIM (covers consumers that never return)

Redelivered events are made harmless by the idempotency ledger. Retries of
failed handlers do not rely on this; the dispatcher republishes them.
"""

import json
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Protocol

import redis.asyncio as aioredis
from redis.exceptions import ResponseError

from .events import utcnow

logger = logging.getLogger(__name__)

RETRY_HEADER = "x-retry-count"


@dataclass
class Delivery:
    routing_key: str
    body: str
    headers: dict[str, str] = field(default_factory=dict)
    delivery_id: str = ""

    @property
    def retry_count(self) -> int:
        try:
            return int(self.headers.get(RETRY_HEADER, 0))
        except (TypeError, ValueError):
            return 0


class Broker(Protocol):
    async def publish(
        self, routing_key: str, body: str, headers: dict[str, str] | None = None
    ) -> str: ...

    async def ensure_bindings(self, routing_keys: list[str]) -> None: ...

    async def fetch(
        self, routing_keys: list[str], count: int = 10, block_ms: int = 1000
    ) -> list[Delivery]: ...

    async def ack(self, delivery: Delivery) -> None: ...

    async def dead_letter(self, delivery: Delivery, reason: str) -> None: ...


class RedisStreamBroker:
    def __init__(
        self,
        redis: aioredis.Redis,
        queue: str,
        consumer: str,
        claim_idle_ms: int = 60000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.redis = redis
        self.queue = queue
        self.consumer = consumer
        self.claim_idle_ms = claim_idle_ms
        self._clock = clock
        self._drained: set[str] = set()
        self._last_claim: float | None = None

    @property
    def dead_letter_stream(self) -> str:
        return f"{self.queue}.dlq"

    async def publish(
        self, routing_key: str, body: str, headers: dict[str, str] | None = None
    ) -> str:
        message_id = await self.redis.xadd(
            routing_key,
            {"body": body, "headers": json.dumps(headers or {})},
        )
        logger.debug("Published to %s (%s)", routing_key, message_id)
        return message_id

    async def ensure_bindings(self, routing_keys: list[str]) -> None:
        for key in routing_keys:
            try:
                await self.redis.xgroup_create(key, self.queue, id="0", mkstream=True)
                logger.info("Created consumer group %s on %s", self.queue, key)
            except ResponseError as exc:
                if "BUSYGROUP" not in str(exc):
                    raise

    async def fetch(
        self, routing_keys: list[str], count: int = 10, block_ms: int = 1000
    ) -> list[Delivery]:
        """
        Own pending entries first, then idle entries claimed from other
        consumers, then new entries.
        """
        if not routing_keys:
            return []
        deliveries = await self._read_own_pending(routing_keys, count)
        if not deliveries and self._claim_due():
            deliveries = await self._claim_idle(routing_keys, count)
        if deliveries:
            return deliveries

        response = await self.redis.xreadgroup(
            self.queue,
            self.consumer,
            {key: ">" for key in routing_keys},
            count=count,
            block=block_ms,
        )
        deliveries = []
        for stream, entries in self._streams(response):
            deliveries.extend(await self._deliveries(stream, entries))
        return deliveries

    async def _read_own_pending(self, routing_keys: list[str], count: int) -> list[Delivery]:
        keys = [key for key in routing_keys if key not in self._drained]
        if not keys:
            return []
        response = await self.redis.xreadgroup(
            self.queue, self.consumer, {key: "0" for key in keys}, count=count
        )
        found = dict(self._streams(response))
        deliveries: list[Delivery] = []
        for key in keys:
            entries = found.get(key)
            if not entries:
                self._drained.add(key)
                continue
            deliveries.extend(await self._deliveries(key, entries))
        if deliveries:
            logger.warning(
                "Redelivering %d unacknowledged entries for consumer %s",
                len(deliveries),
                self.consumer,
            )
        return deliveries

    def _claim_due(self) -> bool:
        now = self._clock()
        if self._last_claim is not None and now - self._last_claim < self.claim_idle_ms / 1000:
            return False
        self._last_claim = now
        return True

    async def _claim_idle(self, routing_keys: list[str], count: int) -> list[Delivery]:
        deliveries: list[Delivery] = []
        for key in routing_keys:
            try:
                response = await self.redis.xautoclaim(
                    key,
                    self.queue,
                    self.consumer,
                    self.claim_idle_ms,
                    start_id="0-0",
                    count=count,
                )
            except ResponseError as exc:
                if "NOGROUP" in str(exc):
                    continue
                raise
            claimed = await self._deliveries(key, response[1])
            if claimed:
                logger.warning(
                    "Claimed %d entries on %s idle for over %dms",
                    len(claimed),
                    key,
                    self.claim_idle_ms,
                )
            deliveries.extend(claimed)
        return deliveries

    @staticmethod
    def _streams(response) -> list:
        if not response:
            return []
        return list(response.items() if isinstance(response, dict) else response)

    async def _deliveries(self, stream: str, entries) -> list[Delivery]:
        deliveries: list[Delivery] = []
        for message_id, fields in entries:
            if message_id is None:
                continue
            if fields is None:
                # trimmed from the stream while still pending
                await self.redis.xack(stream, self.queue, message_id)
                continue
            deliveries.append(
                Delivery(
                    routing_key=stream,
                    body=fields.get("body", ""),
                    headers=json.loads(fields.get("headers") or "{}"),
                    delivery_id=message_id,
                )
            )
        return deliveries

    async def ack(self, delivery: Delivery) -> None:
        await self.redis.xack(delivery.routing_key, self.queue, delivery.delivery_id)

    async def dead_letter(self, delivery: Delivery, reason: str) -> None:
        await self.redis.xadd(
            self.dead_letter_stream,
            {
                "routing_key": delivery.routing_key,
                "body": delivery.body,
                "headers": json.dumps(delivery.headers),
                "reason": reason,
                "dead_lettered_at": utcnow().isoformat(),
            },
        )
        await self.ack(delivery)
        logger.error(
            "Message %s on %s dead-lettered: %s",
            delivery.delivery_id,
            delivery.routing_key,
            reason,
        )

    async def dead_letters(self, limit: int = 100) -> list[dict]:
        """Most recent dead letters first (operator view)."""
        entries = await self.redis.xrevrange(self.dead_letter_stream, count=limit)
        return [
            {
                "id": message_id,
                "routing_key": fields.get("routing_key"),
                "reason": fields.get("reason"),
                "dead_lettered_at": fields.get("dead_lettered_at"),
                "body": fields.get("body"),
            }
            for message_id, fields in entries
        ]
