"""
Shared — transactional outbox

Transactional outbox (the dual-write problem):
  Writing to the database and publishing to the broker are two separate
  systems. If a service commits its state change and then crashes before
  publishing, the event is lost; if it publishes first and the commit rolls
  back, a false event escapes.

  Instead, producers call OutboxStore.append() inside the same transaction as
  the state change. The OutboxProcessor later polls unpublished rows and
  publishes them. Application code only ever INSERTs outbox rows; the
  processor is the only writer that flips `published`.

  ┌──────────────┐  same tx   ┌──────────────┐   poll   ┌───────────┐
  │ state change │──────────▶│ outbox_events│────────▶│  broker   │
  └──────────────┘            └──────────────┘          └───────────┘
"""

import asyncio
import logging
from datetime import timedelta
from typing import Any

from sqlalchemy import Table, delete, func, insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .broker import Broker
from .events import EventEnvelope, as_utc, new_id, routing_key, utcnow
from .resilience import RetryPolicy, with_retry

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 500


def outbox_row_to_dict(row: Any) -> dict:
    return {
        "id": row.id,
        "event_type": row.event_type,
        "aggregate_id": row.aggregate_id,
        "payload": row.payload,
        "published": bool(row.published),
        "failed": bool(row.failed),
        "retry_count": row.retry_count,
        "error": row.error,
        "created_at": as_utc(row.created_at).isoformat() if row.created_at else None,
        "published_at": as_utc(row.published_at).isoformat() if row.published_at else None,
    }


class OutboxStore:
    def __init__(self, table: Table) -> None:
        self.table = table

    async def append(
        self,
        session: AsyncSession,
        event_type: str,
        aggregate_id: str,
        payload: dict[str, Any],
    ) -> str:
        """
        Record a domain event in the caller's transaction.

        Nothing is committed here: the row becomes visible exactly when the
        state change that produced it commits.
        """
        event_id = new_id()
        await session.execute(
            insert(self.table).values(
                id=event_id,
                event_type=event_type,
                aggregate_id=str(aggregate_id),
                payload=payload,
                published=False,
                failed=False,
                retry_count=0,
                created_at=utcnow(),
            )
        )
        logger.debug("Outbox event scheduled: %s (%s)", event_type, aggregate_id)
        return event_id

    async def pending(self, session: AsyncSession, limit: int) -> list[Any]:
        t = self.table
        result = await session.execute(
            select(t)
            .where(t.c.published.is_(False), t.c.failed.is_(False))
            .order_by(t.c.created_at, t.c.id)
            .limit(limit)
        )
        return list(result.fetchall())

    async def get(self, session: AsyncSession, event_id: str) -> Any | None:
        result = await session.execute(select(self.table).where(self.table.c.id == event_id))
        return result.fetchone()


class OutboxProcessor:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        store: OutboxStore,
        broker: Broker,
        domain: str,
        interval: float = 5.0,
        max_retries: int = 3,
        batch_size: int = 100,
        publish_policy: RetryPolicy | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.store = store
        self.broker = broker
        self.domain = domain
        self.interval = interval
        self.max_retries = max_retries
        self.batch_size = batch_size
        self.publish_policy = publish_policy or RetryPolicy(max_attempts=3, base_delay=1.0)
        self._shutdown: asyncio.Event | None = None
        self._task: asyncio.Task | None = None

    # ── Polling loop ─────────────────────────────────

    async def process_once(self) -> int:
        """Publish one batch of pending rows. Returns how many were published."""
        async with self.session_factory() as session:
            rows = await self.store.pending(session, self.batch_size)

        if not rows:
            return 0
        logger.debug("Processing %d pending outbox events", len(rows))

        published = 0
        for row in rows:
            if await self._process_event(row):
                published += 1
        return published

    async def _process_event(self, row: Any) -> bool:
        envelope = EventEnvelope(
            event_id=row.id,
            event_type=row.event_type,
            aggregate_id=row.aggregate_id,
            payload=row.payload,
            timestamp=as_utc(row.created_at),
            correlation_id=(row.payload or {}).get("correlationId"),
        )
        key = routing_key(self.domain, row.event_type)

        try:
            await with_retry(
                lambda: self.broker.publish(key, envelope.to_json()),
                self.publish_policy,
            )
        except Exception as exc:
            logger.error(
                "Failed to publish outbox event %s (%s): %s", row.id, row.event_type, exc
            )
            await self._record_failure(row, str(exc))
            return False

        t = self.store.table
        async with self.session_factory() as session:
            await session.execute(
                update(t)
                .where(t.c.id == row.id)
                .values(published=True, published_at=utcnow(), error=None)
            )
            await session.commit()
        logger.debug("Outbox event published: %s -> %s", row.id, key)
        return True

    async def _record_failure(self, row: Any, error: str) -> None:
        retry_count = row.retry_count + 1
        failed = retry_count >= self.max_retries
        t = self.store.table
        async with self.session_factory() as session:
            await session.execute(
                update(t)
                .where(t.c.id == row.id)
                .values(
                    retry_count=retry_count,
                    failed=failed,
                    error=error[:MAX_ERROR_LENGTH],
                )
            )
            await session.commit()
        if failed:
            logger.error(
                "Outbox event %s (%s) marked failed after %d attempts",
                row.id,
                row.event_type,
                retry_count,
            )

    async def run(self, shutdown_event: asyncio.Event) -> None:
        logger.info(
            "Outbox processor started (interval=%.1fs, max_retries=%d)",
            self.interval,
            self.max_retries,
        )
        while not shutdown_event.is_set():
            try:
                await self.process_once()
            except Exception:
                logger.exception("Error processing outbox")
            try:
                await asyncio.wait_for(shutdown_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Outbox processor stopped")

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            logger.warning("Outbox processor is already running")
            return
        self._shutdown = asyncio.Event()
        self._task = asyncio.create_task(self.run(self._shutdown))

    async def stop(self) -> None:
        if self._task is None:
            return
        self._shutdown.set()
        await self._task
        self._task = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    # ── Administration ───────────────────────────────

    async def statistics(self) -> dict:
        t = self.store.table
        async with self.session_factory() as session:

            async def count(*criteria) -> int:
                result = await session.execute(
                    select(func.count()).select_from(t).where(*criteria)
                )
                return result.scalar_one()

            return {
                "total": await count(),
                "pending": await count(t.c.published.is_(False), t.c.failed.is_(False)),
                "published": await count(t.c.published.is_(True)),
                "failed": await count(t.c.published.is_(False), t.c.failed.is_(True)),
            }

    async def failed_events(self, limit: int = 100) -> list[dict]:
        t = self.store.table
        async with self.session_factory() as session:
            result = await session.execute(
                select(t)
                .where(t.c.published.is_(False), t.c.failed.is_(True))
                .order_by(t.c.created_at)
                .limit(limit)
            )
            return [outbox_row_to_dict(row) for row in result.fetchall()]

    async def retry_failed(self, event_id: str) -> bool:
        """Re-queue a failed row for the next cycle. No copy of the event is made."""
        t = self.store.table
        async with self.session_factory() as session:
            row = await self.store.get(session, event_id)
            if row is None:
                logger.error("Outbox event not found: %s", event_id)
                return False
            if row.published:
                logger.warning("Outbox event %s is already published", event_id)
                return False
            await session.execute(
                update(t)
                .where(t.c.id == event_id)
                .values(retry_count=0, failed=False, error=None)
            )
            await session.commit()
        logger.info("Outbox event %s re-queued by operator", event_id)
        return True

    async def cleanup_published(self, older_than_days: int = 7) -> int:
        cutoff = utcnow() - timedelta(days=older_than_days)
        t = self.store.table
        async with self.session_factory() as session:
            result = await session.execute(
                delete(t).where(t.c.published.is_(True), t.c.published_at < cutoff)
            )
            await session.commit()
        logger.info("Cleaned up %d old outbox events", result.rowcount)
        return result.rowcount
