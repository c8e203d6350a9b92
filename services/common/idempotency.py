"""
Shared — idempotent event consumption

The broker delivers at least once: after a crash between "handler ran" and
"ack sent" the same event comes back. The ledger records every handled
eventId; the UNIQUE constraint on processed_events.event_id is what turns
at-least-once delivery into an exactly-once effect.

The lookup, the handler's own writes and the ledger insert share one
session and one commit. If the handler fails nothing is committed and the
event can be processed again. If two deliveries of the same event race, the
second commit hits the UNIQUE constraint and is absorbed as a duplicate.
"""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Generic, TypeVar

from sqlalchemy import Table, delete, func, insert, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .events import utcnow

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class LedgerOutcome(Generic[T]):
    duplicate: bool
    result: T | None = None


class IdempotencyLedger:
    def __init__(self, table: Table) -> None:
        self.table = table

    async def is_processed(self, session: AsyncSession, event_id: str) -> bool:
        result = await session.execute(
            select(self.table.c.id).where(self.table.c.event_id == event_id)
        )
        return result.first() is not None

    async def process_with_idempotency(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        event_id: str,
        event_type: str,
        fn: Callable[[AsyncSession], Awaitable[T]],
        payload: dict[str, Any] | None = None,
    ) -> LedgerOutcome[T]:
        try:
            async with session_factory() as session:
                if await self.is_processed(session, event_id):
                    logger.info("Skipping already processed event: %s (%s)", event_type, event_id)
                    return LedgerOutcome(duplicate=True)

                result = await fn(session)

                await session.execute(
                    insert(self.table).values(
                        event_id=event_id,
                        event_type=event_type,
                        payload=payload,
                        processed_at=utcnow(),
                    )
                )
                await session.commit()
        except IntegrityError:
            async with session_factory() as session:
                if not await self.is_processed(session, event_id):
                    raise
            logger.warning(
                "Event %s (%s) was committed by a concurrent delivery", event_id, event_type
            )
            return LedgerOutcome(duplicate=True)

        logger.debug("Event %s marked as processed", event_id)
        return LedgerOutcome(duplicate=False, result=result)

    async def statistics(self, session: AsyncSession) -> dict:
        t = self.table
        total = (await session.execute(select(func.count()).select_from(t))).scalar_one()
        by_type = await session.execute(
            select(t.c.event_type, func.count()).group_by(t.c.event_type)
        )
        bounds = await session.execute(
            select(func.min(t.c.processed_at), func.max(t.c.processed_at))
        )
        oldest, newest = bounds.one()
        return {
            "total_processed": total,
            "by_event_type": {event_type: count for event_type, count in by_type.all()},
            "oldest_event": oldest.isoformat() if oldest else None,
            "newest_event": newest.isoformat() if newest else None,
        }

    async def cleanup(self, session: AsyncSession, older_than_days: int = 30) -> int:
        cutoff = utcnow() - timedelta(days=older_than_days)
        result = await session.execute(
            delete(self.table).where(self.table.c.processed_at < cutoff)
        )
        await session.commit()
        logger.info("Cleaned up %d old processed events", result.rowcount)
        return result.rowcount
