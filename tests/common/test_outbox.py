import asyncio

from sqlalchemy import select

from services.common.outbox import OutboxProcessor
from services.common.resilience import RetryPolicy
from services.order.app.schema import outbox_events


def make_processor(order_db, order_outbox, broker, max_retries=3):
    return OutboxProcessor(
        order_db,
        order_outbox,
        broker,
        "orders",
        interval=0.01,
        max_retries=max_retries,
        batch_size=100,
        publish_policy=RetryPolicy(max_attempts=1),
    )


async def append(order_db, order_outbox, event_type="OrderCreated", aggregate_id="order-1"):
    async with order_db() as session:
        event_id = await order_outbox.append(
            session, event_type, aggregate_id, {"orderId": aggregate_id}
        )
        await session.commit()
    return event_id


async def row(order_db, event_id):
    async with order_db() as session:
        result = await session.execute(select(outbox_events).where(outbox_events.c.id == event_id))
        return result.one()


async def test_rows_are_invisible_until_the_caller_commits(order_db, order_outbox, broker):
    async with order_db() as session:
        await order_outbox.append(session, "OrderCreated", "order-1", {})
        await session.rollback()

    processor = make_processor(order_db, order_outbox, broker)
    assert await processor.process_once() == 0
    assert broker.published == []


async def test_publishes_with_outbox_id_as_event_id(order_db, order_outbox, broker):
    event_id = await append(order_db, order_outbox)
    processor = make_processor(order_db, order_outbox, broker)

    assert await processor.process_once() == 1

    [envelope] = broker.envelopes("orders.ordercreated")
    assert envelope.event_id == event_id
    assert envelope.event_type == "OrderCreated"
    assert envelope.aggregate_id == "order-1"
    assert envelope.payload == {"orderId": "order-1"}

    published = await row(order_db, event_id)
    assert published.published
    assert published.published_at is not None

    # already published rows are not picked up again
    assert await processor.process_once() == 0
    assert len(broker.published) == 1


async def test_failures_count_up_to_failed(order_db, order_outbox, broker):
    event_id = await append(order_db, order_outbox)
    processor = make_processor(order_db, order_outbox, broker, max_retries=3)
    broker.fail_publishes = 3

    for attempt in (1, 2):
        assert await processor.process_once() == 0
        current = await row(order_db, event_id)
        assert current.retry_count == attempt
        assert not current.failed
        assert "broker unavailable" in current.error

    assert await processor.process_once() == 0
    current = await row(order_db, event_id)
    assert current.retry_count == 3
    assert current.failed

    # failed rows are left alone until an operator retries them
    assert await processor.process_once() == 0
    assert broker.published == []

    stats = await processor.statistics()
    assert stats == {"total": 1, "pending": 0, "published": 0, "failed": 1}
    [failed] = await processor.failed_events()
    assert failed["id"] == event_id


async def test_operator_retry_requeues_failed_row(order_db, order_outbox, broker):
    event_id = await append(order_db, order_outbox)
    processor = make_processor(order_db, order_outbox, broker, max_retries=1)
    broker.fail_publishes = 1
    await processor.process_once()
    assert (await row(order_db, event_id)).failed

    assert await processor.retry_failed(event_id)
    current = await row(order_db, event_id)
    assert (current.retry_count, current.failed, current.error) == (0, False, None)

    assert await processor.process_once() == 1
    [envelope] = broker.envelopes()
    assert envelope.event_id == event_id


async def test_retry_rejects_unknown_and_published_rows(order_db, order_outbox, broker):
    processor = make_processor(order_db, order_outbox, broker)
    assert not await processor.retry_failed("missing")

    event_id = await append(order_db, order_outbox)
    await processor.process_once()
    assert not await processor.retry_failed(event_id)


async def test_cleanup_removes_only_published_rows(order_db, order_outbox, broker):
    await append(order_db, order_outbox, aggregate_id="order-1")
    processor = make_processor(order_db, order_outbox, broker)
    await processor.process_once()
    await append(order_db, order_outbox, aggregate_id="order-2")

    assert await processor.cleanup_published(older_than_days=7) == 0
    assert await processor.cleanup_published(older_than_days=-1) == 1
    stats = await processor.statistics()
    assert stats["total"] == 1
    assert stats["pending"] == 1


async def test_start_and_stop_background_loop(order_db, order_outbox, broker):
    await append(order_db, order_outbox)
    processor = make_processor(order_db, order_outbox, broker)

    processor.start()
    assert processor.is_running
    for _ in range(100):
        if broker.published:
            break
        await asyncio.sleep(0.01)
    await processor.stop()

    assert not processor.is_running
    assert len(broker.published) == 1
