import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from services.common.idempotency import IdempotencyLedger
from services.common.outbox import OutboxStore
from services.inventory.app import schema as inventory_schema
from services.order.app import schema as order_schema
from services.order.app.saga import OrderSagaOrchestrator

from tests.fakes import InMemoryBroker


async def _database(path, metadata):
    engine = create_async_engine(f"sqlite+aiosqlite:///{path}")
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
    return engine, async_sessionmaker(engine, expire_on_commit=False)


@pytest.fixture
async def order_db(tmp_path):
    engine, session_factory = await _database(tmp_path / "order.db", order_schema.metadata)
    yield session_factory
    await engine.dispose()


@pytest.fixture
async def inventory_db(tmp_path):
    engine, session_factory = await _database(
        tmp_path / "inventory.db", inventory_schema.metadata
    )
    yield session_factory
    await engine.dispose()


@pytest.fixture
def broker():
    return InMemoryBroker()


@pytest.fixture
def order_outbox():
    return OutboxStore(order_schema.outbox_events)


@pytest.fixture
def inventory_outbox():
    return OutboxStore(inventory_schema.outbox_events)


@pytest.fixture
def order_ledger():
    return IdempotencyLedger(order_schema.processed_events)


@pytest.fixture
def inventory_ledger():
    return IdempotencyLedger(inventory_schema.processed_events)


@pytest.fixture
def saga(order_outbox):
    return OrderSagaOrchestrator(order_outbox)
