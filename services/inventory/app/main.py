"""
Inventory Service — FastAPI entry point

Composition root for the inventory side of the order saga. Inbound order
and product events arrive through the dispatcher; stock outcomes leave
through the outbox.

┌────────┐ OrderCreated  ┌───────────────────┐ StockReserved /          ┌────────┐
│ broker │─────────────▶│ Inventory Service │ StockReservationFailed ─▶│ broker │
└────────┘ OrderFailed   └─────────┬─────────┘ (outbox)                 └────────┘
           OrderCancelled          │
                         ┌─────────▼─────────┐
                         │   Inventory DB    │
                         └───────────────────┘
"""

import asyncio
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import Field
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from services.common.auth import CurrentUser, admin_user, current_user
from services.common.broker import RedisStreamBroker
from services.common.config import Settings
from services.common.dispatcher import EventDispatcher
from services.common.events import INVENTORY, CamelModel
from services.common.idempotency import IdempotencyLedger
from services.common.log import configure_logging
from services.common.outbox import OutboxProcessor, OutboxStore

from . import commands, queries
from .aggregate import InventoryExists, InventoryNotFound, MovementType
from .handlers import InventoryEventHandlers
from .schema import metadata, outbox_events, processed_events

SERVICE_NAME = "inventory-service"


def create_app(settings: Settings | None = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        config = settings or Settings.from_env(SERVICE_NAME)
        configure_logging(config.service_name, config.log_level)

        engine = create_async_engine(config.database_url, echo=False)
        async with engine.begin() as conn:
            await conn.run_sync(metadata.create_all)
        session_factory = async_sessionmaker(engine, expire_on_commit=False)

        redis = aioredis.from_url(config.redis_url, decode_responses=True)
        broker = RedisStreamBroker(
            redis,
            config.queue_name,
            config.consumer_name,
            claim_idle_ms=config.pending_claim_idle_ms,
        )
        outbox = OutboxStore(outbox_events)
        processor = OutboxProcessor(
            session_factory,
            outbox,
            broker,
            INVENTORY,
            interval=config.outbox_interval_ms / 1000,
            max_retries=config.outbox_max_retries,
            batch_size=config.outbox_batch_size,
        )
        ledger = IdempotencyLedger(processed_events)
        dispatcher = EventDispatcher(broker, max_retries=config.dispatcher_max_retries)
        InventoryEventHandlers(session_factory, ledger, outbox).register_all(dispatcher)

        app.state.settings = config
        app.state.session_factory = session_factory
        app.state.broker = broker
        app.state.outbox = outbox
        app.state.processor = processor
        app.state.ledger = ledger
        app.state.dispatcher = dispatcher

        processor.start()
        dispatcher.start()
        yield
        await asyncio.gather(dispatcher.stop(), processor.stop())
        await redis.aclose()
        await engine.dispose()

    app = FastAPI(title="Inventory Service", lifespan=lifespan)
    _install_error_handlers(app)
    _install_routes(app)
    return app


# ── Request Models ───────────────────────────────


class CreateInventoryRequest(CamelModel):
    product_id: str
    sku: str
    quantity: int = Field(default=0, ge=0)
    min_stock: int | None = Field(default=None, ge=0)
    reorder_point: int | None = Field(default=None, ge=0)
    location: str | None = None


class UpdateInventoryRequest(CamelModel):
    min_stock: int | None = Field(default=None, ge=0)
    reorder_point: int | None = Field(default=None, ge=0)
    location: str | None = None


class ReserveRequest(CamelModel):
    quantity: int = Field(gt=0)
    order_id: str


class ReleaseRequest(CamelModel):
    quantity: int = Field(gt=0)
    order_id: str | None = None


class AdjustRequest(CamelModel):
    quantity: int = Field(ge=0)
    reason: str = Field(min_length=1)
    type: MovementType


# ── Error mapping ────────────────────────────────


def _install_error_handlers(app: FastAPI) -> None:
    async def not_found(request: Request, exc: InventoryNotFound) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    async def conflict(request: Request, exc: InventoryExists) -> JSONResponse:
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    app.add_exception_handler(InventoryNotFound, not_found)
    app.add_exception_handler(InventoryExists, conflict)


def _outcome(result) -> dict:
    if not result.success:
        raise HTTPException(409, result.message)
    return result.to_dict()


# ── Routes ───────────────────────────────────────


def _install_routes(app: FastAPI) -> None:
    state = app.state

    @app.post("/inventory", status_code=201)
    async def create_inventory(req: CreateInventoryRequest, _: CurrentUser = Depends(admin_user)):
        async with state.session_factory.begin() as session:
            inv = await commands.create_inventory(
                session,
                req.product_id,
                req.sku,
                req.quantity,
                req.min_stock,
                req.reorder_point,
                req.location,
            )
        return inv.to_dict()

    @app.get("/inventory")
    async def list_inventory(page: int = 1, limit: int = 20):
        async with state.session_factory() as session:
            return await queries.list_inventory(
                session, page=max(page, 1), limit=min(max(limit, 1), 100)
            )

    @app.get("/inventory/alerts/low-stock")
    async def low_stock(_: CurrentUser = Depends(admin_user)):
        async with state.session_factory() as session:
            return await queries.low_stock_alerts(session)

    @app.get("/inventory/{product_id}")
    async def get_inventory(product_id: str):
        async with state.session_factory() as session:
            return await queries.get_inventory(session, product_id)

    @app.patch("/inventory/{product_id}")
    async def update_inventory(
        product_id: str, req: UpdateInventoryRequest, _: CurrentUser = Depends(admin_user)
    ):
        async with state.session_factory.begin() as session:
            inv = await commands.update_inventory(
                session, product_id, req.min_stock, req.reorder_point, req.location
            )
        return inv.to_dict()

    @app.post("/inventory/{product_id}/reserve")
    async def reserve(product_id: str, req: ReserveRequest, _: CurrentUser = Depends(current_user)):
        async with state.session_factory.begin() as session:
            await queries.get_inventory(session, product_id)
            result = await commands.reserve_stock(
                session, state.outbox, product_id, req.quantity, req.order_id
            )
        return _outcome(result)

    @app.post("/inventory/{product_id}/release")
    async def release(product_id: str, req: ReleaseRequest, _: CurrentUser = Depends(current_user)):
        async with state.session_factory.begin() as session:
            await queries.get_inventory(session, product_id)
            result = await commands.release_stock(
                session, state.outbox, product_id, req.quantity, req.order_id
            )
        return _outcome(result)

    @app.post("/inventory/{product_id}/adjust")
    async def adjust(product_id: str, req: AdjustRequest, _: CurrentUser = Depends(admin_user)):
        if req.type not in (MovementType.IN, MovementType.OUT, MovementType.ADJUSTMENT):
            raise HTTPException(422, "type must be IN, OUT or ADJUSTMENT")
        async with state.session_factory.begin() as session:
            result = await commands.adjust_stock(
                session, state.outbox, product_id, req.quantity, req.reason, req.type
            )
        return _outcome(result)

    @app.get("/inventory/{product_id}/movements")
    async def movements(product_id: str, _: CurrentUser = Depends(admin_user)):
        async with state.session_factory() as session:
            return await queries.list_movements(session, product_id)

    # ── Administration ───────────────────────────

    @app.get("/admin/outbox/stats")
    async def outbox_stats(_: CurrentUser = Depends(admin_user)):
        return await state.processor.statistics()

    @app.get("/admin/outbox/failed")
    async def outbox_failed(limit: int = 100, _: CurrentUser = Depends(admin_user)):
        return await state.processor.failed_events(limit)

    @app.post("/admin/outbox/{event_id}/retry")
    async def outbox_retry(event_id: str, _: CurrentUser = Depends(admin_user)):
        if not await state.processor.retry_failed(event_id):
            raise HTTPException(404, "Outbox event not found or already published")
        return {"event_id": event_id, "requeued": True}

    @app.get("/admin/idempotency/stats")
    async def idempotency_stats(_: CurrentUser = Depends(admin_user)):
        async with state.session_factory() as session:
            return await state.ledger.statistics(session)

    @app.get("/admin/dead-letters")
    async def dead_letters(limit: int = 50, _: CurrentUser = Depends(admin_user)):
        return await state.broker.dead_letters(limit)

    @app.get("/health")
    async def health():
        workers = {
            "outbox_processor": state.processor.is_running,
            "dispatcher": state.dispatcher.is_running,
        }
        return {
            "status": "ok" if all(workers.values()) else "degraded",
            "service": SERVICE_NAME,
            **workers,
        }


app = create_app()
