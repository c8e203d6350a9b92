"""
Order Service — FastAPI entry point

Composition root: every collaborator (engine, redis, broker, outbox,
ledger, dispatcher, saga, cart client) is built in the lifespan and kept on
app.state. Routes are thin adapters over commands and queries.

┌────────┐  POST /orders   ┌───────────────┐  outbox   ┌────────┐
│ client │───────────────▶│ Order Service │─────────▶│ broker │
└────────┘                 └───────▲───────┘           └───┬────┘
                                   │ StockReserved /       │
                                   │ StockReservationFailed│
                                   └───────────────────────┘
"""

import asyncio
from contextlib import asynccontextmanager
from decimal import Decimal

import httpx
import redis.asyncio as aioredis
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import Field
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from services.common.auth import CurrentUser, admin_user, current_user
from services.common.broker import RedisStreamBroker
from services.common.config import Settings
from services.common.dispatcher import EventDispatcher
from services.common.events import ORDERS, CamelModel
from services.common.idempotency import IdempotencyLedger
from services.common.log import configure_logging
from services.common.outbox import OutboxProcessor, OutboxStore
from services.common.resilience import CircuitBreaker, CircuitOpenError, RetryPolicy

from . import commands, queries
from .aggregate import (
    AccessDenied,
    InvalidTransition,
    OrderNotFound,
    OrderStatus,
    ValidationError,
)
from .cart_client import CartClient, CartServiceError
from .handlers import OrderEventHandlers
from .saga import OrderSagaOrchestrator
from .schema import metadata, outbox_events, processed_events

SERVICE_NAME = "order-service"


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
            ORDERS,
            interval=config.outbox_interval_ms / 1000,
            max_retries=config.outbox_max_retries,
            batch_size=config.outbox_batch_size,
        )
        ledger = IdempotencyLedger(processed_events)
        saga = OrderSagaOrchestrator(outbox)
        dispatcher = EventDispatcher(broker, max_retries=config.dispatcher_max_retries)
        OrderEventHandlers(session_factory, ledger, saga).register_all(dispatcher)

        cart_http = httpx.AsyncClient(base_url=config.cart_service_url, timeout=5.0)
        cart_client = CartClient(
            cart_http,
            CircuitBreaker(
                "cart-service",
                failure_threshold=config.circuit_failure_threshold,
                reset_timeout=config.circuit_reset_timeout_ms / 1000,
            ),
            RetryPolicy(
                max_attempts=config.max_retries,
                base_delay=config.retry_delay_ms / 1000,
                max_delay=config.retry_max_delay_ms / 1000,
            ),
        )

        async with session_factory() as session:
            await saga.rebuild(session)

        app.state.settings = config
        app.state.session_factory = session_factory
        app.state.broker = broker
        app.state.outbox = outbox
        app.state.processor = processor
        app.state.ledger = ledger
        app.state.saga = saga
        app.state.dispatcher = dispatcher
        app.state.cart_client = cart_client

        processor.start()
        dispatcher.start()
        yield
        await asyncio.gather(dispatcher.stop(), processor.stop())
        await cart_http.aclose()
        await redis.aclose()
        await engine.dispose()

    app = FastAPI(title="Order Service", lifespan=lifespan)
    _install_error_handlers(app)
    _install_routes(app)
    return app


# ── Request Models ───────────────────────────────


class OrderItemRequest(CamelModel):
    product_id: str
    product_name: str
    product_sku: str
    quantity: int = Field(gt=0)
    unit_price: Decimal = Field(ge=0)


class CreateOrderRequest(CamelModel):
    items: list[OrderItemRequest] = Field(min_length=1)
    shipping_address: dict | None = None
    billing_address: dict | None = None
    notes: str | None = None


class CreateOrderFromCartRequest(CamelModel):
    cart_id: str
    shipping_address: dict | None = None
    billing_address: dict | None = None
    notes: str | None = None


class UpdateStatusRequest(CamelModel):
    status: OrderStatus
    notes: str = ""


class CancelOrderRequest(CamelModel):
    reason: str = ""


# ── Error mapping ────────────────────────────────


def _install_error_handlers(app: FastAPI) -> None:
    def handler(status_code: int):
        async def respond(request: Request, exc: Exception) -> JSONResponse:
            return JSONResponse(status_code=status_code, content={"detail": str(exc)})

        return respond

    app.add_exception_handler(OrderNotFound, handler(404))
    app.add_exception_handler(AccessDenied, handler(403))
    app.add_exception_handler(InvalidTransition, handler(409))
    app.add_exception_handler(ValidationError, handler(400))
    app.add_exception_handler(CircuitOpenError, handler(503))

    async def cart_error(request: Request, exc: CartServiceError) -> JSONResponse:
        status_code = exc.status_code if exc.status_code in (400, 403, 404) else 502
        return JSONResponse(status_code=status_code, content={"detail": str(exc)})

    app.add_exception_handler(CartServiceError, cart_error)


# ── Routes ───────────────────────────────────────


def _install_routes(app: FastAPI) -> None:
    state = app.state

    @app.post("/orders", status_code=201)
    async def create_order(req: CreateOrderRequest, user: CurrentUser = Depends(current_user)):
        """Place an order for the calling user."""
        async with state.session_factory() as session:
            order = await commands.create_order(
                session,
                state.saga,
                user.user_id,
                user.email,
                [item.model_dump() for item in req.items],
                req.shipping_address,
                req.billing_address,
                req.notes,
            )
        return order.to_dict()

    @app.post("/orders/from-cart", status_code=201)
    async def create_order_from_cart(
        req: CreateOrderFromCartRequest, user: CurrentUser = Depends(current_user)
    ):
        async with state.session_factory() as session:
            order = await commands.create_order_from_cart(
                session,
                state.saga,
                state.cart_client,
                req.cart_id,
                user.token,
                user.user_id,
                user.email,
                req.shipping_address,
                req.billing_address,
                req.notes,
            )
        return order.to_dict()

    @app.get("/orders")
    async def list_orders(
        page: int = 1,
        limit: int = 10,
        status: OrderStatus | None = None,
        user: CurrentUser = Depends(current_user),
    ):
        """Admins see every order; everyone else only their own."""
        async with state.session_factory() as session:
            return await queries.list_orders(
                session,
                user_id=None if user.is_admin else user.user_id,
                status=status,
                page=max(page, 1),
                limit=min(max(limit, 1), 100),
            )

    @app.get("/orders/statistics")
    async def order_statistics(_: CurrentUser = Depends(admin_user)):
        async with state.session_factory() as session:
            return await queries.order_statistics(session)

    @app.get("/orders/{order_id}")
    async def get_order(order_id: str, user: CurrentUser = Depends(current_user)):
        async with state.session_factory() as session:
            return await queries.get_order(
                session, order_id, None if user.is_admin else user.user_id
            )

    @app.patch("/orders/{order_id}/status")
    async def update_status(
        order_id: str, req: UpdateStatusRequest, user: CurrentUser = Depends(admin_user)
    ):
        async with state.session_factory() as session:
            order = await commands.update_order_status(
                session, state.outbox, order_id, req.status, req.notes, user.user_id
            )
        return order.to_dict()

    @app.post("/orders/{order_id}/cancel")
    async def cancel_order(
        order_id: str, req: CancelOrderRequest, user: CurrentUser = Depends(current_user)
    ):
        async with state.session_factory() as session:
            await queries.get_order(
                session, order_id, None if user.is_admin else user.user_id
            )
            order = await commands.cancel_order(
                session, state.outbox, state.saga, order_id, req.reason, user.user_id
            )
        return order.to_dict()

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

    @app.get("/admin/sagas")
    async def sagas(_: CurrentUser = Depends(admin_user)):
        return {"active": state.saga.active_sagas(), "conflicts": state.saga.conflicts()}

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
