import httpx
import pytest
from sqlalchemy import select

from services.common.resilience import CircuitBreaker, RetryPolicy
from services.order.app import commands, queries
from services.order.app.aggregate import (
    AccessDenied,
    InvalidTransition,
    OrderNotFound,
    OrderStatus,
    ValidationError,
)
from services.order.app.cart_client import CartClient
from services.order.app.schema import orders, outbox_events

ITEMS = [
    {
        "product_id": "p-1",
        "product_name": "Notebook",
        "product_sku": "NB-1",
        "quantity": 2,
        "unit_price": "10.00",
    },
    {
        "product_id": "p-2",
        "product_name": "Pen",
        "product_sku": "PN-1",
        "quantity": 1,
        "unit_price": "2.50",
    },
]


async def place(order_db, saga, user_id="user-1", items=ITEMS):
    async with order_db() as session:
        return await commands.create_order(
            session,
            saga,
            user_id,
            f"{user_id}@example.com",
            items,
            shipping_address={"city": "Tokyo"},
        )


async def outbox_rows(order_db):
    async with order_db() as session:
        result = await session.execute(select(outbox_events).order_by(outbox_events.c.created_at))
        return result.fetchall()


def cart_client(handler) -> tuple[CartClient, list[httpx.Request]]:
    requests: list[httpx.Request] = []

    def record(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return handler(request)

    http = httpx.AsyncClient(transport=httpx.MockTransport(record), base_url="http://cart")
    client = CartClient(
        http,
        CircuitBreaker("cart-service", failure_threshold=5),
        RetryPolicy(max_attempts=1),
    )
    return client, requests


def cart_body(user_id="user-1", items=None):
    items = (
        items
        if items is not None
        else [
            {
                "productId": "p-1",
                "productName": "Notebook",
                "productSku": "NB-1",
                "quantity": 3,
                "unitPrice": "10.00",
            }
        ]
    )
    return {"success": True, "data": {"id": "cart-1", "userId": user_id, "items": items}}


async def test_create_order_persists_order_and_order_created(order_db, saga):
    order = await place(order_db, saga)

    async with order_db() as session:
        stored = await queries.get_order(session, order.id)
    assert stored["status"] == "PENDING"
    assert stored["grand_total"] == "24.75"
    assert stored["shipping_address"] == {"city": "Tokyo"}
    assert [i["product_id"] for i in stored["items"]] == ["p-1", "p-2"]

    [row] = await outbox_rows(order_db)
    assert row.event_type == "OrderCreated"
    assert row.aggregate_id == order.id


async def test_invalid_items_commit_nothing(order_db, saga):
    with pytest.raises(ValidationError):
        await place(order_db, saga, items=[{**ITEMS[0], "quantity": 0}])

    async with order_db() as session:
        assert (await session.execute(select(orders))).first() is None
    assert await outbox_rows(order_db) == []


async def test_create_order_from_cart_clears_cart(order_db, saga):
    def handler(request):
        if request.method == "GET":
            return httpx.Response(200, json=cart_body())
        return httpx.Response(204)

    client, requests = cart_client(handler)
    async with order_db() as session:
        order = await commands.create_order_from_cart(
            session, saga, client, "cart-1", "tok", "user-1", "user-1@example.com"
        )

    assert order.items[0].quantity == 3
    assert order.status_history[0].notes == "Order created from cart"
    assert [(r.method, r.url.path) for r in requests] == [
        ("GET", "/carts/cart-1"),
        ("DELETE", "/carts/cart-1"),
    ]
    assert requests[0].headers["Authorization"] == "Bearer tok"


async def test_cart_of_another_user_is_rejected(order_db, saga):
    client, _ = cart_client(lambda request: httpx.Response(200, json=cart_body("someone-else")))
    async with order_db() as session:
        with pytest.raises(AccessDenied, match="Cart does not belong to user"):
            await commands.create_order_from_cart(
                session, saga, client, "cart-1", "tok", "user-1", "user-1@example.com"
            )


async def test_empty_cart_is_rejected(order_db, saga):
    client, _ = cart_client(lambda request: httpx.Response(200, json=cart_body(items=[])))
    async with order_db() as session:
        with pytest.raises(ValidationError, match="Cart is empty"):
            await commands.create_order_from_cart(
                session, saga, client, "cart-1", "tok", "user-1", "user-1@example.com"
            )


async def test_order_stands_when_cart_clear_fails(order_db, saga):
    def handler(request):
        if request.method == "GET":
            return httpx.Response(200, json=cart_body())
        return httpx.Response(500)

    client, _ = cart_client(handler)
    async with order_db() as session:
        order = await commands.create_order_from_cart(
            session, saga, client, "cart-1", "tok", "user-1", "user-1@example.com"
        )

    async with order_db() as session:
        assert (await queries.get_order(session, order.id))["status"] == "PENDING"


async def test_update_status_emits_status_changed_and_completed(order_db, saga, order_outbox):
    order = await place(order_db, saga)
    for status in (
        OrderStatus.RESERVED,
        OrderStatus.CONFIRMED,
        OrderStatus.PAID,
        OrderStatus.SHIPPED,
        OrderStatus.DELIVERED,
    ):
        async with order_db() as session:
            updated = await commands.update_order_status(
                session, order_outbox, order.id, status, f"to {status.value}", "admin-1"
            )

    assert updated.status is OrderStatus.DELIVERED
    assert updated.delivered_at is not None
    types = [row.event_type for row in await outbox_rows(order_db)]
    assert types.count("OrderStatusChanged") == 5
    assert types[-1] == "OrderCompleted"


async def test_update_status_rejects_invalid_transition(order_db, saga, order_outbox):
    order = await place(order_db, saga)
    async with order_db() as session:
        with pytest.raises(InvalidTransition):
            await commands.update_order_status(
                session, order_outbox, order.id, OrderStatus.SHIPPED
            )


async def test_cancel_order_emits_items_for_release(order_db, saga, order_outbox):
    order = await place(order_db, saga)
    async with order_db() as session:
        cancelled = await commands.cancel_order(
            session, order_outbox, saga, order.id, "changed my mind", "user-1"
        )

    assert cancelled.status is OrderStatus.CANCELLED
    assert saga.active_sagas() == []
    row = (await outbox_rows(order_db))[-1]
    assert row.event_type == "OrderCancelled"
    assert row.payload["reason"] == "changed my mind"
    assert row.payload["previousStatus"] == "PENDING"
    assert [i["productId"] for i in row.payload["items"]] == ["p-1", "p-2"]


async def test_cancel_rejects_shipped_and_unknown_orders(order_db, saga, order_outbox):
    order = await place(order_db, saga)
    for status in (OrderStatus.RESERVED, OrderStatus.CONFIRMED, OrderStatus.PAID, OrderStatus.SHIPPED):
        async with order_db() as session:
            await commands.update_order_status(session, order_outbox, order.id, status)

    async with order_db() as session:
        with pytest.raises(InvalidTransition):
            await commands.cancel_order(session, order_outbox, saga, order.id)
        with pytest.raises(OrderNotFound):
            await commands.cancel_order(session, order_outbox, saga, "missing")


async def test_queries_scope_by_user_and_paginate(order_db, saga):
    for _ in range(3):
        await place(order_db, saga, user_id="user-1")
    other = await place(order_db, saga, user_id="user-2")

    async with order_db() as session:
        with pytest.raises(AccessDenied):
            await queries.get_order(session, other.id, user_id="user-1")

        page = await queries.list_orders(session, user_id="user-1", page=2, limit=2)
        assert page["total"] == 3
        assert page["total_pages"] == 2
        assert len(page["orders"]) == 1

        pending = await queries.list_orders(session, status=OrderStatus.PENDING)
        assert pending["total"] == 4


async def test_statistics_exclude_cancelled_revenue(order_db, saga, order_outbox):
    kept = await place(order_db, saga)
    dropped = await place(order_db, saga)
    async with order_db() as session:
        await commands.cancel_order(session, order_outbox, saga, dropped.id)

    async with order_db() as session:
        stats = await queries.order_statistics(session)

    assert stats["total_orders"] == 2
    assert stats["orders_by_status"] == {"PENDING": 1, "CANCELLED": 1}
    assert stats["total_revenue"] == str(kept.grand_total)
    assert stats["average_order_value"] == str(kept.grand_total)
