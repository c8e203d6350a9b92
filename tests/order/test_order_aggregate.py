import dataclasses
from decimal import Decimal

import pytest

from services.order.app.aggregate import (
    TRANSITIONS,
    InvalidTransition,
    Order,
    OrderItem,
    OrderStatus,
    ValidationError,
    calculate_totals,
    generate_order_number,
)


def make_order(**kwargs) -> Order:
    items = kwargs.pop(
        "items",
        [
            OrderItem.create("p-1", "Notebook", "NB-1", 2, "10.00"),
            OrderItem.create("p-2", "Pen", "PN-1", 3, "1.99"),
        ],
    )
    return Order.create("user-1", "user@example.com", items, **kwargs)


def walk(order: Order, *statuses: OrderStatus) -> Order:
    for status in statuses:
        order = order.transition_to(status)
    return order


def test_create_computes_totals_and_first_history_entry():
    order = make_order()

    assert order.status is OrderStatus.PENDING
    assert order.total == Decimal("25.97")
    assert order.tax == Decimal("2.60")
    assert order.shipping == Decimal("0.00")
    assert order.grand_total == Decimal("28.57")
    assert order.order_number.startswith("ORD-")

    [entry] = order.status_history
    assert entry.status is OrderStatus.PENDING
    assert entry.previous_status is None
    assert entry.notes == "Order created"


def test_create_rejects_empty_orders_and_bad_items():
    with pytest.raises(ValidationError, match="at least one item"):
        make_order(items=[])
    with pytest.raises(ValidationError, match="must be positive"):
        OrderItem.create("p-1", "Notebook", "NB-1", 0, "10.00")
    with pytest.raises(ValidationError, match="cannot be negative"):
        OrderItem.create("p-1", "Notebook", "NB-1", 1, "-1")


def test_totals_round_half_up_to_cents():
    items = [OrderItem.create("p-1", "Gum", "G-1", 1, "0.05")]
    totals = calculate_totals(items, tax_rate=Decimal("0.10"), shipping="4.5")
    assert totals.tax == Decimal("0.01")
    assert totals.grand_total == Decimal("4.56")


@pytest.mark.parametrize("source", list(OrderStatus))
def test_only_listed_transitions_are_allowed(source):
    path = {
        OrderStatus.PENDING: [],
        OrderStatus.RESERVED: [OrderStatus.RESERVED],
        OrderStatus.CONFIRMED: [OrderStatus.RESERVED, OrderStatus.CONFIRMED],
        OrderStatus.PAID: [OrderStatus.RESERVED, OrderStatus.CONFIRMED, OrderStatus.PAID],
        OrderStatus.SHIPPED: [
            OrderStatus.RESERVED,
            OrderStatus.CONFIRMED,
            OrderStatus.PAID,
            OrderStatus.SHIPPED,
        ],
        OrderStatus.DELIVERED: [
            OrderStatus.RESERVED,
            OrderStatus.CONFIRMED,
            OrderStatus.PAID,
            OrderStatus.SHIPPED,
            OrderStatus.DELIVERED,
        ],
        OrderStatus.CANCELLED: [OrderStatus.CANCELLED],
        OrderStatus.FAILED: [OrderStatus.FAILED],
    }[source]
    order = walk(make_order(), *path)
    assert order.status is source

    for target in OrderStatus:
        if target in TRANSITIONS[source]:
            assert order.transition_to(target).status is target
        else:
            with pytest.raises(InvalidTransition):
                order.transition_to(target)


def test_transition_appends_history_and_stamps_time():
    order = walk(make_order(), OrderStatus.RESERVED, OrderStatus.CONFIRMED)
    paid = order.transition_to(OrderStatus.PAID, "Payment completed: pay-1", "payments")

    assert paid.paid_at is not None
    assert paid.updated_at >= order.updated_at
    entry = paid.last_history_entry
    assert (entry.status, entry.previous_status) == (OrderStatus.PAID, OrderStatus.CONFIRMED)
    assert entry.notes == "Payment completed: pay-1"
    assert entry.created_by == "payments"
    assert len(paid.status_history) == 4


def test_transitions_leave_previous_version_untouched():
    order = make_order()
    reserved = order.transition_to(OrderStatus.RESERVED)

    assert order.status is OrderStatus.PENDING
    assert len(order.status_history) == 1
    assert reserved is not order
    with pytest.raises(dataclasses.FrozenInstanceError):
        order.status = OrderStatus.CANCELLED


def test_cancel_rules():
    cancelled = make_order().cancel("changed my mind", "user-1")
    assert cancelled.status is OrderStatus.CANCELLED
    assert cancelled.cancelled_at is not None
    assert cancelled.last_history_entry.notes == "changed my mind"
    assert cancelled.is_final()

    shipped = walk(
        make_order(),
        OrderStatus.RESERVED,
        OrderStatus.CONFIRMED,
        OrderStatus.PAID,
        OrderStatus.SHIPPED,
    )
    assert not shipped.is_cancellable()
    with pytest.raises(InvalidTransition):
        shipped.cancel()

    # FAILED may move to CANCELLED through the state machine, but is not user-cancellable
    failed = make_order().transition_to(OrderStatus.FAILED)
    assert not failed.is_cancellable()
    assert failed.transition_to(OrderStatus.CANCELLED).status is OrderStatus.CANCELLED


def test_failed_order_can_be_retried():
    retried = walk(make_order(), OrderStatus.FAILED, OrderStatus.PENDING)
    assert retried.status is OrderStatus.PENDING
    assert [h.status for h in retried.status_history] == [
        OrderStatus.PENDING,
        OrderStatus.FAILED,
        OrderStatus.PENDING,
    ]


def test_item_refs_and_to_dict():
    order = make_order()
    assert order.item_refs()[0] == {"productId": "p-1", "quantity": 2, "sku": "NB-1"}

    data = order.to_dict()
    assert data["status"] == "PENDING"
    assert data["grand_total"] == "28.57"
    assert data["items"][1]["subtotal"] == "5.97"
    assert data["status_history"][0]["previous_status"] is None


def test_order_numbers_are_distinct():
    assert len({generate_order_number() for _ in range(50)}) == 50
