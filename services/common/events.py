"""
Shared — event envelope

Every message on the broker, in either direction, is an EventEnvelope
serialized as camelCase JSON:

    {eventId, eventType, aggregateId, payload, timestamp, correlationId?}

Routing key convention: "<domain>.<eventtype-lowercase>",
e.g. orders.ordercreated, inventory.stockreserved.
"""

from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

ORDERS = "orders"
INVENTORY = "inventory"
PAYMENTS = "payments"
PRODUCTS = "products"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; everything stored is UTC.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def new_id() -> str:
    return str(uuid4())


def routing_key(domain: str, event_type: str) -> str:
    return f"{domain}.{event_type.lower()}"


class CamelModel(BaseModel):
    """Wire model: snake_case in Python, camelCase in JSON."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class EventEnvelope(CamelModel):
    event_id: str = Field(default_factory=new_id)
    event_type: str
    aggregate_id: str
    payload: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)
    correlation_id: str | None = None

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)

    @classmethod
    def from_json(cls, raw: str | bytes) -> "EventEnvelope":
        return cls.model_validate_json(raw)


class EventItem(CamelModel):
    """Line item as carried by order and stock events."""

    product_id: str
    quantity: int
    sku: str | None = None
