"""
Order Service — database schema

Database per Service: these tables live in the order service's own
database, next to its outbox and its processed-event ledger.
"""

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
)

from services.common.schema import outbox_events_table, processed_events_table

metadata = MetaData()

orders = Table(
    "orders",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("order_number", String(32), nullable=False, unique=True),
    Column("user_id", String(64), nullable=False, index=True),
    Column("user_email", String(255), nullable=False),
    Column("status", String(16), nullable=False, index=True),
    Column("total", Numeric(12, 2), nullable=False),
    Column("tax", Numeric(12, 2), nullable=False),
    Column("shipping", Numeric(12, 2), nullable=False),
    Column("grand_total", Numeric(12, 2), nullable=False),
    Column("shipping_address", JSON, nullable=True),
    Column("billing_address", JSON, nullable=True),
    Column("notes", Text, nullable=True),
    Column("paid_at", DateTime(timezone=True), nullable=True),
    Column("shipped_at", DateTime(timezone=True), nullable=True),
    Column("delivered_at", DateTime(timezone=True), nullable=True),
    Column("cancelled_at", DateTime(timezone=True), nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

order_items = Table(
    "order_items",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("order_id", String(36), ForeignKey("orders.id"), nullable=False, index=True),
    Column("position", Integer, nullable=False),
    Column("product_id", String(64), nullable=False),
    Column("product_name", String(255), nullable=False),
    Column("product_sku", String(64), nullable=False),
    Column("quantity", Integer, nullable=False),
    Column("unit_price", Numeric(12, 2), nullable=False),
    Column("subtotal", Numeric(12, 2), nullable=False),
)

order_status_history = Table(
    "order_status_history",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("order_id", String(36), ForeignKey("orders.id"), nullable=False, index=True),
    Column("position", Integer, nullable=False),
    Column("status", String(16), nullable=False),
    Column("previous_status", String(16), nullable=True),
    Column("notes", Text, nullable=False, default=""),
    Column("created_by", String(64), nullable=False, default="system"),
    Column("created_at", DateTime(timezone=True), nullable=False),
)

outbox_events = outbox_events_table(metadata)
processed_events = processed_events_table(metadata)
