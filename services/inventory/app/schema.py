"""
Inventory Service — database schema

The inventory row carries the current levels; inventory_movements is the
append-only journal of every change, written in the same transaction.
"""

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
)

from services.common.schema import outbox_events_table, processed_events_table

metadata = MetaData()

inventory = Table(
    "inventory",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("product_id", String(64), nullable=False, unique=True),
    Column("sku", String(64), nullable=False, unique=True),
    Column("quantity", Integer, nullable=False, default=0),
    Column("reserved", Integer, nullable=False, default=0),
    Column("min_stock", Integer, nullable=False, default=10),
    Column("reorder_point", Integer, nullable=False, default=20),
    Column("location", String(128), nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    CheckConstraint("reserved >= 0 AND reserved <= quantity", name="ck_inventory_reserved"),
)

inventory_movements = Table(
    "inventory_movements",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("inventory_id", String(36), ForeignKey("inventory.id"), nullable=False, index=True),
    Column("type", String(16), nullable=False),
    Column("quantity", Integer, nullable=False),
    Column("reason", Text, nullable=False),
    Column("order_id", String(36), nullable=True, index=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
)

outbox_events = outbox_events_table(metadata)
processed_events = processed_events_table(metadata)
