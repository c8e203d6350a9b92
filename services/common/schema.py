"""
Shared — messaging tables

Database per Service: each service owns its own MetaData, so the outbox and
the processed-event ledger are declared through factories and attached to
the caller's MetaData rather than shared between databases.
"""

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
)


def outbox_events_table(metadata: MetaData) -> Table:
    return Table(
        "outbox_events",
        metadata,
        Column("id", String(36), primary_key=True),
        Column("event_type", String(128), nullable=False),
        Column("aggregate_id", String(64), nullable=False),
        Column("payload", JSON, nullable=False),
        Column("published", Boolean, nullable=False, default=False),
        Column("failed", Boolean, nullable=False, default=False),
        Column("retry_count", Integer, nullable=False, default=0),
        Column("error", Text, nullable=True),
        Column("created_at", DateTime(timezone=True), nullable=False),
        Column("published_at", DateTime(timezone=True), nullable=True),
        Index("ix_outbox_events_pending", "published", "failed", "created_at"),
    )


def processed_events_table(metadata: MetaData) -> Table:
    return Table(
        "processed_events",
        metadata,
        Column("id", Integer, primary_key=True, autoincrement=True),
        # UNIQUE turns at-least-once delivery into exactly-once effect.
        Column("event_id", String(64), nullable=False, unique=True),
        Column("event_type", String(128), nullable=False),
        Column("payload", JSON, nullable=True),
        Column("processed_at", DateTime(timezone=True), nullable=False),
    )
