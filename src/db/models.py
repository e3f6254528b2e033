"""SQLAlchemy ORM models for the MarketSync state database.

This module defines the persisted state of the synchronization core:
marketplace connections, durable work queue entries, per-connection order
import cursors, and the operator-facing sync event log. Uses SQLAlchemy 2.0
style with Mapped and mapped_column.
"""

from datetime import UTC, datetime
from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    mapped_column,
)

# Fixed-width timestamps keep lexicographic order equal to chronological
# order, which the queue relies on for stale-claim and retention cutoffs.
TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def generate_uuid() -> str:
    """Generate a UUID4 string for primary keys."""
    return str(uuid4())


def to_iso(value: datetime) -> str:
    """Format an aware datetime as a fixed-width UTC ISO8601 string."""
    return value.astimezone(UTC).strftime(TIMESTAMP_FORMAT)


def utc_now_iso() -> str:
    """Generate current UTC timestamp in fixed-width ISO8601 format."""
    return to_iso(datetime.now(UTC))


# Enums matching the database schema constraints


class EntityType(str, Enum):
    """Kinds of queued work.

    An offer change queues both ``offer`` (stock and price) and ``catalog``
    (product content) entries, drained by separate operations.
    """

    offer = "offer"
    catalog = "catalog"
    shipment = "shipment"


class EntryStatus(str, Enum):
    """Status values for queue entries.

    Lifecycle: pending -> in_flight -> done
               in_flight -> pending (retryable failure, stale reclamation)
               in_flight -> failed (retry ceiling reached or non-retryable)
    """

    pending = "pending"
    in_flight = "in_flight"
    done = "done"
    failed = "failed"


TERMINAL_STATUSES: frozenset[str] = frozenset(
    {EntryStatus.done.value, EntryStatus.failed.value}
)


class LogLevel(str, Enum):
    """Severity levels for sync event entries."""

    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"


class EventType(str, Enum):
    """Categories of events recorded in the sync event log."""

    state_change = "state_change"
    api_call = "api_call"
    entity_event = "entity_event"
    order_event = "order_event"
    error = "error"


# SQLAlchemy Base


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


# Models


class Connection(Base):
    """One configured marketplace tenant.

    Attributes:
        id: UUID primary key.
        name: Unique operator-facing name.
        is_active: Only active connections are drained or imported.
        base_url: Optional per-connection API base URL override.
        encrypted_credentials: AES-256-GCM JSON envelope of the API keys.
        settings_json: JSON export rules (stock/price mapping, scope filters).
        created_at: ISO8601 creation timestamp.
        updated_at: ISO8601 last-update timestamp.
    """

    __tablename__ = "connections"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    is_active: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default="0"
    )
    base_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    encrypted_credentials: Mapped[str] = mapped_column(Text, nullable=False)
    settings_json: Mapped[str | None] = mapped_column(
        Text, nullable=True, default="{}"
    )
    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )
    updated_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )

    __table_args__ = (
        Index("idx_connections_active", "is_active"),
    )

    def __repr__(self) -> str:
        return (
            f"<Connection(name={self.name!r}, active={self.is_active!r})>"
        )


class QueueEntry(Base):
    """One unit of pending offer/shipment synchronization work.

    At most one pending row may exist per (connection, entity type, entity
    id); the partial unique index enforces it at the storage level.

    Attributes:
        id: UUID primary key.
        connection_id: FK to the owning connection.
        entity_type: 'offer', 'catalog' or 'shipment'.
        entity_id: Host-store identifier of the changed entity.
        status: pending, in_flight, done, failed.
        attempt_count: Number of failed delivery attempts so far.
        enqueued_at: Last change notification timestamp.
        available_at: Earliest time a pending entry may be claimed (backoff).
        claimed_at: Timestamp of the current claim, if in flight.
        claim_token: Token of the claim that owns this entry while in flight.
        completed_at: Timestamp of the terminal transition.
        last_error_code: E-XXXX code of the most recent failure.
        last_error: Sanitized message of the most recent failure.
        updated_at: Timestamp of the last state change.
    """

    __tablename__ = "queue_entries"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    connection_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("connections.id", ondelete="CASCADE"),
        nullable=False,
    )
    entity_type: Mapped[str] = mapped_column(String(20), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=EntryStatus.pending.value
    )
    attempt_count: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    enqueued_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )
    available_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )
    claimed_at: Mapped[str | None] = mapped_column(String(50), nullable=True)
    claim_token: Mapped[str | None] = mapped_column(String(36), nullable=True)
    completed_at: Mapped[str | None] = mapped_column(String(50), nullable=True)
    last_error_code: Mapped[str | None] = mapped_column(String(10), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    updated_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )

    __table_args__ = (
        Index(
            "uq_queue_entries_pending_entity",
            "connection_id",
            "entity_type",
            "entity_id",
            unique=True,
            sqlite_where=text("status = 'pending'"),
            postgresql_where=text("status = 'pending'"),
        ),
        Index(
            "idx_queue_entries_entity",
            "connection_id",
            "entity_type",
            "entity_id",
        ),
        Index(
            "idx_queue_entries_claim",
            "connection_id",
            "entity_type",
            "status",
            "available_at",
        ),
        Index("idx_queue_entries_claim_token", "claim_token"),
        Index("idx_queue_entries_status_updated", "status", "updated_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<QueueEntry(connection={self.connection_id!r}, "
            f"{self.entity_type}={self.entity_id!r}, status={self.status!r}, "
            f"attempts={self.attempt_count})>"
        )


class ImportCursor(Base):
    """Per-connection watermark of the last contiguously imported order.

    Attributes:
        connection_id: FK and primary key.
        position: Marketplace sequence position of the last imported order.
        last_external_id: Marketplace order id at that position.
        updated_at: ISO8601 timestamp of the last advance.
    """

    __tablename__ = "import_cursors"

    connection_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("connections.id", ondelete="CASCADE"),
        primary_key=True,
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_external_id: Mapped[str | None] = mapped_column(
        String(255), nullable=True
    )
    updated_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )

    def __repr__(self) -> str:
        return (
            f"<ImportCursor(connection={self.connection_id!r}, "
            f"position={self.position})>"
        )


class SyncEvent(Base):
    """Operator-visible record of a sync failure or state change.

    Attributes:
        id: UUID primary key.
        connection_id: Connection the event belongs to (None for global).
        operation: Operation name that produced the event.
        timestamp: ISO8601 timestamp.
        level: INFO, WARNING, ERROR.
        event_type: Event category.
        message: Human-readable description.
        details: Redacted JSON payload.
        error_code: E-XXXX code when the event records a failure.
    """

    __tablename__ = "sync_events"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    connection_id: Mapped[str | None] = mapped_column(
        String(36),
        ForeignKey("connections.id", ondelete="CASCADE"),
        nullable=True,
    )
    operation: Mapped[str] = mapped_column(String(50), nullable=False)
    timestamp: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )
    level: Mapped[str] = mapped_column(String(10), nullable=False)
    event_type: Mapped[str] = mapped_column(String(20), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    details: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_code: Mapped[str | None] = mapped_column(String(10), nullable=True)

    __table_args__ = (
        Index("idx_sync_events_connection", "connection_id"),
        Index("idx_sync_events_timestamp", "timestamp"),
    )

    def __repr__(self) -> str:
        return (
            f"<SyncEvent(operation={self.operation!r}, level={self.level!r}, "
            f"message={self.message[:40]!r})>"
        )
