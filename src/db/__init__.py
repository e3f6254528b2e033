"""Database module for MarketSync state management and persistence."""

from src.db.connection import Database, get_database_url
from src.db.models import (
    Connection,
    EntityType,
    EntryStatus,
    EventType,
    ImportCursor,
    LogLevel,
    QueueEntry,
    SyncEvent,
)

__all__ = [
    # Models
    "Connection",
    "QueueEntry",
    "ImportCursor",
    "SyncEvent",
    # Enums
    "EntityType",
    "EntryStatus",
    "LogLevel",
    "EventType",
    # Connection
    "Database",
    "get_database_url",
]
