"""Operator-facing sync event log.

Persists failures and notable state changes of sync operations to the
``sync_events`` table, with sensitive fields redacted from the details. Every
record is mirrored to the stdlib logger at the matching level.

Usage:
    events = SyncEventLog(database)
    events.log_info("order-import", EventType.order_event, "Imported 3 orders",
                    connection_id=connection.id)
    events.record_failure("queued-offer-export", error, connection_id=connection.id)
"""

import json
import logging
from datetime import datetime
from typing import Any

from sqlalchemy import delete, select

from src.db.connection import Database
from src.db.models import EventType, LogLevel, SyncEvent, to_iso, utc_now_iso
from src.errors.formatter import SyncError
from src.utils.redaction import redact_sensitive, sanitize_error_message

logger = logging.getLogger(__name__)

_LOGGING_LEVELS = {
    LogLevel.INFO: logging.INFO,
    LogLevel.WARNING: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
}


class SyncEventLog:
    """Writes and queries sync events.

    Args:
        database: State database. Each event is committed in its own unit of
            work so it survives a failure of the surrounding operation.
    """

    def __init__(self, database: Database) -> None:
        self._database = database

    def log(
        self,
        operation: str,
        level: LogLevel,
        event_type: EventType,
        message: str,
        details: dict[str, Any] | None = None,
        connection_id: str | None = None,
        error_code: str | None = None,
    ) -> str:
        """Persist one event.

        Args:
            operation: Operation name that produced the event.
            level: Severity level.
            event_type: Event category.
            message: Human-readable description.
            details: Structured context; redacted and JSON-encoded.
            connection_id: Connection the event belongs to.
            error_code: E-XXXX code for failure events.

        Returns:
            Id of the created event.
        """
        details_json: str | None = None
        if details is not None:
            details_json = json.dumps(redact_sensitive(details), default=str)

        message = sanitize_error_message(message)
        logger.log(_LOGGING_LEVELS[level], "[%s] %s", operation, message)

        with self._database.session() as session:
            event = SyncEvent(
                connection_id=connection_id,
                operation=operation,
                timestamp=utc_now_iso(),
                level=level.value,
                event_type=event_type.value,
                message=message,
                details=details_json,
                error_code=error_code,
            )
            session.add(event)
            session.flush()
            return event.id

    def log_info(self, operation: str, event_type: EventType, message: str, **kwargs: Any) -> str:
        return self.log(operation, LogLevel.INFO, event_type, message, **kwargs)

    def log_warning(self, operation: str, event_type: EventType, message: str, **kwargs: Any) -> str:
        return self.log(operation, LogLevel.WARNING, event_type, message, **kwargs)

    def log_error(self, operation: str, event_type: EventType, message: str, **kwargs: Any) -> str:
        return self.log(operation, LogLevel.ERROR, event_type, message, **kwargs)

    def record_failure(
        self,
        operation: str,
        error: SyncError,
        connection_id: str | None = None,
        level: LogLevel = LogLevel.ERROR,
    ) -> str:
        """Persist a classified failure with its code and affected entities."""
        details: dict[str, Any] = {
            "category": error.category.value,
            "retryable": error.is_retryable,
        }
        if error.entity_ids:
            details["entity_ids"] = error.entity_ids
        if error.details:
            details["context"] = error.details
        return self.log(
            operation,
            level,
            EventType.error,
            str(error),
            details=details,
            connection_id=connection_id,
            error_code=error.code,
        )

    def recent(
        self,
        connection_id: str | None = None,
        level: LogLevel | None = None,
        limit: int = 50,
    ) -> list[dict[str, Any]]:
        """Return the newest events first."""
        with self._database.session() as session:
            query = select(SyncEvent).order_by(SyncEvent.timestamp.desc()).limit(limit)
            if connection_id is not None:
                query = query.where(SyncEvent.connection_id == connection_id)
            if level is not None:
                query = query.where(SyncEvent.level == level.value)
            return [
                {
                    "id": event.id,
                    "connection_id": event.connection_id,
                    "operation": event.operation,
                    "timestamp": event.timestamp,
                    "level": event.level,
                    "event_type": event.event_type,
                    "message": event.message,
                    "error_code": event.error_code,
                    "details": json.loads(event.details) if event.details else None,
                }
                for event in session.scalars(query).all()
            ]

    def purge_before(self, cutoff: datetime) -> int:
        """Delete events older than ``cutoff`` (aware datetime)."""
        with self._database.session() as session:
            result = session.execute(
                delete(SyncEvent)
                .where(SyncEvent.timestamp < to_iso(cutoff))
                .execution_options(synchronize_session=False)
            )
            return result.rowcount
