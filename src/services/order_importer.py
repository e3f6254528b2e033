"""Order importer: pulls marketplace orders into the host store.

Orders are read per connection in the API's delivery order, starting after
the connection's persisted cursor. Each order is created in the host store
unless it already exists there. The cursor advances only across a
contiguous run of successes, so an order that failed is offered again on the
next run even though later orders were imported; those later orders are then
recognized as duplicates.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any

from src.db.connection import Database
from src.db.models import EventType, ImportCursor, LogLevel, utc_now_iso
from src.errors import SyncError, classify_exception
from src.services.connection_registry import ConnectionRegistry
from src.services.connection_types import ConnectionSnapshot
from src.services.export_orchestrator import ClientFactory
from src.services.host_store import HostStore
from src.services.marketplace_client import MarketplaceError
from src.services.marketplace_models import MarketplaceOrder
from src.services.run_results import ConnectionRunResult, RunSummary
from src.services.sync_event_log import SyncEventLog
from src.utils.redaction import sanitize_error_message

logger = logging.getLogger(__name__)

OPERATION = "order-import"

DEFAULT_MAX_PAGES_PER_RUN = 20


class OrderImporter:
    """Imports marketplace orders for every active connection.

    Args:
        database: State database (owns the import cursors).
        registry: Source of the active connection snapshot.
        host_store: Target of created orders.
        client_factory: Builds a marketplace client for a connection.
        events: Sync event log.
        max_pages_per_run: Maximum order pages fetched per connection per run.
        max_workers: Connections imported in parallel (1 = sequential).
        stop_event: Set to stop between connections and between pages.
    """

    def __init__(
        self,
        database: Database,
        registry: ConnectionRegistry,
        host_store: HostStore,
        client_factory: ClientFactory,
        events: SyncEventLog,
        max_pages_per_run: int = DEFAULT_MAX_PAGES_PER_RUN,
        max_workers: int = 1,
        stop_event: threading.Event | None = None,
    ) -> None:
        self._database = database
        self._registry = registry
        self._host_store = host_store
        self._client_factory = client_factory
        self._events = events
        self._max_pages = max_pages_per_run
        self._max_workers = max(1, max_workers)
        self._stop_event = stop_event or threading.Event()

    def run_order_import(self, connection: str | None = None) -> RunSummary:
        """Import new orders for all active connections, or just ``connection``."""
        summary = RunSummary(operation=OPERATION, started_at=utc_now_iso())
        connections = self._registry.list_active(connection)

        if self._max_workers > 1 and len(connections) > 1:
            with ThreadPoolExecutor(
                max_workers=min(self._max_workers, len(connections)),
                thread_name_prefix="import",
            ) as pool:
                futures = [pool.submit(self._import_connection, c) for c in connections]
                summary.results = [future.result() for future in futures]
        else:
            summary.results = [self._import_connection(c) for c in connections]

        summary.stopped = self._stop_event.is_set()
        summary.finished_at = utc_now_iso()
        for key in ("imported", "duplicates", "failed"):
            summary.totals[key] = sum(getattr(result, key) for result in summary.results)
        logger.info(
            "%s finished: %d imported, %d duplicate(s), %d failed",
            OPERATION, summary.totals["imported"], summary.totals["duplicates"],
            summary.totals["failed"],
        )
        return summary

    # --- Cursor ---

    def get_cursor(self, connection_id: str) -> int:
        """Position of the last contiguously imported order (0 if none)."""
        with self._database.session() as session:
            cursor = session.get(ImportCursor, connection_id)
            return cursor.position if cursor is not None else 0

    def _advance_cursor(self, connection_id: str, order: MarketplaceOrder) -> None:
        with self._database.session() as session:
            cursor = session.get(ImportCursor, connection_id)
            if cursor is None:
                session.add(ImportCursor(
                    connection_id=connection_id,
                    position=order.position,
                    last_external_id=order.external_id,
                    updated_at=utc_now_iso(),
                ))
            elif order.position > cursor.position:
                cursor.position = order.position
                cursor.last_external_id = order.external_id
                cursor.updated_at = utc_now_iso()

    # --- Per connection ---

    def _import_connection(self, connection: ConnectionSnapshot) -> ConnectionRunResult:
        result = ConnectionRunResult(connection.id, connection.name)

        if self._stop_event.is_set():
            result.skipped_reason = "stopped"
            return result
        if connection.config_error is not None:
            result.error = connection.config_error
            self._events.record_failure(OPERATION, connection.config_error, connection_id=connection.id)
            return result
        if not connection.rules.import_orders:
            result.skipped_reason = "disabled"
            return result

        try:
            with self._client_factory(connection) as client:
                self._import_orders(connection, client, result)
        except Exception as e:
            error = classify_exception(e, connection=connection.name)
            if not isinstance(e, (MarketplaceError, SyncError)):
                logger.exception("Unexpected failure importing orders from %s", connection.name)
            result.error = error
            self._events.record_failure(OPERATION, error, connection_id=connection.id)

        if result.imported or result.failed:
            self._events.log(
                OPERATION,
                LogLevel.INFO if result.ok and not result.failed else LogLevel.WARNING,
                EventType.order_event,
                f"Imported {result.imported} order(s) from {connection.name}, "
                f"{result.failed} failed",
                details=result.to_dict(),
                connection_id=connection.id,
            )
        return result

    def _import_orders(
        self, connection: ConnectionSnapshot, client: Any, result: ConnectionRunResult,
    ) -> None:
        after = self.get_cursor(connection.id)
        result.cursor = after
        gap = False

        for _ in range(self._max_pages):
            if self._stop_event.is_set():
                result.skipped_reason = "stopped"
                return
            page = client.list_orders(after=after, limit=connection.rules.order_page_size)
            for order in page.orders:
                if self._import_order(connection, client, order, result):
                    if not gap:
                        self._advance_cursor(connection.id, order)
                        result.cursor = max(result.cursor or 0, order.position)
                else:
                    gap = True
                after = max(after, order.position)
            if not page.has_more or not page.orders:
                return

    def _import_order(
        self, connection: ConnectionSnapshot, client: Any, order: MarketplaceOrder,
        result: ConnectionRunResult,
    ) -> bool:
        """Create one order in the host store.

        Returns:
            True if the order now exists in the host store.
        """
        try:
            existing = self._host_store.find_order_by_external_id(connection.id, order.external_id)
            if existing is not None:
                logger.debug(
                    "E-5001: order %s from %s already imported as %s",
                    order.external_id, connection.name, existing,
                )
                result.duplicates += 1
                return True
            host_order_id = self._host_store.create_order(connection.id, order)
        except Exception as e:
            error = SyncError.from_code(
                "E-2003",
                external_id=order.external_id,
                reason=sanitize_error_message(str(e), max_length=500) or type(e).__name__,
                entity_ids=[order.external_id],
                details={"position": order.position, "exception_type": type(e).__name__},
            )
            result.failed += 1
            self._events.record_failure(OPERATION, error, connection_id=connection.id)
            return False

        result.imported += 1
        logger.info(
            "Imported order %s from %s as host order %s",
            order.external_id, connection.name, host_order_id,
        )

        try:
            client.acknowledge_order(order.external_id, host_order_id)
        except MarketplaceError as e:
            error = classify_exception(e, connection=connection.name, entity_ids=[order.external_id])
            self._events.record_failure(
                OPERATION, error, connection_id=connection.id, level=LogLevel.WARNING,
            )
        return True
