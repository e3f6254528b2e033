"""Export orchestrator: drains the work queues into the marketplace API.

Each run snapshots the active connections once and drains every connection
independently, optionally on a thread pool. A connection's failure is
classified, recorded and reported in its own result; it never aborts or
corrupts the drain of another connection.

Per-batch outcome handling:
    accepted items        -> mark_done
    rejected items        -> mark_failed(retryable=True), drain continues
    missing host entities -> mark_failed(retryable=False)
    auth rejected         -> release (no attempt consumed), connection stops
    anything else         -> mark_failed(retryable=True) for the batch,
                             connection stops for this run
"""

import logging
import threading
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from contextlib import AbstractContextManager
from dataclasses import dataclass
from typing import Any

from src.db.models import EntityType, EventType, LogLevel, utc_now_iso
from src.errors import SyncError, classify_exception
from src.services.connection_registry import ConnectionRegistry
from src.services.connection_types import ConnectionSnapshot, ExportRules
from src.services.host_store import HostStore
from src.services.marketplace_client import MarketplaceAuthError, MarketplaceError
from src.services.marketplace_models import BatchResult
from src.services.payload_builder import (
    build_catalog_item,
    build_offer_item,
    build_shipment_item,
)
from src.services.run_results import ConnectionRunResult, RunSummary
from src.services.sync_event_log import SyncEventLog
from src.services.work_queue import ExportBatch, WorkQueue

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 100
DEFAULT_MAX_BATCHES_PER_RUN = 10


ClientFactory = Callable[[ConnectionSnapshot], AbstractContextManager]

# Builder outcome for an entity the host store still has but which no
# longer belongs to the connection's scope.
_OUT_OF_SCOPE = object()


@dataclass(frozen=True)
class _ExportKind:
    operation: str
    entity_type: EntityType
    build: Callable[[HostStore, ConnectionSnapshot, str], Any]
    send: Callable[[Any, list[dict[str, Any]]], BatchResult]
    enabled: Callable[[ExportRules], bool]


def _build_catalog(host_store: HostStore, connection: ConnectionSnapshot, offer_id: str) -> Any:
    offer = host_store.get_offer(offer_id)
    if offer is None:
        return None
    if not connection.rules.offer_in_scope(offer_id, offer.category):
        return _OUT_OF_SCOPE
    return build_catalog_item(offer, connection.rules)


def _build_offer(host_store: HostStore, connection: ConnectionSnapshot, offer_id: str) -> Any:
    offer = host_store.get_offer(offer_id)
    if offer is None:
        return None
    if not connection.rules.offer_in_scope(offer_id, offer.category):
        return _OUT_OF_SCOPE
    return build_offer_item(offer, connection.rules)


def _build_shipment(host_store: HostStore, connection: ConnectionSnapshot, shipment_id: str) -> Any:
    shipment = host_store.get_shipment(shipment_id)
    if shipment is None:
        return None
    if not connection.rules.shipment_in_scope(connection.id, shipment.connection_id):
        return _OUT_OF_SCOPE
    return build_shipment_item(shipment)


def _offers_enabled(rules: ExportRules) -> bool:
    return rules.export_offers


def _shipments_enabled(rules: ExportRules) -> bool:
    return rules.export_shipments


CATALOG_EXPORT = _ExportKind(
    operation="catalog-export",
    entity_type=EntityType.catalog,
    build=_build_catalog,
    send=lambda client, items: client.export_catalog(items),
    enabled=_offers_enabled,
)
OFFER_EXPORT = _ExportKind(
    operation="queued-offer-export",
    entity_type=EntityType.offer,
    build=_build_offer,
    send=lambda client, items: client.export_offers(items),
    enabled=_offers_enabled,
)
FULL_OFFER_EXPORT = _ExportKind(
    operation="full-offer-export",
    entity_type=EntityType.offer,
    build=_build_offer,
    send=lambda client, items: client.export_offers(items),
    enabled=_offers_enabled,
)
SHIPMENT_EXPORT = _ExportKind(
    operation="queued-shipment-export",
    entity_type=EntityType.shipment,
    build=_build_shipment,
    send=lambda client, items: client.export_shipments(items),
    enabled=_shipments_enabled,
)


class ExportOrchestrator:
    """Drains offer and shipment queues for every active connection.

    Args:
        registry: Source of the active connection snapshot.
        queue: Durable work queue.
        host_store: Source of offer and shipment data.
        client_factory: Builds a marketplace client (context manager) for a
            connection.
        events: Sync event log for failures and run summaries.
        batch_size: Maximum entries per claimed batch.
        max_batches_per_run: Maximum batches drained per connection per run.
        max_workers: Connections drained in parallel (1 = sequential).
        stop_event: Set to stop between connections and between batches.
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        queue: WorkQueue,
        host_store: HostStore,
        client_factory: ClientFactory,
        events: SyncEventLog,
        batch_size: int = DEFAULT_BATCH_SIZE,
        max_batches_per_run: int = DEFAULT_MAX_BATCHES_PER_RUN,
        max_workers: int = 1,
        stop_event: threading.Event | None = None,
    ) -> None:
        self._registry = registry
        self._queue = queue
        self._host_store = host_store
        self._client_factory = client_factory
        self._events = events
        self._batch_size = batch_size
        self._max_batches = max_batches_per_run
        self._max_workers = max(1, max_workers)
        self._stop_event = stop_event or threading.Event()

    # --- Operations ---

    def run_catalog_export(self, full: bool = False, connection: str | None = None) -> RunSummary:
        """Send full product content for queued (or, with ``full``, all) offers.

        Drains the ``catalog`` queue, which is separate from the stock/price
        ``offer`` queue, so content changes are exported even after the
        frequent offer export has sent the same offer.

        Args:
            full: Re-enqueue every in-scope offer first.
            connection: Run for this connection (id or name) only.
        """
        return self._run(CATALOG_EXPORT, full, connection)

    def run_queued_offer_export(
        self, full: bool = False, connection: str | None = None,
    ) -> RunSummary:
        """Send stock/price for queued (or, with ``full``, all) offers."""
        return self._run(FULL_OFFER_EXPORT if full else OFFER_EXPORT, full, connection)

    def run_queued_shipment_export(self, connection: str | None = None) -> RunSummary:
        """Send tracking information for queued shipments."""
        return self._run(SHIPMENT_EXPORT, False, connection)

    # --- Internals ---

    def _run(self, kind: _ExportKind, full: bool, connection: str | None) -> RunSummary:
        summary = RunSummary(operation=kind.operation, started_at=utc_now_iso())
        connections = self._registry.list_active(connection)

        if self._max_workers > 1 and len(connections) > 1:
            with ThreadPoolExecutor(
                max_workers=min(self._max_workers, len(connections)),
                thread_name_prefix="export",
            ) as pool:
                futures = [
                    pool.submit(self._export_connection, kind, connection, full)
                    for connection in connections
                ]
                summary.results = [future.result() for future in futures]
        else:
            summary.results = [
                self._export_connection(kind, connection, full)
                for connection in connections
            ]

        summary.stopped = self._stop_event.is_set()
        summary.finished_at = utc_now_iso()
        for key in ("enqueued", "exported", "rejected", "missing", "retried", "failed"):
            summary.totals[key] = sum(getattr(result, key) for result in summary.results)
        logger.info(
            "%s finished: %d connection(s), %d exported, %d with errors",
            kind.operation, len(summary.results), summary.totals["exported"],
            len(summary.errors),
        )
        return summary

    def _export_connection(
        self, kind: _ExportKind, connection: ConnectionSnapshot, full: bool,
    ) -> ConnectionRunResult:
        result = ConnectionRunResult(connection.id, connection.name)

        if self._stop_event.is_set():
            result.skipped_reason = "stopped"
            return result
        if connection.config_error is not None:
            result.error = connection.config_error
            self._events.record_failure(kind.operation, connection.config_error, connection_id=connection.id)
            return result
        if not kind.enabled(connection.rules):
            result.skipped_reason = "disabled"
            return result

        try:
            if full:
                result.enqueued = self._enqueue_all_offers(connection, kind.entity_type)
            with self._client_factory(connection) as client:
                self._drain(kind, connection, client, result)
        except Exception as e:
            error = classify_exception(e, connection=connection.name)
            if not isinstance(e, (MarketplaceError, SyncError)):
                logger.exception("Unexpected failure exporting to %s", connection.name)
            result.error = error
            self._events.record_failure(kind.operation, error, connection_id=connection.id)

        if result.batches or result.enqueued:
            self._events.log(
                kind.operation,
                LogLevel.INFO if result.ok else LogLevel.WARNING,
                EventType.state_change,
                f"{kind.operation} to {connection.name}: {result.exported} exported, "
                f"{result.rejected} rejected, {result.missing} missing",
                details=result.to_dict(),
                connection_id=connection.id,
            )
        return result

    def _enqueue_all_offers(self, connection: ConnectionSnapshot, entity_type: EntityType) -> int:
        count = 0
        for offer_id in self._host_store.list_offer_ids():
            offer = self._host_store.get_offer(str(offer_id))
            if offer is None or not connection.rules.offer_in_scope(str(offer_id), offer.category):
                continue
            self._queue.enqueue(connection.id, entity_type, str(offer_id))
            count += 1
        logger.info("Queued %d offers for full export to %s", count, connection.name)
        return count

    def _drain(
        self, kind: _ExportKind, connection: ConnectionSnapshot, client: Any,
        result: ConnectionRunResult,
    ) -> None:
        # Entries returned to pending during this drain wait for the next run
        started = self._queue.now()
        for _ in range(self._max_batches):
            if self._stop_event.is_set():
                result.skipped_reason = "stopped"
                return
            batch = self._queue.claim_batch(
                connection.id, kind.entity_type, self._batch_size, available_before=started,
            )
            if not batch.entries:
                return
            result.batches += 1
            if not self._export_batch(kind, connection, client, batch, result):
                return

    def _export_batch(
        self, kind: _ExportKind, connection: ConnectionSnapshot, client: Any,
        batch: ExportBatch, result: ConnectionRunResult,
    ) -> bool:
        """Export one claimed batch and settle every entry.

        Returns:
            False when the connection should stop draining for this run.
        """
        try:
            items: list[dict[str, Any]] = []
            out_of_scope: list[str] = []
            for entity_id in batch.entity_ids:
                item = kind.build(self._host_store, connection, entity_id)
                if item is None:
                    self._fail_missing(kind, connection, batch, entity_id)
                    result.missing += 1
                elif item is _OUT_OF_SCOPE:
                    out_of_scope.append(entity_id)
                else:
                    items.append(item)

            if out_of_scope:
                result.skipped += self._queue.mark_done(batch, batch.entry_ids_for(out_of_scope))
            if not items:
                return True

            batch_result = kind.send(client, items)
        except MarketplaceAuthError:
            self._queue.release(batch)
            raise
        except Exception as e:
            error = classify_exception(e, connection=connection.name, entity_ids=batch.entity_ids)
            if not isinstance(e, MarketplaceError):
                logger.exception("Unexpected failure exporting batch to %s", connection.name)
            counts = self._queue.mark_failed(batch, retryable=True, error=error)
            result.retried += counts["retried"]
            result.failed += counts["failed"]
            result.error = error
            self._events.record_failure(kind.operation, error, connection_id=connection.id)
            return False

        result.exported += self._queue.mark_done(batch, batch.entry_ids_for(batch_result.accepted))

        for rejected in batch_result.rejected:
            error = SyncError.from_code(
                "E-2001",
                entity_type=kind.entity_type.value,
                entity_id=rejected.id,
                reason=rejected.message,
                entity_ids=[rejected.id],
                details={"marketplace_code": rejected.code},
            )
            counts = self._queue.mark_failed(
                batch, retryable=True, error=error,
                entry_ids=batch.entry_ids_for([rejected.id]),
            )
            result.rejected += 1
            result.retried += counts["retried"]
            result.failed += counts["failed"]
            self._events.record_failure(
                kind.operation, error, connection_id=connection.id, level=LogLevel.WARNING,
            )
        return True

    def _fail_missing(
        self, kind: _ExportKind, connection: ConnectionSnapshot, batch: ExportBatch,
        entity_id: str,
    ) -> None:
        error = SyncError.from_code(
            "E-1003",
            entity_type=kind.entity_type.value,
            entity_id=entity_id,
            entity_ids=[entity_id],
        )
        self._queue.mark_failed(
            batch, retryable=False, error=error, entry_ids=batch.entry_ids_for([entity_id]),
        )
        self._events.record_failure(
            kind.operation, error, connection_id=connection.id, level=LogLevel.WARNING,
        )
