"""Operation facade shared by the scheduler and the CLI.

Both the scheduler and the manual trigger run operations by name through
``SyncService.run_operation``, so a scheduled run and a manual run execute
exactly the same code path.
"""

import logging
from collections.abc import Callable

from src.errors.domain import UnknownOperationError, ValidationError
from src.services.cleanup import CleanupTask
from src.services.export_orchestrator import ExportOrchestrator
from src.services.order_importer import OrderImporter
from src.services.run_results import RunSummary

logger = logging.getLogger(__name__)

CLEAN_LOGS = "clean-logs"
CATALOG_EXPORT = "catalog-export"
QUEUED_OFFER_EXPORT = "queued-offer-export"
QUEUED_SHIPMENT_EXPORT = "queued-shipment-export"
FULL_OFFER_EXPORT = "full-offer-export"
ORDER_IMPORT = "order-import"

OPERATIONS: tuple[str, ...] = (
    CLEAN_LOGS,
    CATALOG_EXPORT,
    QUEUED_OFFER_EXPORT,
    QUEUED_SHIPMENT_EXPORT,
    FULL_OFFER_EXPORT,
    ORDER_IMPORT,
)

# full-offer-export is manual only
SCHEDULED_OPERATIONS: tuple[str, ...] = (
    CLEAN_LOGS,
    CATALOG_EXPORT,
    QUEUED_OFFER_EXPORT,
    QUEUED_SHIPMENT_EXPORT,
    ORDER_IMPORT,
)

# Operations that accept full=True
_FULL_CAPABLE = frozenset({CATALOG_EXPORT})


class SyncService:
    """Runs named sync operations.

    Args:
        orchestrator: Export orchestrator.
        importer: Order importer.
        cleanup: Retention cleanup task.
    """

    def __init__(
        self,
        orchestrator: ExportOrchestrator,
        importer: OrderImporter,
        cleanup: CleanupTask,
    ) -> None:
        self._handlers: dict[str, Callable[..., RunSummary]] = {
            CLEAN_LOGS: lambda full, connection: cleanup.run_clean_logs(),
            CATALOG_EXPORT: lambda full, connection: orchestrator.run_catalog_export(
                full=full, connection=connection,
            ),
            QUEUED_OFFER_EXPORT: lambda full, connection: orchestrator.run_queued_offer_export(
                connection=connection,
            ),
            QUEUED_SHIPMENT_EXPORT: lambda full, connection: orchestrator.run_queued_shipment_export(
                connection=connection,
            ),
            FULL_OFFER_EXPORT: lambda full, connection: orchestrator.run_queued_offer_export(
                full=True, connection=connection,
            ),
            ORDER_IMPORT: lambda full, connection: importer.run_order_import(connection=connection),
        }

    def run_operation(
        self, name: str, full: bool = False, connection: str | None = None,
    ) -> RunSummary:
        """Run one operation by name.

        Args:
            name: One of OPERATIONS.
            full: Re-send every in-scope offer (catalog-export only).
            connection: Limit the run to one connection, by id or name.
                clean-logs is global and does not accept it.

        Returns:
            The operation's RunSummary.

        Raises:
            UnknownOperationError: If the name is not a known operation.
            ValidationError: If ``full`` or ``connection`` is passed to an
                operation that does not take it.
            NotFoundError: If ``connection`` names no active connection.
        """
        handler = self._handlers.get(name)
        if handler is None:
            raise UnknownOperationError(name, list(OPERATIONS))
        if full and name not in _FULL_CAPABLE:
            raise ValidationError(f"Operation '{name}' does not support a full run")
        if connection is not None and name == CLEAN_LOGS:
            raise ValidationError("clean-logs runs for all connections")

        logger.info(
            "Running %s%s%s", name, " (full)" if full else "",
            f" for {connection}" if connection else "",
        )
        summary = handler(full=full, connection=connection)
        logger.info("%s exit status %d", name, summary.exit_code)
        return summary
