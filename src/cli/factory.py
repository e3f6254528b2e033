"""Builds the sync stack from configuration.

CLI commands never construct services directly; they ask this module for a
``SyncContext`` and dispose of it afterwards. Tests pass their own database,
host store and client factory instead.
"""

import threading
from dataclasses import dataclass, field
from pathlib import Path

from src.cli.config import MarketSyncConfig
from src.db.connection import Database, get_database_url
from src.services.cleanup import CleanupTask
from src.services.connection_registry import ConnectionRegistry
from src.services.connection_types import ConnectionSnapshot
from src.services.credential_encryption import get_or_create_key
from src.services.export_orchestrator import ClientFactory, ExportOrchestrator
from src.services.host_store import HostStore, load_host_store
from src.services.marketplace_client import MarketplaceClient
from src.services.order_importer import OrderImporter
from src.services.scheduler import Scheduler
from src.services.sync_event_log import SyncEventLog
from src.services.sync_service import SyncService
from src.services.work_queue import QueuePolicy, WorkQueue
from src.services.watchers import OfferWatcher, ShipmentWatcher
from src.utils.paths import get_log_dir


class HostStoreNotConfiguredError(Exception):
    """The command needs a host store but ``host.factory`` is empty."""


def make_client_factory(config: MarketSyncConfig) -> ClientFactory:
    """Return a factory building one MarketplaceClient per connection."""
    def _factory(connection: ConnectionSnapshot) -> MarketplaceClient:
        credentials = connection.credentials
        if credentials is None or connection.base_url is None:
            raise ValueError(f"Connection {connection.name} has no usable credentials")
        return MarketplaceClient(
            base_url=connection.base_url,
            public_key=credentials.public_key,
            secret_key=credentials.secret_key,
            timeout=config.api.timeout_seconds,
        )

    return _factory


@dataclass
class SyncContext:
    """Everything a command needs, wired together."""

    config: MarketSyncConfig
    database: Database
    registry: ConnectionRegistry
    queue: WorkQueue
    events: SyncEventLog
    service: SyncService
    host_store: HostStore
    stop_event: threading.Event = field(default_factory=threading.Event)

    def offer_watcher(self) -> OfferWatcher:
        return OfferWatcher(self.registry, self.queue, self.host_store)

    def shipment_watcher(self) -> ShipmentWatcher:
        return ShipmentWatcher(self.registry, self.queue, self.host_store)

    def scheduler(self) -> Scheduler:
        return Scheduler(
            self.service,
            intervals=self.config.scheduler.intervals(),
            run_immediately=self.config.scheduler.run_immediately,
            stop_event=self.stop_event,
        )

    def close(self) -> None:
        self.database.dispose()


def open_database(config: MarketSyncConfig) -> Database:
    """Open (and create if needed) the configured state database."""
    url = get_database_url(config.database.url)
    if url.startswith("sqlite:///") and url != "sqlite:///:memory:":
        Path(url[len("sqlite:///"):]).expanduser().parent.mkdir(parents=True, exist_ok=True)
    database = Database(url, echo=config.database.echo)
    database.init()
    return database


def build_cleanup_task(
    config: MarketSyncConfig,
    queue: WorkQueue,
    events: SyncEventLog,
    log_dir: Path | None = None,
) -> CleanupTask:
    """Retention cleanup; needs no host store or marketplace access."""
    return CleanupTask(
        queue, events,
        queue_retention_days=config.retention.queue_days,
        event_retention_days=config.retention.events_days,
        log_retention_days=config.retention.log_files_days,
        log_dir=log_dir if log_dir is not None else get_log_dir(),
    )


def build_queue(config: MarketSyncConfig, database: Database) -> WorkQueue:
    """Work queue with the configured retry policy."""
    return WorkQueue(
        database,
        QueuePolicy(
            max_attempts=config.queue.max_attempts,
            retry_backoff_seconds=config.queue.retry_backoff_seconds,
            stale_claim_seconds=config.queue.stale_claim_seconds,
            dedup_window_seconds=config.queue.dedup_window_seconds,
        ),
    )


def build_context(
    config: MarketSyncConfig,
    database: Database | None = None,
    host_store: HostStore | None = None,
    client_factory: ClientFactory | None = None,
    key: bytes | None = None,
    log_dir: Path | None = None,
) -> SyncContext:
    """Wire the full sync stack.

    Args:
        config: Loaded configuration.
        database: Existing database (default: open the configured one).
        host_store: Host store (default: load ``config.host.factory``).
        client_factory: Marketplace client factory (default: real HTTP client).
        key: Credential key (default: resolve from env or key file).
        log_dir: Directory cleaned by clean-logs (default: platform log dir).

    Raises:
        HostStoreNotConfiguredError: If no host store is given or configured.
    """
    if host_store is None:
        if not config.host.factory:
            raise HostStoreNotConfiguredError(
                "host.factory is not set; point it at a 'package.module:callable' "
                "returning a HostStore"
            )
        host_store = load_host_store(config.host.factory, config.host.options)

    key = key if key is not None else get_or_create_key()
    database = database or open_database(config)
    stop_event = threading.Event()

    registry = ConnectionRegistry(database, key, default_base_url=config.api.base_url)
    queue = build_queue(config, database)
    events = SyncEventLog(database)
    client_factory = client_factory or make_client_factory(config)

    orchestrator = ExportOrchestrator(
        registry, queue, host_store, client_factory, events,
        batch_size=config.queue.batch_size,
        max_batches_per_run=config.queue.max_batches_per_run,
        max_workers=config.concurrency.max_workers,
        stop_event=stop_event,
    )
    importer = OrderImporter(
        database, registry, host_store, client_factory, events,
        max_pages_per_run=config.queue.max_order_pages_per_run,
        max_workers=config.concurrency.max_workers,
        stop_event=stop_event,
    )
    cleanup = build_cleanup_task(config, queue, events, log_dir)

    return SyncContext(
        config=config,
        database=database,
        registry=registry,
        queue=queue,
        events=events,
        service=SyncService(orchestrator, importer, cleanup),
        host_store=host_store,
        stop_event=stop_event,
    )
