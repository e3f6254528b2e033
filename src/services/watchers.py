"""Change watchers: turn host-store change signals into queued work.

The host store calls ``notify(entity_id)`` whenever an offer or shipment is
saved. The watcher decides which active connections the entity is in scope
for and enqueues one entry per connection. Repeated notifications before the
next drain collapse into the existing pending entry.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any

from src.db.models import EntityType
from src.services.connection_registry import ConnectionRegistry
from src.services.connection_types import ConnectionSnapshot
from src.services.host_store import HostStore
from src.services.work_queue import EnqueueResult, WorkQueue

logger = logging.getLogger(__name__)

_UNROUTABLE = object()


class ChangeWatcher(ABC):
    """Enqueues changed entities of one type for every in-scope connection.

    Args:
        registry: Source of the active connection set.
        queue: Durable work queue.
        host_store: Used to resolve scope (category, originating connection).
    """

    entity_types: tuple[EntityType, ...]

    def __init__(self, registry: ConnectionRegistry, queue: WorkQueue, host_store: HostStore) -> None:
        self._registry = registry
        self._queue = queue
        self._host_store = host_store

    def notify(self, entity_id: str) -> list[str]:
        """Handle one "entity changed" signal.

        Args:
            entity_id: Host-store id of the changed entity.

        Returns:
            Ids of the connections the entity was enqueued (or refreshed) for.
        """
        entity_id = str(entity_id)
        scope = self._resolve_scope(entity_id)
        if scope is _UNROUTABLE:
            return []

        enqueued: list[str] = []
        for connection in self._registry.list_active():
            if not self._in_scope(connection, entity_id, scope):
                continue
            for entity_type in self.entity_types:
                result = self._queue.enqueue(connection.id, entity_type, entity_id)
                if result is not EnqueueResult.deduplicated and connection.id not in enqueued:
                    enqueued.append(connection.id)

        logger.debug(
            "%s %s changed; queued for %d connection(s)",
            self.entity_types[0].value, entity_id, len(enqueued),
        )
        return enqueued

    @abstractmethod
    def _resolve_scope(self, entity_id: str) -> Any:
        """Look up what scope filtering needs to know about the entity."""

    @abstractmethod
    def _in_scope(self, connection: ConnectionSnapshot, entity_id: str, scope: Any) -> bool:
        """Whether the entity is exported to this connection."""


class OfferWatcher(ChangeWatcher):
    """Watches catalog offers (products and variations).

    Each change queues a stock/price entry and a product content entry.
    """

    entity_types = (EntityType.offer, EntityType.catalog)

    def _resolve_scope(self, entity_id: str) -> str | None:
        # A deleted offer has no category and stays in scope so the drain
        # reports it instead of the change being lost.
        offer = self._host_store.get_offer(entity_id)
        return offer.category if offer is not None else None

    def _in_scope(self, connection: ConnectionSnapshot, entity_id: str, scope: Any) -> bool:
        return connection.rules.offer_in_scope(entity_id, scope)


class ShipmentWatcher(ChangeWatcher):
    """Watches shipments of orders imported through a connection."""

    entity_types = (EntityType.shipment,)

    def _resolve_scope(self, entity_id: str) -> Any:
        shipment = self._host_store.get_shipment(entity_id)
        if shipment is None:
            logger.warning("Shipment %s not found in host store; nothing queued", entity_id)
            return _UNROUTABLE
        return shipment.connection_id

    def _in_scope(self, connection: ConnectionSnapshot, entity_id: str, scope: Any) -> bool:
        return connection.rules.shipment_in_scope(connection.id, scope)
