"""Host-store data interface.

The storefront that owns offers, shipments and orders is an external
collaborator. The sync core reaches it only through ``HostStore``; the CLI
builds a concrete implementation from a ``module:callable`` factory path in
the config file.
"""

import importlib
import logging
from abc import ABC, abstractmethod
from collections.abc import Iterable
from typing import Any

from src.services.marketplace_models import HostOffer, HostShipment, MarketplaceOrder

logger = logging.getLogger(__name__)


class HostStore(ABC):
    """CRUD-style accessors the sync core needs from the storefront."""

    @abstractmethod
    def list_offer_ids(self) -> Iterable[str]:
        """Return the ids of every offer the store currently sells."""

    @abstractmethod
    def get_offer(self, offer_id: str) -> HostOffer | None:
        """Return an offer, or None if it no longer exists."""

    @abstractmethod
    def get_shipment(self, shipment_id: str) -> HostShipment | None:
        """Return a shipment, or None if it no longer exists."""

    @abstractmethod
    def find_order_by_external_id(self, connection_id: str, external_id: str) -> str | None:
        """Return the host order id already created for a marketplace order."""

    @abstractmethod
    def create_order(self, connection_id: str, order: MarketplaceOrder) -> str:
        """Create a host order from a marketplace order and return its id.

        Raises:
            Exception: Any failure; the importer classifies it and retries
                the order on the next run.
        """


class HostStoreLoadError(Exception):
    """The configured host-store factory could not be resolved."""


def load_host_store(factory_path: str, options: dict[str, Any] | None = None) -> HostStore:
    """Build the host store from a ``package.module:callable`` path.

    Args:
        factory_path: Import path of a callable returning a HostStore.
        options: Keyword arguments passed to the callable.

    Returns:
        The HostStore instance.

    Raises:
        HostStoreLoadError: If the path is malformed, the module or callable
            cannot be found, or the result is not a HostStore.
    """
    module_path, sep, attr = factory_path.partition(":")
    if not sep or not module_path or not attr:
        raise HostStoreLoadError(
            f"Host store factory must look like 'package.module:callable' (got '{factory_path}')"
        )

    try:
        module = importlib.import_module(module_path)
    except ImportError as e:
        raise HostStoreLoadError(f"Cannot import host store module '{module_path}': {e}") from e

    factory = getattr(module, attr, None)
    if factory is None or not callable(factory):
        raise HostStoreLoadError(f"'{attr}' in '{module_path}' is not callable")

    store = factory(**(options or {}))
    if not isinstance(store, HostStore):
        raise HostStoreLoadError(
            f"{factory_path} returned {type(store).__name__}, not a HostStore"
        )
    logger.debug("Loaded host store %s from %s", type(store).__name__, factory_path)
    return store
