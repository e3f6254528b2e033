"""Test helper utilities: in-memory host store and marketplace fakes."""

from tests.helpers.fake_host_store import FakeHostStore, make_offer, make_shipment
from tests.helpers.fake_marketplace import (
    FakeClientFactory,
    FakeMarketplaceClient,
    make_order,
)

__all__ = [
    "FakeClientFactory",
    "FakeHostStore",
    "FakeMarketplaceClient",
    "make_offer",
    "make_order",
    "make_shipment",
]
