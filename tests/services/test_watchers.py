"""Tests for offer and shipment change watchers."""

from src.services.watchers import OfferWatcher, ShipmentWatcher
from src.services.work_queue import QueuePolicy, WorkQueue


def _pending(queue, connection_id, entity_type):
    return [
        entry["entity_id"]
        for entry in queue.list_entries(connection_id, entity_type, status="pending")
    ]


class TestOfferWatcher:

    def test_enqueues_for_every_active_connection(
        self, registry, queue, host_store, make_connection,
    ):
        a = make_connection("shop-a")
        b = make_connection("shop-b")
        make_connection("shop-off", active=False)
        host_store.add_offer("42")

        queued = OfferWatcher(registry, queue, host_store).notify("42")

        assert sorted(queued) == sorted([a, b])
        assert _pending(queue, a, "offer") == ["42"]
        assert _pending(queue, b, "offer") == ["42"]
        assert _pending(queue, a, "catalog") == ["42"]

    def test_category_scope_filters_connections(self, registry, queue, host_store, make_connection):
        shoes = make_connection("shoes", settings={"include_categories": ["shoes"]})
        hats = make_connection("hats", settings={"include_categories": ["hats"]})
        host_store.add_offer("42", category="shoes")

        queued = OfferWatcher(registry, queue, host_store).notify("42")

        assert queued == [shoes]
        assert _pending(queue, hats, "offer") == []

    def test_excluded_offer_and_disabled_export(self, registry, queue, host_store, make_connection):
        make_connection("excl", settings={"exclude_offer_ids": ["42"]})
        make_connection("no-offers", settings={"export_offers": False})
        host_store.add_offer("42")

        assert OfferWatcher(registry, queue, host_store).notify("42") == []

    def test_repeated_notifications_keep_one_pending_entry(
        self, registry, queue, host_store, make_connection,
    ):
        a = make_connection("shop-a")
        host_store.add_offer("42")
        watcher = OfferWatcher(registry, queue, host_store)

        for _ in range(3):
            watcher.notify("42")

        assert _pending(queue, a, "offer") == ["42"]
        assert _pending(queue, a, "catalog") == ["42"]

    def test_dedup_window_reports_no_new_work(
        self, database, registry, host_store, make_connection,
    ):
        a = make_connection("shop-a")
        host_store.add_offer("42")
        watcher = OfferWatcher(registry, WorkQueue(database, QueuePolicy(dedup_window_seconds=300)), host_store)

        assert watcher.notify("42") == [a]
        assert watcher.notify("42") == []

    def test_deleted_offer_is_still_queued(self, registry, queue, host_store, make_connection):
        a = make_connection("shop-a", settings={"include_categories": ["shoes"]})

        assert OfferWatcher(registry, queue, host_store).notify("gone") == [a]

    def test_numeric_ids_are_normalized(self, registry, queue, host_store, make_connection):
        a = make_connection("shop-a")
        host_store.add_offer("7")

        OfferWatcher(registry, queue, host_store).notify(7)
        assert _pending(queue, a, "offer") == ["7"]


class TestShipmentWatcher:

    def test_enqueues_only_for_originating_connection(
        self, registry, queue, host_store, make_connection,
    ):
        a = make_connection("shop-a")
        b = make_connection("shop-b")
        host_store.add_shipment("S1", connection_id=b)

        queued = ShipmentWatcher(registry, queue, host_store).notify("S1")

        assert queued == [b]
        assert _pending(queue, a, "shipment") == []
        assert _pending(queue, b, "shipment") == ["S1"]

    def test_shipment_of_unknown_origin_is_not_queued(
        self, registry, queue, host_store, make_connection,
    ):
        make_connection("shop-a")
        host_store.add_shipment("S1", connection_id=None)

        assert ShipmentWatcher(registry, queue, host_store).notify("S1") == []

    def test_missing_shipment_is_not_queued(self, registry, queue, host_store, make_connection):
        make_connection("shop-a")
        assert ShipmentWatcher(registry, queue, host_store).notify("nope") == []

    def test_disabled_shipment_export(self, registry, queue, host_store, make_connection):
        a = make_connection("shop-a", settings={"export_shipments": False})
        host_store.add_shipment("S1", connection_id=a)

        assert ShipmentWatcher(registry, queue, host_store).notify("S1") == []
