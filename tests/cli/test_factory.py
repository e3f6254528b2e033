"""Tests for building the sync stack from configuration."""

import pytest

from src.cli.config import MarketSyncConfig
from src.cli.factory import (
    HostStoreNotConfiguredError,
    build_context,
    make_client_factory,
    open_database,
)
from src.services.connection_types import ConnectionCredentials, ConnectionSnapshot, ExportRules
from src.services.marketplace_client import MarketplaceClient


def _snapshot(credentials=None, base_url="https://api.marketplace.test/v2"):
    return ConnectionSnapshot(
        id="c1", name="shop-a", is_active=True, base_url=base_url,
        credentials=credentials, rules=ExportRules(),
    )


class TestClientFactory:

    def test_builds_client(self):
        factory = make_client_factory(MarketSyncConfig())
        client = factory(_snapshot(ConnectionCredentials(public_key="pk", secret_key="sk")))
        assert isinstance(client, MarketplaceClient)
        client.close()

    def test_rejects_unusable_connection(self):
        factory = make_client_factory(MarketSyncConfig())
        with pytest.raises(ValueError, match="shop-a"):
            factory(_snapshot())


class TestBuildContext:

    def test_open_database_creates_parent_dir(self, tmp_path):
        cfg = MarketSyncConfig(database={"url": f"sqlite:///{tmp_path / 'nested' / 'state.db'}"})
        database = open_database(cfg)
        database.dispose()
        assert (tmp_path / "nested" / "state.db").exists()

    def test_requires_host_store(self, database, key):
        with pytest.raises(HostStoreNotConfiguredError):
            build_context(MarketSyncConfig(), database=database, key=key)

    def test_wires_configured_policy(self, database, key, host_store, client_factory, tmp_path):
        cfg = MarketSyncConfig(
            queue={"max_attempts": 3}, scheduler={"order_import": 0, "clean_logs": 60},
        )
        ctx = build_context(
            cfg, database=database, host_store=host_store, client_factory=client_factory,
            key=key, log_dir=tmp_path,
        )
        assert ctx.queue.policy.max_attempts == 3
        assert [job.operation for job in ctx.scheduler().jobs] == [
            "clean-logs", "catalog-export", "queued-offer-export", "queued-shipment-export",
        ]
        assert ctx.offer_watcher() is not None
