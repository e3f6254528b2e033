"""End-to-end tests of the CLI against a temporary state database."""

import json
import logging

import pytest
import yaml
from typer.testing import CliRunner

import src.cli.main as cli_main
from src.cli.factory import build_context
from src.cli.main import app
from src.services.marketplace_client import MarketplaceServerError
from tests.helpers.fake_marketplace import FakeClientFactory

runner = CliRunner()


@pytest.fixture(autouse=True)
def _reset_logging():
    root = logging.getLogger()
    level = root.level
    yield
    for handler in list(root.handlers):
        if getattr(handler, "_marketsync", False):
            root.removeHandler(handler)
            handler.close()
    root.setLevel(level)


def _write_config(tmp_path, host_factory="tests.helpers.fake_host_store:make_store"):
    data = {
        "database": {"url": f"sqlite:///{tmp_path / 'state.db'}"},
        "api": {"base_url": "https://api.marketplace.test/v2"},
        "logging": {"level": "ERROR", "file": False},
        "host": {"factory": host_factory, "options": {"offer_ids": ["1", "2"]}},
    }
    path = tmp_path / "marketsync.yaml"
    path.write_text(yaml.dump(data))
    return str(path)


@pytest.fixture
def config_path(tmp_path, credential_env):
    return _write_config(tmp_path)


@pytest.fixture
def fake_factory(monkeypatch):
    """Route every command's marketplace calls to fake clients."""
    factory = FakeClientFactory()
    monkeypatch.setattr(
        cli_main, "build_context", lambda cfg: build_context(cfg, client_factory=factory),
    )
    return factory


def invoke(config_path, *args, **kwargs):
    return runner.invoke(app, ["--config", config_path, *args], **kwargs)


def _add_connection(config_path, name="shop-a", *extra):
    result = invoke(
        config_path, "connections", "add", "--name", name,
        "--public-key", f"pk-{name}", "--secret-key", f"sk-{name}", "--active", *extra,
    )
    assert result.exit_code == 0, result.output
    return result


class TestConnectionCommands:

    def test_add_and_list(self, config_path):
        result = _add_connection(config_path)
        assert "Created connection shop-a" in result.output

        listed = invoke(config_path, "connections", "list", "--json")
        assert listed.exit_code == 0
        [connection] = json.loads(listed.stdout)
        assert connection["name"] == "shop-a"
        assert connection["is_active"] is True
        assert "sk-shop-a" not in listed.stdout

    def test_duplicate_name(self, config_path):
        _add_connection(config_path)
        result = invoke(
            config_path, "connections", "add", "--name", "shop-a",
            "--public-key", "pk", "--secret-key", "sk",
        )
        assert result.exit_code == 1
        assert "already exists" in result.output

    def test_secret_is_prompted(self, config_path):
        result = invoke(
            config_path, "connections", "add", "--name", "shop-b", "--public-key", "pk",
            input="sk-hidden\n",
        )
        assert result.exit_code == 0, result.output

    def test_settings_must_be_json_object(self, config_path):
        result = invoke(
            config_path, "connections", "add", "--name", "shop-c", "--public-key", "pk",
            "--secret-key", "sk", "--settings", "[1, 2]",
        )
        assert result.exit_code == 1
        assert "JSON object" in result.output

    def test_deactivate_and_delete(self, config_path):
        _add_connection(config_path)
        assert invoke(config_path, "connections", "deactivate", "shop-a").exit_code == 0
        [connection] = json.loads(invoke(config_path, "connections", "list", "--json").stdout)
        assert connection["is_active"] is False

        assert invoke(config_path, "connections", "delete", "shop-a", "--yes").exit_code == 0
        assert json.loads(invoke(config_path, "connections", "list", "--json").stdout) == []

    def test_unknown_connection(self, config_path):
        result = invoke(config_path, "connections", "activate", "nope")
        assert result.exit_code == 1
        assert "not found" in result.output


class TestOperations:

    def test_notify_then_export(self, config_path, fake_factory):
        _add_connection(config_path)

        notified = invoke(config_path, "notify", "offer", "1", "2")
        assert notified.exit_code == 0, notified.output
        assert "queued for 1 connection(s)" in notified.output

        stats = json.loads(invoke(config_path, "queue", "stats", "--json").stdout)
        connection_id = stats[0]["connection_id"]
        assert stats == [
            {
                "connection": "shop-a", "connection_id": connection_id,
                "entity_type": entity_type, "status": "pending", "count": 2,
            }
            for entity_type in ("catalog", "offer")
        ]

        result = invoke(config_path, "queued-offer-export", "--json")
        assert result.exit_code == 0, result.output
        summary = json.loads(result.stdout)
        assert summary["connections"][0]["exported"] == 2
        assert sorted(fake_factory.client("shop-a").sent_ids("offers")) == ["1", "2"]

        done = json.loads(invoke(config_path, "queue", "list", "--status", "done", "--json").stdout)
        assert {entry["entity_id"] for entry in done} == {"1", "2"}

    def test_export_for_one_connection(self, config_path, fake_factory):
        _add_connection(config_path, "shop-a")
        _add_connection(config_path, "shop-b")
        invoke(config_path, "notify", "offer", "1")

        result = invoke(config_path, "queued-offer-export", "--connection", "shop-b", "--json")

        assert result.exit_code == 0, result.output
        assert [c["connection"] for c in json.loads(result.stdout)["connections"]] == ["shop-b"]
        assert fake_factory.requested == ["shop-b"]

    def test_unknown_connection_scope(self, config_path, fake_factory):
        result = invoke(config_path, "order-import", "--connection", "nope")
        assert result.exit_code == 1
        assert "not found" in result.output

    def test_failed_connection_exits_nonzero(self, config_path, fake_factory):
        _add_connection(config_path)
        invoke(config_path, "notify", "offer", "1")
        fake_factory.client("shop-a").errors["offers"] = MarketplaceServerError(
            "upstream down", status_code=503,
        )

        result = invoke(config_path, "queued-offer-export")

        assert result.exit_code == 1
        pending = json.loads(invoke(
            config_path, "queue", "list", "--type", "offer", "--status", "pending", "--json",
        ).stdout)
        assert [entry["entity_id"] for entry in pending] == ["1"]

        events = json.loads(invoke(config_path, "events", "list", "--level", "error", "--json").stdout)
        assert events[0]["error_code"] == "E-3003"

    def test_order_import_without_connections(self, config_path, fake_factory):
        result = invoke(config_path, "order-import", "--json")
        assert result.exit_code == 0
        assert json.loads(result.stdout)["connections"] == []

    def test_clean_logs(self, config_path):
        result = invoke(config_path, "clean-logs", "--json")
        assert result.exit_code == 0, result.output
        assert json.loads(result.stdout)["totals"] == {
            "queue_entries": 0, "sync_events": 0, "log_files": 0,
        }

    def test_scheduler_tick_runs_every_scheduled_operation(self, config_path, fake_factory):
        result = invoke(config_path, "scheduler", "tick", "--json")
        assert result.exit_code == 0, result.output
        assert [s["operation"] for s in json.loads(result.stdout)] == [
            "clean-logs", "catalog-export", "queued-offer-export",
            "queued-shipment-export", "order-import",
        ]


class TestErrors:

    def test_missing_config(self, tmp_path):
        result = runner.invoke(app, ["--config", str(tmp_path / "nope.yaml"), "clean-logs"])
        assert result.exit_code == 1
        assert "Config file not found" in result.output

    def test_invalid_config(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("queue:\n  batch_size: 0\n")
        result = runner.invoke(app, ["--config", str(path), "queue", "stats"])
        assert result.exit_code == 1
        assert "validation failed" in result.output

    def test_host_store_not_configured(self, tmp_path, credential_env):
        path = _write_config(tmp_path, host_factory="")
        result = invoke(path, "queued-offer-export")
        assert result.exit_code == 1
        assert "Host store unavailable" in result.output

    def test_bad_host_factory(self, tmp_path, credential_env):
        path = _write_config(tmp_path, host_factory="tests.helpers.no_such_module:make")
        result = invoke(path, "order-import")
        assert result.exit_code == 1

    def test_invalid_filters(self, config_path):
        assert invoke(config_path, "queue", "list", "--status", "bogus").exit_code == 1
        assert invoke(config_path, "events", "list", "--level", "loud").exit_code == 1

    def test_scheduler_status_not_running(self, config_path):
        result = invoke(config_path, "scheduler", "status")
        assert result.exit_code == 0
        assert "not running" in result.output
