"""Root-level pytest fixtures for all tests.

Provides shared fixtures:
- In-memory state database
- Credential key and connection factory
- Fake host store and fake marketplace client
"""

import base64
import os
from collections.abc import Callable, Generator

import pytest

from src.db.connection import Database
from src.services.connection_registry import ConnectionRegistry
from src.services.connection_service import ConnectionService
from src.services.sync_event_log import SyncEventLog
from src.services.work_queue import WorkQueue
from tests.helpers.fake_host_store import FakeHostStore
from tests.helpers.fake_marketplace import FakeClientFactory

TEST_KEY = bytes(range(32))
TEST_BASE_URL = "https://api.marketplace.test/v2"


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests that take a long time to run"
    )


# ============================================================================
# Database Fixtures
# ============================================================================


@pytest.fixture
def database() -> Generator[Database, None, None]:
    """In-memory state database with all tables created."""
    db = Database("sqlite://")
    db.init()
    yield db
    db.dispose()


@pytest.fixture
def file_database(tmp_path) -> Generator[Database, None, None]:
    """File-based database, for tests that need real concurrent connections."""
    db = Database(f"sqlite:///{tmp_path / 'state.db'}")
    db.init()
    yield db
    db.dispose()


# ============================================================================
# Connection Fixtures
# ============================================================================


@pytest.fixture
def key() -> bytes:
    return TEST_KEY


@pytest.fixture
def credential_env(monkeypatch) -> bytes:
    """Expose TEST_KEY through MARKETSYNC_CREDENTIAL_KEY."""
    monkeypatch.setenv("MARKETSYNC_CREDENTIAL_KEY", base64.b64encode(TEST_KEY).decode())
    return TEST_KEY


@pytest.fixture
def make_connection(database, key) -> Callable[..., str]:
    """Factory creating a connection row and returning its id."""

    def _make(
        name: str = "shop-a",
        active: bool = True,
        settings: dict | None = None,
        base_url: str | None = TEST_BASE_URL,
    ) -> str:
        session = database.new_session()
        try:
            created = ConnectionService(session, key=key).create(
                name=name,
                credentials={"public_key": f"pk-{name}", "secret_key": f"sk-{name}"},
                settings=settings,
                active=active,
                base_url=base_url,
            )
        finally:
            session.close()
        return created["id"]

    return _make


@pytest.fixture
def registry(database, key) -> ConnectionRegistry:
    return ConnectionRegistry(database, key)


@pytest.fixture
def queue(database) -> WorkQueue:
    return WorkQueue(database)


@pytest.fixture
def events(database) -> SyncEventLog:
    return SyncEventLog(database)


# ============================================================================
# Collaborator Fakes
# ============================================================================


@pytest.fixture
def host_store() -> FakeHostStore:
    return FakeHostStore()


@pytest.fixture
def client_factory() -> FakeClientFactory:
    return FakeClientFactory()


@pytest.fixture(autouse=True)
def _isolated_home(tmp_path, monkeypatch):
    """Keep data, key and log files of every test inside tmp_path."""
    monkeypatch.setenv("MARKETSYNC_HOME", str(tmp_path / "home"))
    for name in list(os.environ):
        if name.startswith("MARKETSYNC_") and name != "MARKETSYNC_HOME":
            monkeypatch.delenv(name, raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
