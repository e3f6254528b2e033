"""Tests for ConnectionService: CRUD, validation, encrypted storage."""

import json

import pytest
from sqlalchemy import select

from src.db.models import Connection, ImportCursor, QueueEntry
from src.errors.domain import DuplicateConnectionNameError, NotFoundError
from src.services.connection_service import ConnectionService
from src.services.connection_types import ConnectionValidationError

CREDS = {"public_key": "pk-1", "secret_key": "sk-1"}


@pytest.fixture
def db_session(database):
    session = database.new_session()
    yield session
    session.close()


@pytest.fixture
def service(db_session, key):
    return ConnectionService(db_session, key=key)


class TestConnectionServiceCRUD:

    def test_create_connection(self, service):
        result = service.create("shop-a", CREDS, settings={"stock_buffer": 2}, active=True)
        assert result["name"] == "shop-a"
        assert result["is_active"] is True
        assert result["settings"] == {"stock_buffer": 2}
        assert "credentials" not in result

    def test_credentials_are_encrypted_at_rest(self, service, db_session):
        service.create("shop-a", CREDS)
        row = db_session.scalars(select(Connection)).one()
        assert "sk-1" not in row.encrypted_credentials
        assert json.loads(row.encrypted_credentials)["alg"] == "AES-256-GCM"

    def test_new_connections_are_inactive_by_default(self, service):
        assert service.create("shop-a", CREDS)["is_active"] is False

    def test_duplicate_name_rejected(self, service):
        service.create("shop-a", CREDS)
        with pytest.raises(DuplicateConnectionNameError):
            service.create("shop-a", CREDS)
        assert len(service.list_all()) == 1

    def test_set_active_by_name_or_id(self, service):
        created = service.create("shop-a", CREDS)
        assert service.set_active("shop-a", True)["is_active"] is True
        assert service.set_active(created["id"], False)["is_active"] is False

    def test_update_settings(self, service):
        service.create("shop-a", CREDS)
        updated = service.update_settings("shop-a", {"include_categories": ["shoes"]})
        assert updated["settings"] == {"include_categories": ["shoes"]}

    def test_update_credentials_keeps_name_binding(self, service, registry):
        created = service.create("shop-a", {**CREDS}, active=True, base_url="https://x.test")
        service.update_credentials("shop-a", {"public_key": "pk-2", "secret_key": "sk-2"})
        snapshot = registry.get(created["id"])
        assert snapshot.credentials.public_key == "pk-2"

    def test_delete_cascades_queue_and_cursor(self, service, database, queue):
        created = service.create("shop-a", CREDS)
        queue.enqueue(created["id"], "offer", "1")
        with database.session() as session:
            session.add(ImportCursor(connection_id=created["id"], position=3))

        service.delete("shop-a")

        with database.session() as session:
            assert session.scalars(select(QueueEntry)).all() == []
            assert session.get(ImportCursor, created["id"]) is None

    def test_unknown_connection(self, service):
        with pytest.raises(NotFoundError):
            service.set_active("nope", True)

    def test_list_ordered_by_name(self, service):
        service.create("zeta", CREDS)
        service.create("alpha", CREDS)
        assert [c["name"] for c in service.list_all()] == ["alpha", "zeta"]


class TestConnectionValidation:

    @pytest.mark.parametrize(
        "credentials,code",
        [
            ({"public_key": "pk"}, "MISSING_FIELD"),
            ({"public_key": "pk", "secret_key": "  "}, "MISSING_FIELD"),
            ({**CREDS, "token": "x"}, "UNKNOWN_CREDENTIAL_KEY"),
            ({"public_key": "p" * 300, "secret_key": "s"}, "VALUE_TOO_LONG"),
        ],
    )
    def test_invalid_credentials(self, service, credentials, code):
        with pytest.raises(ConnectionValidationError) as exc_info:
            service.create("shop-a", credentials)
        assert exc_info.value.code == code

    def test_blank_name(self, service):
        with pytest.raises(ConnectionValidationError) as exc_info:
            service.create("   ", CREDS)
        assert exc_info.value.code == "INVALID_NAME"

    def test_invalid_settings(self, service):
        with pytest.raises(ConnectionValidationError) as exc_info:
            service.create("shop-a", CREDS, settings={"stock_buffer": -1})
        assert exc_info.value.code == "INVALID_SETTINGS"
