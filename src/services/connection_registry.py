"""Read-only registry of marketplace connections for the sync core.

Every cycle snapshots the active connection set once at its start. A
connection whose stored credentials or settings cannot be used is still
returned, flagged with a classified ``config_error``, so the cycle can skip
and report it instead of crashing.
"""

import json
import logging

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import or_, select

from src.db.connection import Database
from src.db.models import Connection
from src.errors.domain import NotFoundError
from src.errors.formatter import SyncError
from src.services.connection_types import (
    ConnectionCredentials,
    ConnectionSnapshot,
    ExportRules,
)
from src.services.credential_encryption import (
    CredentialDecryptionError,
    decrypt_credentials,
)
from src.utils.redaction import sanitize_error_message

logger = logging.getLogger(__name__)


class ConnectionRegistry:
    """Resolves connection rows into usable snapshots.

    Args:
        database: State database.
        key: 32-byte credential encryption key.
        default_base_url: API root used when a connection has no override.
    """

    def __init__(self, database: Database, key: bytes, default_base_url: str = "") -> None:
        self._database = database
        self._key = key
        self._default_base_url = default_base_url

    def list_active(self, connection: str | None = None) -> list[ConnectionSnapshot]:
        """Snapshot every active connection, ordered by name.

        Args:
            connection: Limit the snapshot to one connection, by id or name.

        Raises:
            NotFoundError: If ``connection`` names no active connection.
        """
        with self._database.session() as session:
            query = (
                select(Connection)
                .where(Connection.is_active.is_(True))
                .order_by(Connection.name)
            )
            if connection is not None:
                query = query.where(
                    or_(Connection.id == connection, Connection.name == connection)
                )
            rows = session.scalars(query).all()
            if connection is not None and not rows:
                raise NotFoundError("Active connection", connection)
            return [self._to_snapshot(row) for row in rows]

    def get(self, connection_id: str) -> ConnectionSnapshot:
        """Snapshot one connection by id, active or not.

        Raises:
            NotFoundError: If no such connection exists.
        """
        with self._database.session() as session:
            row = session.get(Connection, connection_id)
            if row is None:
                raise NotFoundError("Connection", connection_id)
            return self._to_snapshot(row)

    def _to_snapshot(self, row: Connection) -> ConnectionSnapshot:
        credentials: ConnectionCredentials | None = None
        config_error: SyncError | None = None

        try:
            rules = ExportRules.model_validate(json.loads(row.settings_json or "{}"))
        except (json.JSONDecodeError, PydanticValidationError) as e:
            rules = ExportRules()
            config_error = SyncError.from_code(
                "E-1002",
                connection=row.name,
                reason=sanitize_error_message(str(e), max_length=300),
            )

        try:
            raw = decrypt_credentials(row.encrypted_credentials, self._key, aad=row.name)
            credentials = ConnectionCredentials(
                public_key=raw["public_key"],
                secret_key=raw["secret_key"],
            )
        except (CredentialDecryptionError, KeyError) as e:
            config_error = SyncError.from_code(
                "E-1001",
                connection=row.name,
                reason=sanitize_error_message(str(e), max_length=300),
            )

        base_url = row.base_url or self._default_base_url or None
        if base_url is None and config_error is None:
            config_error = SyncError.from_code(
                "E-1002", connection=row.name, reason="no API base URL configured"
            )

        if config_error is not None:
            logger.warning("Connection %s is misconfigured: %s", row.name, config_error)

        return ConnectionSnapshot(
            id=row.id,
            name=row.name,
            is_active=row.is_active,
            base_url=base_url,
            credentials=credentials,
            rules=rules,
            config_error=config_error,
        )
