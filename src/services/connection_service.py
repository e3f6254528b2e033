"""ConnectionService: administration of marketplace connections.

Creates, edits and removes connection rows. API keys are validated against
the credential allowlist and encrypted with AES-256-GCM bound to the
connection name before they reach the database. The sync core never writes
through this service; it reads connections via the ConnectionRegistry.
"""

import json
import logging
from typing import Any

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from src.db.models import Connection, utc_now_iso
from src.errors.domain import DuplicateConnectionNameError, NotFoundError
from src.services.connection_types import (
    CREDENTIAL_SCHEMA,
    ConnectionValidationError,
    ExportRules,
)
from src.services.credential_encryption import encrypt_credentials, get_or_create_key

logger = logging.getLogger(__name__)

_MAX_NAME_LENGTH = 255


def _validate_credential_keys(credentials: dict) -> None:
    """Validate credential keys against the allowlist and enforce max lengths.

    Args:
        credentials: Credential dict to validate.

    Raises:
        ConnectionValidationError: On unknown or missing keys, or oversized values.
    """
    required = CREDENTIAL_SCHEMA["required"]
    allowed = set(required) | set(CREDENTIAL_SCHEMA["optional"])

    unknown = set(credentials) - allowed
    if unknown:
        raise ConnectionValidationError(
            "UNKNOWN_CREDENTIAL_KEY",
            f"Unknown credential keys: {sorted(unknown)}",
        )

    for key in required:
        value = credentials.get(key)
        if not isinstance(value, str) or not value.strip():
            raise ConnectionValidationError("MISSING_FIELD", f"{key} is required")

    limits = {**required, **CREDENTIAL_SCHEMA["optional"]}
    for key, value in credentials.items():
        if isinstance(value, str) and len(value) > limits[key]:
            raise ConnectionValidationError(
                "VALUE_TOO_LONG",
                f"Credential '{key}' exceeds max length {limits[key]}",
            )


def _validate_settings(settings: dict | None) -> str:
    """Validate export settings and return their canonical JSON."""
    try:
        rules = ExportRules.model_validate(settings or {})
    except PydanticValidationError as e:
        raise ConnectionValidationError("INVALID_SETTINGS", str(e)) from e
    return rules.model_dump_json(exclude_defaults=True)


def _row_to_dict(row: Connection) -> dict[str, Any]:
    """Convert a row to a display dict (credentials never exposed)."""
    try:
        settings = json.loads(row.settings_json or "{}")
    except json.JSONDecodeError:
        logger.warning("Corrupt settings_json for connection %s", row.name)
        settings = None
    return {
        "id": row.id,
        "name": row.name,
        "is_active": row.is_active,
        "base_url": row.base_url,
        "settings": settings,
        "created_at": row.created_at,
        "updated_at": row.updated_at,
    }


class ConnectionService:
    """Manages connection rows with encrypted credential storage.

    Args:
        db: SQLAlchemy session. The service commits its own changes.
        key_dir: Optional override for the encryption key directory.
        key: Optional explicit 32-byte key (skips key resolution).
    """

    def __init__(
        self,
        db: Session,
        key_dir: str | None = None,
        key: bytes | None = None,
    ) -> None:
        self._db = db
        self._key = key if key is not None else get_or_create_key(key_dir)

    def _get_row(self, connection_id: str) -> Connection:
        row = self._db.get(Connection, connection_id)
        if row is None:
            row = self._db.scalars(
                select(Connection).where(Connection.name == connection_id)
            ).first()
        if row is None:
            raise NotFoundError("Connection", connection_id)
        return row

    def create(
        self,
        name: str,
        credentials: dict,
        settings: dict | None = None,
        active: bool = False,
        base_url: str | None = None,
    ) -> dict[str, Any]:
        """Create a connection with encrypted credentials.

        Args:
            name: Unique operator-facing name.
            credentials: Dict with public_key and secret_key.
            settings: Export rules (see ExportRules).
            active: Whether the connection is drained immediately.
            base_url: Optional API base URL override.

        Returns:
            Display dict of the new connection.

        Raises:
            ConnectionValidationError: On invalid name, credentials, or settings.
            DuplicateConnectionNameError: If the name is already taken.
        """
        name = (name or "").strip()
        if not name or len(name) > _MAX_NAME_LENGTH:
            raise ConnectionValidationError(
                "INVALID_NAME",
                f"Connection name must be 1-{_MAX_NAME_LENGTH} characters",
            )
        _validate_credential_keys(credentials)
        settings_json = _validate_settings(settings)

        now = utc_now_iso()
        row = Connection(
            name=name,
            is_active=active,
            base_url=base_url.strip() if base_url else None,
            encrypted_credentials=encrypt_credentials(credentials, self._key, aad=name),
            settings_json=settings_json,
            created_at=now,
            updated_at=now,
        )
        self._db.add(row)
        try:
            self._db.commit()
        except IntegrityError as e:
            self._db.rollback()
            raise DuplicateConnectionNameError(name) from e

        logger.info("Created connection %s (active=%s)", name, active)
        return _row_to_dict(row)

    def set_active(self, connection_id: str, active: bool) -> dict[str, Any]:
        """Activate or deactivate a connection (by id or name)."""
        row = self._get_row(connection_id)
        row.is_active = active
        row.updated_at = utc_now_iso()
        self._db.commit()
        logger.info("Connection %s %s", row.name, "activated" if active else "deactivated")
        return _row_to_dict(row)

    def update_settings(self, connection_id: str, settings: dict) -> dict[str, Any]:
        """Replace a connection's export settings.

        Raises:
            NotFoundError: If the connection does not exist.
            ConnectionValidationError: If the settings are invalid.
        """
        row = self._get_row(connection_id)
        row.settings_json = _validate_settings(settings)
        row.updated_at = utc_now_iso()
        self._db.commit()
        return _row_to_dict(row)

    def update_credentials(self, connection_id: str, credentials: dict) -> dict[str, Any]:
        """Replace a connection's API keys."""
        row = self._get_row(connection_id)
        _validate_credential_keys(credentials)
        row.encrypted_credentials = encrypt_credentials(credentials, self._key, aad=row.name)
        row.updated_at = utc_now_iso()
        self._db.commit()
        return _row_to_dict(row)

    def delete(self, connection_id: str) -> None:
        """Delete a connection together with its queue entries and cursor."""
        row = self._get_row(connection_id)
        self._db.delete(row)
        self._db.commit()
        logger.info("Deleted connection %s", row.name)

    def list_all(self) -> list[dict[str, Any]]:
        """List all connections ordered by name."""
        rows = self._db.scalars(select(Connection).order_by(Connection.name)).all()
        return [_row_to_dict(row) for row in rows]
