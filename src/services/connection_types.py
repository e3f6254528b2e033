"""Shared types and constants for marketplace connections.

Neutral module with no DB or service-layer imports. Used by the connection
registry, the connection administration service, the watchers and the
payload builder.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import TYPE_CHECKING

from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from src.errors.formatter import SyncError


# --- Credential allowlist (required/optional keys + max lengths) ---

CREDENTIAL_SCHEMA: dict[str, dict[str, int]] = {
    "required": {"public_key": 256, "secret_key": 256},
    "optional": {},
}


# --- Export rules ---


class ExportRules(BaseModel):
    """Per-connection export settings parsed from ``settings_json``.

    Scope filters decide which entities a connection receives; the mapping
    rules decide how stock and price are presented to the marketplace.
    """

    export_offers: bool = True
    export_shipments: bool = True
    import_orders: bool = True
    include_categories: list[str] = Field(default_factory=list)
    exclude_offer_ids: list[str] = Field(default_factory=list)
    stock_buffer: int = Field(default=0, ge=0)
    max_stock: int | None = Field(default=None, ge=0)
    price_markup_percent: Decimal = Field(default=Decimal("0"), ge=-100)
    use_sale_price: bool = True
    order_page_size: int = Field(default=50, ge=1, le=500)

    def offer_in_scope(self, offer_id: str, category: str | None) -> bool:
        """Whether an offer belongs to this connection's catalog.

        ``category`` is None when the host store no longer knows the offer;
        such offers stay in scope so the drain can report them.
        """
        if not self.export_offers:
            return False
        if offer_id in self.exclude_offer_ids:
            return False
        if self.include_categories and category is not None:
            return category in self.include_categories
        return True

    def shipment_in_scope(self, connection_id: str, shipment_connection_id: str | None) -> bool:
        """Shipments only go back to the connection their order came from."""
        if not self.export_shipments:
            return False
        return shipment_connection_id == connection_id


# --- Connection snapshot ---


@dataclass(frozen=True)
class ConnectionCredentials:
    """Decrypted API credentials of one connection."""

    public_key: str
    secret_key: str = field(repr=False)


@dataclass(frozen=True)
class ConnectionSnapshot:
    """Read-only view of one connection for the duration of a cycle.

    ``config_error`` is set when the stored credentials or settings could not
    be used; such connections are skipped and reported, never drained.
    """

    id: str
    name: str
    is_active: bool
    base_url: str | None
    credentials: ConnectionCredentials | None
    rules: ExportRules
    config_error: "SyncError | None" = None

    @property
    def is_usable(self) -> bool:
        return self.config_error is None and self.credentials is not None


# --- Validation Error ---


class ConnectionValidationError(Exception):
    """Typed validation error with structured error code.

    The CLI prints it as "<code>: <message>" and exits non-zero.
    """

    def __init__(self, code: str, message: str) -> None:
        self.code = code
        self.message = message
        super().__init__(f"{code}: {message}")
