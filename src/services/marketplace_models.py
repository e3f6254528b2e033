"""Models exchanged with the host store and the marketplace API.

Host-store entities (offers, shipments) are what the watchers and the export
orchestrator read; marketplace orders are what the order importer writes back
into the host store. All are pydantic models so both sides are validated at
the boundary.
"""

from decimal import Decimal
from typing import Any

from pydantic import BaseModel, Field


class HostOffer(BaseModel):
    """Catalog offer as exposed by the host store."""

    offer_id: str = Field(..., description="Host-store product/variation id")
    sku: str = Field(..., description="Merchant SKU")
    title: str = Field(..., description="Product title")
    description: str | None = Field(None, description="Product description")
    category: str | None = Field(None, description="Primary category slug")
    ean: str | None = Field(None, description="EAN/GTIN barcode")
    brand: str | None = Field(None, description="Brand name")
    price: Decimal = Field(..., ge=0, description="Regular price")
    sale_price: Decimal | None = Field(None, ge=0, description="Active sale price")
    stock: int = Field(default=0, description="Available stock")
    image_urls: list[str] = Field(default_factory=list, description="Image URLs")
    attributes: dict[str, Any] = Field(default_factory=dict, description="Extra attributes")


class ShipmentLine(BaseModel):
    """One shipped order line."""

    sku: str
    quantity: int = Field(..., ge=1)
    marketplace_line_id: str | None = None


class HostShipment(BaseModel):
    """Shipment created in the host store for an imported marketplace order."""

    shipment_id: str = Field(..., description="Host-store shipment id")
    connection_id: str | None = Field(
        None, description="Connection the originating order was imported through"
    )
    external_order_id: str | None = Field(
        None, description="Marketplace order id the shipment fulfils"
    )
    carrier: str | None = Field(None, description="Carrier name")
    tracking_number: str | None = Field(None, description="Carrier tracking number")
    tracking_url: str | None = Field(None, description="Carrier tracking URL")
    shipped_at: str | None = Field(None, description="ISO8601 ship timestamp")
    lines: list[ShipmentLine] = Field(default_factory=list)


class OrderLine(BaseModel):
    """One line of a marketplace order."""

    line_id: str | None = None
    sku: str
    title: str | None = None
    quantity: int = Field(..., ge=1)
    unit_price: Decimal = Field(..., ge=0)


class MarketplaceOrder(BaseModel):
    """Order delivered by the marketplace API, normalized."""

    external_id: str = Field(..., description="Marketplace order id")
    position: int = Field(..., ge=0, description="Stable sequence position")
    channel: str | None = Field(None, description="Sales channel name")
    channel_order_number: str | None = Field(None, description="Channel order number")
    created_at: str | None = Field(None, description="ISO8601 creation timestamp")
    currency: str = Field(default="EUR")
    total: Decimal | None = Field(None, ge=0)
    shipping_cost: Decimal | None = Field(None, ge=0)
    customer: dict[str, Any] = Field(default_factory=dict, description="Billing/shipping contact")
    lines: list[OrderLine] = Field(default_factory=list)
    raw_data: dict[str, Any] | None = Field(None, description="Original API payload")


class OrderPage(BaseModel):
    """One page of the order listing."""

    orders: list[MarketplaceOrder] = Field(default_factory=list)
    has_more: bool = False


class RejectedItem(BaseModel):
    """An item the marketplace refused within an otherwise accepted batch."""

    id: str
    code: str | None = None
    message: str = "rejected"


class BatchResult(BaseModel):
    """Per-item outcome of a batch update call."""

    accepted: list[str] = Field(default_factory=list)
    rejected: list[RejectedItem] = Field(default_factory=list)

    @property
    def rejected_ids(self) -> set[str]:
        return {item.id for item in self.rejected}
