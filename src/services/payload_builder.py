"""Build marketplace payload items from host-store entities.

Applies a connection's export rules (stock buffer and cap, sale price,
markup) on the way out. Pure functions; no I/O.
"""

from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from src.services.connection_types import ExportRules
from src.services.marketplace_models import HostOffer, HostShipment

_CENTS = Decimal("0.01")


def export_stock(offer: HostOffer, rules: ExportRules) -> int:
    """Stock advertised to the marketplace, never negative."""
    stock = max(offer.stock - rules.stock_buffer, 0)
    if rules.max_stock is not None:
        stock = min(stock, rules.max_stock)
    return stock


def export_price(offer: HostOffer, rules: ExportRules) -> Decimal:
    """Price advertised to the marketplace, rounded to cents.

    Uses the sale price when one is active and the connection allows it,
    then applies the connection's markup percentage.
    """
    base = offer.price
    if rules.use_sale_price and offer.sale_price is not None:
        base = offer.sale_price
    if rules.price_markup_percent:
        base = base * (Decimal(100) + rules.price_markup_percent) / Decimal(100)
    return base.quantize(_CENTS, rounding=ROUND_HALF_UP)


def build_offer_item(offer: HostOffer, rules: ExportRules) -> dict[str, Any]:
    """Stock/price update item for the offers endpoint."""
    return {
        "id": offer.offer_id,
        "sku": offer.sku,
        "stock": export_stock(offer, rules),
        "price": str(export_price(offer, rules)),
    }


def build_catalog_item(offer: HostOffer, rules: ExportRules) -> dict[str, Any]:
    """Full product content item for the catalog endpoint."""
    item = build_offer_item(offer, rules)
    item.update({
        "title": offer.title,
        "description": offer.description,
        "category": offer.category,
        "ean": offer.ean,
        "brand": offer.brand,
        "regular_price": str(offer.price.quantize(_CENTS, rounding=ROUND_HALF_UP)),
        "images": list(offer.image_urls),
        "attributes": dict(offer.attributes),
    })
    return item


def build_shipment_item(shipment: HostShipment) -> dict[str, Any]:
    """Tracking item for the shipments endpoint."""
    return {
        "id": shipment.shipment_id,
        "order_id": shipment.external_order_id,
        "carrier": shipment.carrier,
        "tracking_number": shipment.tracking_number,
        "tracking_url": shipment.tracking_url,
        "shipped_at": shipment.shipped_at,
        "lines": [
            {
                "sku": line.sku,
                "quantity": line.quantity,
                "line_id": line.marketplace_line_id,
            }
            for line in shipment.lines
        ],
    }
