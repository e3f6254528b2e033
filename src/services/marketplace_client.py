"""Marketplace aggregation API client.

Synchronous httpx client for one marketplace connection. Supports batch
catalog/offer/shipment updates with per-item results and cursor-based order
listing.

Authentication signs every request with HMAC-SHA512 over the content
length, method, URI, API version and timestamp using the connection's secret
key; the public key travels in the KEY header.

Every failure is raised as a subclass of MarketplaceError carrying the E-XXXX
code it maps to, so callers can classify without string matching.
"""

import base64
import hashlib
import hmac
import json
import logging
import time
from collections.abc import Callable
from email.utils import format_datetime
from datetime import UTC, datetime
from typing import Any
from urllib.parse import urlencode

import httpx
from pydantic import ValidationError as PydanticValidationError

from src.services.marketplace_models import (
    BatchResult,
    MarketplaceOrder,
    OrderPage,
    RejectedItem,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0


class MarketplaceError(Exception):
    """Base class for marketplace API failures."""

    code = "E-4001"
    retryable = True

    def __init__(self, reason: str, status_code: int | None = None) -> None:
        self.reason = reason
        self.status_code = status_code
        super().__init__(reason)


class MarketplaceTimeoutError(MarketplaceError):
    """The API did not answer within the per-call timeout."""

    code = "E-3001"


class MarketplaceUnavailableError(MarketplaceError):
    """Network-level failure (DNS, connection refused, reset)."""

    code = "E-3002"


class MarketplaceServerError(MarketplaceError):
    """The API answered with a 5xx status."""

    code = "E-3003"


class MarketplaceRateLimitError(MarketplaceError):
    """The API answered 429."""

    code = "E-3004"


class MarketplaceAuthError(MarketplaceError):
    """The API rejected the connection's credentials (401/403)."""

    code = "E-1004"
    retryable = False


class MarketplaceRejectedError(MarketplaceError):
    """The API rejected the whole request (other 4xx)."""

    code = "E-2002"


class MarketplaceResponseError(MarketplaceError):
    """The API answered 2xx with a body that could not be parsed."""

    code = "E-4002"


class MarketplaceClient:
    """Client for one marketplace connection.

    Example usage:
        with MarketplaceClient(base_url, public_key, secret_key) as client:
            result = client.export_offers([{"id": "42", "stock": 3}])
            page = client.list_orders(after=0, limit=50)

    Args:
        base_url: API root, e.g. 'https://api.marketplace.example/v2'.
        public_key: Connection public key (KEY header).
        secret_key: Connection secret key (request signing).
        timeout: Per-call timeout in seconds.
        transport: Optional httpx transport (tests use httpx.MockTransport).
        clock: Returns the current UTC datetime; injectable for signing tests.
    """

    API_VERSION = "2.0"

    def __init__(
        self,
        base_url: str,
        public_key: str,
        secret_key: str,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.BaseTransport | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._public_key = public_key
        self._secret_key = secret_key
        self._timeout = timeout
        self._clock = clock or (lambda: datetime.now(UTC))
        self._http = httpx.Client(
            base_url=self._base_url,
            timeout=timeout,
            transport=transport,
        )

    def __enter__(self) -> "MarketplaceClient":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        """Close the underlying HTTP connection pool."""
        self._http.close()

    # --- Batch updates ---

    def export_catalog(self, products: list[dict[str, Any]]) -> BatchResult:
        """Send full product content for a batch of offers."""
        return self._post_batch("catalog", {"products": products}, products)

    def export_offers(self, offers: list[dict[str, Any]]) -> BatchResult:
        """Send stock/price updates for a batch of offers."""
        return self._post_batch("offers", {"offers": offers}, offers)

    def export_shipments(self, shipments: list[dict[str, Any]]) -> BatchResult:
        """Send tracking information for a batch of shipments."""
        return self._post_batch("shipments", {"shipments": shipments}, shipments)

    # --- Orders ---

    def list_orders(self, after: int, limit: int = 50) -> OrderPage:
        """Fetch orders whose position is strictly greater than ``after``.

        Args:
            after: Cursor position of the last imported order.
            limit: Page size.

        Returns:
            OrderPage with orders in the API's delivery order.

        Raises:
            MarketplaceError: On any API failure.
        """
        data = self._request("GET", "orders", params={"after": after, "limit": limit})
        if not isinstance(data, dict) or not isinstance(data.get("orders", []), list):
            raise MarketplaceResponseError("order listing is not an object with 'orders'")

        orders: list[MarketplaceOrder] = []
        for raw in data.get("orders", []):
            try:
                orders.append(self._normalize_order(raw))
            except (PydanticValidationError, KeyError, TypeError) as e:
                raise MarketplaceResponseError(f"malformed order in listing: {e}") from e
        return OrderPage(orders=orders, has_more=bool(data.get("has_more", False)))

    def acknowledge_order(self, external_id: str, host_order_id: str) -> None:
        """Tell the marketplace an order now exists in the host store."""
        self._request(
            "POST",
            f"orders/{external_id}/acknowledge",
            body={"host_order_id": host_order_id},
        )

    # --- Internals ---

    def _post_batch(
        self,
        endpoint: str,
        body: dict[str, Any],
        items: list[dict[str, Any]],
    ) -> BatchResult:
        data = self._request("POST", endpoint, body=body)
        sent_ids = [str(item["id"]) for item in items]

        # A bare 2xx without per-item detail acknowledges the whole batch.
        if not isinstance(data, dict):
            return BatchResult(accepted=sent_ids)

        raw_rejected = data.get("rejected") or []
        if not isinstance(raw_rejected, list):
            raise MarketplaceResponseError("'rejected' is not a list")
        try:
            rejected = [
                RejectedItem(
                    id=str(item["id"]),
                    code=item.get("code"),
                    message=str(item.get("message") or "rejected"),
                )
                for item in raw_rejected
            ]
        except (KeyError, TypeError, AttributeError) as e:
            raise MarketplaceResponseError(f"malformed rejection entry: {e}") from e

        rejected_ids = {item.id for item in rejected}
        accepted = [item_id for item_id in sent_ids if item_id not in rejected_ids]
        return BatchResult(accepted=accepted, rejected=rejected)

    def _sign(self, method: str, uri: str, body: bytes) -> dict[str, str]:
        """Build the authentication headers for one request."""
        timestamp = format_datetime(self._clock(), usegmt=True)
        message = f"{len(body)}{method}{uri}{self.API_VERSION}{timestamp}"
        digest = hmac.new(
            self._secret_key.encode("utf-8"),
            message.encode("utf-8"),
            hashlib.sha512,
        ).digest()
        return {
            "KEY": self._public_key,
            "VERSION": self.API_VERSION,
            "URI": uri,
            "TIME": timestamp,
            "SIGNATURE": base64.b64encode(digest).decode("ascii"),
        }

    def _request(
        self,
        method: str,
        endpoint: str,
        params: dict[str, Any] | None = None,
        body: dict[str, Any] | None = None,
    ) -> Any:
        """Make a signed request and map failures onto MarketplaceError.

        Args:
            method: HTTP method.
            endpoint: Path relative to the base URL.
            params: Query parameters.
            body: JSON body.

        Returns:
            Parsed JSON response, or None for an empty body.

        Raises:
            MarketplaceError: Subclass matching the failure kind.
        """
        content = json.dumps(body).encode("utf-8") if body is not None else b""
        uri = f"/{endpoint}"
        if params:
            uri = f"{uri}?{urlencode(params)}"
        headers = self._sign(method, uri, content)
        headers["Content-Type"] = "application/json"

        started = time.perf_counter()
        try:
            response = self._http.request(
                method,
                uri,
                content=content or None,
                headers=headers,
            )
        except httpx.TimeoutException as e:
            raise MarketplaceTimeoutError(
                f"{method} {endpoint} timed out after {self._timeout}s"
            ) from e
        except httpx.RequestError as e:
            raise MarketplaceUnavailableError(f"{method} {endpoint} failed: {e}") from e

        logger.debug(
            "Marketplace %s %s -> %d (%.0f ms)",
            method, endpoint, response.status_code,
            (time.perf_counter() - started) * 1000,
        )

        status = response.status_code
        if status in (401, 403):
            raise MarketplaceAuthError(_error_reason(response), status_code=status)
        if status == 429:
            raise MarketplaceRateLimitError(_error_reason(response), status_code=status)
        if status >= 500:
            raise MarketplaceServerError(_error_reason(response), status_code=status)
        if status >= 400:
            raise MarketplaceRejectedError(_error_reason(response), status_code=status)

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise MarketplaceResponseError(f"invalid JSON from {endpoint}: {e}") from e

    @staticmethod
    def _normalize_order(raw: dict[str, Any]) -> MarketplaceOrder:
        """Convert an API order payload to a MarketplaceOrder."""
        lines = [
            {
                "line_id": line.get("id"),
                "sku": line["sku"],
                "title": line.get("title"),
                "quantity": line["quantity"],
                "unit_price": line.get("unit_price", "0"),
            }
            for line in raw.get("lines", [])
        ]
        return MarketplaceOrder(
            external_id=str(raw["id"]),
            position=raw["position"],
            channel=raw.get("channel"),
            channel_order_number=raw.get("channel_order_number"),
            created_at=raw.get("created_at"),
            currency=raw.get("currency") or "EUR",
            total=raw.get("total"),
            shipping_cost=raw.get("shipping_cost"),
            customer=raw.get("customer") or {},
            lines=lines,
            raw_data=raw,
        )


def _error_reason(response: httpx.Response) -> str:
    """Extract a short reason from an error response."""
    try:
        data = response.json()
    except ValueError:
        return f"{response.status_code} {response.reason_phrase}"
    if isinstance(data, dict):
        message = data.get("message") or data.get("error")
        if message:
            return str(message)[:500]
    return f"{response.status_code} {response.reason_phrase}"
