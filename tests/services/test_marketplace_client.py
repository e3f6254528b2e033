"""Tests for MarketplaceClient using httpx.MockTransport."""

import base64
import hashlib
import hmac
import json
from datetime import UTC, datetime

import httpx
import pytest

from src.services.marketplace_client import (
    MarketplaceAuthError,
    MarketplaceClient,
    MarketplaceRateLimitError,
    MarketplaceRejectedError,
    MarketplaceResponseError,
    MarketplaceServerError,
    MarketplaceTimeoutError,
    MarketplaceUnavailableError,
)

FIXED_NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


def _client(handler) -> MarketplaceClient:
    return MarketplaceClient(
        base_url="https://api.marketplace.test/v2",
        public_key="pk-test",
        secret_key="sk-test",
        transport=httpx.MockTransport(handler),
        clock=lambda: FIXED_NOW,
    )


class TestSigning:

    def test_requests_carry_key_and_valid_signature(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={})

        with _client(handler) as client:
            client.export_offers([{"id": "1", "stock": 3}])

        request = seen[0]
        assert request.headers["KEY"] == "pk-test"
        assert request.headers["VERSION"] == "2.0"
        assert request.headers["URI"] == "/offers"
        assert request.headers["TIME"] == "Sun, 01 Mar 2026 12:00:00 GMT"

        body = request.content
        message = f"{len(body)}POST/offers2.0{request.headers['TIME']}"
        expected = base64.b64encode(
            hmac.new(b"sk-test", message.encode(), hashlib.sha512).digest()
        ).decode()
        assert request.headers["SIGNATURE"] == expected

    def test_query_string_is_part_of_signed_uri(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"orders": []})

        with _client(handler) as client:
            client.list_orders(after=7, limit=25)

        assert seen[0].headers["URI"] == "/orders?after=7&limit=25"
        assert seen[0].url.params["after"] == "7"


class TestBatchResults:

    def test_per_item_rejections(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={
                "rejected": [{"id": "2", "code": "EAN", "message": "EAN missing"}],
            })

        with _client(handler) as client:
            result = client.export_catalog([{"id": "1"}, {"id": "2"}, {"id": "3"}])

        assert result.accepted == ["1", "3"]
        assert result.rejected_ids == {"2"}
        assert result.rejected[0].message == "EAN missing"

    def test_empty_body_accepts_whole_batch(self):
        with _client(lambda request: httpx.Response(204)) as client:
            result = client.export_shipments([{"id": "S1"}])

        assert result.accepted == ["S1"]
        assert result.rejected == []

    def test_sends_items_under_endpoint_key(self):
        bodies: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            bodies.append(json.loads(request.content))
            return httpx.Response(200)

        with _client(handler) as client:
            client.export_shipments([{"id": "S1", "tracking_number": "T"}])

        assert bodies == [{"shipments": [{"id": "S1", "tracking_number": "T"}]}]

    def test_malformed_rejection_list(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"rejected": "nope"})

        with _client(handler) as client:
            with pytest.raises(MarketplaceResponseError):
                client.export_offers([{"id": "1"}])


class TestOrders:

    def test_orders_are_normalized(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={
                "orders": [{
                    "id": 1001,
                    "position": 17,
                    "channel": "bol",
                    "total": "39.98",
                    "lines": [{"id": "L1", "sku": "SKU-1", "quantity": 2, "unit_price": "19.99"}],
                }],
                "has_more": True,
            })

        with _client(handler) as client:
            page = client.list_orders(after=16)

        assert page.has_more
        order = page.orders[0]
        assert order.external_id == "1001"
        assert order.position == 17
        assert order.lines[0].line_id == "L1"
        assert order.currency == "EUR"

    def test_malformed_order_raises_response_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"orders": [{"id": "1"}]})

        with _client(handler) as client:
            with pytest.raises(MarketplaceResponseError):
                client.list_orders(after=0)

    def test_acknowledge_posts_host_order_id(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(204)

        with _client(handler) as client:
            client.acknowledge_order("1001", "host-9")

        assert seen[0].url.path.endswith("/orders/1001/acknowledge")
        assert json.loads(seen[0].content) == {"host_order_id": "host-9"}


class TestErrorMapping:

    @pytest.mark.parametrize(
        "status,error_class,code",
        [
            (401, MarketplaceAuthError, "E-1004"),
            (403, MarketplaceAuthError, "E-1004"),
            (429, MarketplaceRateLimitError, "E-3004"),
            (400, MarketplaceRejectedError, "E-2002"),
            (502, MarketplaceServerError, "E-3003"),
        ],
    )
    def test_status_codes(self, status, error_class, code):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(status, json={"message": "nope"})

        with _client(handler) as client:
            with pytest.raises(error_class) as exc_info:
                client.export_offers([{"id": "1"}])

        assert exc_info.value.code == code
        assert exc_info.value.status_code == status
        assert exc_info.value.reason == "nope"

    def test_auth_errors_are_not_retryable(self):
        assert MarketplaceAuthError.retryable is False
        assert MarketplaceServerError.retryable is True

    def test_timeout(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        with _client(handler) as client:
            with pytest.raises(MarketplaceTimeoutError):
                client.export_offers([{"id": "1"}])

    def test_connection_refused(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with _client(handler) as client:
            with pytest.raises(MarketplaceUnavailableError):
                client.list_orders(after=0)

    def test_invalid_json(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=b"<html>")

        with _client(handler) as client:
            with pytest.raises(MarketplaceResponseError):
                client.export_offers([{"id": "1"}])
