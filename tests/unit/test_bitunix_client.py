"""
Tests for the Bitunix REST client: signing, response mapping and gateway parsing.
"""
import hashlib
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest

from position_ladder.constants import (
    CANCEL_ORDERS_ENDPOINT,
    PENDING_POSITIONS_ENDPOINT,
    PLACE_ORDER_ENDPOINT,
    PLACE_TPSL_ENDPOINT,
)
from position_ladder.data.bitunix_client import (
    BitunixClient,
    RateLimiter,
    is_expected_rejection,
    sign_request,
    sorted_query_string,
)
from position_ladder.domain.models import Direction
from position_ladder.exceptions import ExpectedRejection, OrderRejectedError, TransientGatewayError


@pytest.fixture
def client():
    return BitunixClient("key", "secret")


class TestSigning:
    def test_sorted_query_string(self):
        assert sorted_query_string({"symbol": "BTCUSDT", "limit": 10}) == "limit10symbolBTCUSDT"
        assert sorted_query_string(None) == ""

    def test_double_sha256(self):
        digest = hashlib.sha256(b"n1" b"1700000000000" b"key" b"symbolBTCUSDT" b'{"a":1}').hexdigest()
        expected = hashlib.sha256((digest + "secret").encode()).hexdigest()

        assert sign_request("key", "secret", "n1", "1700000000000", {"symbol": "BTCUSDT"}, '{"a":1}') == expected

    def test_headers_carry_signature(self, client):
        headers = client._headers({"symbol": "BTCUSDT"}, "")
        assert headers["api-key"] == "key"
        assert len(headers["nonce"]) == 32
        assert headers["sign"] == sign_request(
            "key", "secret", headers["nonce"], headers["timestamp"], {"symbol": "BTCUSDT"}, ""
        )


class TestResponseMapping:
    def test_success_returns_data(self):
        assert BitunixClient._unwrap(PENDING_POSITIONS_ENDPOINT, {"code": 0, "data": [1]}) == [1]

    def test_order_endpoint_duplicate_is_expected(self):
        with pytest.raises(ExpectedRejection):
            BitunixClient._unwrap(PLACE_TPSL_ENDPOINT, {"code": 30013, "msg": "TP/SL order already exist"})

    def test_order_endpoint_other_rejection(self):
        with pytest.raises(OrderRejectedError) as exc:
            BitunixClient._unwrap(PLACE_ORDER_ENDPOINT, {"code": 20003, "msg": "Insufficient balance"})
        assert not isinstance(exc.value, ExpectedRejection)
        assert exc.value.code == "20003"

    def test_read_endpoint_error_is_transient(self):
        with pytest.raises(TransientGatewayError):
            BitunixClient._unwrap(PENDING_POSITIONS_ENDPOINT, {"code": 10005, "msg": "too many requests"})

    def test_non_dict_payload(self):
        with pytest.raises(TransientGatewayError):
            BitunixClient._unwrap(PENDING_POSITIONS_ENDPOINT, ["unexpected"])

    @pytest.mark.parametrize("message", ["Order exceed limit", "Duplicate clientId", "Too many TP/SL orders"])
    def test_expected_rejection_markers(self, message):
        assert is_expected_rejection(message)

    @pytest.mark.asyncio
    async def test_missing_credentials_transient(self):
        client = BitunixClient("", "")
        with pytest.raises(TransientGatewayError):
            await client.list_open_positions()


class TestGatewayMethods:
    @pytest.mark.asyncio
    async def test_list_open_positions_parses_both_shapes(self, client):
        raw = [{"symbol": "BTCUSDT", "side": "BUY", "qty": "0.5", "positionId": "p1"}]
        with patch.object(client, "_request", AsyncMock(return_value={"positionList": raw})):
            positions = await client.list_open_positions()
        assert positions[0].qty == Decimal("0.5")
        assert positions[0].direction is Direction.LONG

        with patch.object(client, "_request", AsyncMock(return_value=raw)):
            assert len(await client.list_open_positions()) == 1

    @pytest.mark.asyncio
    async def test_place_order_defaults_overridable(self, client):
        request = AsyncMock(return_value={"orderId": "o-1"})
        with patch.object(client, "_request", request):
            order_id = await client.place_order({"symbol": "BTCUSDT", "tradeSide": "CLOSE", "reduceOnly": True})

        assert order_id == "o-1"
        body = request.call_args.kwargs["body"]
        assert body["tradeSide"] == "CLOSE"
        assert body["reduceOnly"] is True
        assert body["effect"] == "GTC"
        assert request.call_args.args == ("POST", PLACE_ORDER_ENDPOINT)

    @pytest.mark.asyncio
    async def test_cancel_orders_reports_partial_failure(self, client):
        response = {"successList": [{"orderId": "a"}], "failureList": [{"orderId": "b"}]}
        request = AsyncMock(return_value=response)
        with patch.object(client, "_request", request):
            assert await client.cancel_orders(["a", "b"], "BTCUSDT") is False
        assert request.call_args.args[1] == CANCEL_ORDERS_ENDPOINT

        assert await client.cancel_orders([], "BTCUSDT") is True

    @pytest.mark.asyncio
    async def test_change_leverage_uses_margin_coin(self, client):
        request = AsyncMock(return_value=None)
        with patch.object(client, "_request", request):
            await client.change_leverage("BTCUSDT", 10)
        assert request.call_args.kwargs["body"] == {"symbol": "BTCUSDT", "leverage": 10, "marginCoin": "USDT"}


def test_rate_limiter_consumes_capacity():
    limiter = RateLimiter(capacity=2, refill_rate=0.0001)
    assert limiter.consume() is True
    assert limiter.consume() is True
    assert limiter.consume() is False
