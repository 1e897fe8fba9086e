"""
Tests for the public ticker feed: message parsing and live subscription changes.
"""
import json
from decimal import Decimal

import pytest
import websockets

from position_ladder.data.ws_price_feed import MAX_SYMBOLS_PER_SUB, BitunixPriceFeed


class FakeSocket:
    def __init__(self, closed=False):
        self.sent = []
        self.closed = closed

    async def send(self, text):
        if self.closed:
            raise websockets.ConnectionClosed(None, None)
        self.sent.append(json.loads(text))

    async def close(self):
        self.closed = True


@pytest.fixture
def received():
    return []


@pytest.fixture
def feed(received):
    async def handler(symbol, price):
        received.append((symbol, price))

    return BitunixPriceFeed(handler)


class TestMessageHandling:
    @pytest.mark.asyncio
    async def test_ticker_forwards_decimal_price(self, feed, received):
        await feed._handle_message({"ch": "ticker", "symbol": "btcusdt", "data": {"la": "64000.5"}})

        assert received == [("BTCUSDT", Decimal("64000.5"))]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "msg",
        [
            {"op": "pong"},
            {"ch": "depth", "symbol": "BTCUSDT", "data": {"la": "1"}},
            {"ch": "ticker", "symbol": "BTCUSDT", "data": {}},
            {"ch": "ticker", "symbol": "BTCUSDT", "data": {"la": "not-a-number"}},
            {"ch": "ticker", "data": {"la": "1"}},
        ],
    )
    async def test_irrelevant_messages_ignored(self, feed, received, msg):
        await feed._handle_message(msg)

        assert received == []

    @pytest.mark.asyncio
    async def test_handler_error_does_not_propagate(self):
        async def broken(symbol, price):
            raise RuntimeError("handler bug")

        feed = BitunixPriceFeed(broken)

        await feed._handle_message({"ch": "ticker", "symbol": "BTCUSDT", "data": {"la": "1"}})


class TestSubscriptions:
    @pytest.mark.asyncio
    async def test_symbols_recorded_while_disconnected(self, feed):
        await feed.set_symbols(["btcusdt", "ETHUSDT"])

        assert feed.symbols == {"BTCUSDT", "ETHUSDT"}

    @pytest.mark.asyncio
    async def test_diff_sent_on_live_connection(self, feed):
        await feed.set_symbols(["BTCUSDT", "ETHUSDT"])
        ws = FakeSocket()
        feed._ws = ws

        await feed.set_symbols(["ETHUSDT", "SOLUSDT"])

        assert ws.sent == [
            {"op": "unsubscribe", "args": [{"symbol": "BTCUSDT", "ch": "ticker"}]},
            {"op": "subscribe", "args": [{"symbol": "SOLUSDT", "ch": "ticker"}]},
        ]

    @pytest.mark.asyncio
    async def test_unchanged_set_sends_nothing(self, feed):
        await feed.set_symbols(["BTCUSDT"])
        ws = FakeSocket()
        feed._ws = ws

        await feed.set_symbols(["btcusdt"])

        assert ws.sent == []

    @pytest.mark.asyncio
    async def test_closed_connection_defers_to_reconnect(self, feed):
        feed._ws = FakeSocket(closed=True)

        await feed.set_symbols(["BTCUSDT"])

        assert feed.symbols == {"BTCUSDT"}

    @pytest.mark.asyncio
    async def test_subscriptions_batched(self, feed):
        ws = FakeSocket()
        symbols = [f"SYM{i:03d}USDT" for i in range(MAX_SYMBOLS_PER_SUB + 5)]

        await feed._send_op(ws, "subscribe", symbols)

        assert [len(m["args"]) for m in ws.sent] == [MAX_SYMBOLS_PER_SUB, 5]

    @pytest.mark.asyncio
    async def test_stop_closes_socket(self, feed):
        ws = FakeSocket()
        feed._ws = ws

        await feed.stop()

        assert ws.closed is True
