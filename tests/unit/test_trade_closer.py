"""
Tests for manual closes.
"""
from decimal import Decimal

import pytest

from position_ladder.constants import CLOSE_SOURCE_MANUAL
from position_ladder.domain.models import Direction
from position_ladder.exceptions import OrderRejectedError, TransientGatewayError
from position_ladder.execution.trade_closer import TradeCloser
from position_ladder.reconciliation.history import HistoryRecorder


@pytest.fixture
def closer(gateway, history_store):
    return TradeCloser(gateway, history=HistoryRecorder(history_store), delay_seconds=0)


class TestCloseRunningTrade:
    @pytest.mark.asyncio
    async def test_reduce_only_ioc_order(self, closer, gateway, history_store):
        gateway.set_live("BTCUSDT", "SELL", "1.5", position_id="pos-9")

        result = await closer.close_running_trade("btcusdt")

        assert result.success is True
        assert result.closed_qty == Decimal("1.5")
        assert result.order_ids == ["ord-1"]
        order = gateway.orders[0]
        assert order["side"] == "BUY"
        assert order["qty"] == "1.500000"
        assert order["effect"] == "IOC"
        assert order["reduceOnly"] is True
        assert order["positionId"] == "pos-9"
        assert history_store.pop_intent("pos-9") == CLOSE_SOURCE_MANUAL

    @pytest.mark.asyncio
    async def test_direction_filter(self, closer, gateway):
        gateway.set_live("BTCUSDT", "BUY", "1", position_id="long-1")
        gateway.set_live("BTCUSDT", "SELL", "2", position_id="short-1")

        result = await closer.close_running_trade("BTCUSDT", Direction.SHORT)

        assert result.closed_qty == Decimal("2")
        assert [o["positionId"] for o in gateway.orders] == ["short-1"]

    @pytest.mark.asyncio
    async def test_no_open_position(self, closer, gateway):
        result = await closer.close_running_trade("ETHUSDT")

        assert result.success is False
        assert result.message == "No open position"
        assert gateway.orders == []

    @pytest.mark.asyncio
    async def test_rejection_reported(self, closer, gateway):
        gateway.set_live("BTCUSDT", "BUY", "1")
        gateway.order_errors = [OrderRejectedError("API Error 20003: Insufficient balance")]

        result = await closer.close_running_trade("BTCUSDT")

        assert result.success is False
        assert "Insufficient balance" in result.message

    @pytest.mark.asyncio
    async def test_fetch_failure(self, closer, gateway):
        gateway.fetch_error = TransientGatewayError("HTTP 503")

        result = await closer.close_running_trade("BTCUSDT")

        assert result.success is False
        assert "Failed to fetch positions" in result.message


class TestBatchClose:
    @pytest.mark.asyncio
    async def test_close_all_positions(self, closer, gateway):
        gateway.set_live("ETHUSDT", "BUY", "3", position_id="p-eth")
        gateway.set_live("BTCUSDT", "BUY", "1", position_id="p-btc")
        gateway.set_live("SOLUSDT", "BUY", "0", position_id="p-sol")

        results = await closer.close_all_positions()

        assert [r.symbol for r in results] == ["BTCUSDT", "ETHUSDT"]
        assert all(r.success for r in results)

    @pytest.mark.asyncio
    async def test_close_all_with_nothing_open(self, closer):
        assert await closer.close_all_positions() == []

    @pytest.mark.asyncio
    async def test_batch_close_reports_each_symbol(self, closer, gateway):
        gateway.set_live("BTCUSDT", "BUY", "1")

        results = await closer.batch_close_positions(["btcusdt", "XRPUSDT"])

        assert [(r.symbol, r.success) for r in results] == [("BTCUSDT", True), ("XRPUSDT", False)]
