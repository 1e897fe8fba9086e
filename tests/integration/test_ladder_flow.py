"""
End-to-end flow through the ladder service with an in-memory exchange:

signal tracked -> entries fill one by one -> ladder rebuilt after each fill
-> stop-loss hit by the price monitor -> record retired -> close captured
into history and attributed to the monitor.
"""
import asyncio
import time
from decimal import Decimal

import pytest

from position_ladder.config.config import Config
from position_ladder.constants import CLOSE_SOURCE_SL
from position_ladder.domain.models import Direction, Position, PositionKey, PositionStatus
from position_ladder.live.engine import LadderService

KEY = PositionKey("BTCUSDT", Direction.LONG)


class IdleFeed:
    def __init__(self, handler):
        self.handler = handler
        self.symbols = set()

    async def set_symbols(self, symbols):
        self.symbols = set(symbols)

    async def run(self):
        await asyncio.sleep(0)

    async def stop(self):
        return None


@pytest.fixture
def service(gateway, db, notifier):
    return LadderService(Config(environment="dev"), gateway=gateway, db=db, notifier=notifier, feed_factory=IdleFeed)


@pytest.mark.asyncio
async def test_signal_to_history(service, gateway, notifier):
    store = service.store
    store.create(
        Position.from_signal(
            "BTCUSDT",
            "long",
            [Decimal("100"), Decimal("90")],
            [Decimal("6"), Decimal("4")],
            [Decimal(t) for t in ("105", "110", "115", "120", "125", "130")],
            Decimal("85"),
        )
    )
    gateway.add_entry_order("BTCUSDT", "BUY", "6", "100", order_id="entry-1")
    gateway.add_entry_order("BTCUSDT", "BUY", "4", "90", order_id="entry-2")

    # Both entries resting
    await service.reconcile_once()
    assert store.get(KEY).status is PositionStatus.PENDING_FILL
    assert gateway.tpsl_orders == []

    # First entry fills: ladder reset, rebuilt on the following tick
    gateway.pending = [o for o in gateway.pending if o["orderId"] != "entry-1"]
    gateway.set_live("BTCUSDT", "BUY", "6")
    await service.reconcile_once()

    stored = store.get(KEY)
    assert stored.status is PositionStatus.OPEN
    assert stored.pending_entry_count == 1
    assert gateway.tpsl_orders == []

    await service.reconcile_once()

    stored = store.get(KEY)
    assert stored.allocated_total == Decimal("6")
    assert stored.sl_placed is True
    assert gateway.stop_losses[-1]["slQty"] == "6.000000"

    # Second entry fills: ladder rebuilt on the full size
    gateway.pending = []
    gateway.set_live("BTCUSDT", "BUY", "10")
    await service.reconcile_once()
    await service.reconcile_once()

    stored = store.get(KEY)
    assert stored.current_qty == Decimal("10")
    assert stored.allocated_total == Decimal("10")
    assert stored.allocated_qty_per_level[0] == Decimal("3")
    assert stored.sl_placed is True
    assert gateway.stop_losses[-1]["slQty"] == "10.000000"

    # Stop-loss breach seen by the price monitor
    await service.monitor.refresh()
    await service.feed.handler("BTCUSDT", Decimal("84.5"))
    await service.monitor.drain()

    assert gateway.orders[-1]["qty"] == "10.000000"
    assert store.get(KEY).status is PositionStatus.CLOSED

    # Exchange reports the position gone and closed
    gateway.live = []
    gateway.closed_history = [
        {
            "positionId": "pos-1",
            "symbol": "BTCUSDT",
            "side": "LONG",
            "maxQty": "10",
            "entryPrice": "96",
            "closePrice": "84.5",
            "realizedPNL": "-115",
            "mtime": int(time.time() * 1000) - 1000,
        }
    ]
    report = await service.reconcile_once()

    assert report.removed == 1
    assert store.get(KEY) is None
    assert len(service.history.retired_positions()) == 1
    trades = service.history.closed_positions()
    assert [(t.position_id, t.close_source) for t in trades] == [("pos-1", CLOSE_SOURCE_SL)]
    assert notifier.titles() == [
        "Ladder Rebuilt: BTCUSDT",
        "Ladder Rebuilt: BTCUSDT",
        "Stop Loss Hit: BTCUSDT",
    ]
