"""
Pytest configuration and shared fixtures.
"""
import os

# Keep tests off any real database and out of prod credential checks.
os.environ.pop("DATABASE_URL", None)
os.environ.setdefault("ENVIRONMENT", "dev")

from decimal import Decimal
from typing import Any, Dict, List, Optional

import pytest

from position_ladder.domain.models import Direction, LivePosition, PendingOrder, Position, PositionStatus
from position_ladder.storage.db import Database
from position_ladder.storage.repository import HistoryStore, PositionStore


def pytest_configure(config):
    """Register custom marks. Async tests require pytest-asyncio."""
    config.addinivalue_line("markers", "asyncio: mark test as async (pytest-asyncio).")


class FakeGateway:
    """
    In-memory exchange gateway.

    ``live`` and ``pending`` hold raw exchange dicts; ``tpsl_errors`` and
    ``order_errors`` are queues of exceptions raised by successive submissions
    (``None`` entries succeed).
    """

    def __init__(self):
        self.live: List[Dict[str, Any]] = []
        self.pending: List[Dict[str, Any]] = []
        self.closed_history: List[Dict[str, Any]] = []
        self.tpsl_orders: List[Dict[str, Any]] = []
        self.orders: List[Dict[str, Any]] = []
        self.cancelled: List[List[str]] = []
        self.tpsl_errors: List[Optional[Exception]] = []
        self.order_errors: List[Optional[Exception]] = []
        self.fetch_error: Optional[Exception] = None
        self.history_error: Optional[Exception] = None
        self.leverage_changes: List[tuple] = []
        self.closed = False
        self._seq = 0

    def _next_id(self) -> str:
        self._seq += 1
        return f"ord-{self._seq}"

    def set_live(self, symbol: str, side: str, qty, position_id: Optional[str] = "pos-1") -> None:
        self.live = [p for p in self.live if p["symbol"] != symbol or p["side"] != side]
        self.live.append({"symbol": symbol, "side": side, "qty": str(qty), "positionId": position_id})

    def add_entry_order(self, symbol: str, side: str, qty, price, order_id: Optional[str] = None) -> None:
        self.pending.append(
            {
                "orderId": order_id or self._next_id(),
                "symbol": symbol,
                "side": side,
                "orderType": "LIMIT",
                "reduceOnly": False,
                "status": "NEW",
                "tradeQty": "0",
                "qty": str(qty),
                "price": str(price),
            }
        )

    async def list_open_positions(self) -> List[LivePosition]:
        if self.fetch_error:
            raise self.fetch_error
        return [LivePosition.from_exchange(p) for p in self.live]

    async def list_pending_orders(self, symbol: Optional[str] = None) -> List[PendingOrder]:
        if self.fetch_error:
            raise self.fetch_error
        return [PendingOrder.from_exchange(o) for o in self.pending if symbol in (None, o["symbol"])]

    async def place_order(self, params: Dict[str, Any]) -> str:
        if self.order_errors:
            err = self.order_errors.pop(0)
            if err is not None:
                raise err
        self.orders.append(dict(params))
        return self._next_id()

    async def place_tpsl_order(self, params: Dict[str, Any]) -> str:
        if self.tpsl_errors:
            err = self.tpsl_errors.pop(0)
            if err is not None:
                raise err
        self.tpsl_orders.append(dict(params))
        return self._next_id()

    async def cancel_orders(self, order_ids: List[str], symbol: str) -> bool:
        self.cancelled.append(list(order_ids))
        self.pending = [o for o in self.pending if o["orderId"] not in order_ids]
        return True

    async def change_leverage(self, symbol: str, leverage: int) -> None:
        self.leverage_changes.append((symbol, leverage))

    async def list_closed_positions(self, start_ms: int, end_ms: int) -> List[Dict[str, Any]]:
        if self.history_error:
            raise self.history_error
        return list(self.closed_history)

    async def close(self) -> None:
        self.closed = True

    @property
    def take_profits(self) -> List[Dict[str, Any]]:
        return [o for o in self.tpsl_orders if "tpPrice" in o]

    @property
    def stop_losses(self) -> List[Dict[str, Any]]:
        return [o for o in self.tpsl_orders if "slPrice" in o]


class RecordingNotifier:
    def __init__(self):
        self.sent: List[tuple] = []

    async def notify(self, title: str, text: str) -> None:
        self.sent.append((title, text))

    def titles(self) -> List[str]:
        return [t for t, _ in self.sent]


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def db(tmp_path):
    database = Database(f"sqlite:///{tmp_path / 'positions.db'}")
    database.create_all()
    yield database
    database.dispose()


@pytest.fixture
def store(db):
    return PositionStore(db)


@pytest.fixture
def history_store(db):
    return HistoryStore(db)


@pytest.fixture
def make_position():
    """Factory for master positions (long BTCUSDT, six targets by default)."""

    def _make(
        symbol: str = "BTCUSDT",
        direction: Direction = Direction.LONG,
        *,
        targets=("105", "110", "115", "120", "125", "130"),
        stop_loss="95",
        status: PositionStatus = PositionStatus.OPEN,
        current_qty="10",
        total_qty="10",
        allocated=None,
        next_level_index: int = 0,
        pending_entry_count: Optional[int] = 0,
        sl_placed: bool = False,
        position_id: Optional[str] = "pos-1",
    ) -> Position:
        targets = [Decimal(t) for t in targets]
        return Position(
            symbol=symbol,
            direction=direction,
            targets=targets,
            stop_loss=Decimal(stop_loss) if stop_loss is not None else None,
            status=status,
            avg_entry_price=Decimal("100"),
            total_qty=Decimal(total_qty),
            current_qty=Decimal(current_qty),
            sl_placed=sl_placed,
            allocated_qty_per_level=[Decimal(a) for a in allocated] if allocated else [],
            next_level_index=next_level_index,
            pending_entry_count=pending_entry_count,
            position_id=position_id,
        )

    return _make
