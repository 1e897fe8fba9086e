"""
Domain protocols (interfaces) for dependency inversion.

The reconciliation cycle, ladder and price monitor depend on these contracts
rather than on the Bitunix adapter, the websocket feed or the notification
sinks, so tests can substitute in-memory doubles.
"""
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Protocol, runtime_checkable

from position_ladder.domain.models import LivePosition, PendingOrder, Position

PriceHandler = Callable[[str, Decimal], Awaitable[None]]


@runtime_checkable
class ExchangeGateway(Protocol):
    """Signed exchange operations. Failures raise TransientGatewayError or OrderRejectedError."""

    async def list_open_positions(self) -> List[LivePosition]: ...

    async def list_pending_orders(self, symbol: Optional[str] = None) -> List[PendingOrder]: ...

    async def place_order(self, params: Dict[str, Any]) -> str: ...

    async def place_tpsl_order(self, params: Dict[str, Any]) -> str: ...

    async def cancel_orders(self, order_ids: List[str], symbol: str) -> bool: ...

    async def change_leverage(self, symbol: str, leverage: int) -> None: ...

    async def list_closed_positions(self, start_ms: int, end_ms: int) -> List[Dict[str, Any]]: ...


@runtime_checkable
class PriceFeed(Protocol):
    """Streaming last-price feed with a dynamic symbol set."""

    async def set_symbols(self, symbols: Iterable[str]) -> None: ...

    async def run(self) -> None: ...

    async def stop(self) -> None: ...


@runtime_checkable
class NotificationSink(Protocol):
    """Best-effort push notifications. Must never raise."""

    async def notify(self, title: str, text: str) -> None: ...


@runtime_checkable
class HistorySink(Protocol):
    """Records retired positions and exchange close history."""

    def record_closed(self, position: Position) -> None: ...

    def register_close_intent(self, position_id: Optional[str], source: str) -> None: ...

    async def capture(self) -> int: ...


class NullNotifier:
    """Notification sink that only drops messages (tests, disabled alerts)."""

    async def notify(self, title: str, text: str) -> None:
        return None
