"""
Manual close operations.

Closes are reduce-only IOC market orders bound to the exchange position id.
Each close registers a ``manual`` intent so history capture can attribute it;
the master record is retired by the next reconciliation tick once the live
quantity is gone.
"""
import asyncio
from decimal import Decimal
from typing import Iterable, List, Optional

from position_ladder.constants import CLOSE_ALL_DELAY_SECONDS, CLOSE_SOURCE_MANUAL
from position_ladder.domain.models import ZERO, CloseResult, Direction, LivePosition
from position_ladder.domain.protocols import ExchangeGateway, HistorySink
from position_ladder.exceptions import OperationalError, OrderRejectedError
from position_ladder.execution.orders import market_close_params
from position_ladder.monitoring.logger import get_logger

logger = get_logger(__name__)


class TradeCloser:
    """Market-close live positions on request."""

    def __init__(
        self,
        gateway: ExchangeGateway,
        *,
        history: Optional[HistorySink] = None,
        qty_decimals: int = 6,
        delay_seconds: float = CLOSE_ALL_DELAY_SECONDS,
    ):
        self.gateway = gateway
        self.history = history
        self.qty_decimals = qty_decimals
        self.delay_seconds = delay_seconds

    async def close_running_trade(self, symbol: str, direction: Optional[Direction] = None) -> CloseResult:
        """Close every live position on ``symbol`` (optionally one side only)."""
        symbol = symbol.upper()
        try:
            live = await self.gateway.list_open_positions()
        except OperationalError as e:
            logger.warning("MANUAL_CLOSE_FETCH_FAILED", symbol=symbol, error=str(e))
            return CloseResult(symbol, success=False, message=f"Failed to fetch positions: {e}")
        return await self._close_symbol(symbol, live, direction)

    async def close_all_positions(self) -> List[CloseResult]:
        try:
            live = await self.gateway.list_open_positions()
        except OperationalError as e:
            logger.warning("MANUAL_CLOSE_ALL_FETCH_FAILED", error=str(e))
            return [CloseResult("*", success=False, message=f"Failed to fetch positions: {e}")]

        symbols = sorted({p.symbol for p in live if p.qty > 0})
        if not symbols:
            logger.info("MANUAL_CLOSE_ALL_NOTHING_OPEN")
            return []
        logger.info("MANUAL_CLOSE_ALL", symbols=symbols)
        return await self._close_many(symbols, live)

    async def batch_close_positions(self, symbols: Iterable[str]) -> List[CloseResult]:
        wanted = [s.upper() for s in symbols]
        if not wanted:
            return []
        try:
            live = await self.gateway.list_open_positions()
        except OperationalError as e:
            logger.warning("MANUAL_BATCH_CLOSE_FETCH_FAILED", symbols=wanted, error=str(e))
            return [CloseResult(s, success=False, message=f"Failed to fetch positions: {e}") for s in wanted]
        return await self._close_many(wanted, live)

    async def _close_many(self, symbols: List[str], live: List[LivePosition]) -> List[CloseResult]:
        results = []
        for i, symbol in enumerate(symbols):
            if i and self.delay_seconds:
                await asyncio.sleep(self.delay_seconds)
            results.append(await self._close_symbol(symbol, live, None))
        return results

    async def _close_symbol(
        self,
        symbol: str,
        live: List[LivePosition],
        direction: Optional[Direction],
    ) -> CloseResult:
        targets = [
            p for p in live
            if p.symbol == symbol and p.qty > 0 and (direction is None or p.direction == direction)
        ]
        if not targets:
            return CloseResult(symbol, success=False, message="No open position")

        closed: Decimal = ZERO
        order_ids: List[str] = []
        failures: List[str] = []
        for p in targets:
            if p.direction is None:
                failures.append(f"unknown side for position {p.position_id}")
                continue
            if self.history is not None:
                await asyncio.to_thread(self.history.register_close_intent, p.position_id, CLOSE_SOURCE_MANUAL)
            params = market_close_params(
                symbol,
                p.direction,
                p.qty,
                qty_decimals=self.qty_decimals,
                position_id=p.position_id,
                immediate_or_cancel=True,
            )
            try:
                order_ids.append(await self.gateway.place_order(params))
                closed += p.qty
            except (OperationalError, OrderRejectedError) as e:
                failures.append(str(e))
                logger.warning("MANUAL_CLOSE_FAILED", symbol=symbol, position_id=p.position_id, error=str(e))

        success = not failures
        message = "Closed" if success else "; ".join(failures)
        logger.info(
            "MANUAL_CLOSE",
            symbol=symbol,
            success=success,
            closed_qty=str(closed),
            orders=len(order_ids),
        )
        return CloseResult(symbol, success=success, closed_qty=closed, message=message, order_ids=order_ids)
