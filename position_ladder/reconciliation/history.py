"""
History capture for closed positions.

Two sources feed the history:
- retired master records, written by the reconciliation cycle just before a
  closed record is removed from the active set;
- the exchange's closed-position history, pulled incrementally from a
  checkpoint and attributed to whoever asked for the close (price monitor,
  manual close) via close intents.

Store reads and writes run in a worker thread so the event loop keeps serving
the price feed.
"""
import asyncio
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from position_ladder.constants import CLOSE_SOURCE_UNKNOWN
from position_ladder.domain.models import ClosedTrade, Position
from position_ladder.domain.protocols import ExchangeGateway
from position_ladder.monitoring.logger import get_logger
from position_ladder.storage.repository import HistoryStore

logger = get_logger(__name__)


def _now_ms() -> int:
    return int(datetime.now(timezone.utc).timestamp() * 1000)


class HistoryRecorder:
    """History sink backed by ``HistoryStore``."""

    def __init__(
        self,
        store: HistoryStore,
        gateway: Optional[ExchangeGateway] = None,
        *,
        initial_lookback: timedelta = timedelta(hours=24),
    ):
        self.store = store
        self.gateway = gateway
        self.initial_lookback = initial_lookback

    def record_closed(self, position: Position) -> None:
        """Keep the retired master record. Idempotent."""
        if self.store.add_retired(position):
            logger.info(
                "HISTORY_POSITION_RECORDED",
                key=str(position.key),
                position_id=position.position_id,
                closed_at=position.closed_at.isoformat() if position.closed_at else None,
            )

    def register_close_intent(self, position_id: Optional[str], source: str) -> None:
        if not position_id:
            return
        self.store.put_intent(position_id, source)
        logger.debug("CLOSE_INTENT_REGISTERED", position_id=position_id, source=source)

    async def capture(self) -> int:
        """
        Pull closed positions since the checkpoint. Returns the number of new entries.

        Gateway errors propagate and leave the checkpoint where it was.
        """
        if self.gateway is None:
            return 0

        now_ms = _now_ms()
        checkpoint = await asyncio.to_thread(self.store.get_checkpoint_ms)
        if checkpoint is None:
            checkpoint = now_ms - int(self.initial_lookback.total_seconds() * 1000)

        raw = await self.gateway.list_closed_positions(checkpoint, now_ms)
        return await asyncio.to_thread(self._store_new_closes, raw, checkpoint, now_ms)

    def _store_new_closes(self, raw: List[dict], checkpoint: int, now_ms: int) -> int:
        known = self.store.known_trade_ids()
        fresh: Dict[str, dict] = {}
        for item in raw:
            pid = str(item.get("positionId") or "")
            if pid and pid not in known and pid not in fresh:
                fresh[pid] = item

        if not fresh:
            self.store.set_checkpoint_ms(max(now_ms, checkpoint))
            logger.debug("HISTORY_NO_NEW_CLOSES", checkpoint_ms=now_ms)
            return 0

        trades: List[ClosedTrade] = [
            ClosedTrade.from_exchange(item, self.store.pop_intent(pid) or CLOSE_SOURCE_UNKNOWN)
            for pid, item in fresh.items()
        ]
        self.store.add_closed_trades(trades)

        latest_ms = max(int(t.close_time.timestamp() * 1000) for t in trades)
        self.store.set_checkpoint_ms(max(checkpoint, latest_ms))
        logger.info(
            "HISTORY_CAPTURED",
            new_closed=len(trades),
            sources=sorted({t.close_source for t in trades}),
            checkpoint_ms=max(checkpoint, latest_ms),
        )
        return len(trades)

    def closed_positions(self, limit: Optional[int] = None) -> List[ClosedTrade]:
        return self.store.closed_trades(limit)

    def retired_positions(self, limit: int = 100) -> List[Position]:
        return self.store.retired_positions(limit)
