"""
Price monitor: reacts to live prices for open positions.

Keeps a cache of open, non-empty positions (refreshed from store change
events), keeps the price feed subscribed to exactly their symbols, and on each
tick checks the stop-loss and the next take-profit level. Closes are
dispatched as tasks so a slow exchange call never blocks the feed; a per
position debounce window and in-flight guard stop bursts of ticks from issuing
duplicate closes.

Store calls run in a worker thread. Store change events committed there are
handed back to the monitor's event loop before they touch the cache.
"""
import asyncio
import time
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Callable, Dict, Optional, Sequence, Set

from position_ladder.constants import CLOSE_SOURCE_SL, CLOSE_SOURCE_TP
from position_ladder.domain.models import (
    Direction,
    Position,
    PositionChanges,
    PositionKey,
    PositionStatus,
    utcnow,
)
from position_ladder.domain.protocols import (
    ExchangeGateway,
    HistorySink,
    NotificationSink,
    NullNotifier,
    PriceFeed,
)
from position_ladder.exceptions import OrderRejectedError, TransientGatewayError
from position_ladder.execution.ladder import level_remaining_qty
from position_ladder.execution.orders import market_close_params
from position_ladder.monitoring.logger import get_logger
from position_ladder.storage.repository import PositionStore

logger = get_logger(__name__)


class TriggerKind(str, Enum):
    TAKE_PROFIT = "take_profit"
    STOP_LOSS = "stop_loss"


@dataclass
class Trigger:
    kind: TriggerKind
    position: Position
    price: Decimal
    qty: Decimal
    level: Optional[int] = None


def evaluate_trigger(
    position: Position,
    price: Decimal,
    schedule: Sequence[Decimal],
    qty_decimals: int,
) -> Optional[Trigger]:
    """Stop-loss breach first, then the next take-profit level."""
    if position.status != PositionStatus.OPEN or position.current_qty <= 0:
        return None
    is_long = position.direction is Direction.LONG

    sl = position.stop_loss
    if sl is not None and (price <= sl if is_long else price >= sl):
        return Trigger(TriggerKind.STOP_LOSS, position, price, position.current_qty)

    level = position.next_level_index
    if level < len(position.targets):
        target = position.targets[level]
        if price >= target if is_long else price <= target:
            qty = level_remaining_qty(position, level, schedule, qty_decimals)
            if qty > 0:
                return Trigger(TriggerKind.TAKE_PROFIT, position, price, qty, level)
    return None


class PriceMonitor:
    """Event-driven exit triggers over a local cache of open positions."""

    def __init__(
        self,
        gateway: ExchangeGateway,
        store: PositionStore,
        schedule: Sequence[Decimal],
        *,
        notifier: Optional[NotificationSink] = None,
        history: Optional[HistorySink] = None,
        qty_decimals: int = 6,
        debounce_seconds: float = 5.0,
        enabled: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.gateway = gateway
        self.store = store
        self.schedule = [Decimal(p) for p in schedule]
        self.notifier = notifier or NullNotifier()
        self.history = history
        self.qty_decimals = qty_decimals
        self.debounce_seconds = debounce_seconds
        self.enabled = enabled
        self._clock = clock

        self.feed: Optional[PriceFeed] = None
        self._cache: Dict[PositionKey, Position] = {}
        self._last_trigger: Dict[PositionKey, float] = {}
        self._inflight: Set[PositionKey] = set()
        self._tasks: Set[asyncio.Task] = set()
        self._subscribed: Set[str] = set()
        self._stopping = False
        self._loop: Optional[asyncio.AbstractEventLoop] = None

        store.add_listener(self.on_store_change)

    def attach_feed(self, feed: PriceFeed) -> None:
        self.feed = feed

    @property
    def symbols(self) -> Set[str]:
        return {p.symbol for p in self._cache.values()}

    @property
    def cached_positions(self) -> Dict[PositionKey, Position]:
        return dict(self._cache)

    @staticmethod
    def _watchable(position: Position) -> bool:
        return (
            position.status == PositionStatus.OPEN
            and position.current_qty > 0
            and not position.removal_requested
        )

    async def refresh(self) -> None:
        """Reload the cache from the store and resync subscriptions."""
        self._loop = asyncio.get_running_loop()
        positions = await asyncio.to_thread(self.store.load)
        self._cache = {p.key: p for p in positions if self._watchable(p)}
        logger.info("MONITOR_CACHE_REFRESHED", positions=len(self._cache), symbols=sorted(self.symbols))
        await self._sync_subscriptions()

    def on_store_change(self, position: Position, deleted: bool) -> None:
        """Store listener: keep the cache in step with every committed write."""
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            loop = self._loop
            if loop is not None and not loop.is_closed():
                # Committed from a worker thread
                loop.call_soon_threadsafe(self._apply_store_change, position, deleted)
                return
        self._apply_store_change(position, deleted)

    def _apply_store_change(self, position: Position, deleted: bool) -> None:
        if deleted:
            self._last_trigger.pop(position.key, None)
        else:
            cached = self._cache.get(position.key)
            if cached is not None and cached.version > position.version:
                # Events from two worker threads can arrive out of commit order
                return
        if deleted or not self._watchable(position):
            self._cache.pop(position.key, None)
        else:
            self._cache[position.key] = position

        if self.symbols != self._subscribed:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                return
            self._track(loop.create_task(self._sync_subscriptions()))

    async def _sync_subscriptions(self) -> None:
        symbols = self.symbols
        self._subscribed = symbols
        if self.feed is not None:
            await self.feed.set_symbols(symbols)

    def _track(self, task: asyncio.Task) -> None:
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def on_price(self, symbol: str, price: Decimal) -> None:
        """Price tick handler. Dispatches closes; never waits on the exchange."""
        if self._stopping or not self.enabled:
            return
        self._loop = asyncio.get_running_loop()
        now = self._clock()
        for key, position in list(self._cache.items()):
            if position.symbol != symbol or key in self._inflight:
                continue
            last = self._last_trigger.get(key)
            if last is not None and now - last < self.debounce_seconds:
                continue
            trigger = evaluate_trigger(position, price, self.schedule, self.qty_decimals)
            if trigger is None:
                continue
            self._last_trigger[key] = now
            self._inflight.add(key)
            logger.info(
                "MONITOR_TRIGGER",
                key=str(key),
                kind=trigger.kind.value,
                price=str(price),
                qty=str(trigger.qty),
                level=trigger.level,
            )
            self._track(asyncio.create_task(self._execute(trigger)))

    async def _execute(self, trigger: Trigger) -> None:
        position = trigger.position
        key = position.key
        try:
            source = CLOSE_SOURCE_SL if trigger.kind is TriggerKind.STOP_LOSS else CLOSE_SOURCE_TP
            if self.history is not None:
                try:
                    await asyncio.to_thread(self.history.register_close_intent, position.position_id, source)
                except Exception as e:
                    logger.warning("CLOSE_INTENT_FAILED", key=str(key), error=str(e))

            params = market_close_params(
                position.symbol,
                position.direction,
                trigger.qty,
                qty_decimals=self.qty_decimals,
                position_id=position.position_id,
            )
            try:
                order_id = await self.gateway.place_order(params)
            except (TransientGatewayError, OrderRejectedError) as e:
                logger.warning(
                    "MONITOR_CLOSE_FAILED",
                    key=str(key),
                    kind=trigger.kind.value,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                return

            if trigger.kind is TriggerKind.STOP_LOSS:
                changes = PositionChanges(flatten=True, status=PositionStatus.CLOSED, closed_at=utcnow())
            else:
                changes = PositionChanges(
                    qty_delta=-trigger.qty,
                    allocation_deltas={trigger.level: trigger.qty},
                    next_level_index=trigger.level + 1,
                )

            try:
                stored = await asyncio.to_thread(self.store.apply_changes, key, changes)
            except Exception as e:
                # The next reconciliation tick re-reads the exchange quantity
                logger.error("MONITOR_PERSIST_FAILED", key=str(key), order_id=order_id, error=str(e), exc_info=True)
                return

            logger.info(
                "MONITOR_CLOSE_EXECUTED",
                key=str(key),
                kind=trigger.kind.value,
                qty=str(trigger.qty),
                price=str(trigger.price),
                order_id=order_id,
                remaining_qty=str(stored.current_qty) if stored else None,
            )
            await self._notify_close(trigger, stored)
        finally:
            self._inflight.discard(key)

    async def _notify_close(self, trigger: Trigger, stored: Optional[Position]) -> None:
        p = trigger.position
        if trigger.kind is TriggerKind.STOP_LOSS:
            await self.notifier.notify(
                f"Stop Loss Hit: {p.symbol}",
                f"{p.symbol} {p.direction.value} closed at ~{trigger.price} "
                f"(stop {p.stop_loss}), qty {trigger.qty}.",
            )
        else:
            remaining = stored.current_qty if stored else p.current_qty - trigger.qty
            await self.notifier.notify(
                f"Take Profit {trigger.level + 1} Hit: {p.symbol}",
                f"{p.symbol} {p.direction.value} closed {trigger.qty} at ~{trigger.price} "
                f"(target {p.targets[trigger.level]}), remaining {remaining}.",
            )

    async def drain(self) -> None:
        """Wait for in-flight closes (and subscription updates) to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def stop(self) -> None:
        """Stop reacting to ticks and let in-flight closes complete."""
        self._stopping = True
        await self.drain()
        logger.info("MONITOR_STOPPED")
