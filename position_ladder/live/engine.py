"""
Ladder service: wires the reconciliation cycle, the price monitor and the
price feed together and runs them until stopped.
"""
import asyncio
from typing import Callable, Optional

from position_ladder.data.bitunix_client import BitunixClient
from position_ladder.data.ws_price_feed import BitunixPriceFeed
from position_ladder.domain.models import TickReport
from position_ladder.domain.protocols import ExchangeGateway, NotificationSink, PriceFeed, PriceHandler
from position_ladder.execution.trade_closer import TradeCloser
from position_ladder.live.price_monitor import PriceMonitor
from position_ladder.monitoring.alerting import Notifier
from position_ladder.monitoring.logger import get_logger
from position_ladder.reconciliation.history import HistoryRecorder
from position_ladder.reconciliation.reconciler import PositionReconciler
from position_ladder.storage.db import Database, init_db
from position_ladder.storage.repository import HistoryStore, PositionStore

logger = get_logger(__name__)

FeedFactory = Callable[[PriceHandler], PriceFeed]


class LadderService:
    """
    Long-running service.

    The reconciliation task fires on a fixed interval; a tick is dropped while
    the previous one is still running. The price monitor runs independently off
    the price feed. ``stop()`` lets an in-flight cycle and any in-flight
    monitor closes finish before the feed, gateway and database are closed.
    """

    def __init__(
        self,
        config,
        *,
        gateway: Optional[ExchangeGateway] = None,
        db: Optional[Database] = None,
        notifier: Optional[NotificationSink] = None,
        feed_factory: Optional[FeedFactory] = None,
    ):
        self.config = config
        self.db = db or init_db(config.storage.database_url)
        self.gateway = gateway or BitunixClient.from_config(config)
        self.notifier = notifier or Notifier.from_config(config)

        self.store = PositionStore(self.db, max_write_attempts=config.storage.max_write_attempts)
        self.history = HistoryRecorder(HistoryStore(self.db), self.gateway)
        self.reconciler = PositionReconciler.from_config(
            config, self.gateway, self.store, notifier=self.notifier, history=self.history
        )
        self.monitor = PriceMonitor(
            self.gateway,
            self.store,
            config.ladder.allocation_pct,
            notifier=self.notifier,
            history=self.history,
            qty_decimals=config.ladder.qty_decimals,
            debounce_seconds=config.price_monitor.debounce_seconds,
            enabled=config.ladder.tpsl_enabled,
        )
        if feed_factory is None:
            pm = config.price_monitor

            def feed_factory(handler: PriceHandler) -> PriceFeed:
                return BitunixPriceFeed(
                    handler,
                    ws_url=config.exchange.ws_url,
                    reconnect_delay_seconds=pm.reconnect_delay_seconds,
                    max_retries=pm.max_retries,
                )

        self.feed = feed_factory(self.monitor.on_price)
        self.monitor.attach_feed(self.feed)
        self.closer = TradeCloser(self.gateway, history=self.history, qty_decimals=config.ladder.qty_decimals)

        self.active = False
        self._stop_event: Optional[asyncio.Event] = None
        self._cycle_task: Optional[asyncio.Task] = None
        self._feed_task: Optional[asyncio.Task] = None
        self.last_report: Optional[TickReport] = None

    @property
    def tpsl_enabled(self) -> bool:
        return self.reconciler.tpsl_enabled

    def set_tpsl_enabled(self, enabled: bool) -> None:
        """Runtime switch for take-profit / stop-loss management."""
        self.reconciler.tpsl_enabled = enabled
        self.monitor.enabled = enabled
        logger.warning("TPSL_MANAGEMENT_TOGGLED", enabled=enabled)

    async def reconcile_once(self) -> TickReport:
        self.last_report = await self.reconciler.run_cycle()
        return self.last_report

    async def run(self) -> None:
        """Run until ``stop()`` is called or the task is cancelled."""
        self.active = True
        self._stop_event = asyncio.Event()
        interval = self.config.reconciliation.interval_seconds
        logger.info(
            "LADDER_SERVICE_STARTING",
            interval_seconds=interval,
            reconciliation=self.config.reconciliation.enabled,
            price_monitor=self.config.price_monitor.enabled,
            tpsl_enabled=self.tpsl_enabled,
        )
        try:
            if self.config.price_monitor.enabled:
                await self.monitor.refresh()
                self._feed_task = asyncio.create_task(self.feed.run())

            while self.active:
                if self.config.reconciliation.enabled:
                    self._start_cycle()
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
                except asyncio.TimeoutError:
                    pass
        except asyncio.CancelledError:
            logger.info("Ladder service cancelled")
        finally:
            self.active = False
            await self._shutdown()

    def stop(self) -> None:
        self.active = False
        if self._stop_event is not None:
            self._stop_event.set()

    def _start_cycle(self) -> None:
        if self._cycle_task is not None and not self._cycle_task.done():
            logger.info("RECONCILE_TICK_SKIPPED", reason="previous cycle still running")
            return
        self._cycle_task = asyncio.create_task(self.reconcile_once())
        self._cycle_task.add_done_callback(self._on_cycle_done)

    @staticmethod
    def _on_cycle_done(task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("RECONCILE_CYCLE_CRASHED", error=str(exc), error_type=type(exc).__name__)

    async def _shutdown(self) -> None:
        if self._cycle_task is not None and not self._cycle_task.done():
            logger.info("Waiting for in-flight reconciliation cycle")
            await asyncio.gather(self._cycle_task, return_exceptions=True)

        await self.monitor.stop()
        await self.feed.stop()
        if self._feed_task is not None:
            if not self._feed_task.done():
                self._feed_task.cancel()
            await asyncio.gather(self._feed_task, return_exceptions=True)

        close = getattr(self.gateway, "close", None)
        if close is not None:
            await close()
        self.db.dispose()
        logger.info("Ladder service shutdown complete")
