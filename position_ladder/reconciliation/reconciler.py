"""
Reconciliation cycle: keeps tracked master positions in line with the exchange.

Per tick the stored records are loaded first, then live positions and pending
orders are fetched once. Each tracked position is then processed on a working
copy inside its own failure boundary:

1. match the live position, take its quantity and position id
2. flag a forced close when the exchange cannot identify a position we hold
3. count unfilled entry orders
4. detect the closed condition (cancel stale entries, notify)
5. pending_fill -> open once the live quantity crosses the fill threshold
6. refill (entry count dropped): reset the ladder, notify
7. otherwise advance the take-profit ladder
8. place the stop-loss if it is not placed yet

Changes are written back as a change-set onto the freshest stored record, so
a concurrent price-monitor write is composed rather than overwritten. A record
that changed after the snapshot was loaded is left for the next tick, and a
change landing while orders are being placed keeps its quantity (the stale
``qty_delta`` is dropped). Records flagged for removal are retired after the
loop. Store calls run in a worker thread via ``asyncio.to_thread``.
"""
import asyncio
from decimal import Decimal
from typing import List, Optional

from position_ladder.domain.models import (
    ZERO,
    LivePosition,
    Outcome,
    PendingOrder,
    Position,
    PositionChanges,
    PositionKey,
    PositionStatus,
    TickReport,
    utcnow,
)
from position_ladder.domain.protocols import ExchangeGateway, HistorySink, NotificationSink, NullNotifier
from position_ladder.exceptions import (
    ConcurrencyConflict,
    DataError,
    ExpectedRejection,
    IdentityInconsistency,
    InvariantError,
    OperationalError,
    OrderRejectedError,
    TransientGatewayError,
)
from position_ladder.execution.ladder import LadderEngine
from position_ladder.execution.orders import stop_loss_params
from position_ladder.monitoring.logger import get_logger
from position_ladder.runtime import CycleGuard
from position_ladder.storage.repository import PositionStore

logger = get_logger(__name__)


def match_live_position(key: PositionKey, live_positions: List[LivePosition]) -> Optional[LivePosition]:
    """Live position for ``key``; one with an unreadable side matches on symbol alone."""
    fallback = None
    for live in live_positions:
        if live.symbol != key.symbol:
            continue
        if live.direction == key.direction:
            return live
        if live.direction is None and fallback is None:
            fallback = live
    return fallback


class PositionReconciler:
    """
    Periodic reconciliation of tracked positions against exchange state.

    Non-reentrant: ``run_cycle`` returns immediately (``report.ran`` is False)
    while a previous cycle is still executing.
    """

    def __init__(
        self,
        gateway: ExchangeGateway,
        store: PositionStore,
        ladder: LadderEngine,
        *,
        notifier: Optional[NotificationSink] = None,
        history: Optional[HistorySink] = None,
        guard: Optional[CycleGuard] = None,
        close_qty_epsilon: Decimal = Decimal("0.001"),
        min_fill_qty: Decimal = Decimal("0.0001"),
        qty_decimals: int = 6,
        tpsl_enabled: bool = True,
    ):
        self.gateway = gateway
        self.store = store
        self.ladder = ladder
        self.notifier = notifier or NullNotifier()
        self.history = history
        self.guard = guard or CycleGuard()
        self.close_qty_epsilon = Decimal(close_qty_epsilon)
        self.min_fill_qty = Decimal(min_fill_qty)
        self.qty_decimals = qty_decimals
        self.tpsl_enabled = tpsl_enabled

    @classmethod
    def from_config(
        cls,
        config,
        gateway: ExchangeGateway,
        store: PositionStore,
        *,
        notifier: Optional[NotificationSink] = None,
        history: Optional[HistorySink] = None,
    ) -> "PositionReconciler":
        return cls(
            gateway,
            store,
            LadderEngine.from_config(gateway, config),
            notifier=notifier,
            history=history,
            guard=CycleGuard(max_cycle_duration_seconds=config.reconciliation.max_cycle_duration_seconds),
            close_qty_epsilon=config.ladder.close_qty_epsilon,
            min_fill_qty=config.ladder.min_fill_qty,
            qty_decimals=config.ladder.qty_decimals,
            tpsl_enabled=config.ladder.tpsl_enabled,
        )

    async def run_cycle(self) -> TickReport:
        """Run one reconciliation tick. Never raises for per-position or fetch failures."""
        started, reason = self.guard.start_cycle()
        if not started:
            logger.info("RECONCILE_TICK_SKIPPED", reason=reason)
            return TickReport(ran=False, aborted_reason=reason)

        report = TickReport(cycle_id=self.guard.current_cycle.cycle_id)
        logger.info("RECONCILE_CYCLE_START", cycle_id=report.cycle_id, tpsl_enabled=self.tpsl_enabled)
        try:
            await self._run(report)
        finally:
            state = self.guard.end_cycle()
            report.finished_at = utcnow()
            logger.info(
                "RECONCILE_CYCLE_END",
                cycle_id=report.cycle_id,
                duration_seconds=round(state.duration_seconds(), 2),
                aborted=report.aborted_reason,
                persisted=report.persisted,
                removed=report.removed,
                orders_placed=state.orders_placed,
                outcomes=report.counts(),
            )
        return report

    async def _run(self, report: TickReport) -> None:
        # Snapshot before the fetch: exchange state is never older than the record
        try:
            positions = await asyncio.to_thread(self.store.load)
        except Exception as e:
            report.aborted_reason = f"store load failed: {e}"
            logger.error("RECONCILE_STORE_LOAD_FAILED", error=str(e), error_type=type(e).__name__)
            return

        try:
            live_positions = await self.gateway.list_open_positions()
            pending_orders = await self.gateway.list_pending_orders()
        except OperationalError as e:
            report.aborted_reason = f"exchange fetch failed: {e}"
            logger.warning("RECONCILE_FETCH_FAILED", error=str(e), error_type=type(e).__name__)
            return

        to_remove: List[Position] = []
        for snapshot in positions:
            key = snapshot.key
            try:
                flagged = await self._reconcile_position(snapshot, live_positions, pending_orders, report)
                if flagged is not None:
                    to_remove.append(flagged)
            except DataError as e:
                report.record(key, Outcome.SKIPPED, error=e)
                logger.warning("RECONCILE_POSITION_SKIPPED", key=str(key), error=str(e), error_type=type(e).__name__)
            except OperationalError as e:
                report.record(key, Outcome.ERROR, error=e)
                self.guard.record_error()
                logger.warning("RECONCILE_POSITION_RETRY", key=str(key), error=str(e), error_type=type(e).__name__)
            except InvariantError as e:
                report.record(key, Outcome.ERROR, error=e)
                self.guard.record_error()
                logger.critical("RECONCILE_INVARIANT_VIOLATION", key=str(key), error=str(e))
            except Exception as e:
                report.record(key, Outcome.ERROR, error=e)
                self.guard.record_error()
                logger.error("RECONCILE_POSITION_ERROR", key=str(key), error=str(e), exc_info=True)
            finally:
                self.guard.record_position_processed()

        for position in to_remove:
            if await self._retire(position):
                report.removed += 1
                report.record(position.key, Outcome.REMOVED)

        if report.removed and self.history is not None:
            try:
                await self.history.capture()
            except Exception as e:
                logger.warning("HISTORY_CAPTURE_FAILED", error=str(e), error_type=type(e).__name__)

    async def _reconcile_position(
        self,
        snapshot: Position,
        live_positions: List[LivePosition],
        pending_orders: List[PendingOrder],
        report: TickReport,
    ) -> Optional[Position]:
        """Process one position. Returns the stored record when it is flagged for removal."""
        key = snapshot.key

        if snapshot.removal_requested:
            report.record(key, Outcome.CLOSED, detail="removal pending")
            return snapshot

        if snapshot.status == PositionStatus.CLOSED:
            # Closed outside the cycle (price monitor stop-loss)
            stored = await self._persist(snapshot, PositionChanges(removal_requested=True), report)
            report.record(key, Outcome.CLOSED, detail="closed by monitor")
            return stored

        if await self._changed_since(snapshot):
            logger.info("RECONCILE_POSITION_DEFERRED", key=str(key), version=snapshot.version)
            report.record(key, Outcome.SKIPPED, detail="changed during tick")
            return None

        snapshot.validate()
        working = snapshot.copy()

        # 1. live quantity and identity
        live = match_live_position(key, live_positions)
        current_qty = live.qty if live else ZERO
        position_id = live.position_id if live else None
        working.current_qty = current_qty
        if position_id:
            working.position_id = position_id

        # 2. forced close: we cannot manage TP/SL for an unidentified position
        forced = False
        try:
            self._check_identity(snapshot, live)
        except IdentityInconsistency as e:
            forced = True
            logger.warning(
                "RECONCILE_IDENTITY_INCONSISTENCY",
                key=str(key),
                live_found=live is not None,
                live_qty=str(current_qty),
                prior_qty=str(snapshot.current_qty),
                status=snapshot.status.value,
                error=str(e),
            )

        # 3. pending entry orders
        entries = [o for o in pending_orders if o.is_unfilled_entry_for(key)]

        # 4. closed condition
        was_active = snapshot.status in (PositionStatus.PENDING_FILL, PositionStatus.OPEN)
        if forced or (was_active and current_qty < self.close_qty_epsilon and not entries):
            await self._close(working, entries, forced=forced)
            stored = await self._persist(snapshot, PositionChanges.between(snapshot, working), report)
            report.record(key, Outcome.CLOSED, detail="forced" if forced else None)
            return stored

        # 5. fill transition
        if working.status == PositionStatus.PENDING_FILL and current_qty >= self.min_fill_qty:
            working.status = PositionStatus.OPEN
            logger.info("RECONCILE_POSITION_FILLED", key=str(key), qty=str(current_qty))

        # 6. refill detection
        entry_count = len(entries)
        previous_count = snapshot.pending_entry_count if snapshot.pending_entry_count is not None else entry_count
        working.pending_entry_count = entry_count
        refilled = working.status == PositionStatus.OPEN and entry_count < previous_count

        if refilled:
            working.reset_ladder()
            added = current_qty - snapshot.current_qty
            logger.info(
                "RECONCILE_REFILL_DETECTED",
                key=str(key),
                entries_filled=previous_count - entry_count,
                added_qty=str(added),
                qty=str(current_qty),
            )
            await self.notifier.notify(
                f"Ladder Rebuilt: {key.symbol}",
                f"{previous_count - entry_count} entry order(s) filled on {key.symbol} {key.direction.value}: "
                f"+{added} (size now {current_qty}). Take-profit ladder and stop-loss will be rebuilt.",
            )
        elif working.status == PositionStatus.OPEN and self.tpsl_enabled:
            # 7. take-profit ladder
            if working.position_id:
                result = await self.ladder.run(working)
                self.guard.record_orders_placed(len(result.submitted))
            # 8. stop-loss
            await self._place_stop_loss(working)

        await self._persist(snapshot, PositionChanges.between(snapshot, working, ladder_reset=refilled), report)
        report.record(key, Outcome.OK)
        return None

    @staticmethod
    def _check_identity(snapshot: Position, live: Optional[LivePosition]) -> None:
        """Raise if we hold (or held) quantity the exchange cannot identify."""
        if live is not None and live.position_id:
            return
        if snapshot.status == PositionStatus.OPEN or snapshot.current_qty > 0:
            raise IdentityInconsistency(f"{snapshot.key}: no resolvable position id on the exchange")

    async def _close(self, working: Position, entries: List[PendingOrder], *, forced: bool) -> None:
        working.status = PositionStatus.CLOSED
        working.closed_at = utcnow()
        working.removal_requested = True

        if entries:
            order_ids = [o.order_id for o in entries if o.order_id]
            try:
                cancelled = await self.gateway.cancel_orders(order_ids, working.symbol)
                logger.info(
                    "RECONCILE_STALE_ENTRIES_CANCELLED",
                    key=str(working.key),
                    count=len(order_ids),
                    all_cancelled=cancelled,
                )
            except (TransientGatewayError, OrderRejectedError) as e:
                logger.warning("RECONCILE_STALE_ENTRY_CANCEL_FAILED", key=str(working.key), error=str(e))

        logger.info(
            "RECONCILE_POSITION_CLOSED",
            key=str(working.key),
            forced=forced,
            live_qty=str(working.current_qty),
        )
        await self.notifier.notify(
            f"Trade Closed: {working.symbol}",
            f"{working.symbol} {working.direction.value} closed"
            f"{' (position no longer identifiable on exchange)' if forced else ''}. "
            f"Planned size {working.total_qty}, entry {working.avg_entry_price}.",
        )

    async def _place_stop_loss(self, working: Position) -> None:
        if working.sl_placed or working.current_qty <= 0 or not working.position_id:
            return
        params = stop_loss_params(working, qty_decimals=self.qty_decimals)
        try:
            order_id = await self.gateway.place_tpsl_order(params)
        except ExpectedRejection as e:
            logger.info("RECONCILE_SL_ALREADY_PLACED", key=str(working.key), reason=str(e))
            working.sl_placed = True
            return
        except (TransientGatewayError, OrderRejectedError) as e:
            logger.warning("RECONCILE_SL_FAILED", key=str(working.key), error=str(e), error_type=type(e).__name__)
            return
        working.sl_placed = True
        self.guard.record_orders_placed()
        logger.info(
            "RECONCILE_SL_PLACED",
            key=str(working.key),
            sl_price=params["slPrice"],
            qty=params["slQty"],
            order_id=order_id,
        )

    async def _changed_since(self, snapshot: Position) -> bool:
        fresh = await asyncio.to_thread(self.store.get, snapshot.key)
        return fresh is None or fresh.version != snapshot.version

    async def _persist(self, snapshot: Position, changes: PositionChanges, report: TickReport) -> Optional[Position]:
        """Write only when something changed this tick."""
        if changes.is_empty:
            return snapshot
        report.persisted += 1
        return await asyncio.to_thread(self.store.apply_changes, snapshot.key, changes)

    async def _retire(self, position: Position) -> bool:
        """Record then delete a flagged position. False leaves it flagged for the next tick."""
        if self.history is not None:
            try:
                await asyncio.to_thread(self.history.record_closed, position)
            except Exception as e:
                logger.warning("HISTORY_RECORD_FAILED", key=str(position.key), error=str(e))
                return False
        try:
            await asyncio.to_thread(self.store.delete, position.key, expected_version=position.version)
        except ConcurrencyConflict as e:
            logger.info("RECONCILE_REMOVAL_DEFERRED", key=str(position.key), reason=str(e))
            return False
        logger.info("RECONCILE_POSITION_REMOVED", key=str(position.key))
        return True
