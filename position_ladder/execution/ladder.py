"""
Take-profit ladder.

The allocation math (``allocation_pct`` / ``level_remaining_qty``) is pure and
shared with the price monitor. ``LadderEngine.run`` walks the ladder from
``next_level_index`` and submits every outstanding level (waterfall), stopping
at the first failure so the level is retried next cycle.
"""
from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional, Sequence

from position_ladder.domain.models import ZERO, Position
from position_ladder.domain.protocols import ExchangeGateway
from position_ladder.exceptions import (
    ExpectedRejection,
    InvariantError,
    OrderRejectedError,
    TransientGatewayError,
)
from position_ladder.execution.orders import quantize_qty, take_profit_params, tp_limit_price
from position_ladder.monitoring.logger import get_logger

logger = get_logger(__name__)

HUNDRED = Decimal(100)


def allocation_pct(schedule: Sequence[Decimal], level: int, n_levels: int) -> Decimal:
    """
    Percent of live quantity assigned to ``level``.

    Levels past the schedule split whatever the schedule leaves of 100% evenly.
    """
    if level < len(schedule):
        return Decimal(schedule[level])
    extra_levels = n_levels - len(schedule)
    remainder = HUNDRED - sum((Decimal(p) for p in schedule), ZERO)
    if extra_levels <= 0 or remainder <= 0:
        return ZERO
    return remainder / extra_levels


def level_remaining_qty(
    position: Position,
    level: int,
    schedule: Sequence[Decimal],
    qty_decimals: int,
) -> Decimal:
    """
    Quantity still to submit at ``level``.

    Capped by the unallocated part of the live quantity so the sum of
    allocations can never exceed ``current_qty``. Zero when satisfied.
    """
    if level >= len(position.targets):
        return ZERO
    pct = allocation_pct(schedule, level, len(position.targets))
    ideal = position.current_qty * pct / HUNDRED
    remaining = min(
        ideal - position.allocated_qty_per_level[level],
        position.current_qty - position.allocated_total,
    )
    if remaining <= 0:
        return ZERO
    remaining = quantize_qty(remaining, qty_decimals)
    return remaining if remaining > 0 else ZERO


@dataclass
class LadderOrder:
    level: int
    qty: Decimal
    target: Decimal
    limit_price: Decimal
    order_id: Optional[str] = None


@dataclass
class LadderResult:
    submitted: List[LadderOrder] = field(default_factory=list)
    satisfied_levels: List[int] = field(default_factory=list)
    rejected_levels: List[int] = field(default_factory=list)
    failed_level: Optional[int] = None
    error: Optional[str] = None

    @property
    def changed(self) -> bool:
        return bool(self.submitted or self.satisfied_levels or self.rejected_levels)


class LadderEngine:
    """Submits outstanding take-profit levels for a position."""

    def __init__(
        self,
        gateway: ExchangeGateway,
        schedule: Sequence[Decimal],
        *,
        tp_price_offset_pct: Decimal,
        qty_decimals: int,
    ):
        self.gateway = gateway
        self.schedule = [Decimal(p) for p in schedule]
        self.tp_price_offset_pct = Decimal(tp_price_offset_pct)
        self.qty_decimals = qty_decimals

    @classmethod
    def from_config(cls, gateway: ExchangeGateway, config) -> "LadderEngine":
        return cls(
            gateway,
            config.ladder.allocation_pct,
            tp_price_offset_pct=config.ladder.tp_price_offset_pct,
            qty_decimals=config.ladder.qty_decimals,
        )

    def remaining_qty(self, position: Position, level: int) -> Decimal:
        return level_remaining_qty(position, level, self.schedule, self.qty_decimals)

    async def run(self, position: Position) -> LadderResult:
        """
        Advance the ladder on ``position`` in place.

        - satisfied level: pointer advances, no exchange call
        - submitted: allocation grows by the submitted quantity, pointer advances
        - duplicate / limit-exceeded rejection: pointer advances, nothing allocated
        - any other failure: state unchanged from that level on, retried next cycle
        """
        result = LadderResult()
        if not position.position_id:
            result.error = "position id unknown"
            return result

        while position.next_level_index < len(position.targets):
            level = position.next_level_index
            qty = self.remaining_qty(position, level)
            if qty <= 0:
                position.next_level_index += 1
                result.satisfied_levels.append(level)
                continue

            target = position.targets[level]
            params = take_profit_params(
                position,
                level,
                qty,
                offset_pct=self.tp_price_offset_pct,
                qty_decimals=self.qty_decimals,
            )
            try:
                order_id = await self.gateway.place_tpsl_order(params)
            except ExpectedRejection as e:
                logger.info(
                    "LADDER_LEVEL_ALREADY_PLACED",
                    key=str(position.key),
                    level=level,
                    reason=str(e),
                )
                position.next_level_index += 1
                result.rejected_levels.append(level)
                continue
            except (TransientGatewayError, OrderRejectedError) as e:
                logger.warning(
                    "LADDER_SUBMIT_FAILED",
                    key=str(position.key),
                    level=level,
                    qty=str(qty),
                    error=str(e),
                    error_type=type(e).__name__,
                )
                result.failed_level = level
                result.error = str(e)
                break

            position.allocated_qty_per_level[level] += qty
            position.next_level_index += 1
            result.submitted.append(
                LadderOrder(
                    level=level,
                    qty=qty,
                    target=target,
                    limit_price=tp_limit_price(target, position.direction, self.tp_price_offset_pct),
                    order_id=order_id,
                )
            )
            logger.info(
                "LADDER_TP_PLACED",
                key=str(position.key),
                level=level,
                qty=str(qty),
                tp_price=params["tpPrice"],
                limit_price=params["tpOrderPrice"],
                order_id=order_id,
            )

        if position.allocated_total > position.current_qty:
            raise InvariantError(
                f"{position.key}: allocated {position.allocated_total} exceeds held {position.current_qty}"
            )
        return result
