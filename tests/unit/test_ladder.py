"""
Tests for the take-profit ladder: allocation math, waterfall submission and failure handling.
"""
from decimal import Decimal

import pytest

from position_ladder.constants import DEFAULT_ALLOCATION_PCT
from position_ladder.domain.models import Direction
from position_ladder.exceptions import (
    ExpectedRejection,
    InvariantError,
    OrderRejectedError,
    TransientGatewayError,
)
from position_ladder.execution.ladder import LadderEngine, allocation_pct, level_remaining_qty

SCHEDULE = [Decimal(p) for p in DEFAULT_ALLOCATION_PCT]
TARGETS = ("100", "110", "120", "130", "140", "150")


@pytest.fixture
def ladder(gateway):
    return LadderEngine(gateway, SCHEDULE, tp_price_offset_pct=Decimal("0.001"), qty_decimals=6)


class TestAllocationMath:
    def test_schedule_levels(self):
        assert allocation_pct(SCHEDULE, 0, 6) == Decimal("30")
        assert allocation_pct(SCHEDULE, 5, 6) == Decimal("5")

    def test_levels_past_schedule_split_remainder(self):
        schedule = [Decimal("50"), Decimal("30")]
        assert allocation_pct(schedule, 2, 4) == Decimal("10")
        assert allocation_pct(schedule, 3, 4) == Decimal("10")

    def test_full_schedule_leaves_nothing_for_extra_levels(self):
        assert allocation_pct(SCHEDULE, 6, 8) == Decimal("0")

    def test_remaining_capped_by_unallocated_quantity(self, make_position):
        # Level 1 would ideally take 3, but only 1 is unallocated
        p = make_position(targets=TARGETS, current_qty="10", allocated=["9", "0", "0", "0", "0", "0"])
        assert level_remaining_qty(p, 1, SCHEDULE, 6) == Decimal("1")

    def test_remaining_rounds_down(self, make_position):
        p = make_position(targets=TARGETS, current_qty="1")
        # 30% of 1 at 1 decimal
        assert level_remaining_qty(p, 0, SCHEDULE, 1) == Decimal("0.3")
        p = make_position(targets=TARGETS, current_qty="0.07")
        assert level_remaining_qty(p, 4, SCHEDULE, 2) == Decimal("0")


class TestLadderEngine:
    @pytest.mark.asyncio
    async def test_first_call_submits_every_level(self, ladder, gateway, make_position):
        p = make_position(targets=TARGETS, current_qty="10")

        result = await ladder.run(p)

        tps = gateway.take_profits
        assert [o["tpQty"] for o in tps] == [
            "3.000000", "3.000000", "2.000000", "1.000000", "0.500000", "0.500000"
        ]
        first = tps[0]
        assert first["tpPrice"] == "100"
        assert first["tpOrderPrice"] == "100.1"
        assert first["tpOrderType"] == "LIMIT"
        assert first["positionId"] == "pos-1"
        assert p.next_level_index == 6
        assert p.allocated_qty_per_level == [Decimal(q) for q in ("3", "3", "2", "1", "0.5", "0.5")]
        assert len(result.submitted) == 6

    @pytest.mark.asyncio
    async def test_short_limit_price_below_target(self, ladder, gateway, make_position):
        p = make_position(direction=Direction.SHORT, targets=("90", "80"), stop_loss="105", current_qty="4")

        await ladder.run(p)

        assert gateway.take_profits[0]["tpOrderPrice"] == "89.91"

    @pytest.mark.asyncio
    async def test_second_call_is_idempotent(self, ladder, gateway, make_position):
        p = make_position(targets=TARGETS, current_qty="10")
        await ladder.run(p)
        submitted = len(gateway.tpsl_orders)

        p.next_level_index = 0  # pointer rewound, allocations intact
        result = await ladder.run(p)

        assert len(gateway.tpsl_orders) == submitted
        assert result.submitted == []
        assert result.satisfied_levels == [0, 1, 2, 3, 4, 5]

    @pytest.mark.asyncio
    async def test_failure_stops_at_level_without_advancing(self, ladder, gateway, make_position):
        p = make_position(targets=TARGETS, current_qty="10")
        gateway.tpsl_errors = [None, TransientGatewayError("timeout")]

        result = await ladder.run(p)

        assert p.next_level_index == 1
        assert p.allocated_qty_per_level[0] == Decimal("3")
        assert p.allocated_qty_per_level[1] == Decimal("0")
        assert result.failed_level == 1
        assert len(gateway.take_profits) == 1

        # Retried next cycle from the failed level
        result = await ladder.run(p)
        assert result.submitted[0].level == 1
        assert p.next_level_index == 6

    @pytest.mark.asyncio
    async def test_order_rejection_is_retried(self, ladder, gateway, make_position):
        p = make_position(targets=TARGETS, current_qty="10")
        gateway.tpsl_errors = [OrderRejectedError("price out of range", code="30001")]

        result = await ladder.run(p)

        assert p.next_level_index == 0
        assert result.failed_level == 0

    @pytest.mark.asyncio
    async def test_expected_rejection_advances_without_allocating(self, ladder, gateway, make_position):
        p = make_position(targets=TARGETS, current_qty="10")
        gateway.tpsl_errors = [ExpectedRejection("TP/SL order already exist")]

        result = await ladder.run(p)

        assert result.rejected_levels == [0]
        assert p.allocated_qty_per_level[0] == Decimal("0")
        assert p.next_level_index == 6
        assert p.allocated_total <= p.current_qty

    @pytest.mark.asyncio
    async def test_no_position_id_submits_nothing(self, ladder, gateway, make_position):
        p = make_position(targets=TARGETS, position_id=None)

        result = await ladder.run(p)

        assert gateway.tpsl_orders == []
        assert result.error == "position id unknown"
        assert p.next_level_index == 0

    @pytest.mark.asyncio
    async def test_over_allocation_raises_invariant_error(self, ladder, make_position):
        p = make_position(targets=TARGETS, current_qty="2", allocated=["3", "0", "0", "0", "0", "0"])
        p.next_level_index = 6

        with pytest.raises(InvariantError):
            await ladder.run(p)
