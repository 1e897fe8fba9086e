"""
Order construction, take-profit ladder and manual close operations.
"""
from position_ladder.execution.ladder import (
    LadderEngine,
    LadderOrder,
    LadderResult,
    allocation_pct,
    level_remaining_qty,
)
from position_ladder.execution.trade_closer import TradeCloser

__all__ = [
    "LadderEngine",
    "LadderOrder",
    "LadderResult",
    "allocation_pct",
    "level_remaining_qty",
    "TradeCloser",
]
