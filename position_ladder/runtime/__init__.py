"""
Runtime guards for the reconciliation loop.
"""
from position_ladder.runtime.cycle_guard import (
    CycleGuard,
    CycleState,
)

__all__ = [
    "CycleGuard",
    "CycleState",
]
