"""
Order parameter builders for the exchange gateway.

All quantities are rounded down to the venue precision so that a submitted
quantity never exceeds what the ladder accounted for.
"""
from decimal import ROUND_DOWN, Decimal
from typing import Any, Dict, Optional

from position_ladder.domain.models import Direction, Position

STOP_TYPE_MARK_PRICE = "MARK_PRICE"


def quantize_qty(qty: Decimal, decimals: int) -> Decimal:
    """Round a quantity down to ``decimals`` places."""
    return qty.quantize(Decimal(1).scaleb(-decimals), rounding=ROUND_DOWN)


def format_qty(qty: Decimal, decimals: int) -> str:
    return f"{quantize_qty(qty, decimals):.{decimals}f}"


def format_price(price: Decimal) -> str:
    return format(price.normalize(), "f")


def tp_limit_price(target: Decimal, direction: Direction, offset_pct: Decimal) -> Decimal:
    """Limit price just past the target, long above and short below."""
    if direction is Direction.LONG:
        return target * (1 + offset_pct)
    return target * (1 - offset_pct)


def take_profit_params(
    position: Position,
    level: int,
    qty: Decimal,
    *,
    offset_pct: Decimal,
    qty_decimals: int,
) -> Dict[str, Any]:
    target = position.targets[level]
    return {
        "symbol": position.symbol,
        "positionId": position.position_id,
        "tpPrice": format_price(target),
        "tpStopType": STOP_TYPE_MARK_PRICE,
        "tpOrderType": "LIMIT",
        "tpOrderPrice": format_price(tp_limit_price(target, position.direction, offset_pct)),
        "tpQty": format_qty(qty, qty_decimals),
    }


def stop_loss_params(position: Position, *, qty_decimals: int) -> Dict[str, Any]:
    """Full-quantity stop for the position, triggered on mark price, filled at market."""
    return {
        "symbol": position.symbol,
        "positionId": position.position_id,
        "slPrice": format_price(position.stop_loss),
        "slStopType": STOP_TYPE_MARK_PRICE,
        "slOrderType": "MARKET",
        "slQty": format_qty(position.current_qty, qty_decimals),
    }


def market_close_params(
    symbol: str,
    direction: Direction,
    qty: Decimal,
    *,
    qty_decimals: int,
    position_id: Optional[str] = None,
    immediate_or_cancel: bool = False,
) -> Dict[str, Any]:
    """Reduce-only market order closing ``qty`` of a position."""
    params: Dict[str, Any] = {
        "symbol": symbol,
        "side": direction.exit_side,
        "qty": format_qty(qty, qty_decimals),
        "orderType": "MARKET",
        "tradeSide": "CLOSE",
        "reduceOnly": True,
    }
    if position_id:
        params["positionId"] = position_id
    if immediate_or_cancel:
        params["effect"] = "IOC"
    return params
