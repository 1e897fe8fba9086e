"""
Domain models for the position ladder service.

These are the core business objects used throughout the application.
All timestamps use UTC timezone-aware datetimes; all quantities and prices
are Decimals.
"""
import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, List, NamedTuple, Optional, Sequence

from position_ladder.constants import POSITION_QTY_FIELDS
from position_ladder.exceptions import ValidationError

ZERO = Decimal("0")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_decimal(value: Any, default: Optional[Decimal] = None) -> Optional[Decimal]:
    """Parse a loosely-typed numeric value (str/int/float/Decimal). Blank -> default."""
    if value is None or (isinstance(value, str) and not value.strip()):
        return default
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return default


def _to_datetime(value: Any) -> Optional[datetime]:
    """Accept datetimes, ISO strings and epoch milliseconds."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)) or (isinstance(value, str) and value.isdigit()):
        return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _to_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "yes")
    return bool(value)


class Direction(str, Enum):
    """Position direction."""
    LONG = "long"
    SHORT = "short"

    @classmethod
    def from_raw(cls, raw: Any) -> "Direction":
        """Normalize venue/legacy spellings (BUY/SELL/LONG/SHORT, any case)."""
        value = str(raw or "").strip().upper()
        if value in ("BUY", "LONG"):
            return cls.LONG
        if value in ("SELL", "SHORT"):
            return cls.SHORT
        raise ValidationError(f"Unknown direction: {raw!r}")

    @property
    def entry_side(self) -> str:
        return "BUY" if self is Direction.LONG else "SELL"

    @property
    def exit_side(self) -> str:
        return "SELL" if self is Direction.LONG else "BUY"


class PositionStatus(str, Enum):
    """Lifecycle status. Transitions only move forward."""
    PENDING_FILL = "pending_fill"
    OPEN = "open"
    ERROR = "error"
    CLOSED = "closed"

    @property
    def rank(self) -> int:
        return _STATUS_RANK[self]

    def can_transition_to(self, other: "PositionStatus") -> bool:
        return other.rank >= self.rank


_STATUS_RANK = {
    PositionStatus.PENDING_FILL: 0,
    PositionStatus.OPEN: 1,
    PositionStatus.ERROR: 2,
    PositionStatus.CLOSED: 3,
}


class PositionKey(NamedTuple):
    """Identity of a master position: one per symbol and direction."""
    symbol: str
    direction: Direction

    def __str__(self) -> str:
        return f"{self.symbol}:{self.direction.value}"


# Legacy (camelCase) record keys -> field names. Applied once at load time.
_LEGACY_KEYS = {
    "side": "direction",
    "avgEntryPrice": "avg_entry_price",
    "totalQty": "total_qty",
    "currentQty": "current_qty",
    "sl": "stop_loss",
    "stopLoss": "stop_loss",
    "slPlaced": "sl_placed",
    "originalTargets": "targets",
    "allocatedTpQty": "allocated_qty_per_level",
    "allocatedQtyPerLevel": "allocated_qty_per_level",
    "nextTpIndex": "next_level_index",
    "nextLevelIndex": "next_level_index",
    "pendingEntryCount": "pending_entry_count",
    "_remove": "removal_requested",
    "removalRequested": "removal_requested",
    "positionId": "position_id",
    "createdAt": "created_at",
    "lastUpdated": "last_updated",
    "closedAt": "closed_at",
}


@dataclass
class Position:
    """
    Locally tracked master position for one symbol + direction.

    ``current_qty`` mirrors the exchange; ``allocated_qty_per_level`` is the
    cumulative take-profit quantity submitted at each target level and is kept
    parallel to ``targets``.
    """
    symbol: str
    direction: Direction
    targets: List[Decimal]
    stop_loss: Optional[Decimal]
    status: PositionStatus = PositionStatus.PENDING_FILL
    avg_entry_price: Decimal = ZERO
    total_qty: Decimal = ZERO
    current_qty: Decimal = ZERO
    sl_placed: bool = False
    allocated_qty_per_level: List[Decimal] = field(default_factory=list)
    next_level_index: int = 0
    pending_entry_count: Optional[int] = None
    removal_requested: bool = False
    position_id: Optional[str] = None
    note: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    last_updated: datetime = field(default_factory=utcnow)
    closed_at: Optional[datetime] = None
    version: int = 0  # 0 = never persisted

    def __post_init__(self):
        missing = len(self.targets) - len(self.allocated_qty_per_level)
        if missing > 0:
            self.allocated_qty_per_level = list(self.allocated_qty_per_level) + [ZERO] * missing

    @property
    def key(self) -> PositionKey:
        return PositionKey(self.symbol, self.direction)

    @property
    def allocated_total(self) -> Decimal:
        return sum(self.allocated_qty_per_level, ZERO)

    @property
    def is_active(self) -> bool:
        return self.status in (PositionStatus.PENDING_FILL, PositionStatus.OPEN)

    def validate(self) -> None:
        """Raise ValidationError if the record cannot be managed."""
        if not self.targets:
            raise ValidationError(f"{self.key}: no take-profit targets")
        if any(t is None or t <= 0 for t in self.targets):
            raise ValidationError(f"{self.key}: non-positive take-profit target")
        if self.stop_loss is None or self.stop_loss <= 0:
            raise ValidationError(f"{self.key}: missing stop-loss")
        if self.current_qty < 0:
            raise ValidationError(f"{self.key}: negative quantity {self.current_qty}")
        if len(self.allocated_qty_per_level) != len(self.targets):
            raise ValidationError(f"{self.key}: allocations do not match targets")

    def copy(self) -> "Position":
        return copy.deepcopy(self)

    def reset_ladder(self) -> None:
        self.next_level_index = 0
        self.allocated_qty_per_level = [ZERO] * len(self.targets)
        self.sl_placed = False

    def cap_allocations(self) -> Decimal:
        """
        Keep ``sum(allocated) <= current_qty`` by trimming from the lowest level up.

        Lower levels are the ones filled first, so their allocation is the
        quantity that has already left the position. Returns the amount trimmed.
        """
        excess = self.allocated_total - max(self.current_qty, ZERO)
        trimmed = ZERO
        if excess <= 0:
            return trimmed
        for i, allocated in enumerate(self.allocated_qty_per_level):
            if excess <= 0:
                break
            cut = min(allocated, excess)
            if cut > 0:
                self.allocated_qty_per_level[i] = allocated - cut
                excess -= cut
                trimmed += cut
        return trimmed

    def to_record(self) -> Dict[str, Any]:
        """Plain JSON-safe dict (Decimals as strings)."""
        return {
            "symbol": self.symbol,
            "direction": self.direction.value,
            "status": self.status.value,
            "avg_entry_price": str(self.avg_entry_price),
            "total_qty": str(self.total_qty),
            "current_qty": str(self.current_qty),
            "stop_loss": str(self.stop_loss) if self.stop_loss is not None else None,
            "sl_placed": self.sl_placed,
            "targets": [str(t) for t in self.targets],
            "allocated_qty_per_level": [str(a) for a in self.allocated_qty_per_level],
            "next_level_index": self.next_level_index,
            "pending_entry_count": self.pending_entry_count,
            "removal_requested": self.removal_requested,
            "position_id": self.position_id,
            "note": self.note,
            "created_at": self.created_at.isoformat(),
            "last_updated": self.last_updated.isoformat(),
            "closed_at": self.closed_at.isoformat() if self.closed_at else None,
            "version": self.version,
        }

    @classmethod
    def from_record(cls, data: Dict[str, Any]) -> "Position":
        """
        Build a Position from a loosely-typed record.

        Accepts both the snake_case shape written by ``to_record`` and legacy
        camelCase records. All defaulting happens here.
        """
        d = {_LEGACY_KEYS.get(k, k): v for k, v in data.items()}
        if not d.get("symbol"):
            raise ValidationError(f"Position record without symbol: {data!r}")

        targets = [to_decimal(t) for t in (d.get("targets") or [])]
        if any(t is None for t in targets):
            raise ValidationError(f"{d['symbol']}: unparseable take-profit target in {d.get('targets')!r}")
        allocations = [to_decimal(a, ZERO) for a in (d.get("allocated_qty_per_level") or [])]

        status_raw = str(d.get("status") or PositionStatus.PENDING_FILL.value).lower()
        try:
            status = PositionStatus(status_raw)
        except ValueError:
            raise ValidationError(f"{d['symbol']}: unknown status {status_raw!r}")

        pending = d.get("pending_entry_count")
        now = utcnow()
        return cls(
            symbol=str(d["symbol"]).upper(),
            direction=Direction.from_raw(d.get("direction")),
            targets=targets,
            stop_loss=to_decimal(d.get("stop_loss")),
            status=status,
            avg_entry_price=to_decimal(d.get("avg_entry_price"), ZERO),
            total_qty=to_decimal(d.get("total_qty"), ZERO),
            current_qty=max(to_decimal(d.get("current_qty"), ZERO), ZERO),
            sl_placed=_to_bool(d.get("sl_placed", False)),
            allocated_qty_per_level=allocations[: len(targets)] if targets else allocations,
            next_level_index=int(d.get("next_level_index") or 0),
            pending_entry_count=int(pending) if pending not in (None, "") else None,
            removal_requested=_to_bool(d.get("removal_requested", False)),
            position_id=str(d["position_id"]) if d.get("position_id") else None,
            note=d.get("note"),
            created_at=_to_datetime(d.get("created_at")) or now,
            last_updated=_to_datetime(d.get("last_updated")) or now,
            closed_at=_to_datetime(d.get("closed_at")),
            version=int(d.get("version") or 0),
        )

    @classmethod
    def from_signal(
        cls,
        symbol: str,
        direction: Direction | str,
        entry_prices: Sequence[Decimal],
        entry_quantities: Sequence[Decimal],
        targets: Sequence[Decimal],
        stop_loss: Decimal,
        note: Optional[str] = None,
    ) -> "Position":
        """
        Master record for a freshly executed signal (all entry orders placed).

        Average entry is quantity-weighted; ``pending_entry_count`` starts at
        the number of entry orders so the first fill is seen as a refill.
        """
        if not entry_prices or len(entry_prices) != len(entry_quantities):
            raise ValidationError("entry_prices and entry_quantities must be non-empty and parallel")
        prices = [to_decimal(p) for p in entry_prices]
        qtys = [to_decimal(q) for q in entry_quantities]
        total_qty = sum(qtys, ZERO)
        if total_qty <= 0:
            raise ValidationError("total entry quantity must be positive")
        avg_entry = sum((p * q for p, q in zip(prices, qtys)), ZERO) / total_qty

        position = cls(
            symbol=symbol.upper(),
            direction=direction if isinstance(direction, Direction) else Direction.from_raw(direction),
            targets=[to_decimal(t) for t in targets],
            stop_loss=to_decimal(stop_loss),
            status=PositionStatus.PENDING_FILL,
            avg_entry_price=avg_entry,
            total_qty=total_qty,
            pending_entry_count=len(prices),
            note=note,
        )
        position.validate()
        return position


@dataclass
class PositionChanges:
    """
    A change-set produced by one writer against a snapshot of a record.

    Applied to the freshest stored record inside ``PositionStore.mutate`` so
    that the reconciliation cycle and the price monitor compose their edits
    instead of overwriting each other. Quantity and allocations are deltas;
    status only moves forward.

    ``base_version`` is the version of the snapshot the change-set was diffed
    against. When the stored record has moved on since, another writer changed
    the quantity in between and ``qty_delta`` is dropped; the next tick reads
    the quantity from the exchange again.
    """
    qty_delta: Decimal = ZERO
    flatten: bool = False
    status: Optional[PositionStatus] = None
    ladder_reset: bool = False
    allocation_deltas: Dict[int, Decimal] = field(default_factory=dict)
    next_level_index: Optional[int] = None
    sl_placed: Optional[bool] = None
    pending_entry_count: Optional[int] = None
    removal_requested: Optional[bool] = None
    closed_at: Optional[datetime] = None
    position_id: Optional[str] = None
    base_version: Optional[int] = None

    @property
    def is_empty(self) -> bool:
        return (
            self.qty_delta == 0
            and not self.flatten
            and self.status is None
            and not self.ladder_reset
            and not any(self.allocation_deltas.values())
            and self.next_level_index is None
            and self.sl_placed is None
            and self.pending_entry_count is None
            and self.removal_requested is None
            and self.closed_at is None
            and self.position_id is None
        )

    def apply(self, position: Position) -> Position:
        """Return a copy of ``position`` with these changes applied."""
        p = position.copy()

        if self.ladder_reset:
            p.reset_ladder()

        stale = self.base_version is not None and position.version != self.base_version
        if self.flatten or (stale and self.status == PositionStatus.CLOSED):
            p.current_qty = ZERO
        elif not stale:
            p.current_qty = max(p.current_qty + self.qty_delta, ZERO)

        for level, delta in self.allocation_deltas.items():
            if 0 <= level < len(p.allocated_qty_per_level):
                p.allocated_qty_per_level[level] = max(p.allocated_qty_per_level[level] + delta, ZERO)

        if self.next_level_index is not None:
            if self.ladder_reset:
                p.next_level_index = self.next_level_index
            else:
                p.next_level_index = max(p.next_level_index, self.next_level_index)

        if self.status is not None and p.status.can_transition_to(self.status):
            p.status = self.status
        if self.sl_placed is not None:
            p.sl_placed = self.sl_placed
        if self.pending_entry_count is not None:
            p.pending_entry_count = self.pending_entry_count
        if self.removal_requested is not None:
            p.removal_requested = self.removal_requested
        if self.closed_at is not None and p.closed_at is None:
            p.closed_at = self.closed_at
        if self.position_id is not None:
            p.position_id = self.position_id

        p.cap_allocations()
        p.last_updated = utcnow()
        return p

    @classmethod
    def between(cls, before: Position, after: Position, *, ladder_reset: bool = False) -> "PositionChanges":
        """Diff a working copy against the snapshot it was derived from."""
        base_alloc = [ZERO] * len(after.allocated_qty_per_level) if ladder_reset else before.allocated_qty_per_level
        deltas = {
            i: a - b
            for i, (a, b) in enumerate(zip(after.allocated_qty_per_level, base_alloc))
            if a != b
        }
        changed_index = ladder_reset or after.next_level_index != before.next_level_index
        return cls(
            qty_delta=after.current_qty - before.current_qty,
            status=after.status if after.status != before.status else None,
            ladder_reset=ladder_reset,
            allocation_deltas=deltas,
            next_level_index=after.next_level_index if changed_index else None,
            sl_placed=after.sl_placed if (ladder_reset or after.sl_placed != before.sl_placed) else None,
            pending_entry_count=(
                after.pending_entry_count
                if after.pending_entry_count != before.pending_entry_count
                else None
            ),
            removal_requested=(
                after.removal_requested if after.removal_requested != before.removal_requested else None
            ),
            closed_at=after.closed_at if after.closed_at != before.closed_at else None,
            position_id=after.position_id if after.position_id != before.position_id else None,
            base_version=before.version,
        )


@dataclass
class LivePosition:
    """Open position as reported by the exchange."""
    symbol: str
    direction: Optional[Direction]
    qty: Decimal
    position_id: Optional[str]
    avg_open_price: Optional[Decimal] = None
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_exchange(cls, data: Dict[str, Any]) -> "LivePosition":
        # Response shapes vary; take the first non-empty quantity field
        qty = ZERO
        for name in POSITION_QTY_FIELDS:
            parsed = to_decimal(data.get(name))
            if parsed is not None:
                qty = abs(parsed)
                break
        try:
            direction = Direction.from_raw(data.get("side") or data.get("positionSide"))
        except ValidationError:
            direction = None
        position_id = data.get("positionId") or data.get("id")
        return cls(
            symbol=str(data.get("symbol") or "").upper(),
            direction=direction,
            qty=qty,
            position_id=str(position_id) if position_id else None,
            avg_open_price=to_decimal(data.get("avgOpenPrice") or data.get("entryPrice")),
            raw=data,
        )

    def matches(self, key: PositionKey) -> bool:
        return self.symbol == key.symbol and self.direction == key.direction


ENTRY_ORDER_OPEN_STATUSES = frozenset({"NEW", "NEW_", "INIT"})


@dataclass
class PendingOrder:
    """Working (unfilled or partially filled) order reported by the exchange."""
    order_id: str
    symbol: str
    side: Optional[Direction]
    order_type: str
    reduce_only: bool
    status: str
    trade_qty: Decimal
    qty: Decimal
    price: Optional[Decimal] = None

    @classmethod
    def from_exchange(cls, data: Dict[str, Any]) -> "PendingOrder":
        try:
            side = Direction.from_raw(data.get("side"))
        except ValidationError:
            side = None
        return cls(
            order_id=str(data.get("orderId") or ""),
            symbol=str(data.get("symbol") or "").upper(),
            side=side,
            order_type=str(data.get("orderType") or "").upper(),
            reduce_only=_to_bool(data.get("reduceOnly", False)),
            status=str(data.get("status") or "").upper(),
            trade_qty=to_decimal(data.get("tradeQty"), ZERO),
            qty=to_decimal(data.get("qty"), ZERO),
            price=to_decimal(data.get("price")),
        )

    def is_unfilled_entry_for(self, key: PositionKey) -> bool:
        """Untouched limit entry order for this symbol and direction."""
        return (
            self.symbol == key.symbol
            and self.side == key.direction
            and self.order_type == "LIMIT"
            and not self.reduce_only
            and self.status in ENTRY_ORDER_OPEN_STATUSES
            and self.trade_qty == 0
        )


class Outcome(str, Enum):
    """Per-position result of one reconciliation tick."""
    OK = "ok"
    CLOSED = "closed"
    REMOVED = "removed"
    SKIPPED = "skipped"
    ERROR = "error"


@dataclass
class PositionOutcome:
    key: PositionKey
    outcome: Outcome
    detail: Optional[str] = None
    error_type: Optional[str] = None


@dataclass
class TickReport:
    """Collected outcomes of one reconciliation tick."""
    cycle_id: Optional[str] = None
    started_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    ran: bool = True
    aborted_reason: Optional[str] = None
    outcomes: List[PositionOutcome] = field(default_factory=list)
    persisted: int = 0
    removed: int = 0

    def record(
        self,
        key: PositionKey,
        outcome: Outcome,
        detail: Optional[str] = None,
        error: Optional[BaseException] = None,
    ) -> None:
        self.outcomes.append(
            PositionOutcome(
                key=key,
                outcome=outcome,
                detail=detail if detail is not None else (str(error) if error else None),
                error_type=type(error).__name__ if error else None,
            )
        )

    def outcome_for(self, key: PositionKey) -> Optional[Outcome]:
        for o in reversed(self.outcomes):
            if o.key == key:
                return o.outcome
        return None

    def counts(self) -> Dict[str, int]:
        out = {o.value: 0 for o in Outcome}
        for o in self.outcomes:
            out[o.outcome.value] += 1
        return out


@dataclass
class CloseResult:
    """Result of a manual close request for one symbol."""
    symbol: str
    success: bool
    closed_qty: Decimal = ZERO
    message: str = ""
    order_ids: List[str] = field(default_factory=list)


@dataclass
class ClosedTrade:
    """One closed exchange position captured into history."""
    position_id: str
    symbol: str
    side: str
    qty: Decimal
    entry_price: Decimal
    close_price: Decimal
    realized_pnl: Decimal
    fee: Decimal
    funding: Decimal
    leverage: Optional[str]
    close_time: datetime
    close_reason: str
    close_source: str

    @classmethod
    def from_exchange(cls, data: Dict[str, Any], close_source: str) -> "ClosedTrade":
        close_ms = data.get("mtime") or data.get("ctime") or 0
        return cls(
            position_id=str(data.get("positionId") or ""),
            symbol=str(data.get("symbol") or "").upper(),
            side=str(data.get("side") or ""),
            qty=to_decimal(data.get("qty") or data.get("maxQty"), ZERO),
            entry_price=to_decimal(data.get("entryPrice"), ZERO),
            close_price=to_decimal(data.get("closePrice"), ZERO),
            realized_pnl=to_decimal(data.get("realizedPNL") or data.get("realizedPnl"), ZERO),
            fee=to_decimal(data.get("fee"), ZERO),
            funding=to_decimal(data.get("funding"), ZERO),
            leverage=str(data["leverage"]) if data.get("leverage") is not None else None,
            close_time=_to_datetime(int(close_ms)) if close_ms else utcnow(),
            close_reason=str(data.get("closeReason") or "Unknown"),
            close_source=close_source,
        )
