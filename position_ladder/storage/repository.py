"""
Persistence for master positions and close history.

PositionStore uses optimistic concurrency: every row carries a ``version``
and writes are conditional on the version that was read. Writers that lose
the race re-read and re-apply their change (``mutate``).
"""
import json
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Dict, Iterable, List, Optional

from sqlalchemy import Boolean, Column, DateTime, Index, Integer, String, Text, UniqueConstraint

from position_ladder.domain.models import (
    ClosedTrade,
    Direction,
    Position,
    PositionChanges,
    PositionKey,
    PositionStatus,
    to_decimal,
    utcnow,
)
from position_ladder.exceptions import ConcurrencyConflict, ValidationError
from position_ladder.monitoring.logger import get_logger
from position_ladder.storage.db import Base, Database

logger = get_logger(__name__)

PositionListener = Callable[[Position, bool], None]


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything here is UTC."""
    if value is None:
        return None
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


# ORM Models
class PositionModel(Base):
    """ORM model for master positions (one per symbol + direction)."""
    __tablename__ = "positions"
    __table_args__ = (
        UniqueConstraint("symbol", "direction", name="uq_position_key"),
        Index("idx_position_status", "status"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    symbol = Column(String, nullable=False)
    direction = Column(String, nullable=False)
    status = Column(String, nullable=False)
    version = Column(Integer, nullable=False, default=1)

    # Decimals stored as text: exact on every backend
    avg_entry_price = Column(String, nullable=False)
    total_qty = Column(String, nullable=False)
    current_qty = Column(String, nullable=False)
    stop_loss = Column(String, nullable=True)
    sl_placed = Column(Boolean, nullable=False, default=False)

    targets = Column(Text, nullable=False)  # JSON list
    allocated_qty_per_level = Column(Text, nullable=False)  # JSON list
    next_level_index = Column(Integer, nullable=False, default=0)
    pending_entry_count = Column(Integer, nullable=True)
    removal_requested = Column(Boolean, nullable=False, default=False)

    position_id = Column(String, nullable=True)
    note = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    last_updated = Column(DateTime(timezone=True), nullable=False)
    closed_at = Column(DateTime(timezone=True), nullable=True)


class RetiredPositionModel(Base):
    """Master records removed from the active set after close."""
    __tablename__ = "retired_positions"
    __table_args__ = (
        UniqueConstraint("symbol", "direction", "created_at", name="uq_retired_position"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    symbol = Column(String, nullable=False)
    direction = Column(String, nullable=False)
    position_id = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    closed_at = Column(DateTime(timezone=True), nullable=True)
    retired_at = Column(DateTime(timezone=True), nullable=False)
    record = Column(Text, nullable=False)  # JSON snapshot


class ClosedTradeModel(Base):
    """Closed exchange positions captured from venue history."""
    __tablename__ = "closed_trades"
    __table_args__ = (
        Index("idx_closed_trade_time", "close_time"),
    )

    position_id = Column(String, primary_key=True)
    symbol = Column(String, nullable=False)
    side = Column(String, nullable=False)
    qty = Column(String, nullable=False)
    entry_price = Column(String, nullable=False)
    close_price = Column(String, nullable=False)
    realized_pnl = Column(String, nullable=False)
    fee = Column(String, nullable=False)
    funding = Column(String, nullable=False)
    leverage = Column(String, nullable=True)
    close_time = Column(DateTime(timezone=True), nullable=False)
    close_reason = Column(String, nullable=False)
    close_source = Column(String, nullable=False)


class CloseIntentModel(Base):
    """Who initiated a close, keyed by exchange position id."""
    __tablename__ = "close_intents"

    position_id = Column(String, primary_key=True)
    source = Column(String, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)


class HistoryStateModel(Base):
    """Small key/value table (history checkpoint)."""
    __tablename__ = "history_state"

    key = Column(String, primary_key=True)
    value = Column(String, nullable=False)


def _model_to_position(m: PositionModel) -> Position:
    return Position(
        symbol=m.symbol,
        direction=Direction(m.direction),
        targets=[Decimal(t) for t in json.loads(m.targets)],
        stop_loss=to_decimal(m.stop_loss),
        status=PositionStatus(m.status),
        avg_entry_price=Decimal(m.avg_entry_price),
        total_qty=Decimal(m.total_qty),
        current_qty=Decimal(m.current_qty),
        sl_placed=bool(m.sl_placed),
        allocated_qty_per_level=[Decimal(a) for a in json.loads(m.allocated_qty_per_level)],
        next_level_index=m.next_level_index,
        pending_entry_count=m.pending_entry_count,
        removal_requested=bool(m.removal_requested),
        position_id=m.position_id,
        note=m.note,
        created_at=_aware(m.created_at),
        last_updated=_aware(m.last_updated),
        closed_at=_aware(m.closed_at),
        version=m.version,
    )


def _position_columns(p: Position) -> Dict:
    return {
        "status": p.status.value,
        "avg_entry_price": str(p.avg_entry_price),
        "total_qty": str(p.total_qty),
        "current_qty": str(p.current_qty),
        "stop_loss": str(p.stop_loss) if p.stop_loss is not None else None,
        "sl_placed": p.sl_placed,
        "targets": json.dumps([str(t) for t in p.targets]),
        "allocated_qty_per_level": json.dumps([str(a) for a in p.allocated_qty_per_level]),
        "next_level_index": p.next_level_index,
        "pending_entry_count": p.pending_entry_count,
        "removal_requested": p.removal_requested,
        "position_id": p.position_id,
        "note": p.note,
        "created_at": p.created_at,
        "last_updated": p.last_updated,
        "closed_at": p.closed_at,
    }


def _key_filter(query, key: PositionKey):
    return query.filter(
        PositionModel.symbol == key.symbol,
        PositionModel.direction == key.direction.value,
    )


class PositionStore:
    """
    Versioned position store shared by the reconciliation cycle and the price monitor.

    Every committed write bumps the row version and notifies listeners with
    ``(position, deleted)``.
    """

    def __init__(self, db: Database, *, max_write_attempts: int = 5):
        self.db = db
        self.max_write_attempts = max_write_attempts
        self._listeners: List[PositionListener] = []

    def add_listener(self, listener: PositionListener) -> None:
        self._listeners.append(listener)

    def _notify(self, position: Position, deleted: bool = False) -> None:
        for listener in self._listeners:
            try:
                listener(position, deleted)
            except Exception as e:
                logger.warning("Store listener failed", key=str(position.key), error=str(e))

    def load(self) -> List[Position]:
        """All tracked positions in creation order."""
        with self.db.get_session() as session:
            rows = session.query(PositionModel).order_by(PositionModel.id).all()
            return [_model_to_position(r) for r in rows]

    def get(self, key: PositionKey) -> Optional[Position]:
        with self.db.get_session() as session:
            row = _key_filter(session.query(PositionModel), key).first()
            return _model_to_position(row) if row else None

    def create(self, position: Position) -> Position:
        """
        Insert a new master record.

        An active record with the same key is kept and returned unchanged; a
        closed one is replaced (re-creation by a new signal).
        """
        position.validate()
        with self.db.get_session() as session:
            existing = _key_filter(session.query(PositionModel), position.key).first()
            if existing is not None:
                if existing.status != PositionStatus.CLOSED.value:
                    logger.info("POSITION_EXISTS", key=str(position.key), status=existing.status)
                    return _model_to_position(existing)
                session.delete(existing)
                session.flush()
                logger.info("POSITION_REPLACED_CLOSED", key=str(position.key))

            now = utcnow()
            created = position.copy()
            created.version = 1
            created.last_updated = now
            row = PositionModel(
                symbol=created.symbol,
                direction=created.direction.value,
                version=created.version,
                **_position_columns(created),
            )
            session.add(row)

        logger.info(
            "POSITION_CREATED",
            key=str(created.key),
            total_qty=str(created.total_qty),
            targets=len(created.targets),
            status=created.status.value,
        )
        self._notify(created)
        return created

    def save(self, position: Position) -> Position:
        """
        Conditional write: succeeds only if the stored version still equals
        ``position.version``. Returns the saved copy with its new version.

        Raises:
            ConcurrencyConflict: the record changed (or vanished) since it was read
        """
        saved = position.copy()
        saved.version = position.version + 1
        with self.db.get_session() as session:
            updated = (
                _key_filter(session.query(PositionModel), position.key)
                .filter(PositionModel.version == position.version)
                .update(
                    {**_position_columns(saved), "version": saved.version},
                    synchronize_session=False,
                )
            )
            if updated != 1:
                raise ConcurrencyConflict(str(position.key), position.version)
        self._notify(saved)
        return saved

    def mutate(
        self,
        key: PositionKey,
        fn: Callable[[Position], Optional[Position]],
    ) -> Optional[Position]:
        """
        Read-modify-write with retry on version conflict.

        ``fn`` receives the freshest record and returns the new state (or None
        for no change). It may be called more than once. Returns the stored
        result, or None if the record does not exist.
        """
        for attempt in range(1, self.max_write_attempts + 1):
            current = self.get(key)
            if current is None:
                return None
            updated = fn(current)
            if updated is None:
                return current
            try:
                return self.save(updated)
            except ConcurrencyConflict:
                logger.info("POSITION_WRITE_CONFLICT", key=str(key), attempt=attempt)
        raise ConcurrencyConflict(str(key), -1)

    def apply_changes(self, key: PositionKey, changes: PositionChanges) -> Optional[Position]:
        """Compose a change-set onto the freshest record."""
        if changes.is_empty:
            return self.get(key)
        return self.mutate(key, changes.apply)

    def delete(self, key: PositionKey, *, expected_version: Optional[int] = None) -> bool:
        """Remove a record. With ``expected_version``, only if unchanged since read."""
        with self.db.get_session() as session:
            query = _key_filter(session.query(PositionModel), key)
            if expected_version is not None:
                query = query.filter(PositionModel.version == expected_version)
            row = query.first()
            if row is None:
                if expected_version is not None and self.get(key) is not None:
                    raise ConcurrencyConflict(str(key), expected_version)
                return False
            removed = _model_to_position(row)
            session.delete(row)
        logger.info("POSITION_DELETED", key=str(key))
        self._notify(removed, deleted=True)
        return True

    def import_records(self, records: Iterable[Dict]) -> Dict[str, int]:
        """Insert loosely-typed (legacy) records. Invalid ones are skipped and counted."""
        summary = {"imported": 0, "existing": 0, "invalid": 0}
        for record in records:
            try:
                position = Position.from_record(record)
                existing = self.get(position.key)
                if existing is not None and existing.status != PositionStatus.CLOSED:
                    summary["existing"] += 1
                    continue
                self.create(position)
            except ValidationError as e:
                summary["invalid"] += 1
                logger.warning("IMPORT_RECORD_INVALID", symbol=record.get("symbol"), error=str(e))
                continue
            summary["imported"] += 1
        return summary


class HistoryStore:
    """Tables backing the history recorder: retired records, closed trades, intents, checkpoint."""

    CHECKPOINT_KEY = "last_history_checkpoint_ms"

    def __init__(self, db: Database):
        self.db = db

    def add_retired(self, position: Position) -> bool:
        """Store a retired master record. Returns False if already stored."""
        with self.db.get_session() as session:
            exists = (
                session.query(RetiredPositionModel)
                .filter(
                    RetiredPositionModel.symbol == position.symbol,
                    RetiredPositionModel.direction == position.direction.value,
                    RetiredPositionModel.created_at == position.created_at,
                )
                .first()
            )
            if exists is not None:
                return False
            session.add(
                RetiredPositionModel(
                    symbol=position.symbol,
                    direction=position.direction.value,
                    position_id=position.position_id,
                    created_at=position.created_at,
                    closed_at=position.closed_at,
                    retired_at=utcnow(),
                    record=json.dumps(position.to_record()),
                )
            )
        return True

    def retired_positions(self, limit: int = 100) -> List[Position]:
        with self.db.get_session() as session:
            rows = (
                session.query(RetiredPositionModel)
                .order_by(RetiredPositionModel.retired_at.desc())
                .limit(limit)
                .all()
            )
            return [Position.from_record(json.loads(r.record)) for r in rows]

    def known_trade_ids(self) -> set:
        with self.db.get_session() as session:
            return {row[0] for row in session.query(ClosedTradeModel.position_id).all()}

    def add_closed_trades(self, trades: List[ClosedTrade]) -> None:
        with self.db.get_session() as session:
            for t in trades:
                session.add(
                    ClosedTradeModel(
                        position_id=t.position_id,
                        symbol=t.symbol,
                        side=t.side,
                        qty=str(t.qty),
                        entry_price=str(t.entry_price),
                        close_price=str(t.close_price),
                        realized_pnl=str(t.realized_pnl),
                        fee=str(t.fee),
                        funding=str(t.funding),
                        leverage=t.leverage,
                        close_time=t.close_time,
                        close_reason=t.close_reason,
                        close_source=t.close_source,
                    )
                )

    def closed_trades(self, limit: Optional[int] = None) -> List[ClosedTrade]:
        """Captured history, oldest first."""
        with self.db.get_session() as session:
            query = session.query(ClosedTradeModel).order_by(ClosedTradeModel.close_time)
            rows = query.all()
            if limit is not None:
                rows = rows[-limit:]
            return [
                ClosedTrade(
                    position_id=r.position_id,
                    symbol=r.symbol,
                    side=r.side,
                    qty=Decimal(r.qty),
                    entry_price=Decimal(r.entry_price),
                    close_price=Decimal(r.close_price),
                    realized_pnl=Decimal(r.realized_pnl),
                    fee=Decimal(r.fee),
                    funding=Decimal(r.funding),
                    leverage=r.leverage,
                    close_time=_aware(r.close_time),
                    close_reason=r.close_reason,
                    close_source=r.close_source,
                )
                for r in rows
            ]

    def put_intent(self, position_id: str, source: str) -> None:
        with self.db.get_session() as session:
            row = session.get(CloseIntentModel, position_id)
            if row is None:
                session.add(CloseIntentModel(position_id=position_id, source=source, created_at=utcnow()))
            else:
                row.source = source
                row.created_at = utcnow()

    def pop_intent(self, position_id: str) -> Optional[str]:
        with self.db.get_session() as session:
            row = session.get(CloseIntentModel, position_id)
            if row is None:
                return None
            source = row.source
            session.delete(row)
            return source

    def get_checkpoint_ms(self) -> Optional[int]:
        with self.db.get_session() as session:
            row = session.get(HistoryStateModel, self.CHECKPOINT_KEY)
            return int(row.value) if row else None

    def set_checkpoint_ms(self, value: int) -> None:
        with self.db.get_session() as session:
            row = session.get(HistoryStateModel, self.CHECKPOINT_KEY)
            if row is None:
                session.add(HistoryStateModel(key=self.CHECKPOINT_KEY, value=str(value)))
            else:
                row.value = str(value)
