"""
Persistence functions for the trade ledger, live positions and decision audit.

Provides repository pattern for clean data access. All functions are
synchronous; async callers offload them with asyncio.to_thread.
"""
from sqlalchemy import Column, String, Numeric, DateTime, Integer, Text, Index
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional
import json

from position_guard.domain.models import Side, TradeRecord
from position_guard.storage.db import Base, get_db


# ORM Models
class TradeModel(Base):
    """Append-only ledger of opens and closes."""
    __tablename__ = "trades"
    __table_args__ = (
        Index("idx_trade_symbol_type_ts", "symbol", "type", "timestamp"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String, nullable=False, default="")
    symbol = Column(String, nullable=False)
    side = Column(String, nullable=False)
    type = Column(String, nullable=False)  # open / close
    price = Column(Numeric(precision=20, scale=8), nullable=False)
    quantity = Column(Numeric(precision=20, scale=8), nullable=False)
    leverage = Column(Numeric(precision=10, scale=2), nullable=False)
    pnl = Column(Numeric(precision=20, scale=8), nullable=False, default=0)
    fee = Column(Numeric(precision=20, scale=8), nullable=False, default=0)
    timestamp = Column(DateTime(timezone=True), nullable=False)
    status = Column(String, nullable=False, default="filled")


class PositionModel(Base):
    """Live positions, one row per open symbol."""
    __tablename__ = "positions"

    symbol = Column(String, primary_key=True)
    side = Column(String, nullable=False)
    quantity = Column(Numeric(precision=20, scale=8), nullable=False)
    entry_price = Column(Numeric(precision=20, scale=8), nullable=False)
    leverage = Column(Numeric(precision=10, scale=2), nullable=False)
    opened_at = Column(DateTime(timezone=True), nullable=False)
    peak_pnl_percent = Column(Numeric(precision=12, scale=4), nullable=True)


class AgentDecisionModel(Base):
    """Write-once audit trail of decisions (AI cycles and automatic closes)."""
    __tablename__ = "agent_decisions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    timestamp = Column(DateTime(timezone=True), nullable=False)
    iteration = Column(Integer, nullable=False, default=0)
    market_analysis = Column(Text, nullable=False)  # JSON
    decision = Column(Text, nullable=False)
    actions_taken = Column(Text, nullable=False)  # JSON
    account_value = Column(Numeric(precision=20, scale=2), nullable=False, default=0)
    positions_count = Column(Integer, nullable=False, default=0)


@dataclass(frozen=True)
class StoredPosition:
    """The slice of a positions row the monitors read back."""
    symbol: str
    opened_at: Optional[datetime]
    peak_pnl_percent: Optional[Decimal]


def _as_utc(ts: Optional[datetime]) -> Optional[datetime]:
    if ts is None:
        return None
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts


def _json_default(obj):
    if isinstance(obj, Decimal):
        return float(obj)
    if isinstance(obj, datetime):
        return obj.isoformat()
    if hasattr(obj, "value"):  # Enum
        return obj.value
    raise TypeError(f"Not JSON serializable: {type(obj)}")


def _to_record(model: TradeModel) -> TradeRecord:
    return TradeRecord(
        id=model.id,
        order_id=model.order_id or "",
        symbol=model.symbol,
        side=Side(model.side),
        type=model.type,
        price=Decimal(str(model.price)),
        quantity=Decimal(str(model.quantity)),
        leverage=Decimal(str(model.leverage)),
        pnl=Decimal(str(model.pnl or 0)),
        fee=Decimal(str(model.fee or 0)),
        timestamp=_as_utc(model.timestamp),
        status=model.status,
    )


# ---------------------------------------------------------------------------
# Trades
# ---------------------------------------------------------------------------

def insert_trade(trade: TradeRecord) -> int:
    """Append a trade row. Returns the new row id."""
    db = get_db()
    with db.get_session() as session:
        model = TradeModel(
            order_id=trade.order_id or "",
            symbol=trade.symbol,
            side=trade.side.value,
            type=trade.type,
            price=trade.price,
            quantity=trade.quantity,
            leverage=trade.leverage,
            pnl=trade.pnl,
            fee=trade.fee,
            timestamp=trade.timestamp,
            status=trade.status,
        )
        session.add(model)
        session.flush()
        trade.id = model.id
        return model.id


def get_latest_trade(symbol: str, trade_type: str, before: Optional[datetime] = None) -> Optional[TradeRecord]:
    """
    Most recent trade of a type for a symbol.

    Args:
        symbol: Ledger symbol (e.g. "BTC")
        trade_type: "open" or "close"
        before: Only consider trades strictly older than this timestamp
    """
    db = get_db()
    with db.get_session() as session:
        query = session.query(TradeModel).filter(
            TradeModel.symbol == symbol,
            TradeModel.type == trade_type,
        )
        if before is not None:
            query = query.filter(TradeModel.timestamp < before)
        model = query.order_by(TradeModel.timestamp.desc(), TradeModel.id.desc()).first()
        return _to_record(model) if model else None


def get_trade(trade_id: int) -> Optional[TradeRecord]:
    db = get_db()
    with db.get_session() as session:
        model = session.get(TradeModel, trade_id)
        return _to_record(model) if model else None


def get_trades(symbol: Optional[str] = None, trade_type: Optional[str] = None) -> List[TradeRecord]:
    """All trades, oldest first, optionally filtered."""
    db = get_db()
    with db.get_session() as session:
        query = session.query(TradeModel)
        if symbol is not None:
            query = query.filter(TradeModel.symbol == symbol)
        if trade_type is not None:
            query = query.filter(TradeModel.type == trade_type)
        return [_to_record(m) for m in query.order_by(TradeModel.timestamp.asc(), TradeModel.id.asc()).all()]


def patch_trade_fill(trade_id: int, price: Decimal, pnl: Decimal, fee: Decimal) -> bool:
    """
    Overwrite price/pnl/fee of a ledger row in place.

    This is the only mutation the ledger allows; it is used exclusively by
    the ledger reconciler. Returns False if the row does not exist.
    """
    db = get_db()
    with db.get_session() as session:
        updated = session.query(TradeModel).filter(TradeModel.id == trade_id).update(
            {"price": price, "pnl": pnl, "fee": fee}
        )
        return updated > 0


# ---------------------------------------------------------------------------
# Positions
# ---------------------------------------------------------------------------

def save_position(
    symbol: str,
    side: Side,
    quantity: Decimal,
    entry_price: Decimal,
    leverage: Decimal,
    opened_at: Optional[datetime] = None,
) -> None:
    """
    Create or update a live position row (open path).

    A different side or entry price means a new position: its peak is reset
    and opened_at restarts. Otherwise the stored peak is kept.
    """
    db = get_db()
    with db.get_session() as session:
        model = session.query(PositionModel).filter(PositionModel.symbol == symbol).first()
        if model:
            stored_entry = Decimal(str(model.entry_price)) if model.entry_price is not None else None
            if model.side != side.value or stored_entry != entry_price:
                model.peak_pnl_percent = None
                model.opened_at = opened_at or datetime.now(timezone.utc)
            model.side = side.value
            model.quantity = quantity
            model.entry_price = entry_price
            model.leverage = leverage
        else:
            session.add(PositionModel(
                symbol=symbol,
                side=side.value,
                quantity=quantity,
                entry_price=entry_price,
                leverage=leverage,
                opened_at=opened_at or datetime.now(timezone.utc),
            ))


def get_stored_position(symbol: str) -> Optional[StoredPosition]:
    """opened_at and persisted peak for a symbol, or None if no row exists."""
    db = get_db()
    with db.get_session() as session:
        model = session.query(PositionModel).filter(PositionModel.symbol == symbol).first()
        if model is None:
            return None
        peak = Decimal(str(model.peak_pnl_percent)) if model.peak_pnl_percent is not None else None
        return StoredPosition(symbol=model.symbol, opened_at=_as_utc(model.opened_at), peak_pnl_percent=peak)


def update_position_peak(symbol: str, peak_pnl_percent: Optional[Decimal]) -> bool:
    """Persist a new peak (None clears it). Returns False when no positions row exists for the symbol."""
    db = get_db()
    with db.get_session() as session:
        updated = session.query(PositionModel).filter(PositionModel.symbol == symbol).update(
            {"peak_pnl_percent": peak_pnl_percent}
        )
        return updated > 0


def delete_position(symbol: str) -> bool:
    """Delete a position (when closed). Returns False if it was already gone."""
    db = get_db()
    with db.get_session() as session:
        deleted = session.query(PositionModel).filter(PositionModel.symbol == symbol).delete()
        return deleted > 0


# ---------------------------------------------------------------------------
# Decision audit
# ---------------------------------------------------------------------------

def record_decision(
    market_analysis: Dict[str, Any],
    decision: str,
    actions_taken: List[Dict[str, Any]],
    iteration: int = 0,
    account_value: Decimal = Decimal("0"),
    positions_count: int = 0,
    timestamp: Optional[datetime] = None,
) -> int:
    """
    Insert one agent_decisions row. Returns the new row id.

    iteration=0 marks decisions taken outside an AI cycle (automatic closes).
    """
    if timestamp is None:
        timestamp = datetime.now(timezone.utc)
    db = get_db()
    with db.get_session() as session:
        model = AgentDecisionModel(
            timestamp=timestamp,
            iteration=iteration,
            market_analysis=json.dumps(market_analysis, default=_json_default),
            decision=decision,
            actions_taken=json.dumps(actions_taken, default=_json_default),
            account_value=account_value,
            positions_count=positions_count,
        )
        session.add(model)
        session.flush()
        return model.id


def get_recent_decisions(limit: int = 50) -> List[Dict[str, Any]]:
    """Most recent decisions first, JSON columns decoded."""
    db = get_db()
    with db.get_session() as session:
        rows = session.query(AgentDecisionModel).order_by(
            AgentDecisionModel.timestamp.desc(), AgentDecisionModel.id.desc()
        ).limit(limit).all()
        return [
            {
                "id": r.id,
                "timestamp": _as_utc(r.timestamp),
                "iteration": r.iteration,
                "market_analysis": json.loads(r.market_analysis),
                "decision": r.decision,
                "actions_taken": json.loads(r.actions_taken),
            }
            for r in rows
        ]
