"""
Domain models for the position guard.

These are the core business objects passed between the exchange gateway,
the monitors, the close executor and the ledger.
All timestamps use UTC timezone-aware datetimes.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional


class Side(str, Enum):
    """Position side."""
    LONG = "long"
    SHORT = "short"


class TriggerType(str, Enum):
    """Which protection law fired."""
    STOP_LOSS = "stop_loss"
    TRAILING_STOP = "trailing_stop"


class PriceSource(str, Enum):
    """Where the recorded exit price came from."""
    ORDER_FILL = "order_fill"
    TICKER = "ticker"
    MARK_FALLBACK = "mark_fallback"


class CloseStatus(str, Enum):
    """Outcome of a close attempt."""
    CLOSED = "closed"
    ALREADY_CLOSED = "already_closed"
    IN_FLIGHT = "in_flight"
    FAILED = "failed"


@dataclass(frozen=True)
class ExchangePosition:
    """
    Exchange-reported position snapshot (authoritative, read-only).

    size is signed: positive for long, negative for short (contracts).
    """
    symbol: str  # e.g., "BTC"
    contract: str  # e.g., "BTC_USDT"
    side: Side
    size: Decimal
    entry_price: Decimal
    mark_price: Decimal
    leverage: Decimal

    @property
    def quantity(self) -> Decimal:
        """Absolute contract count."""
        return abs(self.size)

    @property
    def is_active(self) -> bool:
        return self.size != 0


@dataclass(frozen=True)
class OrderAck:
    """Acknowledgement returned by the exchange after order placement."""
    id: Optional[str]


@dataclass(frozen=True)
class OrderSnapshot:
    """Order status as reported by the exchange."""
    status: str
    fill_price: Decimal = Decimal("0")
    size: Decimal = Decimal("0")


@dataclass(frozen=True)
class Ticker:
    """Last traded and mark price for a contract."""
    last: Decimal = Decimal("0")
    mark_price: Decimal = Decimal("0")

    @property
    def best_price(self) -> Decimal:
        """Last price if usable, otherwise mark price, otherwise zero."""
        if self.last.is_finite() and self.last > 0:
            return self.last
        if self.mark_price.is_finite() and self.mark_price > 0:
            return self.mark_price
        return Decimal("0")


@dataclass
class TradeRecord:
    """One row of the trade ledger (opens and closes)."""
    symbol: str
    side: Side
    type: str  # "open" or "close"
    price: Decimal
    quantity: Decimal
    leverage: Decimal
    order_id: str = ""
    pnl: Decimal = Decimal("0")
    fee: Decimal = Decimal("0")
    status: str = "filled"
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    id: Optional[int] = None


@dataclass(frozen=True)
class CloseTrigger:
    """
    Why a monitor decided to close a position.

    Stop-loss triggers leave the peak/drawdown fields empty.
    """
    trigger_type: TriggerType
    pnl_percent: Decimal
    threshold_percent: Decimal
    tier_label: str
    tier_description: str = ""
    peak_pnl_percent: Optional[Decimal] = None
    drawdown_percent: Optional[Decimal] = None


@dataclass(frozen=True)
class CloseRequest:
    """Everything the close executor needs to flatten one position."""
    position: ExchangePosition
    trigger: CloseTrigger

    @property
    def symbol(self) -> str:
        return self.position.symbol


@dataclass
class CloseResult:
    """What happened when a close was attempted."""
    symbol: str
    status: CloseStatus
    order_id: Optional[str] = None
    exit_price: Decimal = Decimal("0")
    price_source: Optional[PriceSource] = None
    filled_quantity: Decimal = Decimal("0")
    pnl: Decimal = Decimal("0")
    fee: Decimal = Decimal("0")
    ledger_ok: bool = True
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status in (CloseStatus.CLOSED, CloseStatus.ALREADY_CLOSED)
