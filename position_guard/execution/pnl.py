"""
ROI% and realized PnL math shared by the monitors, the close executor and
the ledger reconciler.
"""
from dataclasses import dataclass
from decimal import Decimal

from position_guard.domain.models import Side

_HUNDRED = Decimal("100")


def price_change_percent(entry_price: Decimal, mark_price: Decimal, side: Side) -> Decimal:
    """Signed price move in percent from the position's point of view."""
    if entry_price <= 0:
        return Decimal("0")
    change = (mark_price - entry_price) / entry_price * _HUNDRED
    return change if side == Side.LONG else -change


def pnl_percent(entry_price: Decimal, mark_price: Decimal, side: Side, leverage: Decimal) -> Decimal:
    """ROI% including leverage (what the tier tables are expressed in)."""
    return price_change_percent(entry_price, mark_price, side) * leverage


@dataclass(frozen=True)
class ClosePnl:
    gross_pnl: Decimal
    open_fee: Decimal
    close_fee: Decimal

    @property
    def total_fee(self) -> Decimal:
        return self.open_fee + self.close_fee

    @property
    def net_pnl(self) -> Decimal:
        return self.gross_pnl - self.total_fee


def compute_close_pnl(
    side: Side,
    entry_price: Decimal,
    exit_price: Decimal,
    quantity: Decimal,
    contract_multiplier: Decimal,
    fee_rate: Decimal,
) -> ClosePnl:
    """
    Realized PnL of a full close.

    gross = price move in the position's favour * quantity * multiplier;
    each leg pays price * quantity * multiplier * fee_rate.
    """
    notional_units = quantity * contract_multiplier
    move = exit_price - entry_price if side == Side.LONG else entry_price - exit_price
    return ClosePnl(
        gross_pnl=move * notional_units,
        open_fee=entry_price * notional_units * fee_rate,
        close_fee=exit_price * notional_units * fee_rate,
    )
