"""
Ledger reconciliation for automatic closes.

After a close row is written, re-derive its price, PnL and fee from the
matching open trade and patch the row when the recorded values are off.
Covers the "exchange accepted the order but status polling returned nothing
usable" case: a zero or non-finite close price is replaced with a fresh
ticker price.

Compute, compare, patch: running it again on a correct row is a no-op.
"""
import asyncio
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Optional

from position_guard.constants import (
    DEFAULT_FEE_RATE,
    DEFAULT_SETTLE_CURRENCY,
    RECONCILE_FEE_TOLERANCE,
    RECONCILE_PNL_TOLERANCE,
    RECONCILE_PRICE_TOLERANCE,
    TRADE_TYPE_CLOSE,
    TRADE_TYPE_OPEN,
)
from position_guard.data.symbol_utils import contract_for_symbol
from position_guard.domain.protocols import ExchangeGateway
from position_guard.execution.pnl import compute_close_pnl
from position_guard.monitoring.logger import get_logger
from position_guard.storage.repository import get_latest_trade, patch_trade_fill

logger = get_logger(__name__)


class ReconcileStatus(str, Enum):
    PATCHED = "patched"
    UNCHANGED = "unchanged"
    NO_CLOSE_TRADE = "no_close_trade"
    NO_OPEN_TRADE = "no_open_trade"
    NO_PRICE = "no_price"


@dataclass(frozen=True)
class ReconcileOutcome:
    symbol: str
    status: ReconcileStatus
    trade_id: Optional[int] = None
    price: Optional[Decimal] = None
    pnl: Optional[Decimal] = None
    fee: Optional[Decimal] = None

    @property
    def patched(self) -> bool:
        return self.status == ReconcileStatus.PATCHED


def _usable(price: Decimal) -> bool:
    return price.is_finite() and price > 0


class LedgerReconciler:
    """Corrects the latest close row of a symbol against its open row."""

    def __init__(
        self,
        gateway: ExchangeGateway,
        *,
        fee_rate: Decimal = DEFAULT_FEE_RATE,
        price_tolerance: Decimal = RECONCILE_PRICE_TOLERANCE,
        pnl_tolerance: Decimal = RECONCILE_PNL_TOLERANCE,
        fee_tolerance: Decimal = RECONCILE_FEE_TOLERANCE,
        settle_currency: str = DEFAULT_SETTLE_CURRENCY,
    ):
        self.gateway = gateway
        self.fee_rate = fee_rate
        self.price_tolerance = price_tolerance
        self.pnl_tolerance = pnl_tolerance
        self.fee_tolerance = fee_tolerance
        self.settle_currency = settle_currency

    async def reconcile(self, symbol: str) -> ReconcileOutcome:
        """
        Reconcile the most recent close trade of a symbol.

        Exchange and database errors propagate; the close executor catches
        them so a failed reconciliation never undoes a completed close.
        """
        close_trade = await asyncio.to_thread(get_latest_trade, symbol, TRADE_TYPE_CLOSE)
        if close_trade is None:
            logger.warning("RECONCILE_NO_CLOSE_TRADE", symbol=symbol)
            return ReconcileOutcome(symbol, ReconcileStatus.NO_CLOSE_TRADE)

        open_trade = await asyncio.to_thread(
            get_latest_trade, symbol, TRADE_TYPE_OPEN, close_trade.timestamp
        )
        if open_trade is None:
            logger.warning("RECONCILE_NO_OPEN_TRADE", symbol=symbol, close_trade_id=close_trade.id)
            return ReconcileOutcome(symbol, ReconcileStatus.NO_OPEN_TRADE, trade_id=close_trade.id)

        contract = contract_for_symbol(symbol, self.settle_currency)
        recorded_price = close_trade.price
        close_price = recorded_price

        if not _usable(close_price):
            ticker = await self.gateway.get_futures_ticker(contract)
            close_price = ticker.best_price
            if not _usable(close_price):
                logger.error("RECONCILE_NO_PRICE", symbol=symbol, close_trade_id=close_trade.id)
                return ReconcileOutcome(symbol, ReconcileStatus.NO_PRICE, trade_id=close_trade.id)
            logger.info("RECONCILE_PRICE_FROM_TICKER", symbol=symbol, price=str(close_price))

        multiplier = await self.gateway.get_contract_multiplier(contract)
        expected = compute_close_pnl(
            side=close_trade.side,
            entry_price=open_trade.price,
            exit_price=close_price,
            quantity=close_trade.quantity,
            contract_multiplier=multiplier,
            fee_rate=self.fee_rate,
        )
        correct_pnl = expected.net_pnl
        correct_fee = expected.total_fee

        # A non-finite recorded price always differs
        price_diff = abs(recorded_price - close_price) if recorded_price.is_finite() else Decimal("Infinity")
        pnl_diff = abs(close_trade.pnl - correct_pnl)
        fee_diff = abs(close_trade.fee - correct_fee)

        if price_diff <= self.price_tolerance and pnl_diff <= self.pnl_tolerance and fee_diff <= self.fee_tolerance:
            logger.debug("RECONCILE_UNCHANGED", symbol=symbol, trade_id=close_trade.id)
            return ReconcileOutcome(
                symbol, ReconcileStatus.UNCHANGED, trade_id=close_trade.id,
                price=recorded_price, pnl=close_trade.pnl, fee=close_trade.fee,
            )

        logger.warning(
            "RECONCILE_PATCH",
            symbol=symbol,
            side=close_trade.side.value,
            trade_id=close_trade.id,
            open_price=str(open_trade.price),
            price_from=str(recorded_price),
            price_to=str(close_price),
            pnl_from=str(close_trade.pnl),
            pnl_to=str(correct_pnl),
            fee_from=str(close_trade.fee),
            fee_to=str(correct_fee),
        )
        await asyncio.to_thread(patch_trade_fill, close_trade.id, close_price, correct_pnl, correct_fee)
        return ReconcileOutcome(
            symbol, ReconcileStatus.PATCHED, trade_id=close_trade.id,
            price=close_price, pnl=correct_pnl, fee=correct_fee,
        )
