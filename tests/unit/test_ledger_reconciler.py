"""
Unit tests for LedgerReconciler: compute, compare, patch.
"""
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from position_guard.constants import TRADE_TYPE_CLOSE, TRADE_TYPE_OPEN
from position_guard.domain.models import Side, Ticker, TradeRecord
from position_guard.reconciliation.ledger_reconciler import LedgerReconciler, ReconcileStatus
from position_guard.storage.repository import get_trade, insert_trade


def _trade(trade_type, price, minutes_ago, side=Side.LONG, quantity="1", pnl="0", fee="0", symbol="BTC"):
    return TradeRecord(
        symbol=symbol,
        side=side,
        type=trade_type,
        price=Decimal(price),
        quantity=Decimal(quantity),
        leverage=Decimal("10"),
        pnl=Decimal(pnl),
        fee=Decimal(fee),
        timestamp=datetime.now(timezone.utc) - timedelta(minutes=minutes_ago),
    )


@pytest.mark.asyncio
async def test_correct_row_is_left_alone(ledger_db, gateway, reconciler):
    insert_trade(_trade(TRADE_TYPE_OPEN, "100", 60))
    # gross +10, fees (100 + 110) * 0.0005 = 0.105
    close_id = insert_trade(_trade(TRADE_TYPE_CLOSE, "110", 1, pnl="9.895", fee="0.105"))

    outcome = await reconciler.reconcile("BTC")

    assert outcome.status == ReconcileStatus.UNCHANGED
    assert outcome.trade_id == close_id
    assert get_trade(close_id).pnl == Decimal("9.895")


@pytest.mark.asyncio
async def test_zero_close_price_patched_from_ticker(ledger_db, gateway, reconciler):
    insert_trade(_trade(TRADE_TYPE_OPEN, "100", 60, side=Side.SHORT, quantity="4"))
    close_id = insert_trade(_trade(TRADE_TYPE_CLOSE, "0", 1, side=Side.SHORT, quantity="4"))
    gateway.tickers["BTC_USDT"] = Ticker(last=Decimal("95"), mark_price=Decimal("95.1"))
    gateway.multipliers["BTC_USDT"] = Decimal("0.01")

    outcome = await reconciler.reconcile("BTC")

    # short: gross (100 - 95) * 4 * 0.01 = 0.2, fees (100 + 95) * 0.04 * 0.0005 = 0.0039
    assert outcome.status == ReconcileStatus.PATCHED
    row = get_trade(close_id)
    assert row.price == Decimal("95")
    assert row.pnl == pytest.approx(Decimal("0.1961"))
    assert row.fee == pytest.approx(Decimal("0.0039"))


@pytest.mark.asyncio
async def test_second_run_is_a_noop(ledger_db, gateway, reconciler):
    insert_trade(_trade(TRADE_TYPE_OPEN, "100", 60))
    close_id = insert_trade(_trade(TRADE_TYPE_CLOSE, "94", 1, pnl="0", fee="0"))

    first = await reconciler.reconcile("BTC")
    after_first = get_trade(close_id)
    second = await reconciler.reconcile("BTC")
    after_second = get_trade(close_id)

    assert first.status == ReconcileStatus.PATCHED
    assert second.status == ReconcileStatus.UNCHANGED
    assert (after_first.price, after_first.pnl, after_first.fee) == (
        after_second.price, after_second.pnl, after_second.fee,
    )


@pytest.mark.asyncio
async def test_small_differences_within_tolerance(ledger_db, gateway, reconciler):
    insert_trade(_trade(TRADE_TYPE_OPEN, "100", 60))
    # exact values would be pnl -6.097, fee 0.097
    close_id = insert_trade(_trade(TRADE_TYPE_CLOSE, "94", 1, pnl="-6.3", fee="0.05"))

    outcome = await reconciler.reconcile("BTC")

    assert outcome.status == ReconcileStatus.UNCHANGED
    assert get_trade(close_id).pnl == Decimal("-6.3")


@pytest.mark.asyncio
async def test_matches_most_recent_open_before_close(ledger_db, gateway, reconciler):
    insert_trade(_trade(TRADE_TYPE_OPEN, "80", 300))
    insert_trade(_trade(TRADE_TYPE_CLOSE, "90", 200))
    insert_trade(_trade(TRADE_TYPE_OPEN, "100", 60))
    close_id = insert_trade(_trade(TRADE_TYPE_CLOSE, "105", 1))
    insert_trade(_trade(TRADE_TYPE_OPEN, "200", 0))  # re-entry after the close

    outcome = await reconciler.reconcile("BTC")

    # entry 100 -> exit 105: gross 5, fees 0.1025
    assert outcome.status == ReconcileStatus.PATCHED
    assert get_trade(close_id).pnl == pytest.approx(Decimal("4.8975"))


@pytest.mark.asyncio
async def test_missing_rows(ledger_db, gateway, reconciler):
    assert (await reconciler.reconcile("ETH")).status == ReconcileStatus.NO_CLOSE_TRADE

    insert_trade(_trade(TRADE_TYPE_CLOSE, "10", 1, symbol="ETH"))
    assert (await reconciler.reconcile("ETH")).status == ReconcileStatus.NO_OPEN_TRADE


@pytest.mark.asyncio
async def test_no_usable_price_anywhere(ledger_db, gateway, reconciler):
    insert_trade(_trade(TRADE_TYPE_OPEN, "100", 60))
    close_id = insert_trade(_trade(TRADE_TYPE_CLOSE, "0", 1))

    outcome = await reconciler.reconcile("BTC")

    assert outcome.status == ReconcileStatus.NO_PRICE
    assert get_trade(close_id).price == Decimal("0")


@pytest.mark.asyncio
async def test_exchange_errors_propagate():
    gateway = MagicMock()
    gateway.get_futures_ticker = AsyncMock(side_effect=RuntimeError("ticker down"))
    reconciler = LedgerReconciler(gateway)
    open_row = _trade(TRADE_TYPE_OPEN, "100", 60)
    close_row = _trade(TRADE_TYPE_CLOSE, "0", 1)

    with patch(
        "position_guard.reconciliation.ledger_reconciler.get_latest_trade",
        side_effect=[close_row, open_row],
    ):
        with pytest.raises(RuntimeError):
            await reconciler.reconcile("BTC")
