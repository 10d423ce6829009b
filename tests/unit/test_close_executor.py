"""
Unit tests for CloseExecutor: order placement, fill-price chain, ledger
booking and the per-symbol in-flight guard.
"""
import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest

from position_guard.constants import TRADE_TYPE_CLOSE, TRADE_TYPE_OPEN
from position_guard.domain.models import (
    CloseRequest,
    CloseStatus,
    CloseTrigger,
    PriceSource,
    Side,
    Ticker,
    TradeRecord,
    TriggerType,
)
from position_guard.exceptions import APIError, PositionAlreadyClosedError
from position_guard.risk.position_tracker import PositionTracker
from position_guard.storage.repository import (
    get_recent_decisions,
    get_stored_position,
    get_trades,
    insert_trade,
    save_position,
)


def _stop_loss_request(position):
    return CloseRequest(
        position=position,
        trigger=CloseTrigger(
            trigger_type=TriggerType.STOP_LOSS,
            pnl_percent=Decimal("-60"),
            threshold_percent=Decimal("-5"),
            tier_label="medium_risk",
        ),
    )


def _book_open(position, minutes_ago=30):
    """Open trade and live row as the open path would have written them."""
    opened_at = datetime.now(timezone.utc) - timedelta(minutes=minutes_ago)
    insert_trade(TradeRecord(
        symbol=position.symbol,
        side=position.side,
        type=TRADE_TYPE_OPEN,
        price=position.entry_price,
        quantity=position.quantity,
        leverage=position.leverage,
        timestamp=opened_at,
    ))
    save_position(
        position.symbol,
        position.side,
        position.quantity,
        position.entry_price,
        position.leverage,
        opened_at=opened_at,
    )


@pytest.mark.asyncio
async def test_close_long_uses_order_fill_and_books_everything(ledger_db, gateway, executor, position_factory):
    position = position_factory(entry="100", mark="94", leverage="10", size="2")
    gateway.add_position(position)
    gateway.fill_prices[position.contract] = Decimal("93.9")
    _book_open(position)
    tracker = PositionTracker("stop_loss_monitor")
    tracker.upsert("BTC", Decimal("-60"))

    result = await executor.execute(_stop_loss_request(position), tracker)

    assert result.status == CloseStatus.CLOSED
    assert result.price_source == PriceSource.ORDER_FILL
    assert result.exit_price == Decimal("93.9")
    assert gateway.placed[0]["size"] == Decimal("-2")
    assert gateway.placed[0]["reduce_only"] is True
    assert gateway.placed[0]["price"] == Decimal("0")

    # gross -12.2, fees (100 + 93.9) * 2 * 0.0005 = 0.1939
    assert result.pnl == Decimal("-12.3939")
    close_rows = get_trades("BTC", TRADE_TYPE_CLOSE)
    assert len(close_rows) == 1
    assert close_rows[0].status == "filled"
    assert close_rows[0].pnl == pytest.approx(Decimal("-12.3939"))
    assert get_stored_position("BTC") is None
    assert "BTC" not in tracker

    decisions = get_recent_decisions()
    assert len(decisions) == 1
    assert decisions[0]["actions_taken"] == [
        {"action": "close_position", "symbol": "BTC", "reason": "stop_loss"}
    ]
    assert "holding_hours" in decisions[0]["market_analysis"]


@pytest.mark.asyncio
async def test_close_short_buys_back(ledger_db, gateway, executor, position_factory):
    position = position_factory(side=Side.SHORT, size="3", entry="100", mark="106")
    gateway.add_position(position)

    result = await executor.execute(_stop_loss_request(position))

    assert result.success
    assert gateway.placed[0]["size"] == Decimal("3")


@pytest.mark.asyncio
async def test_no_fill_falls_back_to_ticker_and_reconcile_is_noop(ledger_db, gateway, executor, position_factory):
    """Order never reports a fill; the ticker price is recorded and needs no patch."""
    position = position_factory(entry="100", mark="94", leverage="10")
    gateway.add_position(position)
    gateway.order_status_override = "open"
    gateway.tickers[position.contract] = Ticker(last=Decimal("94.2"), mark_price=Decimal("94.1"))
    _book_open(position)

    with patch.object(executor.reconciler, "reconcile", wraps=executor.reconciler.reconcile) as reconcile:
        result = await executor.execute(_stop_loss_request(position))

    assert result.price_source == PriceSource.TICKER
    assert result.exit_price == Decimal("94.2")
    reconcile.assert_awaited_once_with("BTC")

    close_row = get_trades("BTC", TRADE_TYPE_CLOSE)[0]
    assert close_row.status == "pending"
    assert close_row.price == Decimal("94.2")
    # 1 contract: gross -5.8, fees (100 + 94.2) * 0.0005 = 0.0971
    assert close_row.pnl == pytest.approx(Decimal("-5.8971"))


@pytest.mark.asyncio
async def test_ticker_failure_falls_back_to_mark_price(ledger_db, gateway, executor, position_factory):
    position = position_factory(entry="100", mark="94")
    gateway.add_position(position)
    gateway.order_error = APIError("timeout")
    gateway.ticker_error = APIError("timeout")

    result = await executor.execute(_stop_loss_request(position))

    assert result.status == CloseStatus.CLOSED
    assert result.price_source == PriceSource.MARK_FALLBACK
    assert result.exit_price == Decimal("94")


@pytest.mark.asyncio
async def test_zero_ticker_uses_mark_price(ledger_db, gateway, executor, position_factory):
    position = position_factory(entry="100", mark="94")
    gateway.add_position(position)
    gateway.order_status_override = "open"
    gateway.tickers[position.contract] = Ticker(last=Decimal("0"), mark_price=Decimal("0"))

    result = await executor.execute(_stop_loss_request(position))

    assert result.price_source == PriceSource.MARK_FALLBACK
    assert result.exit_price == Decimal("94")


@pytest.mark.asyncio
async def test_placement_failure_keeps_symbol_tracked(ledger_db, gateway, executor, position_factory):
    position = position_factory(entry="100", mark="94")
    gateway.add_position(position)
    gateway.place_error = APIError("exchange unavailable")
    tracker = PositionTracker("stop_loss_monitor")
    tracker.upsert("BTC", Decimal("-60"))

    result = await executor.execute(_stop_loss_request(position), tracker)

    assert result.status == CloseStatus.FAILED
    assert "exchange unavailable" in result.error
    assert "BTC" in tracker
    assert get_trades("BTC") == []
    assert get_recent_decisions() == []
    assert "BTC" not in executor._in_flight


@pytest.mark.asyncio
async def test_already_closed_is_success_without_audit(ledger_db, gateway, executor, position_factory):
    """Reduce-only order against a flat position: clean up, no trade, no audit."""
    position = position_factory(entry="100", mark="94")
    _book_open(position)  # exchange side already flat
    tracker = PositionTracker("trailing_stop_monitor", track_peak=True)
    tracker.upsert("BTC", Decimal("5"))

    result = await executor.execute(_stop_loss_request(position), tracker)

    assert result.status == CloseStatus.ALREADY_CLOSED
    assert result.success
    assert "BTC" not in tracker
    assert get_stored_position("BTC") is None
    assert get_trades("BTC", TRADE_TYPE_CLOSE) == []
    assert get_recent_decisions() == []


@pytest.mark.asyncio
async def test_already_closed_rejection_with_open_position_is_failure(ledger_db, gateway, executor, position_factory):
    """Venue says nothing to reduce but the position is still there: keep it and alert."""
    position = position_factory(entry="100", mark="94")
    gateway.add_position(position)
    _book_open(position)
    gateway.place_error = PositionAlreadyClosedError("reduce-only rejected")
    tracker = PositionTracker("stop_loss_monitor")
    tracker.upsert("BTC", Decimal("-60"))

    with patch("position_guard.execution.close_executor.send_alert", new=AsyncMock()) as alert:
        result = await executor.execute(_stop_loss_request(position), tracker)

    assert result.status == CloseStatus.FAILED
    assert "BTC" in tracker
    assert get_stored_position("BTC") is not None
    assert alert.await_args.args[0] == "CLOSE_ORDER_FAILED"


@pytest.mark.asyncio
async def test_already_closed_rejection_unconfirmed_when_positions_unreadable(
    ledger_db, gateway, executor, position_factory
):
    position = position_factory(entry="100", mark="94")
    _book_open(position)
    gateway.place_error = PositionAlreadyClosedError("reduce-only rejected")
    gateway.positions_error = APIError("exchange unavailable")

    result = await executor.execute(_stop_loss_request(position))

    assert result.status == CloseStatus.FAILED
    assert get_stored_position("BTC") is not None


@pytest.mark.asyncio
async def test_concurrent_closes_of_same_symbol_write_one_audit(ledger_db, gateway, executor, position_factory):
    position = position_factory(entry="100", mark="94")
    gateway.add_position(position)
    gateway.place_delay = 0.05

    first, second = await asyncio.gather(
        executor.execute(_stop_loss_request(position)),
        executor.execute(_stop_loss_request(position)),
    )

    statuses = sorted([first.status, second.status], key=lambda s: s.value)
    assert statuses == [CloseStatus.CLOSED, CloseStatus.IN_FLIGHT]
    assert len(gateway.placed) == 1
    assert len(get_trades("BTC", TRADE_TYPE_CLOSE)) == 1
    assert len(get_recent_decisions()) == 1


@pytest.mark.asyncio
async def test_persistence_failure_is_not_fatal(gateway, executor, position_factory):
    """Exchange close succeeded but the ledger is down: result reports the divergence."""
    position = position_factory(entry="100", mark="94")
    gateway.add_position(position)

    with patch(
        "position_guard.execution.close_executor.insert_trade",
        side_effect=RuntimeError("db down"),
    ), patch(
        "position_guard.execution.close_executor.get_stored_position",
        side_effect=RuntimeError("db down"),
    ), patch(
        "position_guard.execution.close_executor.record_close_decision",
        side_effect=RuntimeError("db down"),
    ), patch(
        "position_guard.execution.close_executor.delete_position",
        side_effect=RuntimeError("db down"),
    ), patch(
        "position_guard.execution.close_executor.send_alert",
        new_callable=AsyncMock,
    ) as send_alert:
        result = await executor.execute(_stop_loss_request(position))

    assert result.status == CloseStatus.CLOSED
    assert result.ledger_ok is False
    alerted = [c.args[0] for c in send_alert.await_args_list]
    assert "LEDGER_DIVERGENCE" in alerted
