"""
Pytest configuration and shared fixtures.

Unit tests run against an in-memory SQLite ledger and an in-memory fake
exchange; nothing here touches the network.
"""
import asyncio
from dataclasses import replace
from decimal import Decimal
from typing import Dict, List, Optional

import pytest

from position_guard.config.strategy_profiles import default_strategy_profiles
from position_guard.data.symbol_utils import contract_for_symbol, symbol_from_contract
from position_guard.domain.models import ExchangePosition, OrderAck, OrderSnapshot, Side, Ticker
from position_guard.exceptions import PositionAlreadyClosedError
from position_guard.execution.close_executor import CloseExecutor
from position_guard.monitoring.alerting import reset_rate_limits
from position_guard.reconciliation.ledger_reconciler import LedgerReconciler
from position_guard.storage.db import init_db, reset_db


def pytest_configure(config):
    """Register custom marks. Async tests require pytest-asyncio."""
    config.addinivalue_line("markers", "asyncio: mark test as async (pytest-asyncio).")


def make_position(
    symbol: str = "BTC",
    side: Side = Side.LONG,
    size: str = "1",
    entry: str = "100",
    mark: str = "100",
    leverage: str = "10",
) -> ExchangePosition:
    quantity = Decimal(size)
    return ExchangePosition(
        symbol=symbol,
        contract=contract_for_symbol(symbol),
        side=side,
        size=quantity if side == Side.LONG else -quantity,
        entry_price=Decimal(entry),
        mark_price=Decimal(mark),
        leverage=Decimal(leverage),
    )


class FakeGateway:
    """
    In-memory exchange.

    A reduce-only order flattens the position and leaves a finished order
    filled at the position's mark price (or fill_prices[contract]).
    """

    def __init__(self):
        self.positions: Dict[str, ExchangePosition] = {}
        self.orders: Dict[str, OrderSnapshot] = {}
        self.tickers: Dict[str, Ticker] = {}
        self.multipliers: Dict[str, Decimal] = {}
        self.fill_prices: Dict[str, Decimal] = {}
        self.placed: List[dict] = []
        self.order_status_override: Optional[str] = None
        self.place_delay: float = 0
        self.positions_error: Optional[Exception] = None
        self.place_error: Optional[Exception] = None
        self.order_error: Optional[Exception] = None
        self.ticker_error: Optional[Exception] = None

    def add_position(self, position: ExchangePosition) -> None:
        self.positions[position.symbol] = position

    def set_mark(self, symbol: str, mark: str) -> None:
        self.positions[symbol] = replace(self.positions[symbol], mark_price=Decimal(mark))

    def remove_position(self, symbol: str) -> None:
        self.positions.pop(symbol, None)

    async def get_positions(self) -> List[ExchangePosition]:
        if self.positions_error:
            raise self.positions_error
        return list(self.positions.values())

    async def place_order(self, contract, size, price=Decimal("0"), reduce_only=False) -> OrderAck:
        self.placed.append({"contract": contract, "size": size, "price": price, "reduce_only": reduce_only})
        if self.place_delay:
            await asyncio.sleep(self.place_delay)
        if self.place_error:
            raise self.place_error

        symbol = symbol_from_contract(contract)
        position = self.positions.get(symbol)
        if reduce_only and position is None:
            raise PositionAlreadyClosedError(f"reduce-only order rejected: no position for {contract}")

        order_id = f"order-{len(self.placed)}"
        fill = self.fill_prices.get(contract, position.mark_price if position else Decimal("0"))
        self.orders[order_id] = OrderSnapshot(status="finished", fill_price=fill, size=size)
        self.positions.pop(symbol, None)
        return OrderAck(id=order_id)

    async def get_order(self, order_id: str, contract: str) -> OrderSnapshot:
        if self.order_error:
            raise self.order_error
        if self.order_status_override is not None:
            return OrderSnapshot(status=self.order_status_override)
        return self.orders.get(order_id, OrderSnapshot(status="open"))

    async def get_futures_ticker(self, contract: str) -> Ticker:
        if self.ticker_error:
            raise self.ticker_error
        return self.tickers.get(contract, Ticker())

    async def get_contract_multiplier(self, contract: str) -> Decimal:
        return self.multipliers.get(contract, Decimal("1"))


@pytest.fixture(autouse=True)
def _no_alert_webhook(monkeypatch):
    """Alerts only log during tests."""
    monkeypatch.delenv("ALERT_WEBHOOK_URL", raising=False)
    reset_rate_limits()
    yield


@pytest.fixture
def ledger_db():
    """Fresh in-memory ledger for one test."""
    db = init_db("sqlite://")
    yield db
    reset_db()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def swing_profile():
    return default_strategy_profiles()["swing-trend"]


@pytest.fixture
def balanced_profile():
    return default_strategy_profiles()["balanced"]


@pytest.fixture
def reconciler(gateway):
    return LedgerReconciler(gateway)


@pytest.fixture
def executor(gateway, reconciler):
    """Close executor with fill polling but no real waiting."""
    return CloseExecutor(
        gateway,
        reconciler,
        initial_fill_wait_seconds=0,
        fill_poll_attempts=5,
        fill_poll_interval_seconds=0,
    )


@pytest.fixture
def position_factory():
    return make_position
