"""
CcxtExchangeGateway against a mocked ccxt client.
"""
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import ccxt
import pytest

from position_guard.data.exchange_client import CcxtExchangeGateway, _translate_error
from position_guard.domain.models import Side
from position_guard.exceptions import (
    APIError,
    AuthenticationError,
    OrderExecutionError,
    PositionAlreadyClosedError,
    RateLimitError,
)


@pytest.fixture
def exchange():
    mock = MagicMock()
    mock.fetch_positions = AsyncMock(return_value=[])
    mock.fetch_order = AsyncMock()
    mock.fetch_ticker = AsyncMock()
    mock.load_markets = AsyncMock(return_value={})
    mock.create_order = AsyncMock(return_value={"id": "123"})
    mock.close = AsyncMock()
    return mock


@pytest.fixture
def client(exchange):
    return CcxtExchangeGateway("gate", api_key="k", api_secret="s", exchange=exchange)


def test_unsupported_exchange_rejected():
    with pytest.raises(ValueError):
        CcxtExchangeGateway("binance")


def test_credentials_check():
    assert CcxtExchangeGateway("gate", api_key="k", api_secret="s").has_valid_credentials()
    assert not CcxtExchangeGateway("gate").has_valid_credentials()
    assert not CcxtExchangeGateway("gate", api_key="${EXCHANGE_API_KEY}", api_secret="s").has_valid_credentials()


@pytest.mark.asyncio
async def test_positions_are_mapped_with_signed_sizes(client, exchange):
    exchange.fetch_positions.return_value = [
        {
            "symbol": "BTC/USDT:USDT",
            "side": "long",
            "contracts": 3,
            "entryPrice": 60000,
            "markPrice": 61000,
            "leverage": 10,
        },
        {
            "symbol": "ETH/USDT:USDT",
            "side": "short",
            "contracts": 2,
            "entryPrice": "3000",
            "markPrice": None,
            "leverage": None,
            "info": {"mark_price": "2990", "leverage": "5"},
        },
        {"symbol": "BTC/USD:BTC", "side": "long", "contracts": 1},
    ]

    positions = await client.get_positions()

    assert [p.symbol for p in positions] == ["BTC", "ETH"]
    btc, eth = positions
    assert btc.contract == "BTC_USDT"
    assert btc.side == Side.LONG
    assert btc.size == Decimal("3")
    assert btc.mark_price == Decimal("61000")
    assert eth.side == Side.SHORT
    assert eth.size == Decimal("-2")
    assert eth.mark_price == Decimal("2990")
    assert eth.leverage == Decimal("5")


@pytest.mark.asyncio
async def test_closed_order_is_finished(client, exchange):
    exchange.fetch_order.return_value = {"status": "closed", "average": 101.5, "filled": 2, "side": "sell"}

    snapshot = await client.get_order("123", "BTC_USDT")

    exchange.fetch_order.assert_awaited_once_with("123", "BTC/USDT:USDT")
    assert snapshot.status == "finished"
    assert snapshot.fill_price == Decimal("101.5")
    assert snapshot.size == Decimal("-2")


@pytest.mark.asyncio
async def test_open_order_without_average(client, exchange):
    exchange.fetch_order.return_value = {"status": "open", "average": None, "filled": 0, "side": "buy"}

    snapshot = await client.get_order("123", "BTC_USDT")

    assert snapshot.status == "open"
    assert snapshot.fill_price == Decimal("0")


@pytest.mark.asyncio
async def test_reduce_only_close_is_market_order(client, exchange):
    ack = await client.place_order("BTC_USDT", Decimal("-3"), reduce_only=True)

    assert ack.id == "123"
    kwargs = exchange.create_order.await_args.kwargs
    assert kwargs["symbol"] == "BTC/USDT:USDT"
    assert kwargs["type"] == "market"
    assert kwargs["side"] == "sell"
    assert kwargs["amount"] == 3.0
    assert kwargs["price"] is None
    assert kwargs["params"] == {"reduceOnly": True}


@pytest.mark.asyncio
async def test_zero_size_order_rejected(client, exchange):
    with pytest.raises(ValueError):
        await client.place_order("BTC_USDT", Decimal("0"))
    exchange.create_order.assert_not_awaited()


@pytest.mark.asyncio
async def test_reduce_only_rejection_means_already_closed(client, exchange):
    exchange.create_order.side_effect = ccxt.InvalidOrder('gate {"label":"POSITION_EMPTY","message":"position is empty"}')

    with pytest.raises(PositionAlreadyClosedError):
        await client.place_order("BTC_USDT", Decimal("-1"), reduce_only=True)


@pytest.mark.asyncio
async def test_other_rejections_are_not_already_closed(client, exchange):
    exchange.create_order.side_effect = ccxt.InsufficientFunds("insufficient margin")

    with pytest.raises(OrderExecutionError):
        await client.place_order("BTC_USDT", Decimal("-1"), reduce_only=True)


@pytest.mark.asyncio
async def test_order_placement_is_not_retried(client, exchange):
    exchange.create_order.side_effect = ccxt.NetworkError("timeout")

    with pytest.raises(APIError):
        await client.place_order("BTC_USDT", Decimal("-1"), reduce_only=True)
    assert exchange.create_order.await_count == 1


@pytest.mark.asyncio
async def test_network_errors_retried_then_translated(client, exchange):
    exchange.fetch_positions.side_effect = ccxt.NetworkError("connection reset")

    with patch("position_guard.utils.retry.asyncio.sleep", new=AsyncMock()):
        with pytest.raises(APIError):
            await client.get_positions()

    assert exchange.fetch_positions.await_count == 4


@pytest.mark.asyncio
async def test_transient_read_recovers(client, exchange):
    exchange.fetch_ticker.side_effect = [
        ccxt.NetworkError("blip"),
        {"last": 100, "markPrice": 100.2},
    ]

    with patch("position_guard.utils.retry.asyncio.sleep", new=AsyncMock()):
        ticker = await client.get_futures_ticker("BTC_USDT")

    assert ticker.last == Decimal("100")
    assert ticker.mark_price == Decimal("100.2")


@pytest.mark.asyncio
async def test_exchange_errors_are_not_retried(client, exchange):
    exchange.fetch_positions.side_effect = ccxt.AuthenticationError("bad key")

    with pytest.raises(AuthenticationError):
        await client.get_positions()
    assert exchange.fetch_positions.await_count == 1


@pytest.mark.asyncio
async def test_contract_multiplier_is_cached(client, exchange):
    exchange.load_markets.return_value = {"BTC/USDT:USDT": {"contractSize": 0.0001}}

    first = await client.get_contract_multiplier("BTC_USDT")
    second = await client.get_contract_multiplier("BTC_USDT")

    assert first == second == Decimal("0.0001")
    assert exchange.load_markets.await_count == 1


@pytest.mark.asyncio
async def test_unknown_contract_multiplier(client, exchange):
    with pytest.raises(OrderExecutionError):
        await client.get_contract_multiplier("NOPE_USDT")


@pytest.mark.asyncio
async def test_close_releases_client(client, exchange):
    await client.close()

    exchange.close.assert_awaited_once()
    assert client.exchange is None


@pytest.mark.parametrize(
    "error,expected",
    [
        (ccxt.RateLimitExceeded("slow down"), RateLimitError),
        (ccxt.AuthenticationError("bad key"), AuthenticationError),
        (ccxt.NetworkError("timeout"), APIError),
        (ccxt.InvalidOrder("bad size"), OrderExecutionError),
        (ccxt.ExchangeError("maintenance"), APIError),
    ],
)
def test_error_translation(error, expected):
    assert isinstance(_translate_error(error), expected)


def test_already_closed_only_for_reduce_only_orders():
    error = ccxt.InvalidOrder('okx {"code":"51169","msg":"You don\'t have any positions in this direction"}')
    assert isinstance(_translate_error(error, reduce_only=True), PositionAlreadyClosedError)
    assert isinstance(_translate_error(error, reduce_only=False), OrderExecutionError)


def test_unrelated_errors_pass_through():
    error = KeyError("x")
    assert _translate_error(error) is error


@pytest.mark.parametrize(
    "message",
    [
        'gate {"label":"INVALID_PARAM_VALUE","message":"reduce_only requires close mode"}',
        "reduce-only orders are not supported in one-way mode",
        "Reduce only order would increase position",
    ],
)
def test_reduce_only_wording_alone_is_not_already_closed(message):
    translated = _translate_error(ccxt.InvalidOrder(message), reduce_only=True)
    assert not isinstance(translated, PositionAlreadyClosedError)
    assert isinstance(translated, OrderExecutionError)


def test_gate_reduce_only_fail_code_is_already_closed():
    error = ccxt.ExchangeError('gate {"label":"REDUCE_ONLY_FAIL","message":"reduce only fail"}')
    assert isinstance(_translate_error(error, reduce_only=True), PositionAlreadyClosedError)
