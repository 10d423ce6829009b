"""
CCXT-backed exchange gateway for USDT-settled perpetual swaps.

Handles:
- Lazy ccxt async client construction (gate or okx, sandbox on testnet)
- Contract id <-> CCXT unified symbol translation
- Position, order, ticker and contract-size reads (retried on network errors)
- Reduce-only market closes, with "nothing to reduce" rejections surfaced
  as PositionAlreadyClosedError
"""
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, NoReturn, Optional

import ccxt
import ccxt.async_support as ccxt_async

from position_guard.constants import (
    DEFAULT_API_TIMEOUT_MS,
    DEFAULT_SETTLE_CURRENCY,
    ORDER_STATUS_FINISHED,
)
from position_guard.data.symbol_utils import (
    contract_for_unified_symbol,
    exchange_position_side,
    symbol_from_contract,
    unified_symbol_for_contract,
)
from position_guard.domain.models import ExchangePosition, OrderAck, OrderSnapshot, Side, Ticker
from position_guard.exceptions import (
    APIError,
    AuthenticationError,
    OrderExecutionError,
    PositionAlreadyClosedError,
    RateLimitError,
)
from position_guard.monitoring.logger import get_logger
from position_guard.utils.retry import retry_on_transient_errors

logger = get_logger(__name__)

SUPPORTED_EXCHANGES = ("gate", "okx")

# Venue error codes meaning "no position left to reduce"
# gate: POSITION_EMPTY, REDUCE_ONLY_FAIL; okx: 51169
_ALREADY_CLOSED_MARKERS = (
    "position_empty",
    "reduce_only_fail",
    "51169",
    "don't have any positions",
)

# ccxt order status -> gateway order status
_STATUS_MAP = {
    "closed": ORDER_STATUS_FINISHED,
    "open": "open",
    "canceled": "cancelled",
    "cancelled": "cancelled",
    "expired": "cancelled",
    "rejected": "rejected",
}


def _dec(value: Any) -> Decimal:
    """Exchange number -> Decimal (None/garbage -> 0)."""
    if value is None or value == "":
        return Decimal("0")
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return Decimal("0")


def _translate_error(exc: Exception, reduce_only: bool = False) -> Exception:
    """Map a ccxt exception onto the position guard hierarchy."""
    message = str(exc)
    if reduce_only and isinstance(exc, ccxt.ExchangeError):
        lowered = message.lower()
        if any(marker in lowered for marker in _ALREADY_CLOSED_MARKERS):
            return PositionAlreadyClosedError(message)
    if isinstance(exc, ccxt.AuthenticationError):
        return AuthenticationError(message)
    if isinstance(exc, ccxt.RateLimitExceeded):
        return RateLimitError(message)
    if isinstance(exc, ccxt.NetworkError):
        return APIError(message)
    if isinstance(exc, (ccxt.InvalidOrder, ccxt.InsufficientFunds)):
        return OrderExecutionError(message)
    if isinstance(exc, ccxt.ExchangeError):
        return APIError(message)
    return exc


def _reraise(exc: Exception) -> NoReturn:
    translated = _translate_error(exc)
    if translated is exc:
        raise exc
    raise translated from exc


class CcxtExchangeGateway:
    """
    ExchangeGateway implementation on ccxt.async_support.

    Must be used inside the running event loop; the ccxt client is created
    on first use and released by close().
    """

    def __init__(
        self,
        exchange_id: str = "gate",
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
        passphrase: Optional[str] = None,
        use_testnet: bool = False,
        *,
        settle_currency: str = DEFAULT_SETTLE_CURRENCY,
        timeout_ms: int = DEFAULT_API_TIMEOUT_MS,
        exchange: Optional[Any] = None,
    ):
        if exchange_id not in SUPPORTED_EXCHANGES:
            raise ValueError(f"Unsupported exchange '{exchange_id}', expected one of {SUPPORTED_EXCHANGES}")
        self.exchange_id = exchange_id
        self.api_key = api_key
        self.api_secret = api_secret
        self.passphrase = passphrase
        self.use_testnet = use_testnet
        self.settle_currency = settle_currency.upper()
        self.timeout_ms = timeout_ms

        self.exchange = exchange
        self._multipliers: Dict[str, Decimal] = {}

    @classmethod
    def from_config(cls, exchange_config) -> "CcxtExchangeGateway":
        return cls(
            exchange_id=exchange_config.name,
            api_key=exchange_config.api_key,
            api_secret=exchange_config.api_secret,
            passphrase=exchange_config.passphrase,
            use_testnet=exchange_config.use_testnet,
            settle_currency=exchange_config.settle_currency,
        )

    def has_valid_credentials(self) -> bool:
        return bool(self.api_key and self.api_secret and not self.api_key.startswith("${"))

    def _client(self):
        if self.exchange is None:
            options: Dict[str, Any] = {
                "apiKey": self.api_key,
                "secret": self.api_secret,
                "enableRateLimit": True,
                "timeout": self.timeout_ms,
                "options": {"defaultType": "swap"},
            }
            if self.passphrase:
                options["password"] = self.passphrase
            exchange_class = getattr(ccxt_async, self.exchange_id)
            self.exchange = exchange_class(options)
            if self.use_testnet:
                self.exchange.set_sandbox_mode(True)
            logger.info("EXCHANGE_CLIENT_INITIALIZED", exchange=self.exchange_id, testnet=self.use_testnet)
        return self.exchange

    def _unified(self, contract: str) -> str:
        return unified_symbol_for_contract(contract, self.settle_currency)

    # ----- reads -----

    @retry_on_transient_errors(max_retries=3, base_delay=1.0, transient_errors=(ccxt.NetworkError,))
    async def _fetch_positions(self) -> List[Dict[str, Any]]:
        return await self._client().fetch_positions()

    @retry_on_transient_errors(max_retries=3, base_delay=0.5, transient_errors=(ccxt.NetworkError,))
    async def _fetch_order(self, order_id: str, unified: str) -> Dict[str, Any]:
        return await self._client().fetch_order(order_id, unified)

    @retry_on_transient_errors(max_retries=3, base_delay=0.5, transient_errors=(ccxt.NetworkError,))
    async def _fetch_ticker(self, unified: str) -> Dict[str, Any]:
        return await self._client().fetch_ticker(unified)

    @retry_on_transient_errors(max_retries=3, base_delay=1.0, transient_errors=(ccxt.NetworkError,))
    async def _load_markets(self) -> Dict[str, Any]:
        return await self._client().load_markets()

    async def get_positions(self) -> List[ExchangePosition]:
        """All swap positions settled in the configured currency (signed sizes)."""
        try:
            raw_positions = await self._fetch_positions()
        except Exception as e:
            _reraise(e)

        suffix = f":{self.settle_currency}"
        positions: List[ExchangePosition] = []
        for raw in raw_positions or []:
            unified = raw.get("symbol") or ""
            if not unified.endswith(suffix):
                continue
            contracts = abs(_dec(raw.get("contracts")))
            side = Side(exchange_position_side(raw))
            info = raw.get("info") or {}
            contract = contract_for_unified_symbol(unified, self.settle_currency)
            positions.append(ExchangePosition(
                symbol=symbol_from_contract(contract, self.settle_currency),
                contract=contract,
                side=side,
                size=contracts if side == Side.LONG else -contracts,
                entry_price=_dec(raw.get("entryPrice")),
                mark_price=_dec(raw.get("markPrice") or info.get("mark_price") or info.get("markPx")),
                leverage=_dec(raw.get("leverage") or info.get("leverage") or info.get("lever")),
            ))
        return positions

    async def get_order(self, order_id: str, contract: str) -> OrderSnapshot:
        try:
            raw = await self._fetch_order(order_id, self._unified(contract))
        except Exception as e:
            _reraise(e)

        raw_status = str(raw.get("status") or "").lower()
        filled = abs(_dec(raw.get("filled")))
        if raw.get("side") == "sell":
            filled = -filled
        return OrderSnapshot(
            status=_STATUS_MAP.get(raw_status, raw_status),
            fill_price=_dec(raw.get("average")),
            size=filled,
        )

    async def get_futures_ticker(self, contract: str) -> Ticker:
        try:
            raw = await self._fetch_ticker(self._unified(contract))
        except Exception as e:
            _reraise(e)

        info = raw.get("info") or {}
        return Ticker(
            last=_dec(raw.get("last")),
            mark_price=_dec(raw.get("markPrice") or info.get("mark_price") or info.get("markPx")),
        )

    async def get_contract_multiplier(self, contract: str) -> Decimal:
        """Base units per contract (ccxt contractSize). Cached per contract."""
        cached = self._multipliers.get(contract)
        if cached is not None:
            return cached
        try:
            markets = await self._load_markets()
        except Exception as e:
            _reraise(e)

        unified = self._unified(contract)
        market = markets.get(unified)
        if market is None:
            raise OrderExecutionError(f"Unknown contract {contract} ({unified})")
        multiplier = _dec(market.get("contractSize")) or Decimal("1")
        self._multipliers[contract] = multiplier
        return multiplier

    # ----- writes -----

    async def place_order(
        self,
        contract: str,
        size: Decimal,
        price: Decimal = Decimal("0"),
        reduce_only: bool = False,
    ) -> OrderAck:
        """
        Place an order. size is signed (negative sells); price 0 means market.

        Not retried: a timed-out placement may still have reached the venue.
        """
        if size == 0:
            raise ValueError("Order size must be non-zero")
        unified = self._unified(contract)
        side = "buy" if size > 0 else "sell"
        order_type = "market" if price == 0 else "limit"
        params: Dict[str, Any] = {}
        if reduce_only:
            params["reduceOnly"] = True

        logger.info(
            "PLACING_ORDER",
            contract=contract,
            unified_symbol=unified,
            side=side,
            type=order_type,
            size=str(abs(size)),
            reduce_only=reduce_only,
        )
        try:
            order = await self._client().create_order(
                symbol=unified,
                type=order_type,
                side=side,
                amount=float(abs(size)),
                price=float(price) if order_type == "limit" else None,
                params=params,
            )
        except Exception as e:
            translated = _translate_error(e, reduce_only=reduce_only)
            if not isinstance(translated, PositionAlreadyClosedError):
                logger.error("ORDER_REJECTED_BY_VENUE", contract=contract, error=str(e), error_type=type(e).__name__)
            if translated is e:
                raise
            raise translated from e

        order_id = order.get("id") if order else None
        return OrderAck(id=str(order_id) if order_id else None)

    async def close(self):
        """Cleanup resources."""
        if self.exchange is not None:
            await self.exchange.close()
            self.exchange = None
