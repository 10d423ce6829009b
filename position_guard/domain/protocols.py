"""
Domain protocols (interfaces) for dependency inversion.

The monitors and the close executor depend on this narrow exchange
capability surface rather than on a concrete exchange client, so tests can
swap in an in-memory gateway and production can use the ccxt adapter.
"""
from decimal import Decimal
from typing import List, Protocol, runtime_checkable

from position_guard.domain.models import ExchangePosition, OrderAck, OrderSnapshot, Ticker


@runtime_checkable
class ExchangeGateway(Protocol):
    """
    Exchange capability surface consumed by the position guard.

    Every call may raise; callers catch each one individually.
    """

    async def get_positions(self) -> List[ExchangePosition]: ...

    async def place_order(
        self,
        contract: str,
        size: Decimal,
        price: Decimal = Decimal("0"),
        reduce_only: bool = False,
    ) -> OrderAck: ...

    async def get_order(self, order_id: str, contract: str) -> OrderSnapshot: ...

    async def get_futures_ticker(self, contract: str) -> Ticker: ...

    async def get_contract_multiplier(self, contract: str) -> Decimal: ...
