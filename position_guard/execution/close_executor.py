"""
Close executor: flatten one position with a reduce-only market order and
book the result.

Steps:
1. place a reduce-only market order for the full size (only fatal step)
2. resolve the fill price: order status polls -> ticker -> caller's mark
3. compute realized PnL and fees
4. insert the close trade, reconcile it, write the audit row, delete the
   live position row (each step best-effort and individually caught)
5. drop the symbol from the calling monitor's tracker

One executor is shared by both monitors; its in-flight set guarantees that
a symbol never has two closes running at the same time.
"""
import asyncio
from decimal import Decimal
from typing import Optional, Set, Tuple

from position_guard.constants import (
    DEFAULT_FEE_RATE,
    FILL_POLL_ATTEMPTS,
    FILL_POLL_INTERVAL_SECONDS,
    INITIAL_FILL_WAIT_SECONDS,
    ORDER_STATUS_FINISHED,
    TRADE_STATUS_FILLED,
    TRADE_STATUS_PENDING,
    TRADE_TYPE_CLOSE,
)
from position_guard.domain.models import (
    CloseRequest,
    CloseResult,
    CloseStatus,
    PriceSource,
    Side,
    TradeRecord,
)
from position_guard.domain.protocols import ExchangeGateway
from position_guard.exceptions import PositionAlreadyClosedError
from position_guard.execution.pnl import compute_close_pnl
from position_guard.monitoring.alerting import send_alert
from position_guard.monitoring.decision_audit import CloseDecisionAudit, record_close_decision
from position_guard.monitoring.logger import get_logger
from position_guard.reconciliation.ledger_reconciler import LedgerReconciler
from position_guard.risk.position_tracker import PositionTracker
from position_guard.storage.repository import delete_position, get_stored_position, insert_trade

logger = get_logger(__name__)


def _positive(value: Decimal) -> bool:
    return value.is_finite() and value > 0


class CloseExecutor:
    """Executes and books automatic closes."""

    def __init__(
        self,
        gateway: ExchangeGateway,
        reconciler: Optional[LedgerReconciler] = None,
        *,
        fee_rate: Decimal = DEFAULT_FEE_RATE,
        initial_fill_wait_seconds: float = INITIAL_FILL_WAIT_SECONDS,
        fill_poll_attempts: int = FILL_POLL_ATTEMPTS,
        fill_poll_interval_seconds: float = FILL_POLL_INTERVAL_SECONDS,
    ):
        self.gateway = gateway
        self.reconciler = reconciler or LedgerReconciler(gateway, fee_rate=fee_rate)
        self.fee_rate = fee_rate
        self.initial_fill_wait_seconds = initial_fill_wait_seconds
        self.fill_poll_attempts = fill_poll_attempts
        self.fill_poll_interval_seconds = fill_poll_interval_seconds
        self._in_flight: Set[str] = set()

    async def execute(self, request: CloseRequest, tracker: Optional[PositionTracker] = None) -> CloseResult:
        """
        Close a position and book it.

        Never raises: order placement failure returns CloseStatus.FAILED and
        leaves the tracker untouched so the next tick retries.
        """
        symbol = request.symbol
        if symbol in self._in_flight:
            logger.warning("CLOSE_SKIPPED_IN_FLIGHT", symbol=symbol, trigger=request.trigger.trigger_type.value)
            return CloseResult(symbol=symbol, status=CloseStatus.IN_FLIGHT)

        self._in_flight.add(symbol)
        try:
            result = await self._execute(request)
        finally:
            self._in_flight.discard(symbol)

        if result.success and tracker is not None:
            tracker.delete(symbol)
        return result

    async def _execute(self, request: CloseRequest) -> CloseResult:
        position = request.position
        trigger = request.trigger
        symbol = position.symbol
        size = -position.quantity if position.side == Side.LONG else position.quantity

        logger.warning(
            "CLOSE_TRIGGERED",
            symbol=symbol,
            side=position.side.value,
            trigger=trigger.trigger_type.value,
            tier=trigger.tier_label,
            pnl_percent=f"{trigger.pnl_percent:.2f}",
            threshold_percent=f"{trigger.threshold_percent:.2f}",
            peak_pnl_percent=f"{trigger.peak_pnl_percent:.2f}" if trigger.peak_pnl_percent is not None else None,
            leverage=str(position.leverage),
        )

        # 1. Reduce-only market close
        try:
            ack = await self.gateway.place_order(
                contract=position.contract,
                size=size,
                price=Decimal("0"),
                reduce_only=True,
            )
        except PositionAlreadyClosedError as e:
            if not await self._confirm_flat(symbol):
                return await self._order_failed(request, e)
            logger.info("CLOSE_POSITION_ALREADY_FLAT", symbol=symbol, reason=str(e))
            await self._delete_position_row(symbol)
            return CloseResult(symbol=symbol, status=CloseStatus.ALREADY_CLOSED)
        except Exception as e:
            return await self._order_failed(request, e)

        order_id = str(ack.id) if ack.id else None
        logger.info("CLOSE_ORDER_PLACED", symbol=symbol, order_id=order_id, size=str(size))

        # 2. Fill price
        exit_price, filled_quantity, source = await self._resolve_fill(
            order_id, position.contract, position.quantity, position.mark_price
        )

        # 3. PnL
        pnl = Decimal("0")
        fee = Decimal("0")
        if _positive(exit_price):
            try:
                multiplier = await self.gateway.get_contract_multiplier(position.contract)
                breakdown = compute_close_pnl(
                    side=position.side,
                    entry_price=position.entry_price,
                    exit_price=exit_price,
                    quantity=filled_quantity,
                    contract_multiplier=multiplier,
                    fee_rate=self.fee_rate,
                )
                pnl = breakdown.net_pnl
                fee = breakdown.total_fee
            except Exception as e:
                logger.error("CLOSE_PNL_CALC_FAILED", symbol=symbol, error=str(e))
        else:
            logger.error("CLOSE_NO_EXIT_PRICE", symbol=symbol, note="recorded as 0, reconciler will correct")

        result = CloseResult(
            symbol=symbol,
            status=CloseStatus.CLOSED,
            order_id=order_id,
            exit_price=exit_price if _positive(exit_price) else Decimal("0"),
            price_source=source,
            filled_quantity=filled_quantity,
            pnl=pnl,
            fee=fee,
        )

        # 4. Ledger, audit, live row
        await self._book(request, result)

        logger.info(
            "CLOSE_COMPLETED",
            symbol=symbol,
            trigger=trigger.trigger_type.value,
            exit_price=str(result.exit_price),
            price_source=source.value,
            pnl=f"{result.pnl:+.2f}",
            ledger_ok=result.ledger_ok,
        )
        return result

    async def _confirm_flat(self, symbol: str) -> bool:
        """True only if a fresh snapshot shows no open size for the symbol."""
        try:
            positions = await self.gateway.get_positions()
        except Exception as e:
            logger.error("CLOSE_FLAT_CHECK_FAILED", symbol=symbol, error=str(e))
            return False
        still_open = any(p.symbol == symbol and p.is_active for p in positions)
        if still_open:
            logger.error("CLOSE_REJECTED_BUT_POSITION_OPEN", symbol=symbol)
        return not still_open

    async def _order_failed(self, request: CloseRequest, error: Exception) -> CloseResult:
        symbol = request.symbol
        logger.error("CLOSE_ORDER_FAILED", symbol=symbol, error=str(error), error_type=type(error).__name__)
        await send_alert(
            "CLOSE_ORDER_FAILED",
            f"{request.trigger.trigger_type.value} close for {symbol} failed: {error}. Will retry next tick.",
        )
        return CloseResult(symbol=symbol, status=CloseStatus.FAILED, error=str(error))

    async def _resolve_fill(
        self,
        order_id: Optional[str],
        contract: str,
        quantity: Decimal,
        mark_price: Decimal,
    ) -> Tuple[Decimal, Decimal, PriceSource]:
        """Order fill -> ticker -> caller's mark price."""
        filled_quantity = quantity

        if order_id:
            await asyncio.sleep(self.initial_fill_wait_seconds)
            for attempt in range(1, self.fill_poll_attempts + 1):
                await asyncio.sleep(self.fill_poll_interval_seconds)
                try:
                    snapshot = await self.gateway.get_order(order_id, contract)
                except Exception as e:
                    logger.warning(
                        "CLOSE_ORDER_STATUS_FAILED",
                        order_id=order_id,
                        attempt=attempt,
                        max_attempts=self.fill_poll_attempts,
                        error=str(e),
                    )
                    continue
                if snapshot.status == ORDER_STATUS_FINISHED and _positive(snapshot.fill_price):
                    if snapshot.size.is_finite() and snapshot.size != 0:
                        filled_quantity = abs(snapshot.size)
                    logger.info("CLOSE_FILL_FROM_ORDER", order_id=order_id, fill_price=str(snapshot.fill_price))
                    return snapshot.fill_price, filled_quantity, PriceSource.ORDER_FILL

        try:
            ticker = await self.gateway.get_futures_ticker(contract)
            price = ticker.best_price
            if _positive(price):
                logger.warning("CLOSE_FILL_FROM_TICKER", contract=contract, price=str(price))
                return price, filled_quantity, PriceSource.TICKER
            logger.warning("CLOSE_TICKER_UNUSABLE", contract=contract, fallback_price=str(mark_price))
        except Exception as e:
            logger.error("CLOSE_TICKER_FAILED", contract=contract, error=str(e), fallback_price=str(mark_price))

        return mark_price, filled_quantity, PriceSource.MARK_FALLBACK

    async def _book(self, request: CloseRequest, result: CloseResult) -> None:
        """Persist trade, reconcile, audit and drop the live row. Never raises."""
        position = request.position
        symbol = position.symbol

        opened_at = None
        try:
            stored = await asyncio.to_thread(get_stored_position, symbol)
            opened_at = stored.opened_at if stored else None
        except Exception as e:
            logger.warning("CLOSE_POSITION_LOOKUP_FAILED", symbol=symbol, error=str(e))

        trade = TradeRecord(
            order_id=result.order_id or "",
            symbol=symbol,
            side=position.side,
            type=TRADE_TYPE_CLOSE,
            price=result.exit_price,
            quantity=result.filled_quantity,
            leverage=position.leverage,
            pnl=result.pnl,
            fee=result.fee,
            status=TRADE_STATUS_FILLED if result.price_source == PriceSource.ORDER_FILL else TRADE_STATUS_PENDING,
        )
        trade_inserted = False
        try:
            await asyncio.to_thread(insert_trade, trade)
            trade_inserted = True
        except Exception as e:
            await self._ledger_divergence(symbol, "trade insert", e, result)

        if trade_inserted:
            try:
                outcome = await self.reconciler.reconcile(symbol)
                if outcome.patched:
                    result.exit_price = outcome.price
                    result.pnl = outcome.pnl
                    result.fee = outcome.fee
            except Exception as e:
                logger.warning("CLOSE_RECONCILE_FAILED", symbol=symbol, error=str(e))

        try:
            audit = CloseDecisionAudit.from_close(request, result, opened_at=opened_at)
            await asyncio.to_thread(record_close_decision, audit)
        except Exception as e:
            await self._ledger_divergence(symbol, "decision audit", e, result)

        await self._delete_position_row(symbol, result)

    async def _delete_position_row(self, symbol: str, result: Optional[CloseResult] = None) -> None:
        try:
            deleted = await asyncio.to_thread(delete_position, symbol)
            if not deleted:
                logger.info("CLOSE_POSITION_ROW_ABSENT", symbol=symbol)
        except Exception as e:
            if result is not None:
                await self._ledger_divergence(symbol, "position delete", e, result)
            else:
                logger.error("CLOSE_POSITION_DELETE_FAILED", symbol=symbol, error=str(e))

    async def _ledger_divergence(
        self,
        symbol: str,
        step: str,
        error: Exception,
        result: Optional[CloseResult] = None,
    ) -> None:
        """The exchange is flat but the database says otherwise. Operator must look."""
        if result is not None:
            result.ledger_ok = False
        logger.critical("LEDGER_DIVERGENCE", symbol=symbol, step=step, error=str(error))
        await send_alert(
            "LEDGER_DIVERGENCE",
            f"{symbol}: exchange close succeeded but {step} failed ({error}). Check the ledger manually.",
            urgent=True,
        )
