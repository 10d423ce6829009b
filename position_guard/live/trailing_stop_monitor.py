"""
Trailing-stop monitor: lock in profit by closing when ROI% gives back the
peak tier's allowed drawdown.

The peak is kept in memory by the tracker and mirrored to
positions.peak_pnl_percent so a restart resumes from the stored peak
instead of the current reading.
"""
import asyncio
from decimal import Decimal
from typing import Any, Dict, List, Optional

from position_guard.domain.models import CloseTrigger, ExchangePosition, TriggerType
from position_guard.live.risk_monitor import RiskMonitor
from position_guard.monitoring.logger import get_logger
from position_guard.risk.position_tracker import TrackedSymbolState
from position_guard.storage.repository import get_stored_position, update_position_peak

logger = get_logger(__name__)


class TrailingStopMonitor(RiskMonitor):
    trigger_type = TriggerType.TRAILING_STOP
    track_peak = True

    def is_enabled(self) -> bool:
        return self.profile.has_trailing_stop

    async def observe(self, position: ExchangePosition, pnl: Decimal) -> TrackedSymbolState:
        symbol = position.symbol
        first_sight = symbol not in self.tracker
        stored_peak = None

        if first_sight:
            stored_peak = await self._load_peak(symbol)
            if stored_peak is not None:
                self.tracker.seed_peak(symbol, stored_peak)
                logger.info("TRAILING_PEAK_RESTORED", symbol=symbol, peak_pnl_percent=f"{stored_peak:.2f}")

        state, peak_raised = self.tracker.upsert(symbol, pnl)

        if peak_raised or (first_sight and stored_peak is None):
            await self._persist_peak(symbol, state.peak_pnl_percent)
            if peak_raised:
                logger.debug("TRAILING_PEAK_RAISED", symbol=symbol, peak_pnl_percent=f"{state.peak_pnl_percent:.2f}")
        return state

    def evaluate(
        self,
        position: ExchangePosition,
        pnl: Decimal,
        state: TrackedSymbolState,
    ) -> Optional[CloseTrigger]:
        peak = state.peak_pnl_percent
        threshold = self.policy.trailing_stop(peak)
        if not threshold.armed:
            return None

        drawdown = peak - pnl
        if drawdown < threshold.threshold_percent:
            return None
        return CloseTrigger(
            trigger_type=TriggerType.TRAILING_STOP,
            pnl_percent=pnl,
            threshold_percent=threshold.threshold_percent,
            tier_label=threshold.tier_label,
            tier_description=threshold.description,
            peak_pnl_percent=peak,
            drawdown_percent=drawdown,
        )

    def status_context(self, position: ExchangePosition, pnl: Decimal, state: TrackedSymbolState) -> Dict[str, Any]:
        threshold = self.policy.trailing_stop(state.peak_pnl_percent)
        return {
            "peak_pnl_percent": f"{state.peak_pnl_percent:.2f}",
            "tier": threshold.tier_label,
            "drawdown_allowed": str(threshold.threshold_percent) if threshold.armed else None,
        }

    async def forget(self, symbols: List[str]) -> None:
        # A closed position's peak must not seed the next position on the symbol
        for symbol in symbols:
            try:
                await asyncio.to_thread(update_position_peak, symbol, None)
                logger.info("TRAILING_PEAK_CLEARED", symbol=symbol, reason="position closed externally")
            except Exception as e:
                logger.warning("TRAILING_PEAK_CLEAR_FAILED", symbol=symbol, error=str(e))

    async def _load_peak(self, symbol: str) -> Optional[Decimal]:
        try:
            stored = await asyncio.to_thread(get_stored_position, symbol)
        except Exception as e:
            logger.warning("TRAILING_PEAK_LOAD_FAILED", symbol=symbol, error=str(e))
            return None
        if stored is None or stored.peak_pnl_percent is None:
            return None
        return stored.peak_pnl_percent

    async def _persist_peak(self, symbol: str, peak: Decimal) -> None:
        try:
            await asyncio.to_thread(update_position_peak, symbol, peak)
        except Exception as e:
            # In-memory peak stays authoritative for this process
            logger.warning("TRAILING_PEAK_PERSIST_FAILED", symbol=symbol, error=str(e))
