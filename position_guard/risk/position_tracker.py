"""
In-memory per-symbol monitoring state.

Each monitor owns exactly one PositionTracker; nothing else touches it, so
no locking is needed while the owning monitor runs on a single event loop.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from position_guard.monitoring.logger import get_logger

logger = get_logger(__name__)


@dataclass
class TrackedSymbolState:
    """Monitoring state for one symbol. peak_pnl_percent is None for stop-loss trackers."""
    last_check_time: datetime
    check_count: int = 0
    peak_pnl_percent: Optional[Decimal] = None


class PositionTracker:
    """
    Symbol -> TrackedSymbolState.

    Invariants:
        - peak_pnl_percent never decreases for a tracked symbol
        - check_count only increments
        - after prune_to_active_set(active), symbols() is a subset of active
    """

    def __init__(self, name: str, track_peak: bool = False):
        self.name = name
        self.track_peak = track_peak
        self._states: Dict[str, TrackedSymbolState] = {}

    def get(self, symbol: str) -> Optional[TrackedSymbolState]:
        return self._states.get(symbol)

    def __contains__(self, symbol: str) -> bool:
        return symbol in self._states

    def __len__(self) -> int:
        return len(self._states)

    def symbols(self) -> List[str]:
        return list(self._states.keys())

    def upsert(self, symbol: str, pnl_percent: Decimal, now: Optional[datetime] = None) -> tuple[TrackedSymbolState, bool]:
        """
        Record one check of a symbol.

        Creates state on first observation (peak starts at the reading),
        increments check_count, refreshes last_check_time and raises the
        peak only on a strictly greater reading.

        Returns:
            (state, peak_raised)
        """
        now = now or datetime.now(timezone.utc)
        state = self._states.get(symbol)
        peak_raised = False

        if state is None:
            state = TrackedSymbolState(
                last_check_time=now,
                check_count=0,
                peak_pnl_percent=pnl_percent if self.track_peak else None,
            )
            self._states[symbol] = state
        elif self.track_peak and (state.peak_pnl_percent is None or pnl_percent > state.peak_pnl_percent):
            state.peak_pnl_percent = pnl_percent
            peak_raised = True

        state.check_count += 1
        state.last_check_time = now
        return state, peak_raised

    def seed_peak(self, symbol: str, peak_pnl_percent: Decimal, now: Optional[datetime] = None) -> TrackedSymbolState:
        """
        Restore a persisted peak for a symbol seen for the first time.

        Never lowers an existing peak and does not count as a check.
        """
        state = self._states.get(symbol)
        if state is None:
            state = TrackedSymbolState(
                last_check_time=now or datetime.now(timezone.utc),
                check_count=0,
                peak_pnl_percent=peak_pnl_percent,
            )
            self._states[symbol] = state
        elif state.peak_pnl_percent is None or peak_pnl_percent > state.peak_pnl_percent:
            state.peak_pnl_percent = peak_pnl_percent
        return state

    def delete(self, symbol: str) -> bool:
        return self._states.pop(symbol, None) is not None

    def prune_to_active_set(self, active_symbols: Iterable[str]) -> List[str]:
        """Drop every tracked symbol not in active_symbols. Returns the removed symbols."""
        active = set(active_symbols)
        removed = [s for s in self._states if s not in active]
        for symbol in removed:
            del self._states[symbol]
            logger.debug("TRACKER_PRUNED", tracker=self.name, symbol=symbol)
        return removed

    def clear(self) -> None:
        self._states.clear()
