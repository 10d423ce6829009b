"""
RiskMonitor: polling scheduler shared by the stop-loss and trailing-stop
monitors.

Each tick:
1. fetch exchange positions, keep the non-zero ones
2. validate every snapshot (invalid readings are skipped, tracker kept)
3. compute ROI% and let the subclass observe it and decide (trigger law)
4. hand triggered closes to the shared CloseExecutor
5. prune tracker entries for symbols that are no longer open

States:
    STOPPED --start()--> RUNNING --stop()--> STOPPED

Usage:
    monitor = StopLossMonitor(gateway, executor, profile)
    if await monitor.start():
        ...
    await monitor.stop()
"""
import asyncio
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from position_guard.config.config import StrategyProfileConfig
from position_guard.constants import MONITOR_INTERVAL_SECONDS, STATUS_LOG_EVERY_N_CHECKS
from position_guard.domain.models import (
    CloseRequest,
    CloseResult,
    CloseTrigger,
    ExchangePosition,
    TriggerType,
)
from position_guard.domain.protocols import ExchangeGateway
from position_guard.exceptions import ValidationError
from position_guard.execution.close_executor import CloseExecutor
from position_guard.execution.pnl import pnl_percent
from position_guard.monitoring.logger import get_logger
from position_guard.risk.position_tracker import PositionTracker, TrackedSymbolState
from position_guard.risk.threshold_policy import ThresholdPolicy

logger = get_logger(__name__)


class MonitorState(str, Enum):
    STOPPED = "stopped"
    RUNNING = "running"


def validate_snapshot(position: ExchangePosition) -> None:
    """
    Reject snapshots the ROI% math cannot use.

    Raises:
        ValidationError: entry, mark or leverage is zero, negative or non-finite
    """
    for field_name in ("entry_price", "mark_price", "leverage"):
        value: Decimal = getattr(position, field_name)
        if not value.is_finite() or value <= 0:
            raise ValidationError(f"{position.symbol}: invalid {field_name} {value}")


class RiskMonitor:
    """Base class; subclasses supply the trigger law."""

    trigger_type: TriggerType
    track_peak: bool = False

    def __init__(
        self,
        gateway: ExchangeGateway,
        executor: CloseExecutor,
        profile: StrategyProfileConfig,
        *,
        interval_seconds: float = MONITOR_INTERVAL_SECONDS,
        status_log_every_n_checks: int = STATUS_LOG_EVERY_N_CHECKS,
    ):
        self.gateway = gateway
        self.executor = executor
        self.profile = profile
        self.policy = ThresholdPolicy.from_profile(profile)
        self.interval_seconds = interval_seconds
        self.status_log_every_n_checks = max(1, status_log_every_n_checks)
        self.tracker = PositionTracker(self.name, track_peak=self.track_peak)

        self._state = MonitorState.STOPPED
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._checking = False
        self.ticks = 0

    @property
    def name(self) -> str:
        return self.trigger_type.value + "_monitor"

    @property
    def state(self) -> MonitorState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state == MonitorState.RUNNING

    # ----- hooks -----

    def is_enabled(self) -> bool:
        raise NotImplementedError

    async def observe(self, position: ExchangePosition, pnl: Decimal) -> TrackedSymbolState:
        """Record the reading in the tracker. Returns the symbol's state."""
        state, _ = self.tracker.upsert(position.symbol, pnl)
        return state

    def evaluate(
        self,
        position: ExchangePosition,
        pnl: Decimal,
        state: TrackedSymbolState,
    ) -> Optional[CloseTrigger]:
        raise NotImplementedError

    def status_context(
        self,
        position: ExchangePosition,
        pnl: Decimal,
        state: TrackedSymbolState,
    ) -> Dict[str, Any]:
        return {}

    async def forget(self, symbols: List[str]) -> None:
        """Called with the symbols pruned because they closed outside the guard."""

    # ----- lifecycle -----

    async def start(self) -> bool:
        """
        Begin polling. Refused (returns False) when the active profile does
        not carry this monitor's protection.
        """
        if self._state == MonitorState.RUNNING:
            logger.info("MONITOR_ALREADY_RUNNING", monitor=self.name)
            return True

        if not self.is_enabled():
            logger.info(
                "MONITOR_DISABLED",
                monitor=self.name,
                strategy=self.profile.name,
                code_level_protection=self.profile.code_level_protection,
                reason="active strategy has no tiers for this protection",
            )
            return False

        self._state = MonitorState.RUNNING
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run_loop(), name=self.name)
        logger.info(
            "MONITOR_STARTED",
            monitor=self.name,
            strategy=self.profile.name,
            interval_seconds=self.interval_seconds,
        )
        return True

    async def stop(self) -> None:
        """Stop polling. A tick already in progress completes first."""
        if self._state == MonitorState.STOPPED:
            return

        self._state = MonitorState.STOPPED
        if self._stop_event is not None:
            self._stop_event.set()
        if self._task is not None:
            await self._task
            self._task = None

        tracked = len(self.tracker)
        self.tracker.clear()
        logger.info("MONITOR_STOPPED", monitor=self.name, cleared_symbols=tracked)

    async def _run_loop(self) -> None:
        while self._state == MonitorState.RUNNING:
            try:
                await self.check_positions()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("MONITOR_TICK_FAILED", monitor=self.name, error=str(e), error_type=type(e).__name__)

            if self._state != MonitorState.RUNNING:
                break
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                pass

    # ----- tick -----

    async def check_positions(self) -> List[CloseResult]:
        """
        Run one tick. Returns the close results produced by this tick.

        A call while another tick of this monitor is running is skipped.
        """
        if self._checking:
            logger.warning("MONITOR_TICK_SKIPPED", monitor=self.name, reason="previous tick still running")
            return []

        self._checking = True
        try:
            return await self._tick()
        finally:
            self._checking = False

    async def _tick(self) -> List[CloseResult]:
        self.ticks += 1
        try:
            positions = await self.gateway.get_positions()
        except Exception as e:
            logger.error("MONITOR_POSITIONS_FETCH_FAILED", monitor=self.name, error=str(e))
            return []

        active = [p for p in positions if p.is_active]
        results: List[CloseResult] = []

        for position in active:
            try:
                result = await self._check_one(position)
                if result is not None:
                    results.append(result)
            except ValidationError as e:
                logger.warning("MONITOR_SNAPSHOT_SKIPPED", monitor=self.name, symbol=position.symbol, reason=str(e))
            except Exception as e:
                logger.error(
                    "MONITOR_SYMBOL_CHECK_FAILED",
                    monitor=self.name,
                    symbol=position.symbol,
                    error=str(e),
                    error_type=type(e).__name__,
                )

        pruned = self.tracker.prune_to_active_set(p.symbol for p in active)
        if pruned:
            await self.forget(pruned)
        return results

    async def _check_one(self, position: ExchangePosition) -> Optional[CloseResult]:
        validate_snapshot(position)
        pnl = pnl_percent(position.entry_price, position.mark_price, position.side, position.leverage)
        state = await self.observe(position, pnl)

        trigger = self.evaluate(position, pnl, state)
        if trigger is None:
            if state.check_count % self.status_log_every_n_checks == 0:
                logger.debug(
                    "MONITOR_STATUS",
                    monitor=self.name,
                    symbol=position.symbol,
                    side=position.side.value,
                    leverage=str(position.leverage),
                    pnl_percent=f"{pnl:.2f}",
                    checks=state.check_count,
                    **self.status_context(position, pnl, state),
                )
            return None

        return await self.executor.execute(CloseRequest(position=position, trigger=trigger), self.tracker)

    def status(self) -> Dict[str, Any]:
        return {
            "monitor": self.name,
            "state": self._state.value,
            "strategy": self.profile.name,
            "tracked_symbols": self.tracker.symbols(),
            "ticks": self.ticks,
        }
