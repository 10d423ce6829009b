"""
ProtectionSupervisor: wires and runs the code-level protection monitors.

Reads the active strategy profile once, builds one shared CloseExecutor
(so both monitors share its per-symbol in-flight guard) and starts every
monitor whose tiers the profile carries.
"""
from typing import Any, Dict, List

from position_guard.config.config import Config
from position_guard.domain.protocols import ExchangeGateway
from position_guard.execution.close_executor import CloseExecutor
from position_guard.live.risk_monitor import RiskMonitor
from position_guard.live.stop_loss_monitor import StopLossMonitor
from position_guard.live.trailing_stop_monitor import TrailingStopMonitor
from position_guard.monitoring.logger import get_logger
from position_guard.reconciliation.ledger_reconciler import LedgerReconciler

logger = get_logger(__name__)


class ProtectionSupervisor:
    def __init__(self, config: Config, gateway: ExchangeGateway):
        self.config = config
        self.gateway = gateway
        self.profile = config.strategy.active_profile()

        monitor_cfg = config.monitor
        self.reconciler = LedgerReconciler(
            gateway,
            fee_rate=monitor_cfg.fee_rate,
            price_tolerance=monitor_cfg.reconcile_price_tolerance,
            pnl_tolerance=monitor_cfg.reconcile_pnl_tolerance,
            fee_tolerance=monitor_cfg.reconcile_fee_tolerance,
            settle_currency=config.exchange.settle_currency,
        )
        self.executor = CloseExecutor(
            gateway,
            self.reconciler,
            fee_rate=monitor_cfg.fee_rate,
            initial_fill_wait_seconds=monitor_cfg.initial_fill_wait_seconds,
            fill_poll_attempts=monitor_cfg.fill_poll_attempts,
            fill_poll_interval_seconds=monitor_cfg.fill_poll_interval_seconds,
        )

        self.monitors: List[RiskMonitor] = []
        for monitor_cls in (StopLossMonitor, TrailingStopMonitor):
            monitor = monitor_cls(
                gateway,
                self.executor,
                self.profile,
                interval_seconds=monitor_cfg.interval_seconds,
                status_log_every_n_checks=monitor_cfg.status_log_every_n_checks,
            )
            if monitor.is_enabled():
                self.monitors.append(monitor)

    @property
    def has_protection(self) -> bool:
        return bool(self.monitors)

    async def start(self) -> List[str]:
        """Start the enabled monitors. Returns the names of those running."""
        if not self.monitors:
            logger.info(
                "PROTECTION_DISABLED",
                strategy=self.profile.name,
                reason="active strategy carries no code-level protection tiers",
            )
            return []

        started = []
        for monitor in self.monitors:
            if await monitor.start():
                started.append(monitor.name)
        logger.info("PROTECTION_STARTED", strategy=self.profile.name, monitors=started)
        return started

    async def stop(self) -> None:
        for monitor in self.monitors:
            try:
                await monitor.stop()
            except Exception as e:
                logger.error("MONITOR_STOP_FAILED", monitor=monitor.name, error=str(e))
        logger.info("PROTECTION_STOPPED", strategy=self.profile.name)

    def status(self) -> Dict[str, Any]:
        return {
            "strategy": self.profile.name,
            "monitors": [m.status() for m in self.monitors],
        }
