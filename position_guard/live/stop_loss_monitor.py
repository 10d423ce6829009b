"""
Stop-loss monitor: close a position once its ROI% falls to the leverage
tier's stop line.
"""
from decimal import Decimal
from typing import Any, Dict, Optional

from position_guard.domain.models import CloseTrigger, ExchangePosition, TriggerType
from position_guard.live.risk_monitor import RiskMonitor
from position_guard.risk.position_tracker import TrackedSymbolState


class StopLossMonitor(RiskMonitor):
    trigger_type = TriggerType.STOP_LOSS
    track_peak = False

    def is_enabled(self) -> bool:
        return self.profile.has_stop_loss

    def evaluate(
        self,
        position: ExchangePosition,
        pnl: Decimal,
        state: TrackedSymbolState,
    ) -> Optional[CloseTrigger]:
        threshold = self.policy.stop_loss(position.leverage)
        if pnl > threshold.threshold_percent:
            return None
        return CloseTrigger(
            trigger_type=TriggerType.STOP_LOSS,
            pnl_percent=pnl,
            threshold_percent=threshold.threshold_percent,
            tier_label=threshold.tier_label,
            tier_description=threshold.description,
        )

    def status_context(self, position: ExchangePosition, pnl: Decimal, state: TrackedSymbolState) -> Dict[str, Any]:
        threshold = self.policy.stop_loss(position.leverage)
        return {"tier": threshold.tier_label, "threshold_percent": str(threshold.threshold_percent)}
