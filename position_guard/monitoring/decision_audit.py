"""
Close decision audit: why the guard closed a position.

Every automatic close writes one agent_decisions row carrying the trigger
inputs (ROI%, threshold, tier, peak and drawdown for trailing stops) and the
outcome (exit price, realized PnL). Rows are write-once and never read back
by the monitors.

Usage:
    audit = CloseDecisionAudit.from_close(request, result)
    decision_id = record_close_decision(audit)
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from position_guard.domain.models import (
    CloseRequest,
    CloseResult,
    PriceSource,
    Side,
    TriggerType,
)
from position_guard.monitoring.logger import get_logger
from position_guard.storage.repository import record_decision

logger = get_logger(__name__)

_TRIGGER_TITLES = {
    TriggerType.STOP_LOSS: "Stop-loss triggered",
    TriggerType.TRAILING_STOP: "Trailing stop triggered",
}


def _fmt(value: Optional[Decimal], places: int = 2) -> str:
    if value is None:
        return "n/a"
    return f"{value:.{places}f}"


def _signed(value: Decimal) -> str:
    return f"{'+' if value >= 0 else ''}{value:.2f}"


@dataclass
class CloseDecisionAudit:
    """Complete record of one automatic close."""

    timestamp: datetime
    symbol: str
    side: Side
    trigger_type: TriggerType
    tier_label: str
    tier_description: str
    leverage: Decimal
    pnl_percent: Decimal
    threshold_percent: Decimal
    exit_price: Decimal
    realized_pnl: Decimal
    fee: Decimal
    order_id: Optional[str] = None
    price_source: Optional[PriceSource] = None
    peak_pnl_percent: Optional[Decimal] = None
    drawdown_percent: Optional[Decimal] = None
    opened_at: Optional[datetime] = None

    @classmethod
    def from_close(
        cls,
        request: CloseRequest,
        result: CloseResult,
        opened_at: Optional[datetime] = None,
    ) -> "CloseDecisionAudit":
        trigger = request.trigger
        return cls(
            timestamp=datetime.now(timezone.utc),
            symbol=request.symbol,
            side=request.position.side,
            trigger_type=trigger.trigger_type,
            tier_label=trigger.tier_label,
            tier_description=trigger.tier_description,
            leverage=request.position.leverage,
            pnl_percent=trigger.pnl_percent,
            threshold_percent=trigger.threshold_percent,
            exit_price=result.exit_price,
            realized_pnl=result.pnl,
            fee=result.fee,
            order_id=result.order_id,
            price_source=result.price_source,
            peak_pnl_percent=trigger.peak_pnl_percent,
            drawdown_percent=trigger.drawdown_percent,
            opened_at=opened_at,
        )

    def market_analysis(self) -> Dict[str, Any]:
        """Structured trigger inputs (stored as JSON)."""
        data: Dict[str, Any] = {
            "trigger": self.trigger_type.value,
            "symbol": self.symbol,
            "side": self.side.value,
            "tier": self.tier_label,
            "leverage": self.leverage,
            "pnl_percent": self.pnl_percent,
            "threshold_percent": self.threshold_percent,
            "exit_price": self.exit_price,
            "price_source": self.price_source.value if self.price_source else None,
            "order_id": self.order_id,
        }
        if self.trigger_type == TriggerType.TRAILING_STOP:
            data["peak_pnl_percent"] = self.peak_pnl_percent
            data["drawdown_percent"] = self.drawdown_percent
        if self.opened_at is not None:
            data["opened_at"] = self.opened_at
            data["holding_hours"] = round((self.timestamp - self.opened_at).total_seconds() / 3600, 2)
        return data

    def decision_text(self) -> str:
        """Human-readable summary shown in the decision history."""
        title = _TRIGGER_TITLES[self.trigger_type]
        lines = [
            f"[{title} - {self.tier_label}] {self.symbol} {self.side.value}",
            f"Tier: {self.tier_label}" + (f" ({self.tier_description})" if self.tier_description else ""),
            f"Leverage: {self.leverage}x",
        ]
        if self.trigger_type == TriggerType.TRAILING_STOP:
            lines += [
                f"Peak ROI: {_fmt(self.peak_pnl_percent)}%",
                f"Current ROI: {_fmt(self.pnl_percent)}%",
                f"Drawdown: {_fmt(self.drawdown_percent)}% (threshold: {_fmt(self.threshold_percent)}%)",
            ]
            reason = (
                f"ROI fell {_fmt(self.drawdown_percent)}% from peak {_fmt(self.peak_pnl_percent)}%, "
                f"reaching the {self.tier_label} drawdown threshold of {_fmt(self.threshold_percent)}%"
            )
        else:
            lines += [
                f"Current ROI: {_fmt(self.pnl_percent)}%",
                f"Stop line: {_fmt(self.threshold_percent)}%",
            ]
            reason = (
                f"ROI {_fmt(self.pnl_percent)}% reached the {self.tier_label} "
                f"stop line of {_fmt(self.threshold_percent)}%"
            )
        lines += [
            f"Exit price: {_fmt(self.exit_price, 4)}",
            f"Realized PnL: {_signed(self.realized_pnl)} USDT",
            "",
            f"Trigger: {reason}",
        ]
        return "\n".join(lines)

    def actions_taken(self) -> List[Dict[str, Any]]:
        return [{"action": "close_position", "symbol": self.symbol, "reason": self.trigger_type.value}]


def record_close_decision(audit: CloseDecisionAudit) -> int:
    """Persist the audit row (synchronous). Returns the agent_decisions id."""
    decision_id = record_decision(
        market_analysis=audit.market_analysis(),
        decision=audit.decision_text(),
        actions_taken=audit.actions_taken(),
        iteration=0,  # not an AI cycle
        timestamp=audit.timestamp,
    )
    logger.info(
        "CLOSE_DECISION_RECORDED",
        decision_id=decision_id,
        symbol=audit.symbol,
        trigger=audit.trigger_type.value,
        tier=audit.tier_label,
    )
    return decision_id
