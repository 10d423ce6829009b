"""
Threshold policy: tiered stop-loss and trailing-stop lookups.

Pure functions over the active strategy profile's tier tables. Nothing here
holds state; the monitors call these on every check.

Stop-loss: leverage bands. Higher leverage gets a tighter (closer to zero)
threshold because liquidation distance shrinks with leverage.

Trailing stop: peak-profit bands. Below the lowest band the trailing
protection is not armed yet.
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Sequence

from position_guard.config.config import (
    StopLossTierConfig,
    StrategyProfileConfig,
    TrailingStopTierConfig,
)
from position_guard.exceptions import ConfigurationError

NOT_ARMED_LABEL = "not_armed"


@dataclass(frozen=True)
class ThresholdResult:
    """
    Resolved threshold for one check.

    threshold_percent is None only for an unarmed trailing stop.
    """
    threshold_percent: Optional[Decimal]
    tier_label: str
    description: str = ""

    @property
    def armed(self) -> bool:
        return self.threshold_percent is not None


def stop_loss_threshold(leverage: Decimal, tiers: Optional[Sequence[StopLossTierConfig]]) -> ThresholdResult:
    """
    Stop-loss threshold (negative ROI%) for a leverage.

    Tiers are checked from the highest minimum leverage downward and the
    first one the leverage qualifies for wins. Leverage below every band
    falls back to the lowest band.

    Raises:
        ConfigurationError: no stop-loss tiers configured
    """
    if not tiers:
        raise ConfigurationError("Stop-loss tiers are not configured for the active strategy")

    ordered = sorted(tiers, key=lambda t: t.min_leverage, reverse=True)
    for tier in ordered:
        if leverage >= tier.min_leverage:
            return ThresholdResult(tier.stop_loss_percent, tier.label, tier.description)

    lowest = ordered[-1]
    return ThresholdResult(lowest.stop_loss_percent, lowest.label, lowest.description)


def trailing_stop_threshold(
    peak_pnl_percent: Decimal,
    tiers: Optional[Sequence[TrailingStopTierConfig]],
) -> ThresholdResult:
    """
    Allowed drawdown (percentage points) from a peak ROI%.

    Tiers are checked from the highest minimum profit downward; the first
    band whose minimum the peak meets or exceeds wins. A peak below the
    lowest band returns an unarmed result.

    Raises:
        ConfigurationError: no trailing-stop tiers configured
    """
    if not tiers:
        raise ConfigurationError("Trailing-stop tiers are not configured for the active strategy")

    ordered = sorted(tiers, key=lambda t: t.min_profit, reverse=True)
    for tier in ordered:
        if peak_pnl_percent >= tier.min_profit:
            return ThresholdResult(tier.drawdown_percent, tier.label, tier.description)

    lowest = ordered[-1]
    return ThresholdResult(
        None,
        NOT_ARMED_LABEL,
        f"peak below {lowest.min_profit}%, still tracking",
    )


class ThresholdPolicy:
    """Both lookups bound to one strategy profile."""

    def __init__(self, profile: StrategyProfileConfig):
        self.profile = profile

    @classmethod
    def from_profile(cls, profile: StrategyProfileConfig) -> "ThresholdPolicy":
        return cls(profile)

    def stop_loss(self, leverage: Decimal) -> ThresholdResult:
        return stop_loss_threshold(leverage, self.profile.stop_loss_tiers)

    def trailing_stop(self, peak_pnl_percent: Decimal) -> ThresholdResult:
        return trailing_stop_threshold(peak_pnl_percent, self.profile.trailing_stop_tiers)
