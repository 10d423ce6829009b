"""
Built-in strategy profiles.

Only swing-trend carries code-level protection tiers; for every other
profile the monitors refuse to start. config.yaml may override any profile
by name.
"""
from decimal import Decimal
from typing import Dict

from position_guard.config.config import (
    StopLossTierConfig,
    StrategyProfileConfig,
    TrailingStopTierConfig,
)


def _swing_trend() -> StrategyProfileConfig:
    return StrategyProfileConfig(
        name="swing-trend",
        description="Multi-day swing trading, protection fully delegated to the monitors",
        code_level_protection=True,
        stop_loss_tiers=[
            StopLossTierConfig(
                label="low_risk",
                min_leverage=Decimal("5"),
                max_leverage=Decimal("7"),
                stop_loss_percent=Decimal("-6"),
                description="5-7x leverage, close at -6%",
            ),
            StopLossTierConfig(
                label="medium_risk",
                min_leverage=Decimal("8"),
                max_leverage=Decimal("12"),
                stop_loss_percent=Decimal("-5"),
                description="8-12x leverage, close at -5%",
            ),
            StopLossTierConfig(
                label="high_risk",
                min_leverage=Decimal("13"),
                max_leverage=None,
                stop_loss_percent=Decimal("-4"),
                description="13x+ leverage, close at -4%",
            ),
        ],
        trailing_stop_tiers=[
            TrailingStopTierConfig(
                label="stage1",
                min_profit=Decimal("4"),
                max_profit=Decimal("6"),
                drawdown_percent=Decimal("1.5"),
                description="peak 4-6%, close on 1.5% pullback",
            ),
            TrailingStopTierConfig(
                label="stage2",
                min_profit=Decimal("6"),
                max_profit=Decimal("10"),
                drawdown_percent=Decimal("2"),
                description="peak 6-10%, close on 2% pullback",
            ),
            TrailingStopTierConfig(
                label="stage3",
                min_profit=Decimal("10"),
                max_profit=Decimal("15"),
                drawdown_percent=Decimal("2.5"),
                description="peak 10-15%, close on 2.5% pullback",
            ),
            TrailingStopTierConfig(
                label="stage4",
                min_profit=Decimal("15"),
                max_profit=Decimal("25"),
                drawdown_percent=Decimal("3"),
                description="peak 15-25%, close on 3% pullback",
            ),
            TrailingStopTierConfig(
                label="stage5",
                min_profit=Decimal("25"),
                max_profit=None,
                drawdown_percent=Decimal("5"),
                description="peak 25%+, close on 5% pullback",
            ),
        ],
    )


def default_strategy_profiles() -> Dict[str, StrategyProfileConfig]:
    """Profiles known to the system. Without tiers a profile is monitor-less."""
    return {
        "ultra-short": StrategyProfileConfig(name="ultra-short", description="Scalping, AI-managed exits"),
        "swing-trend": _swing_trend(),
        "conservative": StrategyProfileConfig(name="conservative", description="Low leverage, AI-managed exits"),
        "balanced": StrategyProfileConfig(name="balanced", description="Default profile, AI-managed exits"),
        "aggressive": StrategyProfileConfig(name="aggressive", description="High leverage, AI-managed exits"),
    }
