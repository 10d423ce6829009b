"""
Configuration models for the position guard.

Uses Pydantic for validation and type safety.
"""
from typing import Dict, List, Literal, Optional
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
import yaml
from pathlib import Path
from decimal import Decimal
import os
import re

from position_guard.constants import (
    DEFAULT_FEE_RATE,
    DEFAULT_SETTLE_CURRENCY,
    DEFAULT_TRADING_STRATEGY,
    FILL_POLL_ATTEMPTS,
    FILL_POLL_INTERVAL_SECONDS,
    INITIAL_FILL_WAIT_SECONDS,
    MONITOR_INTERVAL_SECONDS,
    RECONCILE_FEE_TOLERANCE,
    RECONCILE_PNL_TOLERANCE,
    RECONCILE_PRICE_TOLERANCE,
    STATUS_LOG_EVERY_N_CHECKS,
)


class SystemConfig(BaseSettings):
    """System metadata."""
    model_config = SettingsConfigDict(extra="ignore", env_prefix="SYSTEM_")

    name: str = "Position Guard"
    version: str = "1.0.0"


class ExchangeConfig(BaseSettings):
    """Exchange configuration (ccxt exchange id and credentials)."""
    model_config = SettingsConfigDict(extra="ignore", env_prefix="EXCHANGE_")

    name: Literal["gate", "okx"] = "gate"
    api_key: Optional[str] = None
    api_secret: Optional[str] = None
    passphrase: Optional[str] = None  # OKX only
    use_testnet: bool = False
    settle_currency: str = DEFAULT_SETTLE_CURRENCY


class StopLossTierConfig(BaseModel):
    """One leverage band of the stop-loss table."""

    label: str
    min_leverage: Decimal = Field(gt=0)
    max_leverage: Optional[Decimal] = None  # None = unbounded
    stop_loss_percent: Decimal = Field(lt=0)
    description: str = ""


class TrailingStopTierConfig(BaseModel):
    """One peak-profit band of the trailing-stop table."""

    label: str
    min_profit: Decimal = Field(gt=0)
    max_profit: Optional[Decimal] = None  # None = unbounded
    drawdown_percent: Decimal = Field(gt=0)
    description: str = ""


class StrategyProfileConfig(BaseModel):
    """
    A trading-strategy profile as seen by the monitors.

    A profile without tiers is valid; the corresponding monitor simply
    refuses to start while it is active.
    """

    name: str
    description: str = ""
    code_level_protection: bool = False
    stop_loss_tiers: Optional[List[StopLossTierConfig]] = None
    trailing_stop_tiers: Optional[List[TrailingStopTierConfig]] = None

    @model_validator(mode="after")
    def validate_tiers(self):
        if self.stop_loss_tiers:
            _check_bands(
                [(t.min_leverage, t.max_leverage) for t in self.stop_loss_tiers],
                f"{self.name}.stop_loss_tiers",
            )
            thresholds = [t.stop_loss_percent for t in self.stop_loss_tiers]
            if thresholds != sorted(thresholds):
                raise ValueError(
                    f"{self.name}.stop_loss_tiers: higher leverage must not loosen the stop "
                    f"(got {[str(t) for t in thresholds]})"
                )
        if self.trailing_stop_tiers:
            _check_bands(
                [(t.min_profit, t.max_profit) for t in self.trailing_stop_tiers],
                f"{self.name}.trailing_stop_tiers",
            )
        return self

    @property
    def has_stop_loss(self) -> bool:
        return self.code_level_protection and bool(self.stop_loss_tiers)

    @property
    def has_trailing_stop(self) -> bool:
        return self.code_level_protection and bool(self.trailing_stop_tiers)


def _check_bands(bands: List[tuple], where: str) -> None:
    """Bands must be ascending and non-overlapping; only the last may be unbounded."""
    for i, (low, high) in enumerate(bands):
        if high is not None and high < low:
            raise ValueError(f"{where}[{i}]: max {high} below min {low}")
        if i == 0:
            continue
        prev_low, prev_high = bands[i - 1]
        if low <= prev_low:
            raise ValueError(f"{where}[{i}]: tiers must be sorted by ascending minimum")
        if prev_high is None:
            raise ValueError(f"{where}[{i - 1}]: only the last tier may be unbounded")
        if prev_high > low:
            raise ValueError(f"{where}[{i}]: overlaps previous tier ({prev_high} > {low})")


def _default_profiles() -> Dict[str, StrategyProfileConfig]:
    from position_guard.config.strategy_profiles import default_strategy_profiles
    return default_strategy_profiles()


class StrategyConfig(BaseSettings):
    """Active strategy selector and the profile table."""
    model_config = SettingsConfigDict(extra="ignore", env_prefix="STRATEGY_")

    active: str = Field(default_factory=lambda: os.getenv("TRADING_STRATEGY", DEFAULT_TRADING_STRATEGY))
    profiles: Dict[str, StrategyProfileConfig] = Field(default_factory=_default_profiles)

    @field_validator("profiles", mode="before")
    @classmethod
    def merge_with_defaults(cls, v):
        # YAML overrides profiles by name; unnamed defaults survive
        merged: Dict[str, object] = dict(_default_profiles())
        for name, profile in (v or {}).items():
            if isinstance(profile, dict):
                profile = {"name": name, **profile}
            merged[name] = profile
        return merged

    def active_profile(self) -> StrategyProfileConfig:
        """Profile for the active strategy; unknown names fall back to the default strategy."""
        profile = self.profiles.get(self.active)
        if profile is None:
            profile = self.profiles[DEFAULT_TRADING_STRATEGY]
        return profile


class MonitorConfig(BaseSettings):
    """Polling and close-execution parameters shared by both monitors."""
    model_config = SettingsConfigDict(extra="ignore", env_prefix="MONITOR_")

    interval_seconds: float = Field(default=MONITOR_INTERVAL_SECONDS, gt=0, le=300)
    initial_fill_wait_seconds: float = Field(default=INITIAL_FILL_WAIT_SECONDS, ge=0, le=10)
    fill_poll_attempts: int = Field(default=FILL_POLL_ATTEMPTS, ge=0, le=20)
    fill_poll_interval_seconds: float = Field(default=FILL_POLL_INTERVAL_SECONDS, ge=0, le=5)
    fee_rate: Decimal = Field(default=DEFAULT_FEE_RATE, ge=0, le=Decimal("0.01"))
    reconcile_price_tolerance: Decimal = Field(default=RECONCILE_PRICE_TOLERANCE, ge=0)
    reconcile_pnl_tolerance: Decimal = Field(default=RECONCILE_PNL_TOLERANCE, ge=0)
    reconcile_fee_tolerance: Decimal = Field(default=RECONCILE_FEE_TOLERANCE, ge=0)
    status_log_every_n_checks: int = Field(default=STATUS_LOG_EVERY_N_CHECKS, ge=1)


class DataConfig(BaseSettings):
    """Persistence configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    database_url: Optional[str] = None


class MonitoringConfig(BaseSettings):
    """Logging configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    log_format: Literal["json", "text"] = "json"
    log_file: Optional[str] = None


class Config(BaseSettings):
    """Main configuration class."""
    model_config = SettingsConfigDict(
        env_nested_delimiter="__",
        extra="ignore",
    )

    system: SystemConfig = Field(default_factory=SystemConfig)
    exchange: ExchangeConfig = Field(default_factory=ExchangeConfig)
    strategy: StrategyConfig = Field(default_factory=StrategyConfig)
    monitor: MonitorConfig = Field(default_factory=MonitorConfig)
    data: DataConfig = Field(default_factory=DataConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    environment: Literal["dev", "prod"] = "prod"

    @classmethod
    def from_yaml(cls, yaml_path: str | Path) -> "Config":
        """Load configuration from YAML file."""
        yaml_path = Path(yaml_path)
        if not yaml_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {yaml_path}")

        with open(yaml_path, "r") as f:
            raw_content = f.read()

        # Expand ${VAR} or $VAR from the environment
        pattern = re.compile(r'\$\{([^}]+)\}|\$([a-zA-Z_][a-zA-Z0-9_]*)')

        def replace_match(match):
            var_name = match.group(1) or match.group(2)
            return os.environ.get(var_name, match.group(0))  # Return original if not found

        expanded_content = pattern.sub(replace_match, raw_content)
        config_dict = yaml.safe_load(expanded_content) or {}

        if "ENVIRONMENT" in os.environ:
            config_dict["environment"] = os.environ["ENVIRONMENT"]

        if "TRADING_STRATEGY" in os.environ:
            config_dict.setdefault("strategy", {})
            config_dict["strategy"]["active"] = os.environ["TRADING_STRATEGY"]

        # Unexpanded placeholders mean the secret is absent
        for section, keys in (("exchange", ("api_key", "api_secret", "passphrase")), ("data", ("database_url",))):
            section_cfg = config_dict.get(section) or {}
            for key in keys:
                value = section_cfg.get(key)
                if isinstance(value, str) and value.startswith("$"):
                    section_cfg[key] = None

        db_url = os.getenv("DATABASE_URL")
        if db_url and not (config_dict.get("data") or {}).get("database_url"):
            config_dict["data"] = config_dict.get("data") or {}
            config_dict["data"]["database_url"] = db_url

        return cls(**config_dict)

    def validate_config(self) -> None:
        """Perform additional validation checks."""
        if self.monitor.fill_poll_attempts * self.monitor.fill_poll_interval_seconds + \
                self.monitor.initial_fill_wait_seconds >= self.monitor.interval_seconds:
            raise ValueError(
                "Fill-price resolution must finish well inside one monitor interval "
                f"(interval={self.monitor.interval_seconds}s)"
            )


def load_config(config_path: str | None = None) -> Config:
    """
    Load and validate configuration.

    Args:
        config_path: Path to config.yaml file. If None, uses position_guard/config/config.yaml

    Returns:
        Validated Config object

    Raises:
        FileNotFoundError: If config file not found
        ValueError: If configuration validation fails
    """
    if config_path is None:
        config_path = Path(__file__).parent / "config.yaml"

    config = Config.from_yaml(config_path)
    config.validate_config()

    return config
