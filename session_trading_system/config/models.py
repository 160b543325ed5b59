"""Configuration models for the Session Trading System using Pydantic."""
from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

StrategyName = Literal["aggressive", "conservative", "scalping"]
IntervalName = Literal["5m", "15m", "1h"]


class RiskConfig(BaseModel):
    """Trailing stop parameters shared by all strategies."""

    model_config = ConfigDict(extra="forbid")

    trailing_activation_pct: float = Field(
        default=3.0,
        ge=0.0,
        description="Unrealized profit percent that activates the trailing stop"
    )
    trailing_lock_in_pct: float = Field(
        default=1.0,
        ge=0.0,
        le=100.0,
        description="Minimum profit locked once trailing is active (1.0 = entry * 1.01)"
    )


class FeeConfig(BaseModel):
    """Brokerage fee schedule used for estimates and dry-run fills."""

    model_config = ConfigDict(extra="forbid")

    fee_per_order: float = Field(
        default=1.0,
        ge=0.0,
        description="Flat fee charged per executed order"
    )
    fee_rate: float = Field(
        default=0.0,
        ge=0.0,
        le=0.1,
        description="Proportional fee on order notional (0.001 = 0.1%)"
    )

    def order_fee(self, notional: float) -> float:
        """Fee for one order of the given notional."""
        return self.fee_per_order + notional * self.fee_rate


class SizingConfig(BaseModel):
    """Position sizing limits."""

    model_config = ConfigDict(extra="forbid")

    max_asset_exposure: float = Field(
        default=0.33,
        gt=0.0,
        le=1.0,
        description="Maximum fraction of equity committed to a single asset"
    )
    max_open_positions: int = Field(
        default=3,
        ge=1,
        description="Maximum number of concurrently open positions"
    )
    min_trade_size: float = Field(
        default=10.0,
        ge=0.0,
        description="Minimum order notional in session currency"
    )
    default_kelly_fraction: float = Field(
        default=0.25,
        ge=0.0,
        le=1.0,
        description="Allocation cap used until enough trades exist to estimate Kelly"
    )
    kelly_multiplier: float = Field(
        default=0.25,
        gt=0.0,
        le=1.0,
        description="Fractional Kelly applied to the raw Kelly percentage"
    )
    kelly_min_trades: int = Field(
        default=10,
        ge=1,
        description="Closed trades required before Kelly is derived from history"
    )


class ExecutionConfig(BaseModel):
    """Order execution retry and dry-run simulation settings."""

    model_config = ConfigDict(extra="forbid")

    max_retries: int = Field(default=3, ge=0, le=10)
    base_delay_seconds: float = Field(default=1.0, ge=0.0)
    max_delay_seconds: float = Field(default=30.0, ge=0.0)
    slippage_bps: float = Field(
        default=1.0,
        ge=0.0,
        description="Slippage in basis points, reserved on every buy and applied to dry-run fills"
    )


class RebalancingConfig(BaseModel):
    """Stagnation detection parameters."""

    model_config = ConfigDict(extra="forbid")

    stagnation_peak_threshold_pct: float = Field(
        default=0.5,
        ge=0.0,
        description="Peak profit percent a position must exceed to count as progressing"
    )


class MonitoringConfig(BaseModel):
    """Monitoring loop and persistence settings."""

    model_config = ConfigDict(extra="forbid")

    state_file: str = Field(
        default="~/.session_trading/state.json",
        description="Path of the persisted session document"
    )
    max_fetch_workers: int = Field(
        default=4,
        ge=1,
        le=32,
        description="Concurrent price fetches per tick"
    )


class SessionDefaults(BaseModel):
    """Values used when a new session document is created."""

    model_config = ConfigDict(extra="forbid")

    initial_budget: float = Field(default=100.0, gt=0.0)
    currency: str = Field(default="EUR", min_length=3, max_length=3)
    strategy: StrategyName = "aggressive"
    interval: IntervalName = "15m"
    dry_run: bool = True
    allowed_asset_types: list[str] = Field(default_factory=lambda: ["stock", "etf"])

    compound_enabled: bool = False
    compound_rate: float = Field(default=0.5, ge=0.0, le=1.0)
    max_budget: float = Field(default=200.0, gt=0.0)

    rebalancing_enabled: bool = True
    stagnation_hours: float = Field(default=48.0, gt=0.0)
    max_rebalances_per_day: int = Field(default=1, ge=0)

    @model_validator(mode="after")
    def _max_budget_covers_initial(self) -> SessionDefaults:
        if self.max_budget < self.initial_budget:
            raise ValueError("max_budget must be >= initial_budget")
        return self


class AppConfig(BaseModel):
    """Root application configuration containing all sub-configs."""

    model_config = ConfigDict(extra="forbid")

    risk: RiskConfig = Field(default_factory=RiskConfig)
    fees: FeeConfig = Field(default_factory=FeeConfig)
    sizing: SizingConfig = Field(default_factory=SizingConfig)
    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)
    rebalancing: RebalancingConfig = Field(default_factory=RebalancingConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    session: SessionDefaults = Field(default_factory=SessionDefaults)
