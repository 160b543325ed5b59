"""Session, position and trade-history records.

These models define the persisted state document
``{session, openPositions[], tradeHistory[]}``. Field names are snake_case in
Python and camelCase on disk. Validation runs when a document is loaded;
in-process mutations go through the lifecycle controller, which keeps the
invariants by construction.
"""

from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import AwareDatetime, BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from session_trading_system.config.models import IntervalName, SessionDefaults, StrategyName

# Absolute tolerance for float comparisons on money values
MONEY_EPSILON = 1e-9


class ExitTrigger(str, Enum):
    """Reason a position was closed, in evaluation priority order."""

    STOP_LOSS = "stop_loss"
    TAKE_PROFIT = "take_profit"
    TRAILING_STOP = "trailing_stop"
    REBALANCE = "rebalance"
    MANUAL = "manual"


class _Record(BaseModel):
    model_config = ConfigDict(
        extra="forbid",
        alias_generator=to_camel,
        populate_by_name=True,
    )


class _FrozenRecord(_Record):
    model_config = ConfigDict(frozen=True)


# ============================================================================
# Session
# ============================================================================


class Budget(_Record):
    initial: float = Field(gt=0.0)
    remaining: float = Field(ge=0.0)
    currency: str = Field(min_length=3, max_length=3)


class SessionStats(_Record):
    trades_opened: int = Field(default=0, ge=0)
    trades_closed: int = Field(default=0, ge=0)
    wins: int = Field(default=0, ge=0)
    losses: int = Field(default=0, ge=0)
    total_fees_paid: float = Field(default=0.0, ge=0.0)
    realized_pnl: float = Field(default=0.0, alias="realizedPnL")
    realized_pnl_percent: float = Field(default=0.0, alias="realizedPnLPercent")

    @model_validator(mode="after")
    def _closed_equals_outcomes(self) -> SessionStats:
        if self.trades_closed != self.wins + self.losses:
            raise ValueError(
                f"tradesClosed ({self.trades_closed}) must equal wins + losses "
                f"({self.wins} + {self.losses})"
            )
        return self


class SessionSettings(_Record):
    strategy: StrategyName
    interval: IntervalName
    dry_run: bool = True
    allowed_asset_types: list[str] = Field(default_factory=list)


class CompoundSettings(_Record):
    enabled: bool = False
    rate: float = Field(default=0.0, ge=0.0, le=1.0)
    max_budget: float = Field(gt=0.0)
    total_compounded: float = Field(default=0.0, ge=0.0)


class RebalancingState(_Record):
    enabled: bool = True
    stagnation_hours: float = Field(gt=0.0)
    max_per_day: int = Field(ge=0)
    rebalances_today: int = Field(default=0, ge=0)
    last_reset_date: date | None = None


class Session(_Record):
    """Singleton per run: budget, statistics and session-wide settings."""

    id: str
    created_at: AwareDatetime
    updated_at: AwareDatetime
    budget: Budget
    stats: SessionStats = Field(default_factory=SessionStats)
    settings: SessionSettings = Field(alias="config")
    compound: CompoundSettings
    rebalancing: RebalancingState

    @model_validator(mode="after")
    def _budget_within_ceiling(self) -> Session:
        if self.compound.max_budget + MONEY_EPSILON < self.budget.initial:
            raise ValueError("compound.maxBudget must be >= budget.initial")
        if self.budget.remaining > self.compound.max_budget + MONEY_EPSILON:
            raise ValueError(
                f"budget.remaining ({self.budget.remaining}) exceeds "
                f"compound.maxBudget ({self.compound.max_budget})"
            )
        return self


def new_session(defaults: SessionDefaults, now: datetime) -> Session:
    """Build a fresh session from configured defaults."""
    return Session(
        id=uuid.uuid4().hex,
        created_at=now,
        updated_at=now,
        budget=Budget(
            initial=defaults.initial_budget,
            remaining=defaults.initial_budget,
            currency=defaults.currency,
        ),
        stats=SessionStats(),
        settings=SessionSettings(
            strategy=defaults.strategy,
            interval=defaults.interval,
            dry_run=defaults.dry_run,
            allowed_asset_types=list(defaults.allowed_asset_types),
        ),
        compound=CompoundSettings(
            enabled=defaults.compound_enabled,
            rate=defaults.compound_rate,
            max_budget=defaults.max_budget,
        ),
        rebalancing=RebalancingState(
            enabled=defaults.rebalancing_enabled,
            stagnation_hours=defaults.stagnation_hours,
            max_per_day=defaults.max_rebalances_per_day,
            last_reset_date=now.astimezone(timezone.utc).date(),
        ),
    )


# ============================================================================
# Position
# ============================================================================


class AssetRef(_FrozenRecord):
    id: str = Field(min_length=1)
    name: str
    asset_class: str


class EntrySnapshot(_FrozenRecord):
    price: float = Field(gt=0.0)
    time: AwareDatetime
    order_type: Literal["market", "limit"] = "market"
    fee: float = Field(default=0.0, ge=0.0)


class AnalysisSnapshot(_FrozenRecord):
    signal_strength: float
    technical_score: float = 0.0
    sentiment: str = "neutral"
    reason: str = ""
    confidence: float = 0.0


class InactiveTrailingStop(_FrozenRecord):
    """Trailing stop not yet armed; tracks the running high since entry."""

    status: Literal["inactive"] = "inactive"
    highest_price: float = Field(gt=0.0)


class ActiveTrailingStop(_FrozenRecord):
    status: Literal["active"] = "active"
    current_stop_price: float = Field(gt=0.0)
    highest_price: float = Field(gt=0.0)


TrailingStop = Annotated[
    Union[InactiveTrailingStop, ActiveTrailingStop],
    Field(discriminator="status"),
]


class RiskLevels(_FrozenRecord):
    entry_atr: float = Field(ge=0.0, alias="entryATR")
    dynamic_sl: float = Field(gt=0.0, alias="dynamicSL")
    dynamic_tp: float = Field(gt=0.0, alias="dynamicTP")
    trailing_stop: TrailingStop


class Performance(_FrozenRecord):
    current_price: float = Field(gt=0.0)
    unrealized_pnl: float = Field(default=0.0, alias="unrealizedPnL")
    unrealized_pnl_percent: float = Field(default=0.0, alias="unrealizedPnLPercent")
    peak_pnl_percent: float = Field(default=0.0, alias="peakPnLPercent")
    holding_time_hours: float = Field(default=0.0, ge=0.0)


class Position(_Record):
    """Open long position. Mutated only by the lifecycle controller."""

    id: str
    asset: AssetRef
    side: Literal["long"] = "long"
    size: float = Field(gt=0.0)
    entry: EntrySnapshot
    analysis: AnalysisSnapshot
    risk: RiskLevels
    performance: Performance

    @model_validator(mode="after")
    def _levels_bracket_entry(self) -> Position:
        if not self.risk.dynamic_sl < self.entry.price < self.risk.dynamic_tp:
            raise ValueError(
                f"Position {self.id}: require dynamicSL < entry.price < dynamicTP, got "
                f"{self.risk.dynamic_sl} / {self.entry.price} / {self.risk.dynamic_tp}"
            )
        return self

    @property
    def cost_basis(self) -> float:
        return self.entry.price * self.size

    def market_value(self, price: float | None = None) -> float:
        """Notional at the given price, or at the last marked price."""
        mark = self.performance.current_price if price is None else price
        return mark * self.size


# ============================================================================
# Trade history
# ============================================================================


class ExitSnapshot(_FrozenRecord):
    price: float = Field(gt=0.0)
    time: AwareDatetime
    fee: float = Field(default=0.0, ge=0.0)
    trigger: ExitTrigger


class TradeResult(_FrozenRecord):
    gross_pnl: float = Field(alias="grossPnL")
    net_pnl: float = Field(alias="netPnL")
    net_pnl_percent: float = Field(alias="netPnLPercent")
    holding_time_hours: float = Field(ge=0.0)
    compounded: float = Field(default=0.0, ge=0.0)


class TradeHistoryEntry(_FrozenRecord):
    """Immutable record of a closed position."""

    id: str
    position_id: str
    asset: AssetRef
    side: Literal["long"] = "long"
    size: float = Field(gt=0.0)
    entry: EntrySnapshot
    analysis: AnalysisSnapshot
    risk: RiskLevels
    exit: ExitSnapshot
    result: TradeResult

    @classmethod
    def from_position(
        cls, position: Position, exit: ExitSnapshot, result: TradeResult
    ) -> TradeHistoryEntry:
        return cls(
            id=uuid.uuid4().hex,
            position_id=position.id,
            asset=position.asset,
            side=position.side,
            size=position.size,
            entry=position.entry,
            analysis=position.analysis,
            risk=position.risk,
            exit=exit,
            result=result,
        )


# ============================================================================
# Document
# ============================================================================


class StateDocument(_Record):
    """Root of the persisted state."""

    session: Session
    open_positions: list[Position] = Field(default_factory=list)
    trade_history: list[TradeHistoryEntry] = Field(default_factory=list)

    @model_validator(mode="after")
    def _positions_are_unique(self) -> StateDocument:
        open_ids = [p.id for p in self.open_positions]
        if len(open_ids) != len(set(open_ids)):
            raise ValueError("Duplicate position id in openPositions")
        closed_ids = {t.position_id for t in self.trade_history}
        reopened = closed_ids.intersection(open_ids)
        if reopened:
            raise ValueError(f"Positions both open and closed: {sorted(reopened)}")
        return self

    def find_position(self, position_id: str) -> Position | None:
        for position in self.open_positions:
            if position.id == position_id:
                return position
        return None

    def to_json_dict(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


__all__ = [
    "ActiveTrailingStop",
    "AnalysisSnapshot",
    "AssetRef",
    "Budget",
    "CompoundSettings",
    "EntrySnapshot",
    "ExitSnapshot",
    "ExitTrigger",
    "InactiveTrailingStop",
    "MONEY_EPSILON",
    "Performance",
    "Position",
    "RebalancingState",
    "RiskLevels",
    "Session",
    "SessionSettings",
    "SessionStats",
    "StateDocument",
    "TradeHistoryEntry",
    "TradeResult",
    "TrailingStop",
    "new_session",
]
