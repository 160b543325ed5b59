"""Protective price levels and exit detection for long positions.

All functions here are pure: they read a position and market inputs and
return new values. Persisting the result is the lifecycle controller's job.

Entry levels come from one of three strategy profiles:

- ``aggressive``: ATR-derived. Stop-loss sits ``1.5 * ATR`` below entry and
  take-profit ``2.5 * ATR`` above. The stop-loss distance is converted to a
  percentage of the entry price and clamped into [2.5%, 10%] before the price
  level is re-derived.
- ``conservative``: fixed 5% stop-loss, 3% take-profit.
- ``scalping``: fixed 2% stop-loss, 1.5% take-profit.

Prices are kept at full precision; rounding happens only for display.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime

from session_trading_system.core.position_sizing import clamp
from session_trading_system.engine.models import (
    ActiveTrailingStop,
    ExitTrigger,
    InactiveTrailingStop,
    Performance,
    Position,
    TrailingStop,
)

DEFAULT_TRAILING_ACTIVATION_PCT = 3.0
DEFAULT_LOCK_IN_PCT = 1.0


@dataclass(frozen=True, slots=True)
class StrategyRiskProfile:
    """Stop-loss / take-profit parameters for one strategy.

    ATR profiles set the multipliers; fixed profiles set the percentages.
    Percentages are fractions of entry price (0.05 = 5%).
    """

    name: str
    uses_atr: bool
    sl_atr_multiplier: float = 0.0
    tp_atr_multiplier: float = 0.0
    sl_min_pct: float = 0.0
    sl_max_pct: float = 1.0
    sl_pct: float = 0.0
    tp_pct: float = 0.0


STRATEGY_PROFILES: dict[str, StrategyRiskProfile] = {
    "aggressive": StrategyRiskProfile(
        name="aggressive",
        uses_atr=True,
        sl_atr_multiplier=1.5,
        tp_atr_multiplier=2.5,
        sl_min_pct=0.025,
        sl_max_pct=0.10,
    ),
    "conservative": StrategyRiskProfile(
        name="conservative", uses_atr=False, sl_pct=0.05, tp_pct=0.03
    ),
    "scalping": StrategyRiskProfile(
        name="scalping", uses_atr=False, sl_pct=0.02, tp_pct=0.015
    ),
}


@dataclass(frozen=True, slots=True)
class EntryRisk:
    dynamic_sl: float
    dynamic_tp: float


def get_profile(strategy: str) -> StrategyRiskProfile:
    try:
        return STRATEGY_PROFILES[strategy]
    except KeyError:
        raise ValueError(
            f"Unknown strategy '{strategy}'. Expected one of {sorted(STRATEGY_PROFILES)}"
        ) from None


def compute_entry_risk(strategy: str, atr: float, entry_price: float) -> EntryRisk:
    """Compute initial stop-loss and take-profit levels.

    Args:
        strategy: Strategy profile name
        atr: Average True Range at entry (ignored by fixed-percentage profiles)
        entry_price: Confirmed fill price

    Returns:
        EntryRisk with dynamic_sl < entry_price < dynamic_tp

    Raises:
        ValueError: If the strategy is unknown, entry_price is not positive, or
            an ATR profile receives a non-positive ATR

    Example:
        >>> levels = compute_entry_risk("aggressive", 2.85, 142.50)
        >>> round(levels.dynamic_sl, 3), round(levels.dynamic_tp, 3)
        (138.225, 149.625)
    """
    profile = get_profile(strategy)

    if not math.isfinite(entry_price) or entry_price <= 0:
        raise ValueError(f"entry_price must be positive, got {entry_price}")

    if profile.uses_atr:
        if not math.isfinite(atr) or atr <= 0:
            raise ValueError(f"Strategy '{strategy}' requires a positive ATR, got {atr}")
        # Clamp the percentage distance, not the raw ATR
        sl_pct = clamp(
            (atr * profile.sl_atr_multiplier) / entry_price,
            profile.sl_min_pct,
            profile.sl_max_pct,
        )
        tp_pct = (atr * profile.tp_atr_multiplier) / entry_price
    else:
        sl_pct = profile.sl_pct
        tp_pct = profile.tp_pct

    return EntryRisk(
        dynamic_sl=entry_price * (1.0 - sl_pct),
        dynamic_tp=entry_price * (1.0 + tp_pct),
    )


def unrealized_pnl_percent(entry_price: float, current_price: float) -> float:
    return (current_price - entry_price) / entry_price * 100.0


def update_trailing_stop(
    position: Position,
    current_price: float,
    *,
    activation_pct: float = DEFAULT_TRAILING_ACTIVATION_PCT,
    lock_in_pct: float = DEFAULT_LOCK_IN_PCT,
) -> TrailingStop:
    """Advance the trailing stop for a new price observation.

    The running high is updated on every call. Once unrealized profit reaches
    ``activation_pct`` the stop arms and from then on trails the high by the
    entry ATR, never dropping below its previous value or below the lock-in
    level ``entry * (1 + lock_in_pct / 100)``.
    """
    previous = position.risk.trailing_stop
    entry_price = position.entry.price
    highest = max(previous.highest_price, current_price)

    if isinstance(previous, InactiveTrailingStop):
        if unrealized_pnl_percent(entry_price, current_price) < activation_pct:
            return InactiveTrailingStop(highest_price=highest)
        previous_stop = 0.0
    else:
        previous_stop = previous.current_stop_price

    trail_distance = position.risk.entry_atr / highest
    candidate = highest * (1.0 - trail_distance)
    lock_in = entry_price * (1.0 + lock_in_pct / 100.0)

    return ActiveTrailingStop(
        current_stop_price=max(candidate, previous_stop, lock_in),
        highest_price=highest,
    )


def evaluate_exit(position: Position, current_price: float) -> ExitTrigger | None:
    """Return the highest-priority exit trigger, or None to keep holding.

    Priority: stop-loss, then take-profit, then an armed trailing stop. All
    three conditions are checked; the first one that holds wins.
    """
    risk = position.risk
    hits: list[ExitTrigger] = []
    if current_price <= risk.dynamic_sl:
        hits.append(ExitTrigger.STOP_LOSS)
    if current_price >= risk.dynamic_tp:
        hits.append(ExitTrigger.TAKE_PROFIT)
    trailing = risk.trailing_stop
    if isinstance(trailing, ActiveTrailingStop) and current_price <= trailing.current_stop_price:
        hits.append(ExitTrigger.TRAILING_STOP)
    return hits[0] if hits else None


def compute_performance(position: Position, current_price: float, now: datetime) -> Performance:
    """Mark a position to the current price."""
    pnl_pct = unrealized_pnl_percent(position.entry.price, current_price)
    held = max(0.0, (now - position.entry.time).total_seconds() / 3600.0)
    return Performance(
        current_price=current_price,
        unrealized_pnl=(current_price - position.entry.price) * position.size,
        unrealized_pnl_percent=pnl_pct,
        peak_pnl_percent=max(position.performance.peak_pnl_percent, pnl_pct),
        holding_time_hours=held,
    )


def format_money(value: float) -> str:
    """Two-decimal display form used in log lines."""
    return f"{value:.2f}"


__all__ = [
    "EntryRisk",
    "STRATEGY_PROFILES",
    "StrategyRiskProfile",
    "compute_entry_risk",
    "compute_performance",
    "evaluate_exit",
    "format_money",
    "get_profile",
    "unrealized_pnl_percent",
    "update_trailing_stop",
]
