"""Position sizing: signal strength, Kelly cap, exposure limits and fee gate.

This module converts a scored signal into a whole-unit order size that the
lifecycle controller can submit. It is a pure sizing layer: every refusal is
returned as a ``SizingRejection`` value so the caller can treat "no trade" as
a normal outcome of a cycle.

The sizing pipeline is:
1. Concurrent position cap
2. Signal banding (|score| >= 60 -> 100%, 40-59 -> 75%, 20-39 -> 50%, else reject)
3. Allocation fraction = min(band, Kelly fraction)
4. Whole units from equity * fraction / price
5. Minimum trade notional
6. Per-asset exposure cap
7. Fee profitability gate

The Kelly helpers derive the allocation cap from the closed-trade record.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Iterable

from session_trading_system.config.models import FeeConfig, SizingConfig
from session_trading_system.engine.models import TradeHistoryEntry
from session_trading_system.exchange.base import Signal

logger = logging.getLogger(__name__)

# (minimum |score|, allocation fraction), strongest band first
SIGNAL_BANDS: tuple[tuple[float, float], ...] = (
    (60.0, 1.00),
    (40.0, 0.75),
    (20.0, 0.50),
)


def clamp(x: float, lo: float, hi: float) -> float:
    """Clamp value x to the range [lo, hi]."""
    return max(lo, min(hi, x))


def safe_get_score(scores: dict[str, Any], key: str, default: float = 0.0) -> float:
    """Safely retrieve a score from the scores dict, with fallback to default."""
    try:
        value = scores.get(key, default)
        if value is None:
            return default
        return float(value)
    except (TypeError, ValueError):
        logger.warning("Invalid score value for key '%s', using default %.2f", key, default)
        return default


@dataclass(slots=True)
class ExposureSnapshot:
    """Open exposure at the moment of sizing.

    Attributes:
        open_positions: Number of currently open positions
        asset_notional: Market value already held in the asset being sized
    """

    open_positions: int = 0
    asset_notional: float = 0.0


@dataclass(slots=True)
class SizingDecision:
    """Approved order size with the figures that justified it."""

    size: int
    fraction: float
    notional: float
    entry_fee: float
    exit_fee: float
    expected_profit: float
    min_profit_required: float


@dataclass(slots=True)
class SizingRejection:
    """Reason no order should be placed this cycle."""

    reason: str


@dataclass(slots=True)
class KellyResult:
    """Kelly criterion output.

    Attributes:
        kelly_percentage: Raw Kelly fraction W - (1 - W) / R (may be negative)
        adjusted_fraction: Fractional Kelly clamped to [0, max_position_pct]
        win_loss_ratio: Average win divided by average loss
        warnings: Human-readable cautions about the edge estimate
    """

    kelly_percentage: float
    adjusted_fraction: float
    win_loss_ratio: float
    warnings: list[str] = field(default_factory=list)


def signal_band_fraction(score: float) -> float:
    """Map signal strength to an allocation fraction (0.0 means too weak)."""
    strength = abs(score)
    for threshold, fraction in SIGNAL_BANDS:
        if strength >= threshold:
            return fraction
    return 0.0


def estimate_fee(notional: float, fees: FeeConfig) -> float:
    """Fee for one order of the given notional under the fee schedule."""
    return fees.order_fee(notional)


def compute_size(
    signal: Signal,
    kelly_fraction: float,
    equity: float,
    asset_price: float,
    open_exposure: ExposureSnapshot,
    *,
    target_price: float,
    config: SizingConfig | None = None,
    fees: FeeConfig | None = None,
) -> SizingDecision | SizingRejection:
    """Compute an admissible whole-unit position size.

    Args:
        signal: Scored signal for the asset
        kelly_fraction: Upper bound on the allocation fraction
        equity: Remaining budget plus market value of all open positions
        asset_price: Expected entry price
        open_exposure: Current open-position count and notional in this asset
        target_price: Take-profit level used by the profitability gate
        config: Sizing limits (defaults to SizingConfig())
        fees: Fee schedule (defaults to FeeConfig())

    Returns:
        SizingDecision when a trade is admissible, otherwise SizingRejection
    """
    config = config or SizingConfig()
    fees = fees or FeeConfig()

    if open_exposure.open_positions >= config.max_open_positions:
        return SizingRejection(
            f"max open positions reached ({open_exposure.open_positions}/{config.max_open_positions})"
        )

    band = signal_band_fraction(signal.score)
    if band <= 0.0:
        return SizingRejection(f"signal too weak (|score|={abs(signal.score):.1f} < 20)")

    if not math.isfinite(kelly_fraction) or kelly_fraction <= 0.0:
        return SizingRejection(f"non-positive Kelly fraction ({kelly_fraction:.4f})")

    if equity <= 0.0 or asset_price <= 0.0:
        return SizingRejection("no equity or invalid asset price")

    fraction = min(band, kelly_fraction)
    size = math.floor((equity * fraction) / asset_price)
    if size < 1:
        return SizingRejection(
            f"allocation {equity * fraction:.2f} buys less than one unit at {asset_price:.2f}"
        )

    notional = size * asset_price
    if notional < config.min_trade_size:
        return SizingRejection(
            f"notional {notional:.2f} below minimum trade size {config.min_trade_size:.2f}"
        )

    exposure_after = open_exposure.asset_notional + notional
    exposure_cap = equity * config.max_asset_exposure
    if exposure_after > exposure_cap:
        return SizingRejection(
            f"asset exposure {exposure_after:.2f} would exceed "
            f"{config.max_asset_exposure:.0%} of equity ({exposure_cap:.2f})"
        )

    entry_fee = estimate_fee(notional, fees)
    exit_fee = estimate_fee(target_price * size, fees)
    min_profit_required = (entry_fee + exit_fee) * 2
    expected_profit = (target_price - asset_price) * size - entry_fee - exit_fee
    if expected_profit < min_profit_required:
        return SizingRejection(
            f"expected profit {expected_profit:.2f} below fee hurdle {min_profit_required:.2f}"
        )

    return SizingDecision(
        size=size,
        fraction=fraction,
        notional=notional,
        entry_fee=entry_fee,
        exit_fee=exit_fee,
        expected_profit=expected_profit,
        min_profit_required=min_profit_required,
    )


def kelly_percentage(win_rate: float, win_loss_ratio: float) -> float:
    """Raw Kelly percentage: W - (1 - W) / R."""
    return win_rate - (1.0 - win_rate) / win_loss_ratio


def compute_kelly_fraction(
    win_rate: float,
    avg_win: float,
    avg_loss: float,
    *,
    fraction: float = 0.25,
    max_position_pct: float = 0.33,
) -> KellyResult:
    """Fractional Kelly allocation cap.

    Args:
        win_rate: Share of winning trades in [0, 1]
        avg_win: Average profit of winning trades (positive)
        avg_loss: Average loss of losing trades (positive magnitude)
        fraction: Multiplier applied to raw Kelly (0.25 = quarter Kelly)
        max_position_pct: Ceiling for the returned fraction

    Raises:
        ValueError: If win_rate is outside [0, 1] or averages are not positive
    """
    if not 0.0 <= win_rate <= 1.0:
        raise ValueError(f"win_rate must be in [0, 1], got {win_rate}")
    if avg_win <= 0 or avg_loss <= 0:
        raise ValueError("avg_win and avg_loss must be positive")

    ratio = avg_win / avg_loss
    raw = kelly_percentage(win_rate, ratio)
    adjusted = clamp(raw * fraction, 0.0, max_position_pct)

    warnings: list[str] = []
    if raw < 0:
        warnings.append(
            "Negative Kelly percentage indicates a losing strategy. Do not trade."
        )
    if win_rate < 0.4:
        warnings.append(f"Low win rate ({win_rate:.0%}); edge depends on large winners.")
    if ratio < 1.0:
        warnings.append(f"Average win is smaller than average loss (ratio {ratio:.2f}).")

    return KellyResult(
        kelly_percentage=raw,
        adjusted_fraction=adjusted,
        win_loss_ratio=ratio,
        warnings=warnings,
    )


def kelly_fraction_from_history(
    history: Iterable[TradeHistoryEntry],
    *,
    min_trades: int = 10,
    default: float = 0.25,
    fraction: float = 0.25,
    max_position_pct: float = 0.33,
) -> float:
    """Derive the allocation cap from closed trades.

    Falls back to ``default`` until ``min_trades`` trades exist, or when the
    record has no wins or no losses to estimate a payoff ratio from.
    """
    pnls = [entry.result.net_pnl for entry in history]
    if len(pnls) < min_trades:
        return default

    wins = [p for p in pnls if p > 0]
    losses = [-p for p in pnls if p < 0]
    if not wins or not losses:
        return default

    result = compute_kelly_fraction(
        len(wins) / len(pnls),
        sum(wins) / len(wins),
        sum(losses) / len(losses),
        fraction=fraction,
        max_position_pct=max_position_pct,
    )
    for warning in result.warnings:
        logger.warning("Kelly estimate: %s", warning)
    return result.adjusted_fraction


__all__ = [
    "ExposureSnapshot",
    "KellyResult",
    "SIGNAL_BANDS",
    "SizingDecision",
    "SizingRejection",
    "clamp",
    "compute_kelly_fraction",
    "compute_size",
    "estimate_fee",
    "kelly_fraction_from_history",
    "kelly_percentage",
    "safe_get_score",
    "signal_band_fraction",
]
