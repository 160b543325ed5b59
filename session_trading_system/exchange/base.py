"""Collaborator interfaces consumed by the trading core.

Market data, signal generation and order routing live outside the core.
This module defines the narrow protocols through which they are consumed,
so live brokers, dry-run simulators and test doubles are interchangeable.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Literal, Mapping, Protocol

# Type aliases for clarity
OrderType = Literal["market", "limit"]
OrderSide = Literal["buy", "sell"]


@dataclass(slots=True)
class PriceQuote:
    """Latest price and volatility for an asset.

    Attributes:
        price: Last traded price in session currency
        atr: Average True Range over the provider's lookback window
    """

    price: float
    atr: float


@dataclass(slots=True)
class Signal:
    """Scored trade signal produced by the strategy layer.

    Attributes:
        score: Composite signal strength, -100..100 (magnitude drives sizing)
        category_breakdown: Per-category sub-scores (e.g. "technical", "news")
        sentiment: Sentiment label or score summary
        confidence: Provider confidence in [0, 1]
        reason: Free-text rationale recorded with the position
    """

    score: float
    category_breakdown: dict[str, float] = field(default_factory=dict)
    sentiment: str = "neutral"
    confidence: float = 0.0
    reason: str = ""


@dataclass(slots=True)
class OrderRequest:
    """Order sent to the executor."""

    asset_id: str
    side: OrderSide
    size: float
    order_type: OrderType = "market"
    limit_price: float | None = None

    def __post_init__(self) -> None:
        if self.size <= 0:
            raise ValueError(f"OrderRequest.size must be positive, got {self.size}")
        if self.order_type == "limit" and self.limit_price is None:
            raise ValueError("Limit orders require limit_price")


@dataclass(slots=True)
class Fill:
    """Confirmed execution returned by the executor.

    Attributes:
        fill_price: Average execution price
        fee: Total fee charged for the order
        time: Execution timestamp (timezone-aware)
    """

    fill_price: float
    fee: float
    time: datetime


class PriceFeed(Protocol):
    """Read-only market data source."""

    def get_price(self, asset_id: str) -> PriceQuote:
        """Return the latest quote.

        Raises:
            StaleDataError: If price or ATR is unavailable
        """
        ...


class SignalProvider(Protocol):
    """Source of scored trade signals."""

    def get_signal(self, asset_id: str) -> Signal:
        """Return the current signal for an asset."""
        ...


class OrderExecutor(Protocol):
    """Routes orders to a brokerage (or a simulator)."""

    def execute(self, order: OrderRequest) -> Fill:
        """Execute an order and block until the fill is confirmed.

        Raises:
            ExecutionFailure: If the fill cannot be confirmed
        """
        ...


class BrokerageView(Protocol):
    """Read-only view of brokerage holdings, used for restart reconciliation."""

    def get_holdings(self) -> Mapping[str, float]:
        """Return held size per asset id."""
        ...


class Clock(Protocol):
    """Injectable time source."""

    def now(self) -> datetime:
        """Return the current timezone-aware time."""
        ...


class SystemClock:
    """Wall clock in UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


__all__ = [
    "BrokerageView",
    "Clock",
    "Fill",
    "OrderExecutor",
    "OrderRequest",
    "OrderSide",
    "OrderType",
    "PriceFeed",
    "PriceQuote",
    "Signal",
    "SignalProvider",
    "SystemClock",
]
