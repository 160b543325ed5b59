"""Paper trading order executor.

Fills orders against the live price feed without contacting a brokerage, so
dry-run sessions exercise exactly the same lifecycle code as real ones.
"""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from typing import Mapping

from session_trading_system.config.models import FeeConfig
from session_trading_system.core.errors import ExecutionFailure
from session_trading_system.exchange.base import (
    Clock,
    Fill,
    OrderRequest,
    PriceFeed,
    SystemClock,
)

logger = logging.getLogger(__name__)


class PaperOrderExecutor:
    """Simulated executor with slippage, fees and a holdings book.

    Market orders fill at the feed price moved against the trader by
    ``slippage_bps``. Limit orders fill at the better of that price and the
    limit, and are rejected when the market has not reached the limit.

    Thread-safe: Protected by internal lock.

    Attributes:
        fees: Fee schedule applied to every fill
        slippage_bps: Slippage in basis points
        order_count: Number of filled orders
    """

    def __init__(
        self,
        price_feed: PriceFeed,
        fees: FeeConfig | None = None,
        slippage_bps: float = 1.0,
        clock: Clock | None = None,
    ) -> None:
        if slippage_bps < 0:
            raise ValueError(f"slippage_bps must be >= 0, got {slippage_bps}")
        self._feed = price_feed
        self.fees = fees or FeeConfig()
        self.slippage_bps = slippage_bps
        self._clock = clock or SystemClock()
        self._holdings: defaultdict[str, float] = defaultdict(float)
        self._lock = threading.Lock()
        self.order_count = 0

    def execute(self, order: OrderRequest) -> Fill:
        """Fill ``order`` at the simulated price.

        Raises:
            ExecutionFailure: If a limit is not reachable or a sell exceeds
                the simulated holding (both permanent)
            StaleDataError: Propagated from the price feed
        """
        quote = self._feed.get_price(order.asset_id)
        is_buy = order.side == "buy"
        price = self._apply_slippage(quote.price, is_buy=is_buy)

        if order.order_type == "limit":
            limit = order.limit_price
            if is_buy and quote.price > limit:
                raise ExecutionFailure(
                    f"Buy limit {limit:.2f} below market {quote.price:.2f} for {order.asset_id}",
                    transient=False,
                )
            if not is_buy and quote.price < limit:
                raise ExecutionFailure(
                    f"Sell limit {limit:.2f} above market {quote.price:.2f} for {order.asset_id}",
                    transient=False,
                )
            price = min(price, limit) if is_buy else max(price, limit)

        with self._lock:
            held = self._holdings.get(order.asset_id, 0.0)
            if not is_buy and order.size > held:
                raise ExecutionFailure(
                    f"Cannot sell {order.size} {order.asset_id}: only {held} held",
                    transient=False,
                )
            self._holdings[order.asset_id] = held + order.size if is_buy else held - order.size
            if self._holdings[order.asset_id] <= 0:
                del self._holdings[order.asset_id]
            self.order_count += 1

        fee = self.fees.order_fee(price * order.size)
        logger.info(
            "Paper %s %s x%s @ %.4f (fee %.2f)",
            order.side,
            order.asset_id,
            order.size,
            price,
            fee,
        )
        return Fill(fill_price=price, fee=fee, time=self._clock.now())

    def get_holdings(self) -> Mapping[str, float]:
        """Simulated holdings per asset id."""
        with self._lock:
            return dict(self._holdings)

    def seed_holdings(self, holdings: Mapping[str, float]) -> None:
        """Load holdings from a restored session so exits can be simulated."""
        with self._lock:
            for asset_id, size in holdings.items():
                if size > 0:
                    self._holdings[asset_id] = float(size)

    def _apply_slippage(self, price: float, *, is_buy: bool) -> float:
        slip = price * (self.slippage_bps / 10_000)
        return price + slip if is_buy else price - slip


__all__ = ["PaperOrderExecutor"]
