"""Example: Running a dry-run trading session against a simulated market.

This script demonstrates how to:
1. Create a session document from configured defaults
2. Wire store, paper executor, controller and loop through TradingSession
3. Drive a few monitoring ticks with a random-walk price feed
4. Display the resulting session status
"""

import random
from datetime import datetime, timedelta, timezone

from session_trading_system import TradingSession
from session_trading_system.config import AppConfig
from session_trading_system.core.risk_engine import format_money
from session_trading_system.engine.models import AssetRef
from session_trading_system.exchange import PriceQuote, Signal
from session_trading_system.infra import setup_logging
from session_trading_system.storage import InMemoryRepository


class RandomWalkFeed:
    """Prices that drift by up to 1.5% per tick."""

    def __init__(self, prices, seed=7):
        self.prices = dict(prices)
        self._rng = random.Random(seed)

    def step(self):
        for asset_id, price in self.prices.items():
            self.prices[asset_id] = price * (1 + self._rng.uniform(-0.015, 0.015))

    def get_price(self, asset_id):
        price = self.prices[asset_id]
        return PriceQuote(price=price, atr=price * 0.02)


class SteadySignals:
    def get_signal(self, asset_id):
        return Signal(
            score=65.0,
            category_breakdown={"technical": 60.0},
            sentiment="bullish",
            confidence=0.7,
            reason="example signal",
        )


class TickClock:
    def __init__(self, start):
        self.current = start

    def now(self):
        return self.current


def main():
    setup_logging("INFO")

    config = AppConfig()
    config.session.initial_budget = 1000.0
    config.session.max_budget = 2000.0
    start = datetime(2024, 3, 4, 14, 30, tzinfo=timezone.utc)
    clock = TickClock(start)

    feed = RandomWalkFeed({"AAPL": 172.0, "MSFT": 405.0, "SPY": 510.0})
    trading = TradingSession(
        feed,
        SteadySignals(),
        config=config,
        repository=InMemoryRepository(),
        clock=clock,
        watchlist=[
            AssetRef(id="AAPL", name="Apple Inc.", asset_class="stock"),
            AssetRef(id="MSFT", name="Microsoft Corp.", asset_class="stock"),
            AssetRef(id="SPY", name="SPDR S&P 500", asset_class="etf"),
        ],
    )

    for _ in range(20):
        report = trading.loop.run_once()
        if report.closed:
            print(f"Closed this tick: {', '.join(report.closed)}")
        clock.current += timedelta(minutes=15)
        feed.step()

    store = trading.store
    session = store.session
    stats = session.stats
    print("\n" + "=" * 60)
    print(f"Remaining budget: {format_money(session.budget.remaining)} {session.budget.currency}")
    print(f"Trades: {stats.trades_opened} opened, {stats.trades_closed} closed ({stats.wins} wins)")
    print(f"Realized P&L: {format_money(stats.realized_pnl)} ({stats.realized_pnl_percent:.2f}%)")
    for position in store.open_positions():
        print(
            f"  {position.asset.id:<6} x{position.size:g} @ {format_money(position.entry.price)} "
            f"P&L {position.performance.unrealized_pnl_percent:+.2f}%"
        )
    print("=" * 60)


if __name__ == "__main__":
    main()
