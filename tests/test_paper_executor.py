"""Tests for the paper trading order executor."""

import pytest

from _support import START
from session_trading_system.config.models import FeeConfig
from session_trading_system.core.errors import ExecutionFailure, StaleDataError
from session_trading_system.exchange.base import OrderRequest
from session_trading_system.exchange.paper import PaperOrderExecutor


@pytest.fixture
def paper(feed, clock):
    feed.set_quote("AAPL", 100.0)
    return PaperOrderExecutor(feed, slippage_bps=10.0, clock=clock)


def test_buy_fills_above_market(paper):
    fill = paper.execute(OrderRequest(asset_id="AAPL", side="buy", size=2))

    assert fill.fill_price == pytest.approx(100.1)
    assert fill.fee == pytest.approx(1.0)
    assert fill.time == START
    assert paper.get_holdings() == {"AAPL": 2.0}
    assert paper.order_count == 1


def test_sell_fills_below_market_and_clears_holding(paper):
    paper.execute(OrderRequest(asset_id="AAPL", side="buy", size=2))

    fill = paper.execute(OrderRequest(asset_id="AAPL", side="sell", size=2))

    assert fill.fill_price == pytest.approx(99.9)
    assert paper.get_holdings() == {}


def test_cannot_sell_more_than_held(paper):
    paper.execute(OrderRequest(asset_id="AAPL", side="buy", size=1))

    with pytest.raises(ExecutionFailure) as excinfo:
        paper.execute(OrderRequest(asset_id="AAPL", side="sell", size=3))

    assert not excinfo.value.transient
    assert paper.get_holdings() == {"AAPL": 1.0}
    assert paper.order_count == 1


def test_buy_limit_below_market_rejected(paper):
    with pytest.raises(ExecutionFailure, match="Buy limit") as excinfo:
        paper.execute(OrderRequest(asset_id="AAPL", side="buy", size=1, order_type="limit", limit_price=99.0))

    assert not excinfo.value.transient
    assert paper.get_holdings() == {}


def test_buy_limit_caps_fill_price(paper):
    order = OrderRequest(asset_id="AAPL", side="buy", size=1, order_type="limit", limit_price=100.05)

    assert paper.execute(order).fill_price == pytest.approx(100.05)


def test_sell_limit_floors_fill_price(paper):
    paper.seed_holdings({"AAPL": 1})

    with pytest.raises(ExecutionFailure, match="Sell limit"):
        paper.execute(OrderRequest(asset_id="AAPL", side="sell", size=1, order_type="limit", limit_price=100.5))

    order = OrderRequest(asset_id="AAPL", side="sell", size=1, order_type="limit", limit_price=99.95)
    assert paper.execute(order).fill_price == pytest.approx(99.95)


def test_proportional_fee(feed, clock):
    feed.set_quote("SPY", 100.0)
    paper = PaperOrderExecutor(
        feed, fees=FeeConfig(fee_per_order=0.5, fee_rate=0.001), slippage_bps=0.0, clock=clock
    )

    fill = paper.execute(OrderRequest(asset_id="SPY", side="buy", size=10))

    assert fill.fill_price == 100.0
    assert fill.fee == pytest.approx(1.5)


def test_seed_holdings_ignores_empty_entries(paper):
    paper.seed_holdings({"AAPL": 4, "MSFT": 0})

    assert paper.get_holdings() == {"AAPL": 4.0}


def test_stale_quote_propagates(paper, feed):
    feed.stale.add("AAPL")

    with pytest.raises(StaleDataError):
        paper.execute(OrderRequest(asset_id="AAPL", side="buy", size=1))

    assert paper.order_count == 0


def test_negative_slippage_rejected(feed):
    with pytest.raises(ValueError):
        PaperOrderExecutor(feed, slippage_bps=-1.0)
