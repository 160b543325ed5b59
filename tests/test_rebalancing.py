"""Tests for stagnant position detection and the daily rebalance quota."""

from datetime import timedelta

import pytest

from _support import START, build_position, make_defaults, seed_store
from session_trading_system.config.models import AppConfig, RebalancingConfig
from session_trading_system.engine.lifecycle import TradeLifecycleController
from session_trading_system.engine.models import ExitTrigger
from session_trading_system.engine.rebalancing import RebalancingScheduler, holding_hours


def _positions():
    return [
        build_position("NVDA", price=100.0, atr=2.0, size=2, entry_time=START - timedelta(hours=50)),
        build_position("MSFT", price=35.0, entry_time=START - timedelta(hours=60), peak_pnl_percent=0.2),
        build_position("AMD", price=20.0, atr=0.5, size=5, entry_time=START - timedelta(hours=10)),
        build_position("GOOG", price=10.0, atr=0.5, size=5, entry_time=START - timedelta(hours=72), peak_pnl_percent=1.0),
    ]


def _scheduler(executor, no_sleep_retry, **defaults):
    config = AppConfig(session=make_defaults(**defaults))
    store = seed_store(make_defaults(**defaults), _positions(), remaining=300.0)
    controller = TradeLifecycleController(store, executor, config=config, retry=no_sleep_retry)
    return RebalancingScheduler(controller), store


@pytest.fixture
def quoted_feed(feed):
    for asset_id, price in {"NVDA": 100.2, "MSFT": 35.1, "AMD": 20.1, "GOOG": 10.05}.items():
        feed.set_quote(asset_id, price)
    return feed


def test_holding_hours():
    position = build_position("MSFT", entry_time=START - timedelta(hours=50))

    assert holding_hours(position, START) == pytest.approx(50.0)
    assert holding_hours(position, START - timedelta(hours=60)) == 0.0


def test_find_stagnant_filters_and_orders_by_entry(executor, no_sleep_retry):
    scheduler, store = _scheduler(executor, no_sleep_retry)

    stagnant = scheduler.find_stagnant(store.open_positions(), store.session, START)

    assert [p.asset.id for p in stagnant] == ["MSFT", "NVDA"]


def test_find_stagnant_respects_peak_threshold(executor, no_sleep_retry):
    scheduler, store = _scheduler(executor, no_sleep_retry)
    scheduler.config = RebalancingConfig(stagnation_peak_threshold_pct=1.0)

    stagnant = scheduler.find_stagnant(store.open_positions(), store.session, START)

    assert [p.asset.id for p in stagnant] == ["GOOG", "MSFT", "NVDA"]


def test_find_stagnant_disabled(executor, no_sleep_retry):
    scheduler, store = _scheduler(executor, no_sleep_retry, rebalancing_enabled=False)

    assert scheduler.find_stagnant(store.open_positions(), store.session, START) == []


def test_run_closes_oldest_within_quota(executor, quoted_feed, no_sleep_retry):
    scheduler, store = _scheduler(executor, no_sleep_retry)

    closed = scheduler.run(START)

    assert closed == ["pos-msft"]
    assert store.get_position("pos-msft") is None
    assert store.get_position("pos-nvda") is not None
    assert store.session.rebalancing.rebalances_today == 1
    assert store.trade_history()[0].exit.trigger is ExitTrigger.REBALANCE

    assert scheduler.run(START + timedelta(hours=1)) == []


def test_run_next_day_closes_another(executor, quoted_feed, no_sleep_retry):
    scheduler, store = _scheduler(executor, no_sleep_retry)
    scheduler.run(START)

    closed = scheduler.run(START + timedelta(hours=12))

    assert closed == ["pos-nvda"]
    assert store.session.rebalancing.rebalances_today == 1
    assert [p.asset.id for p in store.open_positions()] == ["AMD", "GOOG"]


def test_run_with_larger_quota(executor, quoted_feed, no_sleep_retry):
    scheduler, store = _scheduler(executor, no_sleep_retry, max_rebalances_per_day=5)

    assert scheduler.run(START) == ["pos-msft", "pos-nvda"]
    assert store.session.rebalancing.rebalances_today == 2


def test_zero_quota_closes_nothing(executor, quoted_feed, no_sleep_retry):
    scheduler, store = _scheduler(executor, no_sleep_retry, max_rebalances_per_day=0)

    assert scheduler.run(START) == []
    assert executor.orders == []
    assert len(store.open_positions()) == 4
