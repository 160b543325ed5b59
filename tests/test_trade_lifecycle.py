"""Tests for the trade lifecycle controller."""

import logging
from datetime import date, datetime, timedelta, timezone

import pytest

from _support import (
    START,
    FlakyRepository,
    build_position,
    make_defaults,
    seed_document,
    seed_store,
)
from session_trading_system.config.models import AppConfig, FeeConfig
from session_trading_system.core.errors import (
    ExecutionFailure,
    LifecycleError,
    PersistenceError,
    PositionNotFoundError,
)
from session_trading_system.engine.lifecycle import (
    PositionState,
    TradeLifecycleController,
    entry_reservation,
)
from session_trading_system.engine.models import ActiveTrailingStop, AssetRef, ExitTrigger
from session_trading_system.exchange.base import PriceQuote, Signal
from session_trading_system.storage.position_store import PositionStore


def _controller(store, executor, no_sleep_retry, **defaults):
    config = AppConfig(session=make_defaults(**defaults))
    return TradeLifecycleController(store, executor, config=config, retry=no_sleep_retry)


def _assert_invariants(store):
    session = store.session
    assert 0.0 <= session.budget.remaining <= session.compound.max_budget
    assert session.stats.trades_closed == session.stats.wins + session.stats.losses
    for position in store.open_positions():
        assert position.risk.dynamic_sl < position.entry.price < position.risk.dynamic_tp


# ============================================================================
# Open
# ============================================================================


def test_open_position_commits_filled_position(controller, store, repository, feed, asset, strong_signal):
    quote = feed.set_quote("AAPL", 50.0, atr=2.0)

    outcome = controller.open_position(asset, strong_signal, quote)

    assert outcome.opened
    position = outcome.position
    assert position.size == 5
    assert position.entry.price == 50.0
    assert position.entry.fee == 1.0
    assert position.risk.dynamic_sl == pytest.approx(47.0)
    assert position.risk.dynamic_tp == pytest.approx(55.0)
    assert position.risk.trailing_stop.status == "inactive"
    assert position.analysis.technical_score == 65.0
    assert position.analysis.reason == "breakout above 20-day high"

    session = store.session
    assert session.budget.remaining == pytest.approx(749.0)
    assert session.stats.trades_opened == 1
    assert session.stats.total_fees_paid == pytest.approx(1.0)
    assert controller.state_of(position.id) is PositionState.OPEN
    assert repository.load()["openPositions"][0]["id"] == position.id
    _assert_invariants(store)


def test_entry_levels_follow_the_fill_price(controller, executor, feed, asset, strong_signal):
    quote = feed.set_quote("AAPL", 50.0, atr=2.0)
    executor.fill_prices.append(50.5)

    position = controller.open_position(asset, strong_signal, quote).position

    assert position.entry.price == 50.5
    assert position.risk.dynamic_sl == pytest.approx(47.5)
    assert position.risk.dynamic_tp == pytest.approx(55.5)


def test_weak_signal_places_no_order(controller, store, executor, feed, asset):
    quote = feed.set_quote("AAPL", 50.0)

    outcome = controller.open_position(asset, Signal(score=15.0), quote)

    assert not outcome.opened
    assert "too weak" in outcome.reason
    assert executor.orders == []
    assert store.session.budget.remaining == 1000.0


def test_disallowed_asset_class_is_refused(controller, executor, feed, strong_signal):
    crypto = AssetRef(id="BTC", name="Bitcoin", asset_class="crypto")
    quote = feed.set_quote("BTC", 50.0)

    outcome = controller.open_position(crypto, strong_signal, quote)

    assert not outcome.opened
    assert "crypto" in outcome.reason
    assert executor.orders == []


def test_failed_fill_leaves_committed_state_unchanged(
    controller, store, repository, executor, feed, asset, strong_signal
):
    quote = feed.set_quote("AAPL", 50.0)
    executor.failures.append(ExecutionFailure("order rejected", transient=False))
    before = repository.load()

    outcome = controller.open_position(asset, strong_signal, quote)

    assert not outcome.opened
    assert "order rejected" in outcome.reason
    assert len(executor.orders) == 1
    assert repository.load() == before
    assert store.session.budget.remaining == 1000.0
    assert store.session.stats.trades_opened == 0
    assert controller.state_of("AAPL") is None


def test_transient_failures_are_retried(controller, executor, feed, asset, strong_signal):
    quote = feed.set_quote("AAPL", 50.0)
    executor.failures.extend([ExecutionFailure("timeout"), ConnectionError("reset by peer")])

    outcome = controller.open_position(asset, strong_signal, quote)

    assert outcome.opened
    assert len(executor.orders) == 3


def test_insufficient_budget_rejects_open(executor, feed, asset, strong_signal, no_sleep_retry):
    # Equity 450 (100 cash + 350 held) sizes 2 units; 1bp slippage makes it 101.01
    store = seed_store(make_defaults(), [build_position("MSFT")], remaining=100.0)
    controller = _controller(store, executor, no_sleep_retry)
    quote = feed.set_quote("AAPL", 50.0)

    outcome = controller.open_position(asset, strong_signal, quote)

    assert not outcome.opened
    assert "Insufficient budget: cost 101.01" in outcome.reason
    assert executor.orders == []
    assert store.session.budget.remaining == 100.0


def test_entry_reservation_covers_market_slippage():
    fees = FeeConfig(fee_per_order=1.0, fee_rate=0.001)

    cost = entry_reservation(5, 50.0, fees, slippage_bps=10.0)

    # 5 x 50.05 = 250.25, plus 1.0 + 0.25025 fee
    assert cost == pytest.approx(251.50025)


def test_entry_reservation_bounds_limit_orders_by_the_limit():
    fees = FeeConfig(fee_per_order=1.0)

    cost = entry_reservation(
        5, 50.0, fees, slippage_bps=10.0, order_type="limit", limit_price=50.2
    )

    assert cost == pytest.approx(252.0)


def test_slipped_fill_within_reservation_is_charged_in_full(
    controller, store, executor, feed, asset, strong_signal, caplog
):
    quote = feed.set_quote("AAPL", 50.0)
    executor.fill_prices.append(50.004)

    with caplog.at_level(logging.ERROR, logger="session_trading_system.engine.ledger"):
        outcome = controller.open_position(asset, strong_signal, quote)

    assert outcome.opened
    assert store.session.budget.remaining == pytest.approx(1000.0 - 250.02 - 1.0)
    assert caplog.records == []


def test_explicit_kelly_fraction_overrides_history(controller, feed, asset, strong_signal):
    quote = feed.set_quote("AAPL", 50.0)

    outcome = controller.open_position(asset, strong_signal, quote, kelly_fraction=0.1)

    assert outcome.position.size == 2


def test_limit_order_is_forwarded(controller, executor, feed, asset, strong_signal):
    quote = feed.set_quote("AAPL", 50.0)

    outcome = controller.open_position(
        asset, strong_signal, quote, order_type="limit", limit_price=50.2
    )

    assert outcome.position.entry.order_type == "limit"
    assert executor.orders[0].limit_price == 50.2


# ============================================================================
# Update
# ============================================================================


def test_update_marks_to_market_and_arms_trailing_stop(controller, store, feed, asset, strong_signal):
    position = controller.open_position(asset, strong_signal, feed.set_quote("AAPL", 50.0)).position

    trigger = controller.update_position(position.id, PriceQuote(52.0, 2.0), START + timedelta(hours=3))

    assert trigger is None
    updated = store.get_position(position.id)
    assert updated.performance.current_price == 52.0
    assert updated.performance.unrealized_pnl == pytest.approx(10.0)
    assert updated.performance.peak_pnl_percent == pytest.approx(4.0)
    assert updated.performance.holding_time_hours == pytest.approx(3.0)
    trailing = updated.risk.trailing_stop
    assert isinstance(trailing, ActiveTrailingStop)
    assert trailing.current_stop_price == pytest.approx(50.5)


def test_update_reports_trailing_stop_exit(controller, feed, asset, strong_signal):
    position = controller.open_position(asset, strong_signal, feed.set_quote("AAPL", 50.0)).position
    controller.update_position(position.id, PriceQuote(52.0, 2.0), START)

    trigger = controller.update_position(position.id, PriceQuote(50.4, 2.0), START)

    assert trigger is ExitTrigger.TRAILING_STOP


def test_update_reports_take_profit(controller, feed, asset, strong_signal):
    position = controller.open_position(asset, strong_signal, feed.set_quote("AAPL", 50.0)).position

    assert controller.update_position(position.id, PriceQuote(56.0, 2.0), START) is ExitTrigger.TAKE_PROFIT


def test_update_unknown_position(controller):
    with pytest.raises(PositionNotFoundError):
        controller.update_position("nope", PriceQuote(10.0, 1.0), START)


# ============================================================================
# Close
# ============================================================================


def test_full_round_trip(controller, store, repository, feed, asset, strong_signal):
    position = controller.open_position(asset, strong_signal, feed.set_quote("AAPL", 50.0)).position
    feed.set_quote("AAPL", 56.0)

    outcome = controller.close_position(position.id, ExitTrigger.TAKE_PROFIT)

    assert outcome.closed
    result = outcome.trade.result
    assert result.gross_pnl == pytest.approx(30.0)
    assert result.net_pnl == pytest.approx(28.0)
    assert result.net_pnl_percent == pytest.approx(11.2)
    assert outcome.trade.exit.trigger is ExitTrigger.TAKE_PROFIT

    session = store.session
    assert session.budget.remaining == pytest.approx(1028.0)
    assert session.stats.trades_closed == 1
    assert session.stats.wins == 1
    assert session.stats.total_fees_paid == pytest.approx(2.0)
    assert session.stats.realized_pnl == pytest.approx(28.0)
    assert session.stats.realized_pnl_percent == pytest.approx(2.8)
    assert store.open_positions() == []
    assert controller.state_of(position.id) is PositionState.CLOSED

    saved = repository.load()
    assert saved["openPositions"] == []
    assert saved["tradeHistory"][0]["positionId"] == position.id
    assert saved["tradeHistory"][0]["exit"]["trigger"] == "take_profit"
    _assert_invariants(store)


def test_close_example_pnl(executor, feed, no_sleep_retry):
    store = seed_store(make_defaults(), [build_position("MSFT", price=35.0, size=10)], remaining=649.0)
    controller = _controller(store, executor, no_sleep_retry)
    feed.set_quote("MSFT", 36.0, atr=1.0)

    trade = controller.close_position("pos-msft", ExitTrigger.MANUAL).trade

    assert trade.result.gross_pnl == pytest.approx(10.0)
    assert trade.result.net_pnl == pytest.approx(8.0)
    assert trade.result.net_pnl_percent == pytest.approx(2.857, abs=1e-3)
    assert store.session.budget.remaining == pytest.approx(1008.0)


def test_close_compounds_profit_when_enabled(executor, feed, no_sleep_retry):
    defaults = dict(compound_enabled=True, compound_rate=0.5)
    store = seed_store(
        make_defaults(**defaults), [build_position("MSFT", price=35.0, size=10)], remaining=649.0
    )
    controller = _controller(store, executor, no_sleep_retry, **defaults)
    feed.set_quote("MSFT", 36.0, atr=1.0)

    trade = controller.close_position("pos-msft", ExitTrigger.MANUAL).trade

    assert trade.result.compounded == pytest.approx(4.0)
    assert store.session.budget.remaining == pytest.approx(1012.0)
    assert store.session.compound.total_compounded == pytest.approx(4.0)


def test_failed_close_keeps_position_open(controller, store, executor, feed, asset, strong_signal):
    position = controller.open_position(asset, strong_signal, feed.set_quote("AAPL", 50.0)).position
    executor.failures.append(ExecutionFailure("market closed", transient=False))

    outcome = controller.close_position(position.id, ExitTrigger.STOP_LOSS)

    assert not outcome.closed
    assert "market closed" in outcome.reason
    assert controller.state_of(position.id) is PositionState.OPEN
    assert store.session.budget.remaining == pytest.approx(749.0)
    assert store.session.stats.trades_closed == 0

    assert controller.close_position(position.id, ExitTrigger.STOP_LOSS).closed


def test_close_unknown_position(controller):
    with pytest.raises(PositionNotFoundError):
        controller.close_position("nope", ExitTrigger.MANUAL)


def test_close_while_close_in_flight_is_illegal(controller, executor, feed, asset, strong_signal):
    position = controller.open_position(asset, strong_signal, feed.set_quote("AAPL", 50.0)).position
    nested: list[Exception] = []
    original = executor.execute

    def reentrant_execute(order):
        try:
            controller.close_position(position.id, ExitTrigger.MANUAL)
        except LifecycleError as exc:
            nested.append(exc)
        return original(order)

    executor.execute = reentrant_execute
    assert controller.close_position(position.id, ExitTrigger.MANUAL).closed
    assert len(nested) == 1


def test_persistence_failure_propagates_and_marks_store_dirty(
    executor, feed, asset, strong_signal, no_sleep_retry
):
    repository = FlakyRepository(seed_document(make_defaults()).to_json_dict())
    store = PositionStore.load(repository)
    controller = _controller(store, executor, no_sleep_retry)
    repository.fail_saves = True

    with pytest.raises(PersistenceError):
        controller.open_position(asset, strong_signal, feed.set_quote("AAPL", 50.0))

    assert store.dirty
    assert len(store.open_positions()) == 1
    assert repository.load()["openPositions"] == []


# ============================================================================
# Rebalancing and housekeeping
# ============================================================================


def _stale_positions():
    old = START - timedelta(hours=60)
    return [
        build_position("MSFT", price=35.0, entry_time=old),
        build_position("NVDA", price=100.0, atr=2.0, size=2, entry_time=old + timedelta(hours=1)),
    ]


def test_rebalance_counts_against_daily_quota(executor, feed, repository, no_sleep_retry):
    store = seed_store(make_defaults(), _stale_positions(), remaining=450.0, repository=repository)
    controller = _controller(store, executor, no_sleep_retry)
    feed.set_quote("MSFT", 35.1, atr=1.0)
    feed.set_quote("NVDA", 100.2, atr=2.0)

    first = controller.rebalance_position("pos-msft", START)
    second = controller.rebalance_position("pos-nvda", START)

    assert first.closed
    assert first.trade.exit.trigger is ExitTrigger.REBALANCE
    assert not second.closed
    assert "quota" in second.reason
    saved = repository.load()
    assert saved["session"]["rebalancing"]["rebalancesToday"] == 1
    assert len(saved["tradeHistory"]) == 1


def test_rebalance_quota_resets_on_new_utc_day(executor, feed, no_sleep_retry):
    store = seed_store(make_defaults(), _stale_positions(), remaining=450.0)
    controller = _controller(store, executor, no_sleep_retry)
    feed.set_quote("MSFT", 35.1, atr=1.0)
    feed.set_quote("NVDA", 100.2, atr=2.0)
    controller.rebalance_position("pos-msft", START)

    next_day = START + timedelta(hours=12)
    assert controller.roll_rebalance_day(next_day)
    assert not controller.roll_rebalance_day(next_day)
    assert store.session.rebalancing.rebalances_today == 0

    assert controller.rebalance_position("pos-nvda", next_day).closed


def test_new_session_stamps_reset_date_in_utc(executor, repository, no_sleep_retry):
    # 22:00 in New York is already 03:00 the next day in UTC
    evening = datetime(2024, 3, 4, 22, 0, tzinfo=timezone(timedelta(hours=-5)))
    store = PositionStore.open_or_create(repository, make_defaults(), evening)
    controller = _controller(store, executor, no_sleep_retry)

    assert store.session.rebalancing.last_reset_date == date(2024, 3, 5)
    assert not controller.roll_rebalance_day(evening)


def test_rebalance_disabled(executor, feed, no_sleep_retry):
    defaults = make_defaults(rebalancing_enabled=False)
    store = seed_store(defaults, _stale_positions(), remaining=450.0)
    controller = _controller(store, executor, no_sleep_retry, rebalancing_enabled=False)

    outcome = controller.rebalance_position("pos-msft", START)

    assert not outcome.closed
    assert executor.orders == []


def test_reconcile_reports_without_repairing(executor, no_sleep_retry):
    store = seed_store(make_defaults(), _stale_positions(), remaining=450.0)
    controller = _controller(store, executor, no_sleep_retry)
    before = store.snapshot().model_dump()

    clean = controller.reconcile({"MSFT": 10, "NVDA": 2})
    dirty = controller.reconcile({"MSFT": 8, "TSLA": 3})

    assert clean.consistent
    assert clean.matched == ["MSFT", "NVDA"]
    assert not dirty.consistent
    assert dirty.size_mismatches == {"MSFT": (10.0, 8.0)}
    assert dirty.missing_at_broker == ["NVDA"]
    assert dirty.untracked_holdings == {"TSLA": 3.0}
    assert store.snapshot().model_dump() == before
