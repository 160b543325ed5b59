"""Pytest configuration shared across the suite."""

from __future__ import annotations

import pytest

from _support import (
    START,
    FixedClock,
    ScriptedExecutor,
    ScriptedPriceFeed,
    make_defaults,
)
from session_trading_system.config import clear_config_cache
from session_trading_system.config.models import AppConfig, SessionDefaults
from session_trading_system.engine.lifecycle import TradeLifecycleController
from session_trading_system.engine.models import AssetRef
from session_trading_system.exchange.base import Signal
from session_trading_system.infra.retry import RetryPolicy
from session_trading_system.storage.position_store import PositionStore
from session_trading_system.storage.repository import InMemoryRepository


@pytest.fixture(autouse=True)
def _isolated_config(tmp_path, monkeypatch):
    """Point the config service at a temporary file and reset its cache."""
    monkeypatch.setenv("SESSION_TRADING_CONFIG", str(tmp_path / "config.json"))
    clear_config_cache()
    yield
    clear_config_cache()


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(START)


@pytest.fixture
def feed() -> ScriptedPriceFeed:
    return ScriptedPriceFeed()


@pytest.fixture
def executor(feed: ScriptedPriceFeed, clock: FixedClock) -> ScriptedExecutor:
    return ScriptedExecutor(feed, clock)


@pytest.fixture
def defaults() -> SessionDefaults:
    return make_defaults()


@pytest.fixture
def app_config(defaults: SessionDefaults) -> AppConfig:
    return AppConfig(session=defaults)


@pytest.fixture
def repository() -> InMemoryRepository:
    return InMemoryRepository()


@pytest.fixture
def store(repository: InMemoryRepository, defaults: SessionDefaults) -> PositionStore:
    return PositionStore.open_or_create(repository, defaults, START)


@pytest.fixture
def no_sleep_retry() -> RetryPolicy:
    return RetryPolicy(max_retries=2, base_delay=1.0, sleep=lambda _: None)


@pytest.fixture
def controller(
    store: PositionStore,
    executor: ScriptedExecutor,
    app_config: AppConfig,
    no_sleep_retry: RetryPolicy,
) -> TradeLifecycleController:
    return TradeLifecycleController(store, executor, config=app_config, retry=no_sleep_retry)


@pytest.fixture
def asset() -> AssetRef:
    return AssetRef(id="AAPL", name="Apple Inc.", asset_class="stock")


@pytest.fixture
def strong_signal() -> Signal:
    return Signal(
        score=72.0,
        category_breakdown={"technical": 65.0, "news": 40.0},
        sentiment="bullish",
        confidence=0.8,
        reason="breakout above 20-day high",
    )
