"""Periodic monitoring loop driving the lifecycle controller.

One tick marks every open position to market, closes those whose exit
triggers fire, rebalances stagnant positions and optionally evaluates new
entries for a watchlist. Quotes for open positions are fetched concurrently;
all state changes run sequentially through the controller.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Sequence

from session_trading_system.config.models import MonitoringConfig
from session_trading_system.core.errors import (
    LifecycleError,
    PersistenceError,
    PositionNotFoundError,
    ReconciliationError,
    StaleDataError,
)
from session_trading_system.engine.lifecycle import TradeLifecycleController
from session_trading_system.engine.models import AssetRef
from session_trading_system.engine.rebalancing import RebalancingScheduler
from session_trading_system.exchange.base import (
    BrokerageView,
    Clock,
    PriceFeed,
    PriceQuote,
    SignalProvider,
    SystemClock,
)
from session_trading_system.infra.retry import TRANSIENT_ERRORS

logger = logging.getLogger(__name__)

# Quote failures that skip an asset for one tick
_QUOTE_FAILURES: tuple[type[BaseException], ...] = (StaleDataError,) + TRANSIENT_ERRORS


@dataclass
class CycleReport:
    """Summary of one monitoring tick.

    Attributes:
        started_at: Tick timestamp passed to every update
        updated: Position ids marked to market
        closed: Position ids closed on an exit trigger
        rebalanced: Position ids closed as stagnant
        opened: Position ids opened from the watchlist
        skipped_assets: Asset ids skipped for missing or stale quotes
        errors: Messages for recoverable failures during the tick
        cancelled: True when stop() interrupted the tick
    """

    started_at: datetime
    updated: list[str] = field(default_factory=list)
    closed: list[str] = field(default_factory=list)
    rebalanced: list[str] = field(default_factory=list)
    opened: list[str] = field(default_factory=list)
    skipped_assets: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    cancelled: bool = False


class MonitoringLoop:
    """Runs monitoring ticks on the session interval.

    Attributes:
        controller: Lifecycle controller that owns all mutations
        price_feed: Source of quotes for open positions and the watchlist
        signal_provider: Source of entry signals (None disables entries)
        rebalancer: Stagnation scheduler (None disables rebalancing)
        brokerage: Holdings checked against stored positions before
            run_forever starts (None skips the check)
    """

    def __init__(
        self,
        controller: TradeLifecycleController,
        price_feed: PriceFeed,
        signal_provider: SignalProvider | None = None,
        *,
        rebalancer: RebalancingScheduler | None = None,
        config: MonitoringConfig | None = None,
        clock: Clock | None = None,
        watchlist: Sequence[AssetRef] = (),
        brokerage: BrokerageView | None = None,
    ) -> None:
        self.controller = controller
        self.price_feed = price_feed
        self.signal_provider = signal_provider
        self.rebalancer = rebalancer
        self.brokerage = brokerage
        self.config = config or controller.config.monitoring
        self.watchlist = tuple(watchlist)
        self._clock = clock or SystemClock()
        self._stop_event = threading.Event()
        self.is_running = False
        self.cycles = 0

        logger.info(
            "MonitoringLoop initialized: interval=%s, watchlist=%d assets, fetch_workers=%d",
            controller.store.session.settings.interval,
            len(self.watchlist),
            self.config.max_fetch_workers,
        )

    @property
    def interval_seconds(self) -> int:
        return parse_timeframe(self.controller.store.session.settings.interval)

    def run_once(self, watchlist: Sequence[AssetRef] = ()) -> CycleReport:
        """Execute one monitoring tick.

        Args:
            watchlist: Assets to evaluate for new entries this tick (defaults
                to the watchlist given at construction)

        Raises:
            PersistenceError: If a state change could not be saved
        """
        now = self._clock.now()
        report = CycleReport(started_at=now)
        self.controller.roll_rebalance_day(now)

        positions = self.controller.store.open_positions()
        quotes = self._fetch_quotes(sorted({p.asset.id for p in positions}), report)

        for position in positions:
            if self._stop_event.is_set():
                report.cancelled = True
                break
            quote = quotes.get(position.asset.id)
            if quote is None:
                continue
            try:
                trigger = self.controller.update_position(position.id, quote, now)
                report.updated.append(position.id)
                if trigger is not None:
                    outcome = self.controller.close_position(position.id, trigger, quote=quote)
                    if outcome.closed:
                        report.closed.append(position.id)
                    else:
                        report.errors.append(f"{position.id}: {outcome.reason}")
            except (LifecycleError, PositionNotFoundError) as exc:
                logger.warning("Skipping %s this tick: %s", position.id, exc)
                report.errors.append(str(exc))

        if self.rebalancer is not None and not self._stop_event.is_set():
            report.rebalanced = self.rebalancer.run(now)

        entries = tuple(watchlist) or self.watchlist
        if self.signal_provider is not None and entries:
            self._evaluate_entries(entries, report)

        self.cycles += 1
        logger.info(
            "Tick %d: updated=%d closed=%d rebalanced=%d opened=%d skipped=%d",
            self.cycles,
            len(report.updated),
            len(report.closed),
            len(report.rebalanced),
            len(report.opened),
            len(report.skipped_assets),
        )
        return report

    def run_forever(self) -> None:
        """Run ticks until stop() is called or state can no longer be saved.

        When a brokerage view is attached, stored positions are reconciled
        against its holdings before the first tick.

        Raises:
            ReconciliationError: If holdings disagree with stored positions;
                no tick runs
            PersistenceError: If a save failed; the loop stops first
        """
        if self.brokerage is not None:
            report = self.controller.reconcile(self.brokerage.get_holdings())
            if not report.consistent:
                logger.error("Refusing to start monitoring: holdings need operator review")
                raise ReconciliationError(report)

        logger.info("Starting monitoring loop")
        self.is_running = True

        try:
            while not self._stop_event.is_set():
                self.run_once()
                if self._stop_event.wait(self.interval_seconds):
                    break
        except KeyboardInterrupt:
            logger.info("Monitoring interrupted by user")
        except PersistenceError:
            logger.error("State could not be persisted; stopping monitoring loop")
            raise
        finally:
            self.is_running = False
            self._stop_event.clear()
            self.controller.store.flush()
            logger.info("Monitoring loop stopped after %d ticks", self.cycles)

    def stop(self) -> None:
        """Request shutdown. Honoured between positions, never mid-update.

        A stop requested before run_forever() starts makes it return without
        running a tick.
        """
        if not self._stop_event.is_set():
            logger.info("Stopping monitoring loop")
        self._stop_event.set()

    def _fetch_quotes(self, asset_ids: list[str], report: CycleReport) -> dict[str, PriceQuote]:
        if not asset_ids:
            return {}

        workers = min(self.config.max_fetch_workers, len(asset_ids))
        quotes: dict[str, PriceQuote] = {}
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="quote") as pool:
            futures = {asset_id: pool.submit(self.price_feed.get_price, asset_id) for asset_id in asset_ids}
            for asset_id, future in futures.items():
                try:
                    quotes[asset_id] = future.result()
                except _QUOTE_FAILURES as exc:
                    logger.warning("No quote for %s this tick: %s", asset_id, exc)
                    report.skipped_assets.append(asset_id)
        return quotes

    def _evaluate_entries(self, entries: Sequence[AssetRef], report: CycleReport) -> None:
        for asset in entries:
            if self._stop_event.is_set():
                report.cancelled = True
                return
            try:
                quote = self.price_feed.get_price(asset.id)
            except _QUOTE_FAILURES as exc:
                logger.warning("No quote for watchlist asset %s: %s", asset.id, exc)
                report.skipped_assets.append(asset.id)
                continue

            signal = self.signal_provider.get_signal(asset.id)
            try:
                outcome = self.controller.open_position(asset, signal, quote)
            except LifecycleError as exc:
                logger.warning("Entry for %s skipped: %s", asset.id, exc)
                report.errors.append(str(exc))
                continue
            if outcome.opened:
                report.opened.append(outcome.position.id)


def parse_timeframe(timeframe: str) -> int:
    """Parse timeframe string to seconds.

    Args:
        timeframe: Timeframe like "5m", "15m", "1h", "1d"

    Returns:
        Interval in seconds

    Raises:
        ValueError: If format is invalid

    Examples:
        >>> parse_timeframe("5m")
        300
        >>> parse_timeframe("15m")
        900
        >>> parse_timeframe("1h")
        3600
    """
    timeframe = timeframe.lower().strip()
    unit_seconds = {"m": 60, "h": 3600, "d": 86400}

    count, unit = timeframe[:-1], timeframe[-1:]
    if unit not in unit_seconds or not count.isdigit():
        raise ValueError(
            f"Invalid timeframe format: {timeframe}. Expected format like '5m', '15m', '1h'"
        )
    return int(count) * unit_seconds[unit]


__all__ = ["CycleReport", "MonitoringLoop", "parse_timeframe"]
