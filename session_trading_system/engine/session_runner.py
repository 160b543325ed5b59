"""Session bootstrap: wires configuration to store, executor and monitoring loop.

A TradingSession opens the persisted session document named by
``monitoring.state_file`` (creating it from the session defaults on first
run), picks the order executor from the session's dry-run flag and drives the
monitoring loop either in the calling thread or in a background thread.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Any, Iterable, Literal, Sequence

from session_trading_system.config import AppConfig, load_config
from session_trading_system.core.errors import TradingCoreError
from session_trading_system.engine.lifecycle import TradeLifecycleController
from session_trading_system.engine.models import AssetRef, Position
from session_trading_system.engine.monitor import MonitoringLoop
from session_trading_system.engine.rebalancing import RebalancingScheduler
from session_trading_system.exchange.base import (
    BrokerageView,
    Clock,
    OrderExecutor,
    PriceFeed,
    SignalProvider,
    SystemClock,
)
from session_trading_system.exchange.paper import PaperOrderExecutor
from session_trading_system.infra.retry import RetryPolicy
from session_trading_system.storage.position_store import PositionStore
from session_trading_system.storage.repository import JsonFileRepository, StateRepository

logger = logging.getLogger(__name__)

SessionStatus = Literal["created", "running", "stopped", "error"]


def held_sizes(positions: Iterable[Position]) -> dict[str, float]:
    """Aggregate open position sizes per asset id."""
    sizes: dict[str, float] = {}
    for position in positions:
        sizes[position.asset.id] = sizes.get(position.asset.id, 0.0) + position.size
    return sizes


class TradingSession:
    """Runs one persisted trading session end to end.

    Dry-run sessions trade through a PaperOrderExecutor whose holdings are
    seeded from the restored open positions, so the start-up reconciliation
    matches. Live sessions need a real executor; pass ``brokerage`` to have
    holdings reconciled before monitoring starts.

    Attributes:
        config: Application configuration
        store: Session document store
        executor: Executor used for every order
        controller: Lifecycle controller bound to the store
        loop: Monitoring loop driving the controller
        status: created, running, stopped or error
    """

    def __init__(
        self,
        price_feed: PriceFeed,
        signal_provider: SignalProvider | None = None,
        *,
        config: AppConfig | None = None,
        executor: OrderExecutor | None = None,
        brokerage: BrokerageView | None = None,
        repository: StateRepository | None = None,
        clock: Clock | None = None,
        watchlist: Sequence[AssetRef] = (),
    ) -> None:
        """Open the session document and wire its collaborators.

        Args:
            price_feed: Quotes for open positions and the watchlist
            signal_provider: Entry signals (None disables new entries)
            config: Application configuration (defaults to load_config())
            executor: Order executor for live sessions; ignored on dry runs
            brokerage: Holdings view for start-up reconciliation
            repository: Storage for the session document (defaults to a JSON
                file at ``monitoring.state_file``)
            clock: Time source (defaults to the UTC wall clock)
            watchlist: Assets evaluated for new entries every tick

        Raises:
            ValueError: If the session is live and no executor is given
            StateValidationError: If the stored document is invalid
            PersistenceError: If a new session document cannot be saved
        """
        self.config = config or load_config()
        self._clock = clock or SystemClock()
        if repository is None:
            repository = JsonFileRepository(self.config.monitoring.state_file)
        self.store = PositionStore.open_or_create(repository, self.config.session, self._clock.now())

        session = self.store.session
        if session.settings.dry_run:
            if executor is not None:
                logger.warning("Session %s is a dry run; supplied executor ignored", session.id)
            paper = PaperOrderExecutor(
                price_feed,
                fees=self.config.fees,
                slippage_bps=self.config.execution.slippage_bps,
                clock=self._clock,
            )
            paper.seed_holdings(held_sizes(self.store.open_positions()))
            self.executor: OrderExecutor = paper
            brokerage = brokerage or paper
        elif executor is None:
            raise ValueError(
                f"Session {session.id} is live (dry_run disabled) and requires an order executor"
            )
        else:
            self.executor = executor
            if brokerage is None:
                logger.warning(
                    "No brokerage view for live session %s; start-up reconciliation skipped",
                    session.id,
                )

        self.controller = TradeLifecycleController(
            self.store,
            self.executor,
            config=self.config,
            retry=RetryPolicy.from_config(self.config.execution),
        )
        self.loop = MonitoringLoop(
            self.controller,
            price_feed,
            signal_provider,
            rebalancer=RebalancingScheduler(self.controller),
            config=self.config.monitoring,
            clock=self._clock,
            watchlist=watchlist,
            brokerage=brokerage,
        )

        self.status: SessionStatus = "created"
        self.start_time: datetime | None = None
        self.error_message: str | None = None
        self._thread: threading.Thread | None = None
        self._lock = threading.Lock()

        logger.info(
            "TradingSession %s ready: mode=%s, strategy=%s, interval=%s, open positions=%d",
            session.id,
            "dry-run" if session.settings.dry_run else "live",
            session.settings.strategy,
            session.settings.interval,
            len(self.store.open_positions()),
        )

    @property
    def session_id(self) -> str:
        return self.store.session.id

    @property
    def dry_run(self) -> bool:
        return self.store.session.settings.dry_run

    def run(self) -> None:
        """Run the monitoring loop in the calling thread until stop().

        Raises:
            RuntimeError: If the session is already running
            ReconciliationError: If holdings disagree with stored positions
            PersistenceError: If state could not be saved
        """
        self._mark_running()
        try:
            self.loop.run_forever()
        except TradingCoreError as exc:
            self._mark_failed(exc)
            raise
        with self._lock:
            if self.status == "running":
                self.status = "stopped"

    def start(self) -> None:
        """Run the monitoring loop in a background thread."""
        self._mark_running()
        self._thread = threading.Thread(
            target=self._run_in_background, daemon=True, name=f"TradingSession-{self.session_id}"
        )
        self._thread.start()
        logger.info("TradingSession %s started", self.session_id)

    def stop(self, timeout: float = 30.0) -> None:
        """Stop monitoring, wait for the loop thread and flush pending state.

        Raises:
            PersistenceError: If a dirty document still cannot be saved
        """
        with self._lock:
            if self.status != "running":
                logger.warning(
                    "TradingSession %s is not running (status=%s)", self.session_id, self.status
                )
                return
            logger.info("Stopping TradingSession %s", self.session_id)
            self.loop.stop()
            self.status = "stopped"

        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                logger.error(
                    "Monitoring thread for session %s did not stop within %.0f seconds",
                    self.session_id,
                    timeout,
                )

        self.store.flush()
        logger.info("TradingSession %s stopped", self.session_id)

    def get_status(self) -> dict[str, Any]:
        """Session id, mode, run status and budget summary."""
        session = self.store.session
        with self._lock:
            return {
                "session_id": session.id,
                "mode": "dry-run" if session.settings.dry_run else "live",
                "status": self.status,
                "start_time": self.start_time.isoformat() if self.start_time else None,
                "error_message": self.error_message,
                "cycles": self.loop.cycles,
                "open_positions": len(self.store.open_positions()),
                "remaining_budget": session.budget.remaining,
                "currency": session.budget.currency,
            }

    def _run_in_background(self) -> None:
        try:
            self.loop.run_forever()
        except TradingCoreError as exc:
            logger.error("Monitoring failed in session %s: %s", self.session_id, exc, exc_info=True)
            self._mark_failed(exc)

    def _mark_running(self) -> None:
        with self._lock:
            if self.status == "running":
                raise RuntimeError(f"Session {self.session_id} is already running")
            self.status = "running"
            self.start_time = self._clock.now()
            self.error_message = None

    def _mark_failed(self, exc: Exception) -> None:
        with self._lock:
            self.status = "error"
            self.error_message = str(exc)


__all__ = ["SessionStatus", "TradingSession", "held_sizes"]
