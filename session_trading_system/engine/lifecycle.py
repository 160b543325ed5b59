"""Trade lifecycle controller.

Each position moves through ``PENDING_OPEN -> OPEN -> PENDING_CLOSE -> CLOSED``.
The controller is the only writer of the PositionStore and of the session
ledger. Every mutating call runs under one re-entrant lock, works on a
private draft of the state document and commits it only after the brokerage
has confirmed the fill. Pending states live in memory only: a crash while
an order is in flight leaves the last committed document untouched.
"""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Iterable, Mapping

from session_trading_system.config.models import AppConfig, FeeConfig
from session_trading_system.core.errors import (
    ExecutionFailure,
    InsufficientBudgetError,
    LifecycleError,
    PositionNotFoundError,
    StaleDataError,
)
from session_trading_system.core.position_sizing import (
    ExposureSnapshot,
    SizingRejection,
    compute_size,
    kelly_fraction_from_history,
    safe_get_score,
)
from session_trading_system.core.risk_engine import (
    compute_entry_risk,
    compute_performance,
    evaluate_exit,
    format_money,
    update_trailing_stop,
)
from session_trading_system.engine.ledger import SessionLedger
from session_trading_system.engine.models import (
    AnalysisSnapshot,
    AssetRef,
    EntrySnapshot,
    ExitSnapshot,
    ExitTrigger,
    InactiveTrailingStop,
    Performance,
    Position,
    RiskLevels,
    StateDocument,
    TradeHistoryEntry,
    TradeResult,
)
from session_trading_system.exchange.base import (
    Fill,
    OrderExecutor,
    OrderRequest,
    OrderType,
    PriceQuote,
    Signal,
)
from session_trading_system.infra.retry import TRANSIENT_ERRORS, RetryPolicy
from session_trading_system.storage.position_store import PositionStore

logger = logging.getLogger(__name__)

# Failures that abandon an order attempt without touching committed state
_ORDER_FAILURES: tuple[type[BaseException], ...] = (
    ExecutionFailure,
    StaleDataError,
) + TRANSIENT_ERRORS


class PositionState(str, Enum):
    PENDING_OPEN = "pending_open"
    OPEN = "open"
    PENDING_CLOSE = "pending_close"
    CLOSED = "closed"


@dataclass(slots=True)
class OpenOutcome:
    """Result of an open attempt. ``reason`` explains a refusal."""

    opened: bool
    position: Position | None = None
    reason: str = ""


@dataclass(slots=True)
class CloseOutcome:
    """Result of a close attempt. ``reason`` explains why it did not close."""

    closed: bool
    trade: TradeHistoryEntry | None = None
    reason: str = ""


@dataclass(slots=True)
class ReconciliationReport:
    """Differences between stored positions and brokerage holdings.

    Attributes:
        matched: Asset ids whose held size equals the stored size
        missing_at_broker: Asset ids stored as open but not held
        untracked_holdings: Held sizes for assets with no stored position
        size_mismatches: Asset id -> (stored size, held size)
    """

    matched: list[str] = field(default_factory=list)
    missing_at_broker: list[str] = field(default_factory=list)
    untracked_holdings: dict[str, float] = field(default_factory=dict)
    size_mismatches: dict[str, tuple[float, float]] = field(default_factory=dict)

    @property
    def consistent(self) -> bool:
        return not (self.missing_at_broker or self.untracked_holdings or self.size_mismatches)


def reconcile_holdings(
    positions: Iterable[Position], holdings: Mapping[str, float]
) -> ReconciliationReport:
    """Compare open positions, aggregated per asset, with held sizes."""
    stored: dict[str, float] = {}
    for position in positions:
        stored[position.asset.id] = stored.get(position.asset.id, 0.0) + position.size

    report = ReconciliationReport()
    for asset_id, size in sorted(stored.items()):
        held = float(holdings.get(asset_id, 0.0))
        if held <= 0:
            report.missing_at_broker.append(asset_id)
        elif abs(held - size) > 1e-9:
            report.size_mismatches[asset_id] = (size, held)
        else:
            report.matched.append(asset_id)
    for asset_id, held in holdings.items():
        if asset_id not in stored and held > 0:
            report.untracked_holdings[asset_id] = float(held)

    if report.consistent:
        logger.info("Reconciliation clean: %d assets match", len(report.matched))
    else:
        logger.warning(
            "Reconciliation found discrepancies: missing=%s untracked=%s mismatched=%s",
            report.missing_at_broker,
            sorted(report.untracked_holdings),
            sorted(report.size_mismatches),
        )
    return report


def entry_reservation(
    size: int,
    quote_price: float,
    fees: FeeConfig,
    *,
    slippage_bps: float,
    order_type: OrderType = "market",
    limit_price: float | None = None,
) -> float:
    """Worst-case cash a buy can consume, fee included.

    Market orders are priced at the quote plus ``slippage_bps``. Limit orders
    never fill above their limit, so the limit bounds the price instead.
    """
    if order_type == "limit" and limit_price is not None:
        worst_price = limit_price
    else:
        worst_price = quote_price * (1 + slippage_bps / 10_000)
    notional = worst_price * size
    return notional + fees.order_fee(notional)


class TradeLifecycleController:
    """Opens, updates and closes positions against a PositionStore.

    Thread-safe: Protected by internal lock.

    Attributes:
        store: State store this controller writes to
        config: Application configuration (risk, sizing, fees)
    """

    def __init__(
        self,
        store: PositionStore,
        executor: OrderExecutor,
        *,
        config: AppConfig | None = None,
        retry: RetryPolicy | None = None,
    ) -> None:
        self.store = store
        self.config = config or AppConfig()
        self._executor = executor
        self._retry = retry or RetryPolicy.from_config(self.config.execution)
        self._lock = threading.RLock()
        # position id or asset id -> in-flight state
        self._pending: dict[str, PositionState] = {}

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def state_of(self, key: str) -> PositionState | None:
        """Lifecycle state for a position id, or for an asset with an open in flight."""
        with self._lock:
            if key in self._pending:
                return self._pending[key]
            if self.store.get_position(key) is not None:
                return PositionState.OPEN
            if any(t.position_id == key for t in self.store.trade_history()):
                return PositionState.CLOSED
            return None

    # ------------------------------------------------------------------
    # Open
    # ------------------------------------------------------------------

    def open_position(
        self,
        asset: AssetRef,
        signal: Signal,
        quote: PriceQuote,
        *,
        kelly_fraction: float | None = None,
        order_type: OrderType = "market",
        limit_price: float | None = None,
    ) -> OpenOutcome:
        """Size, reserve budget for and buy a new long position.

        Refusals (asset class, sizing, budget, failed fill) are returned as an
        unopened outcome and leave the committed state unchanged.

        Raises:
            LifecycleError: If an open for the same asset is already in flight
            PersistenceError: If the confirmed position could not be saved
        """
        with self._lock:
            if self._pending.get(asset.id) is PositionState.PENDING_OPEN:
                raise LifecycleError(f"Open already in flight for {asset.id}")

            draft = self.store.begin()
            session = draft.session

            allowed = session.settings.allowed_asset_types
            if allowed and asset.asset_class not in allowed:
                return self._refuse_open(
                    asset, f"asset class '{asset.asset_class}' not allowed ({', '.join(allowed)})"
                )

            if kelly_fraction is None:
                sizing = self.config.sizing
                kelly_fraction = kelly_fraction_from_history(
                    draft.trade_history,
                    min_trades=sizing.kelly_min_trades,
                    default=sizing.default_kelly_fraction,
                    fraction=sizing.kelly_multiplier,
                    max_position_pct=sizing.max_asset_exposure,
                )

            try:
                expected = compute_entry_risk(session.settings.strategy, quote.atr, quote.price)
            except ValueError as exc:
                return self._refuse_open(asset, str(exc))

            held_value = sum(p.market_value() for p in draft.open_positions)
            exposure = ExposureSnapshot(
                open_positions=len(draft.open_positions),
                asset_notional=sum(
                    p.market_value() for p in draft.open_positions if p.asset.id == asset.id
                ),
            )
            decision = compute_size(
                signal,
                kelly_fraction,
                session.budget.remaining + held_value,
                quote.price,
                exposure,
                target_price=expected.dynamic_tp,
                config=self.config.sizing,
                fees=self.config.fees,
            )
            if isinstance(decision, SizingRejection):
                return self._refuse_open(asset, decision.reason)

            order = OrderRequest(
                asset_id=asset.id,
                side="buy",
                size=decision.size,
                order_type=order_type,
                limit_price=limit_price,
            )

            cost = entry_reservation(
                decision.size,
                quote.price,
                self.config.fees,
                slippage_bps=self.config.execution.slippage_bps,
                order_type=order_type,
                limit_price=limit_price,
            )
            ledger = SessionLedger(session)
            try:
                reservation = ledger.reserve(cost)
            except InsufficientBudgetError as exc:
                logger.warning("Open %s rejected: %s", asset.id, exc)
                return OpenOutcome(opened=False, reason=str(exc))

            self._pending[asset.id] = PositionState.PENDING_OPEN
            try:
                try:
                    fill = self._submit(order)
                except _ORDER_FAILURES as exc:
                    ledger.release(reservation)
                    logger.warning("Open %s abandoned, no fill: %s", asset.id, exc)
                    return OpenOutcome(opened=False, reason=f"execution failed: {exc}")

                ledger.true_up(reservation, fill.fill_price * decision.size + fill.fee)
                ledger.record_entry_fee(fill.fee)
                position = self._build_position(asset, signal, quote, decision.size, fill, order_type)
                draft.open_positions.append(position)
                session.updated_at = fill.time
                self.store.commit(draft)
            finally:
                self._pending.pop(asset.id, None)

        logger.info(
            "Opened %s %s x%d @ %s (SL %s / TP %s), remaining budget %s",
            position.id,
            asset.id,
            decision.size,
            format_money(position.entry.price),
            format_money(position.risk.dynamic_sl),
            format_money(position.risk.dynamic_tp),
            format_money(session.budget.remaining),
        )
        return OpenOutcome(opened=True, position=position)

    def _refuse_open(self, asset: AssetRef, reason: str) -> OpenOutcome:
        logger.info("No trade for %s: %s", asset.id, reason)
        return OpenOutcome(opened=False, reason=reason)

    def _build_position(
        self,
        asset: AssetRef,
        signal: Signal,
        quote: PriceQuote,
        size: float,
        fill: Fill,
        order_type: OrderType,
    ) -> Position:
        strategy = self.store.session.settings.strategy
        levels = compute_entry_risk(strategy, quote.atr, fill.fill_price)
        return Position(
            id=uuid.uuid4().hex,
            asset=asset,
            size=size,
            entry=EntrySnapshot(
                price=fill.fill_price,
                time=fill.time,
                order_type=order_type,
                fee=fill.fee,
            ),
            analysis=AnalysisSnapshot(
                signal_strength=signal.score,
                technical_score=safe_get_score(signal.category_breakdown, "technical"),
                sentiment=signal.sentiment,
                reason=signal.reason,
                confidence=signal.confidence,
            ),
            risk=RiskLevels(
                entry_atr=max(0.0, quote.atr),
                dynamic_sl=levels.dynamic_sl,
                dynamic_tp=levels.dynamic_tp,
                trailing_stop=InactiveTrailingStop(highest_price=fill.fill_price),
            ),
            performance=Performance(current_price=fill.fill_price),
        )

    # ------------------------------------------------------------------
    # Update
    # ------------------------------------------------------------------

    def update_position(
        self, position_id: str, quote: PriceQuote, now: datetime
    ) -> ExitTrigger | None:
        """Mark a position to market, advance its trailing stop and check exits.

        Returns:
            The exit trigger that fired, or None to keep holding

        Raises:
            PositionNotFoundError: If no open position has this id
            LifecycleError: If the position is being closed
            PersistenceError: If the update could not be saved
        """
        with self._lock:
            if self._pending.get(position_id) is PositionState.PENDING_CLOSE:
                raise LifecycleError(f"Position {position_id} is being closed")

            draft = self.store.begin()
            position = self._require(draft, position_id)

            trailing = update_trailing_stop(
                position,
                quote.price,
                activation_pct=self.config.risk.trailing_activation_pct,
                lock_in_pct=self.config.risk.trailing_lock_in_pct,
            )
            if trailing.status != position.risk.trailing_stop.status:
                logger.info(
                    "Trailing stop armed for %s at %s",
                    position_id,
                    format_money(trailing.current_stop_price),
                )
            position.risk = position.risk.model_copy(update={"trailing_stop": trailing})
            position.performance = compute_performance(position, quote.price, now)
            draft.session.updated_at = now
            self.store.commit(draft)

            return evaluate_exit(position, quote.price)

    # ------------------------------------------------------------------
    # Close
    # ------------------------------------------------------------------

    def close_position(
        self,
        position_id: str,
        trigger: ExitTrigger,
        *,
        quote: PriceQuote | None = None,
    ) -> CloseOutcome:
        """Sell an open position and book the trade.

        A failed sell leaves the position OPEN so the next cycle can retry.

        Raises:
            PositionNotFoundError: If no open position has this id
            LifecycleError: If a close for this position is already in flight
            PersistenceError: If the closed trade could not be saved
        """
        with self._lock:
            return self._close(position_id, trigger, quote=quote)

    def rebalance_position(self, position_id: str, now: datetime) -> CloseOutcome:
        """Close a stagnant position, counting it against the daily quota."""
        with self._lock:
            self.roll_rebalance_day(now)
            rebalancing = self.store.session.rebalancing
            if not rebalancing.enabled:
                return CloseOutcome(closed=False, reason="rebalancing disabled")
            if rebalancing.rebalances_today >= rebalancing.max_per_day:
                return CloseOutcome(
                    closed=False,
                    reason=f"daily rebalance quota reached ({rebalancing.max_per_day})",
                )
            return self._close(position_id, ExitTrigger.REBALANCE, count_rebalance=True)

    def _close(
        self,
        position_id: str,
        trigger: ExitTrigger,
        *,
        quote: PriceQuote | None = None,
        count_rebalance: bool = False,
    ) -> CloseOutcome:
        if self._pending.get(position_id) is PositionState.PENDING_CLOSE:
            raise LifecycleError(f"Close already in flight for {position_id}")
        current = self.store.get_position(position_id)
        if current is None:
            raise PositionNotFoundError(position_id)

        order = OrderRequest(asset_id=current.asset.id, side="sell", size=current.size)
        self._pending[position_id] = PositionState.PENDING_CLOSE
        try:
            try:
                fill = self._submit(order)
            except _ORDER_FAILURES as exc:
                logger.warning(
                    "Close %s (%s) failed, position stays open: %s",
                    position_id,
                    trigger.value,
                    exc,
                )
                return CloseOutcome(closed=False, reason=f"execution failed: {exc}")

            draft = self.store.begin()
            position = self._require(draft, position_id)
            trade = self._book_exit(draft, position, fill, trigger)
            if count_rebalance:
                rebalancing = draft.session.rebalancing
                draft.session.rebalancing = rebalancing.model_copy(
                    update={"rebalances_today": rebalancing.rebalances_today + 1}
                )
            self.store.commit(draft)
        finally:
            self._pending.pop(position_id, None)

        expected = f" (quoted {format_money(quote.price)})" if quote is not None else ""
        logger.info(
            "Closed %s %s on %s @ %s%s: net %s (%.2f%%), remaining budget %s",
            position_id,
            position.asset.id,
            trigger.value,
            format_money(fill.fill_price),
            expected,
            format_money(trade.result.net_pnl),
            trade.result.net_pnl_percent,
            format_money(draft.session.budget.remaining),
        )
        return CloseOutcome(closed=True, trade=trade)

    def _book_exit(
        self,
        draft: StateDocument,
        position: Position,
        fill: Fill,
        trigger: ExitTrigger,
    ) -> TradeHistoryEntry:
        size = position.size
        gross = (fill.fill_price - position.entry.price) * size
        net = gross - position.entry.fee - fill.fee
        net_pct = net / position.cost_basis * 100.0
        held = max(0.0, (fill.time - position.entry.time).total_seconds() / 3600.0)

        ledger = SessionLedger(draft.session)
        ledger.settle(fill.fill_price * size, fill.fee, net)
        compounded = ledger.apply_compound(net)

        trade = TradeHistoryEntry.from_position(
            position,
            ExitSnapshot(price=fill.fill_price, time=fill.time, fee=fill.fee, trigger=trigger),
            TradeResult(
                gross_pnl=gross,
                net_pnl=net,
                net_pnl_percent=net_pct,
                holding_time_hours=held,
                compounded=compounded,
            ),
        )
        draft.open_positions = [p for p in draft.open_positions if p.id != position.id]
        draft.trade_history.append(trade)
        draft.session.updated_at = fill.time
        return trade

    # ------------------------------------------------------------------
    # Session housekeeping
    # ------------------------------------------------------------------

    def roll_rebalance_day(self, now: datetime) -> bool:
        """Reset the daily rebalance counter on the first call of a new UTC day.

        Returns:
            True when the counter was reset
        """
        today = now.astimezone(timezone.utc).date()
        with self._lock:
            if self.store.session.rebalancing.last_reset_date == today:
                return False
            draft = self.store.begin()
            draft.session.rebalancing = draft.session.rebalancing.model_copy(
                update={"rebalances_today": 0, "last_reset_date": today}
            )
            draft.session.updated_at = now
            self.store.commit(draft)
        logger.debug("Rebalance counter reset for %s", today.isoformat())
        return True

    def reconcile(self, holdings: Mapping[str, float]) -> ReconciliationReport:
        """Compare stored open positions with brokerage holdings.

        Nothing is repaired: every discrepancy is logged and reported for an
        operator to resolve.
        """
        with self._lock:
            positions = self.store.open_positions()
        return reconcile_holdings(positions, holdings)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _submit(self, order: OrderRequest) -> Fill:
        return self._retry.call(self._executor.execute, order)

    @staticmethod
    def _require(draft: StateDocument, position_id: str) -> Position:
        position = draft.find_position(position_id)
        if position is None:
            raise PositionNotFoundError(position_id)
        return position


__all__ = [
    "CloseOutcome",
    "OpenOutcome",
    "PositionState",
    "ReconciliationReport",
    "TradeLifecycleController",
    "entry_reservation",
    "reconcile_holdings",
]
