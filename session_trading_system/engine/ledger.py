"""Budget, compounding and aggregate statistics for a session."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass

from session_trading_system.core.errors import InsufficientBudgetError
from session_trading_system.engine.models import MONEY_EPSILON, Session

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Reservation:
    """Budget held for an order awaiting its fill."""

    cost: float
    released: bool = False


class SessionLedger:
    """Atomic debit/credit operations on a Session.

    Each operation computes the complete new budget and statistics first and
    assigns them together, so a failed precondition leaves the session
    untouched and no caller ever sees stats updated without the budget.

    Thread-safe: Protected by internal lock.
    """

    def __init__(self, session: Session) -> None:
        self.session = session
        self._lock = threading.Lock()

    @property
    def remaining(self) -> float:
        return self.session.budget.remaining

    def reserve(self, cost: float) -> Reservation:
        """Hold ``cost`` from the remaining budget for a pending open.

        Raises:
            ValueError: If cost is not positive
            InsufficientBudgetError: If remaining budget is below cost
        """
        if cost <= 0:
            raise ValueError(f"Reservation cost must be positive, got {cost}")

        with self._lock:
            budget = self.session.budget
            if budget.remaining + MONEY_EPSILON < cost:
                raise InsufficientBudgetError(cost, budget.remaining)

            new_budget = budget.model_copy(update={"remaining": max(0.0, budget.remaining - cost)})
            new_stats = self.session.stats.model_copy(
                update={"trades_opened": self.session.stats.trades_opened + 1}
            )
            self._assign(new_budget, new_stats)

        logger.debug("Reserved %.2f, remaining %.2f", cost, new_budget.remaining)
        return Reservation(cost=cost)

    def release(self, reservation: Reservation) -> None:
        """Undo a reservation whose order never filled."""
        with self._lock:
            if reservation.released:
                return
            budget = self.session.budget
            new_budget = budget.model_copy(
                update={"remaining": self._cap(budget.remaining + reservation.cost)}
            )
            new_stats = self.session.stats.model_copy(
                update={"trades_opened": max(0, self.session.stats.trades_opened - 1)}
            )
            self._assign(new_budget, new_stats)
            reservation.released = True

        logger.debug("Released reservation of %.2f", reservation.cost)

    def true_up(self, reservation: Reservation, actual_cost: float) -> None:
        """Replace a reserved estimate with the confirmed fill cost.

        A fill dearer than the estimate is charged down to a zero balance at
        most; the shortfall is logged.
        """
        with self._lock:
            delta = reservation.cost - actual_cost
            budget = self.session.budget
            target = budget.remaining + delta
            if target < 0:
                logger.error(
                    "Fill cost %.2f exceeded reservation %.2f by more than the remaining "
                    "budget; shortfall %.2f not charged",
                    actual_cost,
                    reservation.cost,
                    -target,
                )
            new_budget = budget.model_copy(update={"remaining": self._cap(max(0.0, target))})
            self._assign(new_budget, self.session.stats)
            reservation.cost = actual_cost

    def settle(self, exit_proceeds: float, fee: float, net_pnl: float) -> None:
        """Book a closed trade.

        Args:
            exit_proceeds: Gross sale value (exit price * size)
            fee: Exit fee charged by the broker
            net_pnl: Trade P&L after entry and exit fees
        """
        with self._lock:
            budget = self.session.budget
            stats = self.session.stats

            credited = budget.remaining + exit_proceeds - fee
            if credited > self.session.compound.max_budget:
                logger.warning(
                    "Credit would lift remaining budget to %.2f above ceiling %.2f; capping",
                    credited,
                    self.session.compound.max_budget,
                )
            new_budget = budget.model_copy(update={"remaining": self._cap(max(0.0, credited))})

            realized = stats.realized_pnl + net_pnl
            won = net_pnl > 0
            new_stats = stats.model_copy(
                update={
                    "trades_closed": stats.trades_closed + 1,
                    "wins": stats.wins + (1 if won else 0),
                    "losses": stats.losses + (0 if won else 1),
                    "total_fees_paid": stats.total_fees_paid + fee,
                    "realized_pnl": realized,
                    "realized_pnl_percent": realized / budget.initial * 100.0,
                }
            )
            self._assign(new_budget, new_stats)

    def record_entry_fee(self, fee: float) -> None:
        """Add the confirmed entry fee to the fee total."""
        with self._lock:
            stats = self.session.stats
            self.session.stats = stats.model_copy(
                update={"total_fees_paid": stats.total_fees_paid + fee}
            )

    def apply_compound(self, net_pnl: float) -> float:
        """Reinvest part of a profitable trade into the budget.

        Returns:
            Amount added to the remaining budget (0.0 when skipped)
        """
        compound = self.session.compound
        if net_pnl <= 0 or not compound.enabled:
            return 0.0

        amount = net_pnl * compound.rate
        with self._lock:
            budget = self.session.budget
            if budget.remaining + amount > compound.max_budget + MONEY_EPSILON:
                logger.info(
                    "Compounding %.2f skipped: would exceed max budget %.2f",
                    amount,
                    compound.max_budget,
                )
                return 0.0

            new_budget = budget.model_copy(update={"remaining": budget.remaining + amount})
            new_compound = compound.model_copy(
                update={"total_compounded": compound.total_compounded + amount}
            )
            self.session.budget = new_budget
            self.session.compound = new_compound

        logger.info("Compounded %.2f into budget (remaining %.2f)", amount, new_budget.remaining)
        return amount

    def _cap(self, remaining: float) -> float:
        return min(remaining, self.session.compound.max_budget)

    def _assign(self, budget, stats) -> None:
        self.session.budget = budget
        self.session.stats = stats


__all__ = ["Reservation", "SessionLedger"]
