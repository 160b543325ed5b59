"""Closes stagnant positions to free budget for new entries.

A position is stagnant once it has been held for at least
``session.rebalancing.stagnation_hours`` and its best unrealized gain never
exceeded the configured peak threshold. At most ``max_per_day`` such closes
happen per UTC calendar day.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterable

from session_trading_system.config.models import RebalancingConfig
from session_trading_system.engine.lifecycle import TradeLifecycleController
from session_trading_system.engine.models import Position, Session

logger = logging.getLogger(__name__)


def holding_hours(position: Position, now: datetime) -> float:
    return max(0.0, (now - position.entry.time).total_seconds() / 3600.0)


class RebalancingScheduler:
    """Picks stagnant positions and asks the controller to close them."""

    def __init__(
        self,
        controller: TradeLifecycleController,
        config: RebalancingConfig | None = None,
    ) -> None:
        self._controller = controller
        self.config = config or controller.config.rebalancing

    def find_stagnant(
        self, positions: Iterable[Position], session: Session, now: datetime
    ) -> list[Position]:
        """Return stagnant positions, longest held first."""
        if not session.rebalancing.enabled:
            return []
        threshold = self.config.stagnation_peak_threshold_pct
        stagnant = [
            p
            for p in positions
            if holding_hours(p, now) >= session.rebalancing.stagnation_hours
            and p.performance.peak_pnl_percent <= threshold
        ]
        return sorted(stagnant, key=lambda p: p.entry.time)

    def run(self, now: datetime) -> list[str]:
        """Close stagnant positions within today's quota.

        Returns:
            Ids of the positions that were closed
        """
        self._controller.roll_rebalance_day(now)
        store = self._controller.store
        session = store.session
        if not session.rebalancing.enabled:
            return []

        closed: list[str] = []
        for position in self.find_stagnant(store.open_positions(), session, now):
            rebalancing = store.session.rebalancing
            if rebalancing.rebalances_today >= rebalancing.max_per_day:
                logger.info(
                    "Rebalance quota reached (%d/day); %s stays open",
                    rebalancing.max_per_day,
                    position.id,
                )
                break
            logger.info(
                "Rebalancing stagnant %s %s: held %.1fh, peak %.2f%%",
                position.id,
                position.asset.id,
                holding_hours(position, now),
                position.performance.peak_pnl_percent,
            )
            outcome = self._controller.rebalance_position(position.id, now)
            if outcome.closed:
                closed.append(position.id)
        return closed


__all__ = ["RebalancingScheduler", "holding_hours"]
