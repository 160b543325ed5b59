"""Session Trading System - position lifecycle and risk management.

This package tracks a single budgeted trading session:
- Risk levels (ATR-based or fixed stop-loss / take-profit, trailing stop)
- Signal- and Kelly-based position sizing with exposure and fee limits
- Budget, compounding and statistics in a session ledger
- A lifecycle controller persisting every confirmed fill atomically
- Rebalancing of stagnant positions and a periodic monitoring loop
- A session runner wiring configuration, storage and execution together
"""

__version__ = "0.1.0"

from session_trading_system.engine.lifecycle import (  # noqa: E402
    CloseOutcome,
    OpenOutcome,
    PositionState,
    ReconciliationReport,
    TradeLifecycleController,
)
from session_trading_system.engine.monitor import CycleReport, MonitoringLoop  # noqa: E402
from session_trading_system.engine.rebalancing import RebalancingScheduler  # noqa: E402
from session_trading_system.engine.session_runner import TradingSession  # noqa: E402

__all__ = [
    "CloseOutcome",
    "CycleReport",
    "MonitoringLoop",
    "OpenOutcome",
    "PositionState",
    "RebalancingScheduler",
    "ReconciliationReport",
    "TradeLifecycleController",
    "TradingSession",
]
