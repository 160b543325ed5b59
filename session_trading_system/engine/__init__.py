"""Session state models and the session ledger.

The lifecycle controller, rebalancer, monitoring loop and session runner live in
``engine.lifecycle``, ``engine.rebalancing``, ``engine.monitor`` and
``engine.session_runner``.
"""

from session_trading_system.engine.ledger import Reservation, SessionLedger
from session_trading_system.engine.models import (
    ExitTrigger,
    Position,
    Session,
    StateDocument,
    TradeHistoryEntry,
)

__all__ = [
    "ExitTrigger",
    "Position",
    "Reservation",
    "Session",
    "SessionLedger",
    "StateDocument",
    "TradeHistoryEntry",
]
