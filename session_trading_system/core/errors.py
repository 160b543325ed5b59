"""Exception hierarchy for the session trading core.

Recoverable conditions (insufficient budget, failed fills, stale quotes) are
raised by the component that detects them and handled by the lifecycle
controller or the monitoring loop. Validation and persistence failures are
fatal and propagate to the caller.
"""

from __future__ import annotations


class TradingCoreError(Exception):
    """Base class for all errors raised by the trading core."""


class StateValidationError(TradingCoreError):
    """Persisted state document is malformed or holds an out-of-range field."""


class InsufficientBudgetError(TradingCoreError):
    """Remaining budget cannot cover the requested cost."""

    def __init__(self, cost: float, remaining: float) -> None:
        super().__init__(
            f"Insufficient budget: cost {cost:.2f} exceeds remaining {remaining:.2f}"
        )
        self.cost = cost
        self.remaining = remaining


class ExecutionFailure(TradingCoreError):
    """Brokerage could not confirm a fill.

    Attributes:
        transient: True when the failure is worth retrying (network, timeout,
            rate limit). Permanent rejections set this to False.
    """

    def __init__(self, message: str, *, transient: bool = True) -> None:
        super().__init__(message)
        self.transient = transient


class StaleDataError(TradingCoreError):
    """Price or ATR for an asset is missing or outdated."""

    def __init__(self, asset_id: str, detail: str = "no fresh quote") -> None:
        super().__init__(f"Stale data for {asset_id}: {detail}")
        self.asset_id = asset_id


class PersistenceError(TradingCoreError):
    """State document could not be written to durable storage."""


class LifecycleError(TradingCoreError):
    """Requested transition is not legal for the position's current state."""


class ReconciliationError(TradingCoreError):
    """Stored positions disagree with brokerage holdings.

    Attributes:
        report: Reconciliation report listing every discrepancy
    """

    def __init__(self, report) -> None:
        super().__init__(
            "Stored positions do not match brokerage holdings: "
            f"missing={report.missing_at_broker} "
            f"untracked={sorted(report.untracked_holdings)} "
            f"mismatched={sorted(report.size_mismatches)}"
        )
        self.report = report


class PositionNotFoundError(TradingCoreError, KeyError):
    """No open position exists with the given id."""

    def __init__(self, position_id: str) -> None:
        super().__init__(f"Open position not found: {position_id}")
        self.position_id = position_id

    def __str__(self) -> str:
        return str(self.args[0])


__all__ = [
    "TradingCoreError",
    "StateValidationError",
    "InsufficientBudgetError",
    "ExecutionFailure",
    "StaleDataError",
    "PersistenceError",
    "LifecycleError",
    "PositionNotFoundError",
    "ReconciliationError",
]
