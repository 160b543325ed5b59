"""Cross-cutting helpers: retry policy and logging setup."""

from session_trading_system.infra.log_setup import setup_logging
from session_trading_system.infra.retry import RetryPolicy, is_transient

__all__ = ["RetryPolicy", "is_transient", "setup_logging"]
