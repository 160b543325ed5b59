"""Market data, signal and order-routing interfaces plus the paper executor."""

from session_trading_system.exchange.base import (
    BrokerageView,
    Clock,
    Fill,
    OrderExecutor,
    OrderRequest,
    PriceFeed,
    PriceQuote,
    Signal,
    SignalProvider,
    SystemClock,
)
from session_trading_system.exchange.paper import PaperOrderExecutor

__all__ = [
    "BrokerageView",
    "Clock",
    "Fill",
    "OrderExecutor",
    "OrderRequest",
    "PaperOrderExecutor",
    "PriceFeed",
    "PriceQuote",
    "Signal",
    "SignalProvider",
    "SystemClock",
]
