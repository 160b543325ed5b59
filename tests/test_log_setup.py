"""Tests for process logging setup."""

import logging

from session_trading_system.infra import setup_logging


def test_noisy_http_loggers_are_quieted():
    setup_logging("DEBUG")

    assert logging.getLogger("urllib3").level == logging.WARNING
    assert logging.getLogger("requests").level == logging.WARNING
