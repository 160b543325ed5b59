"""Configuration management package for the Session Trading System.

Usage:
    from session_trading_system.config import load_config, save_config

    cfg = load_config()
    print(cfg.sizing.max_open_positions)

    cfg.sizing.min_trade_size = 25.0
    save_config(cfg)
"""

from session_trading_system.config.models import (
    AppConfig,
    ExecutionConfig,
    FeeConfig,
    MonitoringConfig,
    RebalancingConfig,
    RiskConfig,
    SessionDefaults,
    SizingConfig,
)
from session_trading_system.config.service import (
    clear_config_cache,
    get_config_path,
    load_config,
    reload_config,
    save_config,
)

__all__ = [
    # Models
    "AppConfig",
    "ExecutionConfig",
    "FeeConfig",
    "MonitoringConfig",
    "RebalancingConfig",
    "RiskConfig",
    "SessionDefaults",
    "SizingConfig",
    # Service functions
    "clear_config_cache",
    "get_config_path",
    "load_config",
    "reload_config",
    "save_config",
]
