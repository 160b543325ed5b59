"""Configuration service for loading and saving AppConfig."""
from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict

from session_trading_system.config.models import AppConfig

# Global cache for config (loaded once per process)
_APP_CONFIG: AppConfig | None = None

logger = logging.getLogger(__name__)


def _parse_bool(value: str | None, default: bool) -> bool:
    """Parse boolean from string."""
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes")


def get_config_path() -> Path:
    """Get path to the configuration file.

    Returns:
        Path from SESSION_TRADING_CONFIG, or ~/.session_trading/config.json

    Creates the parent directory if it doesn't exist.
    """
    override = os.getenv("SESSION_TRADING_CONFIG")
    if override:
        path = Path(override).expanduser()
    else:
        path = Path.home() / ".session_trading" / "config.json"
    path.parent.mkdir(parents=True, exist_ok=True)
    return path


def _apply_env_overrides(cfg: AppConfig) -> AppConfig:
    """Apply environment variable overrides on top of a loaded config.

    Environment Variables (all optional):
        SESSION_STATE_FILE: Path of the persisted session document
        SESSION_STRATEGY: aggressive, conservative or scalping
        SESSION_INTERVAL: 5m, 15m or 1h
        SESSION_DRY_RUN: Simulate fills instead of routing to a broker
        SESSION_INITIAL_BUDGET: Budget for newly created sessions
        EXECUTION_MAX_RETRIES: Retry cap for order execution
    """
    data: Dict[str, Any] = cfg.model_dump()

    if os.getenv("SESSION_STATE_FILE"):
        data["monitoring"]["state_file"] = os.environ["SESSION_STATE_FILE"]
    if os.getenv("SESSION_STRATEGY"):
        data["session"]["strategy"] = os.environ["SESSION_STRATEGY"]
    if os.getenv("SESSION_INTERVAL"):
        data["session"]["interval"] = os.environ["SESSION_INTERVAL"]
    if "SESSION_DRY_RUN" in os.environ:
        data["session"]["dry_run"] = _parse_bool(
            os.getenv("SESSION_DRY_RUN"), data["session"]["dry_run"]
        )
    if os.getenv("SESSION_INITIAL_BUDGET"):
        data["session"]["initial_budget"] = float(os.environ["SESSION_INITIAL_BUDGET"])
    if os.getenv("EXECUTION_MAX_RETRIES"):
        data["execution"]["max_retries"] = int(os.environ["EXECUTION_MAX_RETRIES"])

    return AppConfig(**data)


def load_config() -> AppConfig:
    """Load application configuration.

    Loading priority:
    1. If already cached in memory, return cached instance
    2. If config.json exists, load from file
    3. Otherwise, start from defaults and save to file

    Environment overrides are applied in cases 2 and 3.

    Returns:
        AppConfig instance

    Raises:
        ValueError: If config file is invalid JSON or doesn't match the schema
    """
    global _APP_CONFIG

    if _APP_CONFIG is not None:
        return _APP_CONFIG

    config_path = get_config_path()

    if config_path.exists():
        try:
            logger.info("Loading configuration from %s", config_path)
            with open(config_path, encoding="utf-8") as f:
                data: Dict[str, Any] = json.load(f)
            _APP_CONFIG = _apply_env_overrides(AppConfig(**data))
            logger.info("Configuration loaded successfully")
            return _APP_CONFIG
        except (json.JSONDecodeError, ValueError) as exc:
            logger.error("Failed to parse config file %s: %s", config_path, exc)
            raise ValueError(f"Invalid configuration file: {exc}") from exc

    logger.info("No config file found, using defaults")
    app_config = _apply_env_overrides(AppConfig())
    save_config(app_config)
    return app_config


def save_config(app_config: AppConfig) -> None:
    """Save configuration to file.

    Args:
        app_config: AppConfig instance to save

    Raises:
        OSError: If file cannot be written
    """
    global _APP_CONFIG

    config_path = get_config_path()
    data = app_config.model_dump(mode="json")

    with open(config_path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2, ensure_ascii=False)

    _APP_CONFIG = app_config
    logger.info("Configuration saved to %s", config_path)


def reload_config() -> AppConfig:
    """Reload configuration from file, clearing the cache.

    Raises:
        ValueError: If config file doesn't exist or is invalid
    """
    global _APP_CONFIG

    config_path = get_config_path()
    if not config_path.exists():
        raise ValueError(f"Configuration file not found: {config_path}")

    _APP_CONFIG = None
    return load_config()


def clear_config_cache() -> None:
    """Drop the cached AppConfig so the next load_config() reads from disk."""
    global _APP_CONFIG
    _APP_CONFIG = None
