"""Persistence for the session state document."""

from session_trading_system.storage.position_store import PositionStore
from session_trading_system.storage.repository import (
    InMemoryRepository,
    JsonFileRepository,
    StateRepository,
)

__all__ = ["InMemoryRepository", "JsonFileRepository", "PositionStore", "StateRepository"]
