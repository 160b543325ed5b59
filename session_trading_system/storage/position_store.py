"""Single source of truth for the session, open positions and trade history.

Writers take a draft with ``begin()``, mutate it privately and hand it back
with ``commit()``. The committed document is swapped in one step under the
store lock, so readers either see the previous state or the new one, never a
mix of the two.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime

from pydantic import ValidationError

from session_trading_system.config.models import SessionDefaults
from session_trading_system.core.errors import PersistenceError, StateValidationError
from session_trading_system.engine.models import (
    Position,
    Session,
    StateDocument,
    TradeHistoryEntry,
    new_session,
)
from session_trading_system.storage.repository import StateRepository

logger = logging.getLogger(__name__)


class PositionStore:
    """Owns the state document and its persistence.

    Thread-safe: Protected by internal lock. Snapshots returned by the read
    methods are deep copies and may be used freely by the caller.
    """

    def __init__(self, repository: StateRepository, document: StateDocument) -> None:
        self._repository = repository
        self._document = document
        self._lock = threading.Lock()
        self._dirty = False

    @classmethod
    def load(cls, repository: StateRepository) -> PositionStore:
        """Open an existing document.

        Raises:
            StateValidationError: If nothing is stored or the document is invalid
        """
        raw = repository.load()
        if raw is None:
            raise StateValidationError("No persisted session document found")
        try:
            document = StateDocument.model_validate(raw)
        except ValidationError as exc:
            raise StateValidationError(f"Invalid session document: {exc}") from exc
        logger.info(
            "Loaded session %s: %d open positions, %d closed trades",
            document.session.id,
            len(document.open_positions),
            len(document.trade_history),
        )
        return cls(repository, document)

    @classmethod
    def open_or_create(
        cls, repository: StateRepository, defaults: SessionDefaults, now: datetime
    ) -> PositionStore:
        """Load the stored document, or create and persist a new session."""
        if repository.load() is not None:
            return cls.load(repository)

        document = StateDocument(session=new_session(defaults, now))
        store = cls(repository, document)
        repository.save(document.to_json_dict())
        logger.info(
            "Created session %s with budget %.2f %s",
            document.session.id,
            document.session.budget.initial,
            document.session.budget.currency,
        )
        return store

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def snapshot(self) -> StateDocument:
        with self._lock:
            return self._document.model_copy(deep=True)

    @property
    def session(self) -> Session:
        with self._lock:
            return self._document.session.model_copy(deep=True)

    def open_positions(self) -> list[Position]:
        with self._lock:
            return [p.model_copy(deep=True) for p in self._document.open_positions]

    def trade_history(self) -> list[TradeHistoryEntry]:
        with self._lock:
            return list(self._document.trade_history)

    def get_position(self, position_id: str) -> Position | None:
        with self._lock:
            position = self._document.find_position(position_id)
            return position.model_copy(deep=True) if position is not None else None

    @property
    def dirty(self) -> bool:
        """True when the in-memory state has not reached durable storage."""
        return self._dirty

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def begin(self) -> StateDocument:
        """Return a private draft of the current document."""
        return self.snapshot()

    def commit(self, draft: StateDocument) -> None:
        """Make ``draft`` the current document and persist it.

        The draft is installed even when the write fails: it reflects fills
        the broker has already confirmed. The store is then marked dirty and
        the next commit or ``flush()`` writes it again.

        Raises:
            PersistenceError: If the repository write failed
        """
        payload = draft.to_json_dict()
        with self._lock:
            self._document = draft
            try:
                self._repository.save(payload)
            except PersistenceError:
                self._dirty = True
                logger.error("State commit not persisted; will retry on next write", exc_info=True)
                raise
            self._dirty = False

    def flush(self) -> None:
        """Write the current document if an earlier save failed.

        Raises:
            PersistenceError: If the write fails again
        """
        with self._lock:
            if not self._dirty:
                return
            self._repository.save(self._document.to_json_dict())
            self._dirty = False
            logger.info("Pending state written to storage")


__all__ = ["PositionStore"]
