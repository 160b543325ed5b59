"""Durable storage for the session state document.

The store talks to storage only through ``StateRepository``, so the file
mechanics can be swapped without touching the lifecycle controller.
"""

from __future__ import annotations

import copy
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Protocol

from session_trading_system.core.errors import PersistenceError, StateValidationError

logger = logging.getLogger(__name__)


class StateRepository(Protocol):
    """Load and atomically replace the persisted document."""

    def load(self) -> dict[str, Any] | None:
        """Return the stored document, or None when nothing has been saved."""
        ...

    def save(self, document: dict[str, Any]) -> None:
        """Replace the stored document in one step.

        Raises:
            PersistenceError: If the document could not be written; the
                previously stored document must remain intact
        """
        ...


class JsonFileRepository:
    """UTF-8 JSON file written via a temporary file and ``os.replace``."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path).expanduser()

    def load(self) -> dict[str, Any] | None:
        if not self.path.exists():
            return None
        try:
            with self.path.open("r", encoding="utf-8") as fh:
                data = json.load(fh)
        except json.JSONDecodeError as exc:
            raise StateValidationError(f"State file {self.path} is not valid JSON: {exc}") from exc
        except OSError as exc:
            raise PersistenceError(f"Cannot read state file {self.path}: {exc}") from exc
        if not isinstance(data, dict):
            raise StateValidationError(f"State file {self.path} must contain a JSON object")
        return data

    def save(self, document: dict[str, Any]) -> None:
        tmp_name: str | None = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                "w",
                encoding="utf-8",
                dir=self.path.parent,
                prefix=f".{self.path.name}.",
                suffix=".tmp",
                delete=False,
            ) as fh:
                tmp_name = fh.name
                json.dump(document, fh, ensure_ascii=False, indent=2)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_name, self.path)
            tmp_name = None
        except (OSError, TypeError, ValueError) as exc:
            raise PersistenceError(f"Failed to write state file {self.path}: {exc}") from exc
        finally:
            if tmp_name is not None:
                try:
                    os.unlink(tmp_name)
                except OSError:
                    logger.warning("Could not remove temporary state file %s", tmp_name)


class InMemoryRepository:
    """Repository holding a deep copy of the last saved document."""

    def __init__(self, document: dict[str, Any] | None = None) -> None:
        self._document = copy.deepcopy(document)
        self.save_count = 0

    def load(self) -> dict[str, Any] | None:
        return copy.deepcopy(self._document)

    def save(self, document: dict[str, Any]) -> None:
        self._document = copy.deepcopy(document)
        self.save_count += 1


__all__ = ["InMemoryRepository", "JsonFileRepository", "StateRepository"]
