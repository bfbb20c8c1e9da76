"""
Key-value persistence for engine state.

The engine treats storage as an opaque key-value collaborator: every failure
surfaces as StorageFailure, which callers log and otherwise ignore.
"""

import copy
import logging
import threading
from typing import Any, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from aegis.errors import StorageFailure
from aegis.models.state import StateEntry

logger = logging.getLogger(__name__)


class KeyValueStore:
    """Interface: JSON-compatible values under string keys."""

    def get(self, key: str) -> Optional[Any]:
        raise NotImplementedError

    def set(self, key: str, value: Any) -> None:
        raise NotImplementedError


class InMemoryKeyValueStore(KeyValueStore):
    """Process-local store. Values are deep-copied in and out."""

    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self._data: Dict[str, Any] = copy.deepcopy(initial) if initial else {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            return copy.deepcopy(self._data.get(key))

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._data[key] = copy.deepcopy(value)


class SqlKeyValueStore(KeyValueStore):
    """Store backed by the kv_state table."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def get(self, key: str) -> Optional[Any]:
        db = self._session_factory()
        try:
            entry = db.get(StateEntry, key)
            return entry.value if entry is not None else None
        except SQLAlchemyError as e:
            raise StorageFailure(f"could not read '{key}': {e}") from e
        finally:
            db.close()

    def set(self, key: str, value: Any) -> None:
        db = self._session_factory()
        try:
            entry = db.get(StateEntry, key)
            if entry is None:
                db.add(StateEntry(key=key, value=value))
            else:
                entry.value = value
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise StorageFailure(f"could not write '{key}': {e}") from e
        finally:
            db.close()
