"""
Long-lived storage for user category corrections.

Corrections map a normalized description (trimmed, lower-cased) to a
category. They outlive import sessions, so they sit behind a small key-value
store interface that can be backed by memory or a JSON file.
"""

import logging
import threading
from pathlib import Path
from typing import Any, Dict, Optional, Protocol

from .utils import load_json, save_json

logger = logging.getLogger(__name__)

CORRECTIONS_STORAGE_KEY = "classifier_corrections"


class KeyValueStore(Protocol):
    def get(self, key: str) -> Optional[Any]: ...

    def set(self, key: str, value: Any) -> None: ...

    def delete(self, key: str) -> None: ...


class InMemoryKeyValueStore:
    """Dictionary-backed store, mainly for tests and short-lived processes."""

    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self._data: Dict[str, Any] = dict(initial or {})

    def get(self, key: str) -> Optional[Any]:
        return self._data.get(key)

    def set(self, key: str, value: Any) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)


class JsonFileKeyValueStore:
    """Stores all keys in one JSON object on disk."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def get(self, key: str) -> Optional[Any]:
        return load_json(self.path, {}).get(key)

    def set(self, key: str, value: Any) -> None:
        data = load_json(self.path, {})
        data[key] = value
        save_json(self.path, data)

    def delete(self, key: str) -> None:
        data = load_json(self.path, {})
        if key in data:
            del data[key]
            save_json(self.path, data)


def normalize_description(description: Optional[str]) -> str:
    return (description or "").strip().lower()


class CorrectionMap:
    """
    Normalized description -> category, persisted through a KeyValueStore.

    Writes are serialized with a lock; the same key is simply overwritten.
    """

    def __init__(self, store: Optional[KeyValueStore] = None):
        self.store = store if store is not None else InMemoryKeyValueStore()
        self._lock = threading.Lock()

    def all(self) -> Dict[str, str]:
        try:
            stored = self.store.get(CORRECTIONS_STORAGE_KEY)
        except OSError as e:
            logger.warning("Error reading corrections: %s", e)
            return {}
        return dict(stored) if isinstance(stored, dict) else {}

    def get(self, description: str) -> Optional[str]:
        return self.all().get(normalize_description(description))

    def set(self, description: str, category: str) -> None:
        key = normalize_description(description)
        with self._lock:
            corrections = self.all()
            corrections[key] = category
            self.store.set(CORRECTIONS_STORAGE_KEY, corrections)

    def clear(self) -> None:
        with self._lock:
            self.store.delete(CORRECTIONS_STORAGE_KEY)

    def find(
        self, description: str, corrections: Optional[Dict[str, str]] = None
    ) -> Optional[str]:
        """
        Exact match on the normalized description first, then the first
        stored pattern that contains it or is contained in it.

        Args:
            description: Description to look up
            corrections: Map previously returned by all(); read from the
                store when omitted
        """
        normalized = normalize_description(description)
        if not normalized:
            return None

        if corrections is None:
            corrections = self.all()
        if normalized in corrections:
            return corrections[normalized]

        for pattern, category in corrections.items():
            if pattern in normalized or normalized in pattern:
                return category
        return None

    def __len__(self) -> int:
        return len(self.all())
