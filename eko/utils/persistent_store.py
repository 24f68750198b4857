"""Thread-safe, crash-safe JSON file store.

Uses atomic writes (tempfile + os.replace) so data is never corrupted
even if the process is killed mid-write. Backs the reflection log and
the notes file.
"""

import json
import logging
import os
import tempfile
import threading
from typing import Any, Callable

logger = logging.getLogger("eko.store")


class PersistentStore:
    """Thread-safe JSON file with atomic writes."""

    def __init__(self, file_path: str, default_data: dict = None):
        self._path = os.path.abspath(file_path)
        self._default = default_data or {}
        self._lock = threading.Lock()
        self._data = self._load()

    @property
    def path(self) -> str:
        return self._path

    def _load(self) -> dict:
        if os.path.exists(self._path):
            try:
                with open(self._path, "r", encoding="utf-8") as f:
                    return json.load(f)
            except (json.JSONDecodeError, OSError) as e:
                logger.warning("Failed to load %s: %s (using defaults)", self._path, e)
        return json.loads(json.dumps(self._default))

    def _save(self) -> None:
        """Atomic write: write to tempfile, then os.replace."""
        dir_path = os.path.dirname(self._path)
        os.makedirs(dir_path, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=dir_path, suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(self._data, f, indent=2, ensure_ascii=False, default=str)
            os.replace(tmp_path, self._path)
        except Exception:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise

    def reload(self) -> None:
        """Re-read the file from disk (external writers)."""
        with self._lock:
            self._data = self._load()

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return self._data.get(key, default)

    def update(self, key: str, value: Any) -> None:
        """Thread-safe write + persist."""
        with self._lock:
            self._data[key] = value
            self._save()

    def mutate(self, key: str, fn: Callable[[Any], Any], default: Any = None) -> Any:
        """Read-modify-write a key under the lock. Returns the new value."""
        with self._lock:
            value = fn(self._data.get(key, default))
            self._data[key] = value
            self._save()
            return value

    def append_to_list(self, key: str, item: Any, max_items: int = 100) -> None:
        """Append an item to a list field, keeping at most max_items."""
        with self._lock:
            lst = self._data.get(key, [])
            lst.append(item)
            if len(lst) > max_items:
                lst = lst[-max_items:]
            self._data[key] = lst
            self._save()

