"""Thread-safe, crash-safe JSON file store.

Uses atomic writes (tempfile + os.replace) so data is never corrupted
even if the process is killed mid-write. Backs the local calendar.
"""

import json
import logging
import os
import tempfile
import threading
from typing import Any, Optional

logger = logging.getLogger("maple.store")


class PersistentStore:
    """JSON document of named lists, persisted on every write."""

    def __init__(self, file_path: str, default_data: Optional[dict] = None):
        self._path = os.path.abspath(file_path)
        self._default = default_data or {}
        self._lock = threading.Lock()
        self._data = self._load()

    @property
    def path(self) -> str:
        return self._path

    def _load(self) -> dict:
        """Load from disk or return a copy of the defaults."""
        if os.path.exists(self._path):
            try:
                with open(self._path, "r", encoding="utf-8") as f:
                    return json.load(f)
            except (json.JSONDecodeError, OSError) as e:
                logger.warning("Failed to load %s: %s: using defaults", self._path, e)
        return json.loads(json.dumps(self._default))

    def _save(self) -> None:
        """Atomic write: write to tempfile, then os.replace."""
        dir_path = os.path.dirname(self._path)
        os.makedirs(dir_path, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=dir_path, suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(self._data, f, indent=2, default=str)
            os.replace(tmp_path, self._path)
        except Exception:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return self._data.get(key, default)

    def append_to_list(self, key: str, item: dict, max_items: int = 1000) -> None:
        """Append an item to a list field, keeping at most max_items (newest)."""
        with self._lock:
            items = self._data.get(key, []) + [item]
            self._data[key] = items[-max_items:]
            self._save()

    def update_in_list(self, key: str, item_id: str, updates: dict, id_field: str = "id") -> bool:
        """Merge ``updates`` into the item whose id matches. Returns False if absent."""
        with self._lock:
            for item in self._data.get(key, []):
                if item.get(id_field) == item_id:
                    item.update(updates)
                    self._save()
                    return True
            return False

    def remove_from_list(self, key: str, item_id: str, id_field: str = "id") -> bool:
        """Remove the item whose id matches. Returns False if absent."""
        with self._lock:
            items = self._data.get(key, [])
            kept = [item for item in items if item.get(id_field) != item_id]
            if len(kept) == len(items):
                return False
            self._data[key] = kept
            self._save()
            return True
