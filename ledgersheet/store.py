"""
KeyValueStore - Persisted key-value store for datasets, jobs and triggers.

The store holds JSON-compatible values under a flat key space:
- dataset_<id>                  dataset records
- dataset_index                 ordered list of dataset ids
- trigger_for_<datasetId>       dataset -> trigger mapping
- dataset_for_trigger_<id>      trigger -> dataset mapping
- job_<id>                      short-lived job records
- lock_<realm>                  account lock leases
- host_triggers                 local trigger host state
- qbo_*                         session and token state

Storage backends:
- In-memory (for testing)
- File-based (single JSON document, replaced atomically on write and
  guarded by an inter-process file lock)
"""

import copy
import json
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Callable, Optional

from filelock import FileLock


class KeyValueStore(ABC):
    """
    Abstract base class for key-value storage.

    Values are JSON-compatible; get() returns a copy so callers cannot
    mutate stored state without going through set() or update().
    """

    @abstractmethod
    def get(self, key: str, default: Any = None) -> Any:
        """Return the value stored under key, or default."""
        pass

    @abstractmethod
    def set(self, key: str, value: Any) -> None:
        """Store value under key."""
        pass

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Delete key. Returns True if it existed."""
        pass

    @abstractmethod
    def keys(self, prefix: str = "") -> list[str]:
        """Return stored keys starting with prefix, sorted."""
        pass

    @abstractmethod
    def update(self, key: str, fn: Callable[[Any], Any]) -> Any:
        """
        Atomically replace the value under key with fn(current).

        fn receives the current value (None when missing). Returning None
        deletes the key. No other writer can interleave between the read
        and the write.

        Returns:
            The value now stored (None if deleted)
        """
        pass


class InMemoryKeyValueStore(KeyValueStore):
    """
    In-memory implementation of KeyValueStore for testing.

    All data is lost when the instance is garbage collected.
    """

    def __init__(self, initial: Optional[dict[str, Any]] = None):
        self._data: dict[str, Any] = copy.deepcopy(initial) if initial else {}
        self._lock = threading.RLock()

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            if key not in self._data:
                return default
            return copy.deepcopy(self._data[key])

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._data[key] = copy.deepcopy(value)

    def delete(self, key: str) -> bool:
        with self._lock:
            if key not in self._data:
                return False
            del self._data[key]
            return True

    def keys(self, prefix: str = "") -> list[str]:
        with self._lock:
            return sorted(k for k in self._data if k.startswith(prefix))

    def update(self, key: str, fn: Callable[[Any], Any]) -> Any:
        with self._lock:
            value = fn(copy.deepcopy(self._data.get(key)))
            if value is None:
                self._data.pop(key, None)
                return None
            self._data[key] = copy.deepcopy(value)
            return copy.deepcopy(value)


class FileKeyValueStore(KeyValueStore):
    """
    File-based implementation of KeyValueStore.

    Stores every key in one JSON document. The document is re-read on each
    access so separate invocations sharing the file see each other's writes,
    and replaced atomically (write to temp file, then rename) on each write.
    Every read-modify-write holds `<path>.lock`, so concurrent processes
    (e.g. cron-driven trigger fires) never drop each other's keys.
    """

    def __init__(self, path: Path | str, lock_timeout: float = 30.0):
        self._path = Path(path).expanduser()
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = FileLock(f"{self._path}.lock", timeout=lock_timeout)

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> dict[str, Any]:
        if not self._path.exists():
            return {}
        with open(self._path) as f:
            text = f.read()
        if not text.strip():
            return {}
        data = json.loads(text)
        if not isinstance(data, dict):
            raise ValueError(f"Store file {self._path} does not contain a JSON object")
        return data

    def _save(self, data: dict[str, Any]) -> None:
        fd, tmp_path = tempfile.mkstemp(
            prefix=".store-", suffix=".json", dir=str(self._path.parent)
        )
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(data, f, indent=2, sort_keys=True)
            os.replace(tmp_path, self._path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def get(self, key: str, default: Any = None) -> Any:
        return self._load().get(key, default)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            data = self._load()
            data[key] = value
            self._save(data)

    def delete(self, key: str) -> bool:
        with self._lock:
            data = self._load()
            if key not in data:
                return False
            del data[key]
            self._save(data)
            return True

    def keys(self, prefix: str = "") -> list[str]:
        return sorted(k for k in self._load() if k.startswith(prefix))

    def update(self, key: str, fn: Callable[[Any], Any]) -> Any:
        with self._lock:
            data = self._load()
            value = fn(copy.deepcopy(data.get(key)))
            if value is None:
                if data.pop(key, None) is not None:
                    self._save(data)
                return None
            data[key] = value
            self._save(data)
            return copy.deepcopy(value)
