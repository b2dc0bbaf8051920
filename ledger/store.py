"""
Key-value stores for ledger snapshots.

Values are JSON documents. Both stores follow an explicit lifecycle:
open, get/set/remove, flush, close.
"""

import json
import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from .errors import StoreError

logger = logging.getLogger(__name__)


class KeyValueStore(ABC):
    """Opaque string-keyed store of JSON values"""

    def __init__(self):
        self._data: Dict[str, Any] = {}
        self._is_open = False
        self._lock = threading.RLock()

    @property
    def is_open(self) -> bool:
        return self._is_open

    def _require_open(self):
        if not self._is_open:
            raise StoreError(f"{type(self).__name__} is not open")

    @staticmethod
    def _encode(value: Any) -> Any:
        try:
            return json.loads(json.dumps(value))
        except (TypeError, ValueError) as e:
            raise StoreError(f"Value is not JSON serializable: {e}")

    def open(self) -> 'KeyValueStore':
        with self._lock:
            if not self._is_open:
                self._load()
                self._is_open = True
        return self

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            self._require_open()
            if key not in self._data:
                return default
            return json.loads(json.dumps(self._data[key]))

    def set(self, key: str, value: Any):
        with self._lock:
            self._require_open()
            self._data[key] = self._encode(value)

    def remove(self, key: str) -> bool:
        with self._lock:
            self._require_open()
            return self._data.pop(key, None) is not None

    def keys(self, prefix: str = "") -> List[str]:
        with self._lock:
            self._require_open()
            return sorted(k for k in self._data if k.startswith(prefix))

    def flush(self):
        with self._lock:
            self._require_open()
            self._persist()

    def close(self):
        with self._lock:
            if self._is_open:
                self._persist()
                self._is_open = False

    def __enter__(self):
        return self.open()

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    @abstractmethod
    def _load(self):
        """Populate self._data from the backing medium"""

    @abstractmethod
    def _persist(self):
        """Write self._data to the backing medium"""


class InMemoryStore(KeyValueStore):
    """Process-local store; contents survive close/open on the same instance"""

    def _load(self):
        pass

    def _persist(self):
        pass


class JsonFileStore(KeyValueStore):
    """Single JSON file, replaced atomically on flush"""

    def __init__(self, path: Union[str, Path]):
        super().__init__()
        self.path = Path(path)

    def _load(self):
        if not self.path.exists():
            self._data = {}
            return

        try:
            with open(self.path, 'r') as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise StoreError(f"Failed to read store {self.path}: {e}")

        if not isinstance(data, dict):
            raise StoreError(f"Store {self.path} does not contain a JSON object")

        self._data = data
        logger.info(f"Opened store {self.path} with {len(data)} keys")

    def _persist(self):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=str(self.path.parent),
                                        prefix=f".{self.path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, 'w') as f:
                json.dump(self._data, f, indent=2, sort_keys=True)
            os.replace(tmp_path, self.path)
        except OSError as e:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise StoreError(f"Failed to write store {self.path}: {e}")

        logger.debug(f"Flushed {len(self._data)} keys to {self.path}")


def create_store(backend: str, path: Optional[Union[str, Path]] = None) -> KeyValueStore:
    """Build a store from a StorageConfig backend name"""
    if backend == "memory":
        return InMemoryStore()
    if backend == "json":
        if path is None:
            raise StoreError("json backend requires a path")
        return JsonFileStore(path)
    raise StoreError(f"Unknown storage backend: {backend}")
