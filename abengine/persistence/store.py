"""
ABEngine Key-Value Stores

Abstract byte store used for snapshots, plus an in-memory and a
file-backed implementation. Any durable backend that can get and set
bytes by key can be plugged in.
"""

from __future__ import annotations

import os
import re
import tempfile
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Optional, Union

from abengine.errors import PersistenceError


class Store(ABC):
    """Minimal durable key-value interface."""

    @abstractmethod
    def get(self, key: str) -> Optional[bytes]:
        """Return the stored bytes, or None when the key is absent."""
        pass

    @abstractmethod
    def set(self, key: str, value: bytes) -> None:
        pass


class InMemoryStore(Store):
    def __init__(self) -> None:
        self._data: Dict[str, bytes] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[bytes]:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: bytes) -> None:
        with self._lock:
            self._data[key] = bytes(value)


class FileStore(Store):
    """One file per key under ``directory``, written atomically."""

    _UNSAFE = re.compile(r"[^A-Za-z0-9._-]")

    def __init__(self, directory: Union[str, Path]):
        self._dir = Path(directory)

    def path_for(self, key: str) -> Path:
        return self._dir / f"{self._UNSAFE.sub('_', key)}.json"

    def get(self, key: str) -> Optional[bytes]:
        path = self.path_for(key)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise PersistenceError(f"Failed to read {path}: {e}", key=key) from e

    def set(self, key: str, value: bytes) -> None:
        path = self.path_for(key)
        try:
            self._dir.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=self._dir, prefix=".tmp-", suffix=".json")
            try:
                with os.fdopen(fd, "wb") as f:
                    f.write(value)
                os.replace(tmp, path)
            except BaseException:
                if os.path.exists(tmp):
                    os.remove(tmp)
                raise
        except OSError as e:
            raise PersistenceError(f"Failed to write {path}: {e}", key=key) from e
