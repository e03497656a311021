"""
Key/value persistence slot for the lightweight training pair snapshot.
"""

import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Optional


class KeyValueStore(ABC):
    """String key to string value store."""

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    def set(self, key: str, value: str):
        ...

    @abstractmethod
    def remove(self, key: str):
        ...


class InMemoryKeyValueStore(KeyValueStore):

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._data: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str):
        self._data[key] = value

    def remove(self, key: str):
        self._data.pop(key, None)


class JsonFileKeyValueStore(KeyValueStore):
    """
    Key/value store persisted as a single JSON object on disk.

    The file is read on every access and rewritten on every change, so several
    processes pointing at the same file see each other's last write.
    """

    def __init__(self, path: Path = None):
        self.path = Path(path) if path else Path(".cache/pet_identification/storage.json")
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.logger = logging.getLogger(__name__)

    def _read(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        with open(self.path, 'r') as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise ValueError(f"Storage file is not a JSON object: {self.path}")
        return data

    def _write(self, data: Dict[str, str]):
        tmp_path = self.path.with_suffix(self.path.suffix + '.tmp')
        with open(tmp_path, 'w') as f:
            json.dump(data, f, indent=2)
        tmp_path.replace(self.path)

    def get(self, key: str) -> Optional[str]:
        return self._read().get(key)

    def set(self, key: str, value: str):
        data = self._read()
        data[key] = value
        self._write(data)
        self.logger.debug(f"Stored {len(value)} characters under '{key}' in {self.path}")

    def remove(self, key: str):
        data = self._read()
        if key in data:
            del data[key]
            self._write(data)
