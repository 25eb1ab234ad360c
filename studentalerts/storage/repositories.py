"""
Keyed record storage for pipeline state.

Three kinds of state are persisted, each owned by one service and injected at
construction: baselines (per student), experiment assignments (per experiment
and student) and threshold overrides (per detector type). All of them are
simple keyed JSON blobs replaced as a whole, so any key-value backend works.

Backends:
- ``InMemoryKeyValueStore``: process-local dict (tests, single-shot runs)
- ``FileKeyValueStore``: one JSON file per key, written atomically
"""

from __future__ import annotations

import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Generic, List, Optional, Type, TypeVar, Union
from urllib.parse import quote, unquote

from pydantic import BaseModel, ValidationError

from studentalerts.core.exceptions import RepositoryError

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


class KeyValueStore(ABC):
    """Minimal string key -> string value store."""

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        pass

    @abstractmethod
    def put(self, key: str, value: str) -> None:
        pass

    @abstractmethod
    def delete(self, key: str) -> None:
        pass

    @abstractmethod
    def keys(self, prefix: str = "") -> List[str]:
        pass


class InMemoryKeyValueStore(KeyValueStore):
    def __init__(self) -> None:
        self._data: Dict[str, str] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._data.get(key)

    def put(self, key: str, value: str) -> None:
        with self._lock:
            self._data[key] = value

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def keys(self, prefix: str = "") -> List[str]:
        with self._lock:
            return sorted(k for k in self._data if k.startswith(prefix))


class FileKeyValueStore(KeyValueStore):
    """
    Directory-backed store: each key maps to ``<root>/<quoted key>.json``.

    Writes go to a temporary file in the same directory followed by
    ``os.replace``, so readers see either the old or the new record.
    """

    SUFFIX = ".json"

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root)
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise RepositoryError(f"Cannot create state directory {self.root}: {e}") from e

    def _path(self, key: str) -> Path:
        return self.root / f"{quote(key, safe='')}{self.SUFFIX}"

    def get(self, key: str) -> Optional[str]:
        path = self._path(key)
        if not path.exists():
            return None
        try:
            return path.read_text(encoding="utf-8")
        except OSError as e:
            raise RepositoryError(f"Failed to read {path}: {e}") from e

    def put(self, key: str, value: str) -> None:
        path = self._path(key)
        fd, tmp_name = tempfile.mkstemp(dir=self.root, prefix=".tmp-", suffix=self.SUFFIX)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(value)
            os.replace(tmp_name, path)
        except OSError as e:
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
            raise RepositoryError(f"Failed to write {path}: {e}") from e

    def delete(self, key: str) -> None:
        try:
            self._path(key).unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            raise RepositoryError(f"Failed to delete {key}: {e}") from e

    def keys(self, prefix: str = "") -> List[str]:
        found = []
        for path in self.root.glob(f"*{self.SUFFIX}"):
            if path.name.startswith(".tmp-"):
                continue
            key = unquote(path.name[: -len(self.SUFFIX)])
            if key.startswith(prefix):
                found.append(key)
        return sorted(found)


class ModelRepository(Generic[ModelT]):
    """
    Typed view over a ``KeyValueStore`` for one record type.

    Keys are namespaced with ``prefix`` so several repositories may share a
    backend. Records that fail to parse are logged and reported as missing.
    """

    def __init__(self, store: KeyValueStore, model: Type[ModelT], prefix: str):
        self.store = store
        self.model = model
        self.prefix = prefix

    def _key(self, key: str) -> str:
        return f"{self.prefix}:{key}"

    def get(self, key: str) -> Optional[ModelT]:
        raw = self.store.get(self._key(key))
        if raw is None:
            return None
        try:
            return self.model.model_validate_json(raw)
        except ValidationError as e:
            logger.warning(f"Discarding unreadable {self.model.__name__} record '{key}': {e.error_count()} error(s)")
            return None

    def put(self, key: str, record: ModelT) -> None:
        self.store.put(self._key(key), record.model_dump_json())

    def delete(self, key: str) -> None:
        self.store.delete(self._key(key))

    def keys(self) -> List[str]:
        offset = len(self.prefix) + 1
        return [k[offset:] for k in self.store.keys(f"{self.prefix}:")]

    def all(self) -> List[ModelT]:
        records = []
        for key in self.keys():
            record = self.get(key)
            if record is not None:
                records.append(record)
        return records
