"""
Key/value persistence for monitoring state.

Values are arbitrary JSON-serializable payloads addressed by
(namespace, key). Each key is stored independently so that a single
save stays cheap and a single corrupt key never blocks the others.
"""

from __future__ import annotations

import copy
import json
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Tuple

from shared.logging.logger import get_logger
from shared.monitoring.errors import PersistenceFailure
from shared.storage.paths import safe_key

log = get_logger("shared.storage.persistence")


class PersistenceStore(ABC):
    """
    Durable namespace/key -> value storage.

    load() returns None for keys that were never saved.
    Both methods raise PersistenceFailure on I/O or decode errors.
    """

    @abstractmethod
    def load(self, namespace: str, key: str) -> Any:
        raise NotImplementedError

    @abstractmethod
    def save(self, namespace: str, key: str, value: Any) -> None:
        raise NotImplementedError


class JsonFileStore(PersistenceStore):
    """
    One JSON document per key under <root>/<namespace>/<key>.json.

    Writes are atomic (temp file + replace) so readers never observe a
    partially written document.
    """

    def __init__(self, root: Path | str) -> None:
        self._root = Path(root)
        self._root.mkdir(parents=True, exist_ok=True)

    @property
    def root(self) -> Path:
        return self._root

    def _path(self, namespace: str, key: str) -> Path:
        return self._root / safe_key(namespace) / f"{safe_key(key)}.json"

    # ------------------------------------------------------------------
    # Atomic writer
    # ------------------------------------------------------------------

    def _write_atomic(self, path: Path, payload: Any) -> None:
        serialized = json.dumps(payload, indent=2)
        path.parent.mkdir(parents=True, exist_ok=True)

        with tempfile.NamedTemporaryFile(
            "w", dir=path.parent, delete=False, encoding="utf-8"
        ) as tmp:
            tmp.write(serialized)
            tmp.flush()
            os.fsync(tmp.fileno())
            temp_path = Path(tmp.name)

        temp_path.replace(path)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def load(self, namespace: str, key: str) -> Any:
        path = self._path(namespace, key)
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except Exception as e:
            raise PersistenceFailure(f"Failed to load {namespace}/{key}: {e}") from e

    def save(self, namespace: str, key: str, value: Any) -> None:
        path = self._path(namespace, key)
        try:
            self._write_atomic(path, value)
        except Exception as e:
            raise PersistenceFailure(f"Failed to save {namespace}/{key}: {e}") from e


class InMemoryStore(PersistenceStore):
    """
    Process-local store for ephemeral runs.

    Values are round-tripped through JSON on save so callers observe the
    same serialization constraints as the file store.
    """

    def __init__(self) -> None:
        self._data: Dict[Tuple[str, str], Any] = {}

    def load(self, namespace: str, key: str) -> Any:
        value = self._data.get((namespace, key))
        return copy.deepcopy(value)

    def save(self, namespace: str, key: str, value: Any) -> None:
        try:
            self._data[(namespace, key)] = json.loads(json.dumps(value))
        except (TypeError, ValueError) as e:
            raise PersistenceFailure(f"Value for {namespace}/{key} is not serializable: {e}") from e

    def keys(self, namespace: str) -> list:
        return sorted(key for ns, key in self._data if ns == namespace)


def build_store(backend: str, root: Path | str) -> PersistenceStore:
    backend = (backend or "json").strip().lower()
    if backend == "memory":
        log.info("Using in-memory persistence (state is not durable)")
        return InMemoryStore()
    if backend != "json":
        log.warning(f"Unknown storage backend '{backend}'; using json files")
    log.info(f"Using JSON file persistence at {root}")
    return JsonFileStore(root)


__all__ = [
    "PersistenceStore",
    "JsonFileStore",
    "InMemoryStore",
    "build_store",
]
