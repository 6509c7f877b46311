# services/database/kv.py
"""
Namespaced key/value persistence for client state.

Three backends share one interface: an in-memory dict (tests), a JSON file
rewritten atomically on every commit, and a sqlite `kv` table. A
`transaction()` block groups the read-modify-write of one flow step; on an
exception nothing inside the block is persisted.
"""
from __future__ import annotations

import json
import os
import sqlite3
import tempfile
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, Optional

from services.api.logging_config import get_logger

logger = get_logger("kv")


class KeyValueStore:
    def get(self, key: str, default: Any = None) -> Any:
        raise NotImplementedError

    def set(self, key: str, value: Any) -> None:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError

    def transaction(self):
        """Context manager grouping writes; all-or-nothing."""
        raise NotImplementedError


class MemoryStore(KeyValueStore):
    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self._data: Dict[str, Any] = dict(initial or {})
        self._pending: Optional[Dict[str, Any]] = None
        self._lock = threading.RLock()

    def _view(self) -> Dict[str, Any]:
        return self._pending if self._pending is not None else self._data

    def get(self, key: str, default: Any = None) -> Any:
        # copies keep callers from mutating stored state in place
        return json.loads(json.dumps(self._view().get(key, default)))

    def set(self, key: str, value: Any) -> None:
        self._view()[key] = json.loads(json.dumps(value))

    def delete(self, key: str) -> None:
        self._view().pop(key, None)

    def keys(self) -> list:
        return sorted(self._view().keys())

    @contextmanager
    def transaction(self) -> Iterator["MemoryStore"]:
        with self._lock:
            if self._pending is not None:
                yield self
                return
            self._pending = dict(self._data)
            try:
                yield self
            except BaseException:
                self._pending = None
                raise
            self._data = self._pending
            self._pending = None


class JsonFileStore(MemoryStore):
    """Whole-file JSON state, written via temp file + os.replace."""

    def __init__(self, path: Path | str):
        self.path = Path(path)
        data: Dict[str, Any] = {}
        if self.path.exists():
            with open(self.path, "r") as f:
                data = json.load(f)
            if not isinstance(data, dict):
                raise ValueError(f"{self.path} does not hold a JSON object")
        super().__init__(data)

    def _flush(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=self.path.name, suffix=".tmp", dir=str(self.path.parent))
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(self._data, f, indent=2, sort_keys=True)
            os.replace(tmp, self.path)
        except OSError:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    def set(self, key: str, value: Any) -> None:
        with self.transaction():
            super().set(key, value)

    def delete(self, key: str) -> None:
        with self.transaction():
            super().delete(key)

    @contextmanager
    def transaction(self) -> Iterator["JsonFileStore"]:
        outer = self._pending is None
        with super().transaction():
            yield self
        if outer:
            self._flush()


SQLITE_DDL = """
PRAGMA journal_mode=WAL;

CREATE TABLE IF NOT EXISTS kv(
  key TEXT PRIMARY KEY,
  value TEXT NOT NULL
);
"""


class SqliteStore(KeyValueStore):
    def __init__(self, path: Path | str):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._cx = sqlite3.connect(str(self.path), isolation_level=None, check_same_thread=False)
        self._cx.executescript(SQLITE_DDL)
        self._depth = 0
        self._lock = threading.RLock()

    def close(self) -> None:
        self._cx.close()

    def get(self, key: str, default: Any = None) -> Any:
        row = self._cx.execute("SELECT value FROM kv WHERE key=?", (key,)).fetchone()
        return json.loads(row[0]) if row else default

    def set(self, key: str, value: Any) -> None:
        blob = json.dumps(value, separators=(",", ":"))
        self._cx.execute(
            "INSERT INTO kv(key,value) VALUES(?,?) ON CONFLICT(key) DO UPDATE SET value=excluded.value",
            (key, blob),
        )

    def delete(self, key: str) -> None:
        self._cx.execute("DELETE FROM kv WHERE key=?", (key,))

    @contextmanager
    def transaction(self) -> Iterator["SqliteStore"]:
        with self._lock:
            if self._depth:
                self._depth += 1
                try:
                    yield self
                finally:
                    self._depth -= 1
                return
            self._cx.execute("BEGIN IMMEDIATE")
            self._depth = 1
            try:
                yield self
            except BaseException:
                self._cx.execute("ROLLBACK")
                logger.debug("kv transaction rolled back")
                raise
            finally:
                self._depth = 0
            self._cx.execute("COMMIT")


class Namespace:
    """Keys of the form veilpay.<kind>.<owner>.<asset>."""

    def __init__(self, store: KeyValueStore, owner: str, asset: str):
        self.store = store
        self.owner = owner
        self.asset = asset

    def key(self, kind: str) -> str:
        return f"veilpay.{kind}.{self.owner}.{self.asset}"

    def get(self, kind: str, default: Any = None) -> Any:
        return self.store.get(self.key(kind), default)

    def set(self, kind: str, value: Any) -> None:
        self.store.set(self.key(kind), value)

    def transaction(self):
        return self.store.transaction()


def open_store(data_dir: Path | str, backend: str = "json") -> KeyValueStore:
    data_dir = Path(data_dir)
    if backend == "json":
        return JsonFileStore(data_dir / "veilpay_state.json")
    if backend == "sqlite":
        return SqliteStore(data_dir / "veilpay_state.db")
    if backend == "memory":
        return MemoryStore()
    raise ValueError(f"Unknown store backend: {backend!r}")


__all__ = [
    "KeyValueStore",
    "MemoryStore",
    "JsonFileStore",
    "SqliteStore",
    "Namespace",
    "open_store",
]
