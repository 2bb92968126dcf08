#!/usr/bin/env python3
"""
position_store.py — Durable, versioned storage for positions.

The store keeps the whole collection as one JSON array under a versioned key
("cbc_positions_v1.0"), so a future schema can live beside the old one
instead of misreading it. A missing or corrupt payload reads as empty, but a
mutation over a corrupt payload fails with PersistenceError rather than
overwrite it. Records that no longer parse are hidden from reads and kept
verbatim on every write.

Backends share the small key/value StorageAdapter interface:
  MemoryStorageAdapter    — dict in this process
  JsonFileStorageAdapter  — one JSON file (default, lives on the data volume)
  SqliteStorageAdapter    — kv table, shareable between containers

Each read-modify-write runs under the store's lock, so two requests in one
process cannot both close the same position. Two processes writing the same
backend still race: last write wins.
"""

import json
import logging
import os
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path

from positions import PersistenceError, ValidationError, position_from_dict

log = logging.getLogger("positions.store")


# =============================================================================
# Storage adapters
# =============================================================================

class StorageAdapter:
    """Key/value capability every backend provides. Values are strings."""

    def get(self, key):
        raise NotImplementedError

    def set(self, key, value):
        raise NotImplementedError

    def delete(self, key):
        raise NotImplementedError

    def get_all(self):
        raise NotImplementedError


class MemoryStorageAdapter(StorageAdapter):
    def __init__(self, initial=None):
        self._data = dict(initial or {})

    def get(self, key):
        return self._data.get(key)

    def set(self, key, value):
        self._data[key] = value

    def delete(self, key):
        self._data.pop(key, None)

    def get_all(self):
        return dict(self._data)


class JsonFileStorageAdapter(StorageAdapter):
    """All keys in one JSON object file, rewritten atomically on every set."""

    def __init__(self, path):
        self.path = Path(path)

    def _load(self):
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text())
        except (json.JSONDecodeError, OSError, UnicodeDecodeError) as e:
            raise PersistenceError(f"Unreadable storage file {self.path}: {e}") from e
        if not isinstance(data, dict):
            raise PersistenceError(f"Storage file {self.path} does not hold a JSON object")
        return data

    def _save(self, data):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(data, indent=2))
        os.replace(tmp, self.path)

    def get(self, key):
        value = self._load().get(key)
        return value if isinstance(value, str) else None

    def set(self, key, value):
        data = self._load()
        data[key] = value
        self._save(data)

    def delete(self, key):
        data = self._load()
        if key in data:
            del data[key]
            self._save(data)

    def get_all(self):
        return {k: v for k, v in self._load().items() if isinstance(v, str)}


class SqliteStorageAdapter(StorageAdapter):
    def __init__(self, path):
        self.path = str(path)
        if self.path != ":memory:":
            os.makedirs(os.path.dirname(os.path.abspath(self.path)), exist_ok=True)
        self._conn = sqlite3.connect(self.path, check_same_thread=False)
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS kv_store (
                key        TEXT PRIMARY KEY,
                value      TEXT NOT NULL,
                updated_at TEXT DEFAULT (datetime('now'))
            )
        """)
        self._conn.commit()

    def get(self, key):
        row = self._conn.execute(
            "SELECT value FROM kv_store WHERE key = ?", (key,)).fetchone()
        return row[0] if row else None

    def set(self, key, value):
        with self._conn:
            self._conn.execute("""
                INSERT INTO kv_store (key, value) VALUES (?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value,
                                               updated_at = datetime('now')
            """, (key, value))

    def delete(self, key):
        with self._conn:
            self._conn.execute("DELETE FROM kv_store WHERE key = ?", (key,))

    def get_all(self):
        return dict(self._conn.execute("SELECT key, value FROM kv_store").fetchall())

    def close(self):
        self._conn.close()


def make_adapter(backend, data_dir, namespace="cbc_positions"):
    """Build the adapter named by the storage_backend setting."""
    if backend == "memory":
        return MemoryStorageAdapter()
    if backend == "json":
        return JsonFileStorageAdapter(Path(data_dir) / f"{namespace}.json")
    if backend == "sqlite":
        return SqliteStorageAdapter(Path(data_dir) / f"{namespace}.db")
    raise ValueError(f"Unknown storage backend: {backend}")


# =============================================================================
# Position store
# =============================================================================

class PositionStore:
    def __init__(self, adapter, namespace="cbc_positions", version="1.0"):
        self.adapter = adapter
        self.namespace = namespace
        self.version = version
        self._lock = threading.RLock()

    @property
    def key(self):
        return f"{self.namespace}_v{self.version}"

    @contextmanager
    def transaction(self):
        """Hold the store lock across a read-compute-write sequence."""
        with self._lock:
            yield self

    # ── raw records ───────────────────────────────────────────────────────────

    def _read_records(self, strict=False):
        """
        The stored JSON array, unparsed. An absent key is an empty list.

        A failed read or a payload that isn't a JSON array logs and reads as
        empty, unless strict: mutations pass strict=True and get a
        PersistenceError, so they never write over data they couldn't read.
        """
        try:
            raw = self.adapter.get(self.key)
        except Exception as e:
            log.error(f"Storage read failed for {self.key}: {e}")
            if strict:
                raise PersistenceError("Failed to read positions") from e
            return []
        if not raw:
            return []
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, TypeError) as e:
            if strict:
                raise PersistenceError(f"Corrupt payload under {self.key}") from e
            log.warning(f"Corrupt payload under {self.key}, treating as empty")
            return []
        if not isinstance(data, list):
            if strict:
                raise PersistenceError(f"Non-array payload under {self.key}")
            log.warning(f"Non-array payload under {self.key}, treating as empty")
            return []
        return data

    def _write_records(self, records):
        try:
            self.adapter.set(self.key, json.dumps(records))
        except Exception as e:
            log.error(f"Failed to save positions: {e}")
            raise PersistenceError("Failed to save positions") from e

    def _load(self):
        positions = []
        for record in self._read_records():
            try:
                positions.append(position_from_dict(record))
            except ValidationError as e:
                log.warning(f"Skipping unreadable position record: {e}")
        return positions

    # ── public API ────────────────────────────────────────────────────────────

    def list_all(self):
        """Every position, newest openedAt first."""
        with self._lock:
            positions = self._load()
        return sorted(positions, key=lambda p: p.opened_at, reverse=True)

    def get(self, position_id):
        with self._lock:
            for p in self._load():
                if p.id == position_id:
                    return p
        return None

    def add(self, position):
        with self._lock:
            records = self._read_records(strict=True)
            if any(_record_id(r) == position.id for r in records):
                raise ValidationError(f"Duplicate position id: {position.id}")
            records.append(position.to_dict())
            self._write_records(records)

    def update(self, position_id, fields):
        """
        Merge fields (camelCase record keys) into the matching record.
        Returns False when no record has that id. The merged record must
        still be a valid position; an update can't change the id.
        """
        with self._lock:
            records = self._read_records(strict=True)
            for i, record in enumerate(records):
                if _record_id(record) != position_id:
                    continue
                merged = position_from_dict({**record, **fields, "id": position_id})
                records[i] = merged.to_dict()
                self._write_records(records)
                return True
        return False

    def delete(self, position_id):
        with self._lock:
            records = self._read_records(strict=True)
            kept = [r for r in records if _record_id(r) != position_id]
            if len(kept) == len(records):
                return False
            self._write_records(kept)
        return True


def _record_id(record):
    return record.get("id") if isinstance(record, dict) else None
