"""
Ordered key-value store backing the phonebook.

A single SQLite file holds several named collections (records by dn, records
by guid, per-record token sets, the inverted index, the known-dn set and sync
metadata). Values are JSON documents. Every get/put/remove is individually
atomic; there are no transactions spanning several keys.
"""

import os
import json
import sqlite3
import logging
from typing import Any, Dict, Iterator, Optional, Tuple

logger = logging.getLogger(__name__)

FORMAT_MISMATCH_HINT = "Database format mismatch. Delete the database file and run a full resync."

_SCHEMA = """
CREATE TABLE IF NOT EXISTS kv (
    collection TEXT NOT NULL,
    key TEXT NOT NULL,
    value TEXT NOT NULL,
    PRIMARY KEY (collection, key)
) WITHOUT ROWID
"""


class StoreError(Exception):
    """Raised when the store is unavailable or an operation fails."""
    pass


class StoreFormatError(StoreError):
    """Raised when the on-disk data is not in a format this store can read."""

    def __init__(self, message: str, hint: str = FORMAT_MISMATCH_HINT):
        self.hint = hint
        super().__init__(message)


def _translate(error: sqlite3.Error, action: str) -> StoreError:
    if isinstance(error, sqlite3.DatabaseError) and 'not a database' in str(error).lower():
        return StoreFormatError(f"Failed to {action}: {error}")
    if isinstance(error, sqlite3.DatabaseError) and 'malformed' in str(error).lower():
        return StoreFormatError(f"Failed to {action}: {error}")
    return StoreError(f"Failed to {action}: {error}")


class Collection:
    """A named collection of JSON values inside a KeyValueStore."""

    def __init__(self, store: 'KeyValueStore', name: str):
        self.store = store
        self.name = name

    def get(self, key: str, default: Any = None) -> Any:
        row = self.store._fetchone(
            "SELECT value FROM kv WHERE collection = ? AND key = ?",
            (self.name, key),
            f"read {self.name}[{key}]"
        )
        if row is None:
            return default
        return self._decode(key, row[0])

    def put(self, key: str, value: Any) -> None:
        try:
            encoded = json.dumps(value, sort_keys=True, separators=(',', ':'))
        except (TypeError, ValueError) as e:
            raise StoreError(f"Value for {self.name}[{key}] is not JSON serializable: {e}")
        self.store._execute(
            "INSERT INTO kv (collection, key, value) VALUES (?, ?, ?) "
            "ON CONFLICT (collection, key) DO UPDATE SET value = excluded.value",
            (self.name, key, encoded),
            f"write {self.name}[{key}]"
        )

    def remove(self, key: str) -> bool:
        """Remove a key; returns True if it existed."""
        cursor = self.store._execute(
            "DELETE FROM kv WHERE collection = ? AND key = ?",
            (self.name, key),
            f"remove {self.name}[{key}]"
        )
        return cursor.rowcount > 0

    def keys(self) -> Iterator[str]:
        """Iterate keys in order."""
        rows = self.store._fetchall(
            "SELECT key FROM kv WHERE collection = ? ORDER BY key",
            (self.name,),
            f"list {self.name} keys"
        )
        for row in rows:
            yield row[0]

    def items(self) -> Iterator[Tuple[str, Any]]:
        """Iterate (key, value) pairs in key order."""
        rows = self.store._fetchall(
            "SELECT key, value FROM kv WHERE collection = ? ORDER BY key",
            (self.name,),
            f"list {self.name} items"
        )
        for key, value in rows:
            yield key, self._decode(key, value)

    def __len__(self) -> int:
        row = self.store._fetchone(
            "SELECT COUNT(*) FROM kv WHERE collection = ?",
            (self.name,),
            f"count {self.name}"
        )
        return row[0]

    def __contains__(self, key: str) -> bool:
        row = self.store._fetchone(
            "SELECT 1 FROM kv WHERE collection = ? AND key = ?",
            (self.name, key),
            f"read {self.name}[{key}]"
        )
        return row is not None

    def _decode(self, key: str, raw: str) -> Any:
        try:
            return json.loads(raw)
        except ValueError as e:
            raise StoreFormatError(f"Corrupt value at {self.name}[{key}]: {e}")


class KeyValueStore:
    """
    SQLite-backed store of named, ordered key-value collections.

    Runs in autocommit mode, so each write is durable on its own.
    """

    def __init__(self, path: str, synchronous: str = 'NORMAL'):
        """
        Initialize the store.

        Args:
            path: Database file path (':memory:' for a private in-memory store)
            synchronous: SQLite synchronous pragma (OFF, NORMAL, FULL)
        """
        self.path = path
        self.synchronous = synchronous.upper()
        self.connection = None

    def open(self) -> 'KeyValueStore':
        if self.connection is not None:
            return self
        if self.path != ':memory:':
            directory = os.path.dirname(os.path.abspath(self.path))
            try:
                os.makedirs(directory, exist_ok=True)
            except OSError as e:
                raise StoreError(f"Cannot create store directory {directory}: {e}")

        try:
            self.connection = sqlite3.connect(self.path, isolation_level=None)
            self.connection.execute(f"PRAGMA synchronous = {self.synchronous}")
            self.connection.execute(_SCHEMA)
        except sqlite3.Error as e:
            if self.connection is not None:
                self.connection.close()
                self.connection = None
            raise _translate(e, f"open store {self.path}")

        logger.debug(f"Opened store {self.path}")
        return self

    def close(self) -> None:
        if self.connection is None:
            return
        try:
            self.connection.close()
            logger.debug(f"Closed store {self.path}")
        finally:
            self.connection = None

    def collection(self, name: str) -> Collection:
        return Collection(self, name)

    def _require_open(self) -> sqlite3.Connection:
        if self.connection is None:
            raise StoreError(f"Store {self.path} is not open")
        return self.connection

    def _execute(self, sql: str, params: tuple, action: str) -> sqlite3.Cursor:
        connection = self._require_open()
        try:
            return connection.execute(sql, params)
        except sqlite3.Error as e:
            raise _translate(e, action)

    def _fetchone(self, sql: str, params: tuple, action: str):
        return self._execute(sql, params, action).fetchone()

    def _fetchall(self, sql: str, params: tuple, action: str):
        return self._execute(sql, params, action).fetchall()

    def __enter__(self):
        return self.open()

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


class PhonebookStore(KeyValueStore):
    """The phonebook's named collections on top of a KeyValueStore."""

    LAST_SYNC_KEY = 'lastSync'

    def __init__(self, path: str, synchronous: str = 'NORMAL'):
        super().__init__(path, synchronous)
        self.users_by_dn = self.collection('usersByDN')
        self.users_by_guid = self.collection('usersByGUID')
        self.user_tokens_by_dn = self.collection('userTokensByDN')
        self.token_index = self.collection('indexDB')
        self.all_dns = self.collection('allDNs')
        self.meta = self.collection('meta')

    def get_last_sync(self) -> Optional[Dict[str, Any]]:
        return self.meta.get(self.LAST_SYNC_KEY)

    def put_last_sync(self, metadata: Dict[str, Any]) -> None:
        self.meta.put(self.LAST_SYNC_KEY, metadata)
