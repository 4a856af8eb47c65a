"""Durable key-value store for downloaded model bytes.

One SQLite file with two independent keyspaces, "by id" and "by url". They
are never cross-queried; the same bytes may live in both. SQLite holds the
key, timestamp and size of each record; the model bytes themselves live in
one file per record under ``blobs/`` next to the database, since the larger
models exceed SQLite's maximum value length. Every backend failure surfaces
as CacheStoreError.
"""

import enum
import hashlib
import os
import shutil
import sqlite3
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from chunkscribe.constants import BLOB_DIR_NAME, STORE_SCHEMA_VERSION
from chunkscribe.errors import CacheStoreError


class Keyspace(enum.Enum):
    BY_ID = "by_id"
    BY_URL = "by_url"


@dataclass(frozen=True)
class CacheRecord:
    """One stored model. ``data`` is empty when fetched without payload."""

    key: str
    data: bytes
    timestamp: float
    size: int


class ModelStore:
    """SQLite-backed store, opened with a schema version on first use.

    Methods are blocking; ModelCache runs them in the default executor.
    Each operation opens its own connection, so the store may be used from
    any thread.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self.blob_dir = self.path.parent / BLOB_DIR_NAME

    def blob_path(self, keyspace: Keyspace, key: str) -> Path:
        """File holding the bytes of ``key``; keys are hashed into file names."""
        digest = hashlib.sha256(key.encode("utf-8")).hexdigest()
        return self.blob_dir / keyspace.value / f"{digest}.bin"

    def _open(self) -> sqlite3.Connection:
        return sqlite3.connect(self.path, timeout=30)

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            conn = self._open()
        except (sqlite3.Error, OSError) as e:
            raise CacheStoreError(f"Cannot open model store {self.path}: {e}") from e
        try:
            self._migrate(conn)
            with conn:
                yield conn
        except sqlite3.Error as e:
            raise CacheStoreError(f"Model store operation failed: {e}") from e
        finally:
            conn.close()

    @contextmanager
    def _files(self, action: str) -> Iterator[None]:
        try:
            yield
        except OSError as e:
            raise CacheStoreError(f"Model store could not {action} payload: {e}") from e

    @staticmethod
    def _migrate(conn: sqlite3.Connection) -> None:
        (version,) = conn.execute("PRAGMA user_version").fetchone()
        if version >= STORE_SCHEMA_VERSION:
            return
        with conn:
            for keyspace in Keyspace:
                table = keyspace.value
                # Version 1 kept the payload in a BLOB column; those rows are dropped.
                conn.execute(f"DROP TABLE IF EXISTS {table}")
                conn.execute(
                    f"CREATE TABLE {table} ("
                    "key TEXT PRIMARY KEY, timestamp REAL NOT NULL, size INTEGER NOT NULL)"
                )
                conn.execute(f"CREATE INDEX {table}_timestamp ON {table} (timestamp)")
                conn.execute(f"CREATE INDEX {table}_size ON {table} (size)")
            conn.execute(f"PRAGMA user_version = {STORE_SCHEMA_VERSION}")

    def put(self, keyspace: Keyspace, key: str, data: bytes) -> CacheRecord:
        """Insert or overwrite the record under ``key``."""
        record = CacheRecord(key=key, data=bytes(data), timestamp=time.time(), size=len(data))
        target = self.blob_path(keyspace, key)
        partial = target.with_suffix(".part")
        with self._files("write"):
            target.parent.mkdir(parents=True, exist_ok=True)
            partial.write_bytes(record.data)
            os.replace(partial, target)
        try:
            with self._connect() as conn:
                conn.execute(
                    f"INSERT OR REPLACE INTO {keyspace.value} (key, timestamp, size) VALUES (?, ?, ?)",
                    (record.key, record.timestamp, record.size),
                )
        except CacheStoreError:
            target.unlink(missing_ok=True)
            raise
        return record

    def get(self, keyspace: Keyspace, key: str) -> CacheRecord | None:
        """Return the record under ``key``, or None.

        A row whose payload file has gone missing counts as absent and is
        removed.
        """
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT key, timestamp, size FROM {keyspace.value} WHERE key = ?",
                (key,),
            ).fetchone()
        if row is None:
            return None
        data = self._read(keyspace, key)
        if data is None:
            self.delete(keyspace, key)
            return None
        return CacheRecord(key=row[0], data=data, timestamp=row[1], size=row[2])

    def get_all_keys(self, keyspace: Keyspace) -> list[str]:
        with self._connect() as conn:
            rows = conn.execute(f"SELECT key FROM {keyspace.value} ORDER BY key").fetchall()
        return [row[0] for row in rows]

    def get_all(self, keyspace: Keyspace, with_data: bool = True) -> list[CacheRecord]:
        """All records of a keyspace, oldest first.

        Args:
            keyspace: Keyspace to read.
            with_data: Load model bytes too; False returns metadata only.
        """
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT key, timestamp, size FROM {keyspace.value} ORDER BY timestamp"
            ).fetchall()
        records = []
        for key, ts, size in rows:
            data = b""
            if with_data:
                data = self._read(keyspace, key)
                if data is None:
                    continue
            records.append(CacheRecord(key=key, data=data, timestamp=ts, size=size))
        return records

    def touch(self, keyspace: Keyspace, key: str) -> None:
        """Mark a record as just used."""
        with self._connect() as conn:
            conn.execute(
                f"UPDATE {keyspace.value} SET timestamp = ? WHERE key = ?",
                (time.time(), key),
            )

    def delete(self, keyspace: Keyspace, key: str) -> None:
        with self._connect() as conn:
            conn.execute(f"DELETE FROM {keyspace.value} WHERE key = ?", (key,))
        with self._files("delete"):
            self.blob_path(keyspace, key).unlink(missing_ok=True)

    def clear(self, keyspace: Keyspace) -> None:
        with self._connect() as conn:
            conn.execute(f"DELETE FROM {keyspace.value}")
        directory = self.blob_dir / keyspace.value
        if directory.exists():
            with self._files("clear"):
                shutil.rmtree(directory)

    def _read(self, keyspace: Keyspace, key: str) -> bytes | None:
        with self._files("read"):
            try:
                return self.blob_path(keyspace, key).read_bytes()
            except FileNotFoundError:
                return None
