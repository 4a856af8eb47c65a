"""Unit tests for the SQLite model store."""

import sqlite3

import pytest

from chunkscribe.constants import STORE_SCHEMA_VERSION
from chunkscribe.errors import CacheStoreError
from chunkscribe.store import Keyspace, ModelStore


class LimitedStore(ModelStore):
    """Opens connections with a tiny maximum value length."""

    def _open(self):
        conn = super()._open()
        conn.setlimit(sqlite3.SQLITE_LIMIT_LENGTH, 1000)
        return conn


@pytest.fixture
def store(tmp_path):
    return ModelStore(tmp_path / "cache" / "models.sqlite3")


class TestModelStore:
    """Tests for keyspace operations."""

    def test_put_and_get(self, store):
        record = store.put(Keyspace.BY_ID, "tiny.en", b"weights")

        found = store.get(Keyspace.BY_ID, "tiny.en")
        assert found is not None
        assert found.data == b"weights"
        assert found.size == 7
        assert found.timestamp == record.timestamp

    def test_missing_key(self, store):
        assert store.get(Keyspace.BY_ID, "nope") is None

    def test_keyspaces_are_independent(self, store):
        store.put(Keyspace.BY_ID, "same-key", b"by id")
        assert store.get(Keyspace.BY_URL, "same-key") is None
        assert store.get_all_keys(Keyspace.BY_URL) == []

    def test_overwrite(self, store):
        store.put(Keyspace.BY_URL, "https://x/model.bin", b"old")
        store.put(Keyspace.BY_URL, "https://x/model.bin", b"newer")

        assert store.get(Keyspace.BY_URL, "https://x/model.bin").data == b"newer"
        assert len(store.get_all(Keyspace.BY_URL)) == 1

    def test_get_all_without_data(self, store):
        store.put(Keyspace.BY_ID, "a", b"12345")
        store.put(Keyspace.BY_ID, "b", b"12")

        records = store.get_all(Keyspace.BY_ID, with_data=False)

        assert [(r.key, r.size, r.data) for r in records] == [("a", 5, b""), ("b", 2, b"")]

    def test_touch_moves_record_to_newest(self, store):
        store.put(Keyspace.BY_ID, "a", b"1")
        store.put(Keyspace.BY_ID, "b", b"2")
        store.touch(Keyspace.BY_ID, "a")

        assert [r.key for r in store.get_all(Keyspace.BY_ID)] == ["b", "a"]

    def test_delete_and_clear(self, store):
        store.put(Keyspace.BY_ID, "a", b"1")
        store.put(Keyspace.BY_ID, "b", b"2")
        store.put(Keyspace.BY_URL, "u", b"3")

        store.delete(Keyspace.BY_ID, "a")
        assert store.get_all_keys(Keyspace.BY_ID) == ["b"]

        store.clear(Keyspace.BY_ID)
        assert store.get_all_keys(Keyspace.BY_ID) == []
        assert store.get_all_keys(Keyspace.BY_URL) == ["u"]

    def test_payload_lives_outside_the_database(self, store):
        payload = bytes(range(256)) * 8192  # 2 MiB
        store.put(Keyspace.BY_ID, "large", payload)

        assert store.blob_path(Keyspace.BY_ID, "large").read_bytes() == payload
        assert store.path.stat().st_size < len(payload)
        assert store.get(Keyspace.BY_ID, "large").data == payload

    def test_payload_beyond_sqlite_length_limit(self, tmp_path):
        """Records larger than SQLite's maximum value length are still stored."""
        store = LimitedStore(tmp_path / "models.sqlite3")

        store.put(Keyspace.BY_URL, "https://x/ggml-large.bin", b"w" * 10_000)

        record = store.get(Keyspace.BY_URL, "https://x/ggml-large.bin")
        assert record.size == 10_000
        assert record.data == b"w" * 10_000

    def test_missing_payload_counts_as_absent(self, store):
        store.put(Keyspace.BY_ID, "a", b"1")
        store.blob_path(Keyspace.BY_ID, "a").unlink()

        assert store.get(Keyspace.BY_ID, "a") is None
        assert store.get_all_keys(Keyspace.BY_ID) == []

    def test_delete_and_clear_remove_files(self, store):
        store.put(Keyspace.BY_ID, "a", b"1")
        store.put(Keyspace.BY_ID, "b", b"2")

        store.delete(Keyspace.BY_ID, "a")
        assert not store.blob_path(Keyspace.BY_ID, "a").exists()

        store.clear(Keyspace.BY_ID)
        assert not store.blob_path(Keyspace.BY_ID, "b").exists()

    def test_schema_created_once(self, store):
        store.get_all_keys(Keyspace.BY_ID)

        conn = sqlite3.connect(store.path)
        try:
            (version,) = conn.execute("PRAGMA user_version").fetchone()
            indexes = {row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type = 'index'")}
        finally:
            conn.close()

        assert version == STORE_SCHEMA_VERSION
        assert {"by_id_timestamp", "by_id_size", "by_url_timestamp", "by_url_size"} <= indexes

    def test_unusable_path_raises_store_error(self, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("not a directory")
        store = ModelStore(blocker / "models.sqlite3")

        with pytest.raises(CacheStoreError):
            store.get(Keyspace.BY_ID, "x")

    def test_corrupt_file_raises_store_error(self, tmp_path):
        path = tmp_path / "models.sqlite3"
        path.write_bytes(b"this is not a database" * 100)

        with pytest.raises(CacheStoreError):
            ModelStore(path).get(Keyspace.BY_ID, "x")

    def test_version_one_store_is_reset(self, tmp_path):
        path = tmp_path / "models.sqlite3"
        conn = sqlite3.connect(path)
        with conn:
            conn.execute("CREATE TABLE by_id (key TEXT PRIMARY KEY, data BLOB, timestamp REAL, size INTEGER)")
            conn.execute("INSERT INTO by_id VALUES ('tiny', x'00', 1.0, 1)")
            conn.execute("PRAGMA user_version = 1")
        conn.close()

        store = ModelStore(path)

        assert store.get_all_keys(Keyspace.BY_ID) == []
        store.put(Keyspace.BY_ID, "tiny", b"new")
        assert store.get(Keyspace.BY_ID, "tiny").data == b"new"
