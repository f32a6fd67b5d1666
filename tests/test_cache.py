"""Tests for the SQLite extraction cache and the background sweeper."""

import sqlite3
import threading

import pytest

from icsengine.core.errors import StorageCorrupted
from icsengine.storage.cache import ExtractionCache
from icsengine.storage import sweeper
from icsengine.storage.sweeper import CacheSweeper, sweep_once


def test_tables_exist(cache):
    tables = {
        r[0]
        for r in cache._conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table'"
        ).fetchall()
    }
    assert "cache" in tables


def test_set_then_get_returns_value(cache):
    value = {"events": [{"summary": "A"}], "confidence": 0.9, "nested": {"k": [1, 2]}}
    cache.set("k1", value, ttl_seconds=60)
    assert cache.get("k1") == value


def test_missing_key_is_none(cache):
    assert cache.get("nope") is None


def test_expired_entry_absent_before_sweep(cache, clock):
    cache.set("k1", {"v": 1}, ttl_seconds=60)
    clock.advance(59)
    assert cache.get("k1") == {"v": 1}
    clock.advance(1)
    assert cache.get("k1") is None
    # still on disk until swept
    assert cache.stats() == {"total": 1, "expired": 1}


def test_overwrite_keeps_created_at_and_resets_expiry(cache, clock):
    cache.set("k1", {"v": 1}, ttl_seconds=60)
    created = cache._conn.execute("SELECT created_at FROM cache WHERE key='k1'").fetchone()[0]

    clock.advance(30)
    cache.set("k1", {"v": 2}, ttl_seconds=60)
    row = cache._conn.execute(
        "SELECT created_at, updated_at, expires_at FROM cache WHERE key='k1'"
    ).fetchone()

    assert row["created_at"] == created
    assert row["updated_at"] == created + 30
    assert row["expires_at"] == created + 90
    clock.advance(45)
    assert cache.get("k1") == {"v": 2}


def test_rewrite_after_expiry_resets_created_at(cache, clock):
    cache.set("k1", {"v": 1}, ttl_seconds=10)
    clock.advance(20)
    cache.set("k1", {"v": 2}, ttl_seconds=10)
    row = cache._conn.execute("SELECT created_at, updated_at FROM cache WHERE key='k1'").fetchone()
    assert row["created_at"] == row["updated_at"]


def test_corrupted_value_is_deleted_on_read(cache):
    cache.set("k1", {"v": 1}, ttl_seconds=60)
    cache._conn.execute("UPDATE cache SET value = '{not json' WHERE key = 'k1'")
    cache._conn.commit()

    assert cache.get("k1") is None
    assert cache._conn.execute("SELECT COUNT(*) FROM cache").fetchone()[0] == 0


class _RefreshAfterRead:
    """Connection wrapper: another writer refreshes the key right after a read."""

    def __init__(self, conn, other, key):
        self._conn = conn
        self._other = other
        self._key = key

    def execute(self, sql, params=()):
        cur = self._conn.execute(sql, params)
        if sql.startswith("SELECT value"):
            row = cur.fetchone()
            self._other.set(self._key, {"v": 2}, ttl_seconds=60)
            return _Rows(row)
        return cur

    def commit(self):
        self._conn.commit()


class _Rows:
    def __init__(self, row):
        self._row = row

    def fetchone(self):
        return self._row


def test_corrupt_heal_keeps_concurrent_refresh(cache, settings, clock):
    cache.set("k1", {"v": 1}, ttl_seconds=60)
    cache._conn.execute("UPDATE cache SET value = '{not json' WHERE key = 'k1'")
    cache._conn.commit()

    other = ExtractionCache(settings.cache.db_path, clock=clock)
    real = cache._conn
    cache._conn = _RefreshAfterRead(real, other, "k1")
    try:
        assert cache.get("k1") is None
    finally:
        cache._conn = real
        other.close()

    assert cache.get("k1") == {"v": 2}


def test_delete(cache):
    cache.set("k1", {"v": 1}, ttl_seconds=60)
    cache.delete("k1")
    assert cache.get("k1") is None


def test_sweep_removes_only_expired(cache, clock):
    cache.set("old", {"v": 1}, ttl_seconds=10)
    cache.set("new", {"v": 2}, ttl_seconds=100)
    clock.advance(10)

    assert cache.sweep_expired() == 1
    assert cache.get("new") == {"v": 2}
    assert cache.stats() == {"total": 1, "expired": 0}


def test_sweep_spares_row_refreshed_on_another_connection(cache, settings, clock):
    cache.set("k1", {"v": 1}, ttl_seconds=10)
    clock.advance(15)
    other = ExtractionCache(settings.cache.db_path, clock=clock)
    try:
        other.set("k1", {"v": 2}, ttl_seconds=10)
        assert cache.sweep_expired() == 0
        assert cache.get("k1") == {"v": 2}
    finally:
        other.close()


def test_expires_at(cache, clock):
    cache.set("k1", {"v": 1}, ttl_seconds=60)
    assert cache.expires_at("k1") == clock().timestamp() + 60
    assert cache.expires_at("missing") is None


def test_sweep_once_covers_tokens(cache, confirmations, clock):
    cache.set("k1", {"v": 1}, ttl_seconds=5)
    clock.advance(5)
    assert sweep_once(cache, confirmations) == {"cache": 1, "confirmations": 0}


def test_unreadable_file_is_storage_corrupted(tmp_path):
    path = tmp_path / "cache.db"
    path.write_bytes(b"this is not a sqlite database" * 200)
    with pytest.raises(StorageCorrupted):
        ExtractionCache(path)


def test_sweeper_survives_locked_database(monkeypatch, settings):
    calls = []
    second_sweep = threading.Event()

    def flaky_sweep(cache, confirmations):
        calls.append(1)
        if len(calls) == 1:
            raise sqlite3.OperationalError("database is locked")
        second_sweep.set()
        return {"cache": 0, "confirmations": 0}

    monkeypatch.setattr(sweeper, "sweep_once", flaky_sweep)
    thread = CacheSweeper(settings.cache.db_path, interval_seconds=0.01)
    thread.start()
    try:
        assert second_sweep.wait(timeout=5)
        assert thread.is_alive()
    finally:
        thread.stop()
        thread.join(timeout=5)
    assert len(calls) >= 2
