"""
Unit tests for the session snapshot storages.
"""

import json
import os
import time

import pytest

from medpay.config import TOKEN_EXPIRY_HOURS
from medpay.storage import JsonFileStorage, MemoryStorage, RedisStorage, build_storage

SNAPSHOT = {
    "identity": {"id": "u1", "display_name": "Ana", "email": "ana@alfa.com", "role": "usuario"},
    "company_grants": [{"user_id": "u1", "company_id": "emp-a", "company_name": "Clínica Alfa"}],
}


class FakeRedis:
    """Mimic the subset of redis.Redis used by RedisStorage."""
    def __init__(self):
        self.data = {}
        self.expiries = {}

    def set(self, key, value, ex=None):
        self.data[key] = value
        self.expiries[key] = ex

    def get(self, key):
        return self.data.get(key)

    def delete(self, key):
        self.data.pop(key, None)


# ── Tests: MemoryStorage ─────────────────────────────────────────────

def test_memory_storage_save_load_clear():
    storage = MemoryStorage()
    assert storage.load("k") is None
    storage.save("k", SNAPSHOT)
    assert storage.load("k") == SNAPSHOT
    storage.clear("k")
    assert storage.load("k") is None


def test_memory_storage_returns_copies():
    storage = MemoryStorage()
    storage.save("k", SNAPSHOT)
    storage.load("k")["identity"]["role"] = "admin"
    assert storage.load("k")["identity"]["role"] == "usuario"


def test_memory_storage_clear_missing_key_is_fine():
    MemoryStorage().clear("missing")


def test_memory_storage_expires_after_ttl():
    now = [100.0]
    storage = MemoryStorage(ttl_seconds=60, clock=lambda: now[0])
    storage.save("old", SNAPSHOT)
    now[0] += 30
    storage.save("new", SNAPSHOT)
    now[0] += 31

    assert storage.purge_expired() == 1
    assert storage.load("old") is None
    assert storage.load("new") == SNAPSHOT
    now[0] += 60
    assert storage.load("new") is None


# ── Tests: JsonFileStorage ───────────────────────────────────────────

def test_file_storage_save_load_clear(tmp_path):
    storage = JsonFileStorage(str(tmp_path / "sessions"))
    storage.save("medpay.auth.session", SNAPSHOT)
    assert storage.load("medpay.auth.session") == SNAPSHOT
    storage.clear("medpay.auth.session")
    assert storage.load("medpay.auth.session") is None
    storage.clear("medpay.auth.session")


def test_file_storage_sanitizes_keys(tmp_path):
    storage = JsonFileStorage(str(tmp_path))
    storage.save("../escape/key", SNAPSHOT)
    files = [p.name for p in tmp_path.iterdir()]
    assert files == [".._escape_key.json"]
    assert storage.load("../escape/key") == SNAPSHOT


def test_file_storage_leaves_no_temp_file(tmp_path):
    storage = JsonFileStorage(str(tmp_path))
    storage.save("k", SNAPSHOT)
    assert not list(tmp_path.glob("*.tmp"))


def test_file_storage_ignores_corrupt_file(tmp_path, capsys):
    storage = JsonFileStorage(str(tmp_path))
    (tmp_path / "k.json").write_text("{not json", encoding="utf-8")
    assert storage.load("k") is None
    assert "[WARN]" in capsys.readouterr().err


def test_file_storage_expires_by_mtime(tmp_path):
    storage = JsonFileStorage(str(tmp_path), ttl_seconds=60)
    storage.save("old", SNAPSHOT)
    storage.save("stale", SNAPSHOT)
    storage.save("fresh", SNAPSHOT)
    hour_ago = time.time() - 3600
    for name in ("old", "stale"):
        os.utime(tmp_path / f"{name}.json", (hour_ago, hour_ago))

    assert storage.load("old") is None
    assert not (tmp_path / "old.json").exists()
    assert storage.purge_expired() == 1
    assert [p.name for p in tmp_path.iterdir()] == ["fresh.json"]
    assert storage.load("fresh") == SNAPSHOT


def test_file_storage_without_ttl_keeps_everything(tmp_path):
    storage = JsonFileStorage(str(tmp_path))
    storage.save("k", SNAPSHOT)
    os.utime(tmp_path / "k.json", (0, 0))
    assert storage.purge_expired() == 0
    assert storage.load("k") == SNAPSHOT


# ── Tests: RedisStorage ──────────────────────────────────────────────

def test_redis_storage_round_trip_with_ttl():
    client = FakeRedis()
    storage = RedisStorage(client=client, ttl_seconds=3600)
    storage.save("k", SNAPSHOT)
    assert json.loads(client.data["k"]) == SNAPSHOT
    assert client.expiries["k"] == 3600
    assert storage.load("k") == SNAPSHOT
    storage.clear("k")
    assert storage.load("k") is None


# ── Tests: build_storage ─────────────────────────────────────────────

def test_build_storage_kinds():
    assert isinstance(build_storage("memory"), MemoryStorage)
    assert isinstance(build_storage(" File "), JsonFileStorage)
    assert isinstance(build_storage("redis"), RedisStorage)
    assert isinstance(build_storage(""), MemoryStorage)


def test_build_storage_expires_with_the_token():
    day = TOKEN_EXPIRY_HOURS * 3600
    assert build_storage("memory").ttl_seconds == day
    assert build_storage("file").ttl_seconds == day
    assert build_storage("redis").ttl_seconds == day


def test_build_storage_unknown_kind():
    with pytest.raises(ValueError, match="Unknown session storage"):
        build_storage("sqlite")
