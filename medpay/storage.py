"""
Durable storage for session snapshots: save / load / clear by key.

The Session Store only ever talks to this interface, so the backing store can
be swapped (memory for tests and the API default, a JSON file for the
terminal client, Redis when several API workers share sessions).

Every storage takes an optional `ttl_seconds`; a snapshot older than that is
treated as absent and removed by `purge_expired()`.
"""

import functools
import glob
import json
import os
import re
import sys
import time
from typing import Any, Callable, Dict, Optional, Tuple

import redis

from medpay.config import REDIS_URL, SESSION_STORAGE, SESSION_STORAGE_DIR, SESSION_TTL_SECONDS


class MemoryStorage:
    def __init__(self, ttl_seconds: Optional[int] = None, clock: Callable[[], float] = time.time):
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self._items: Dict[str, Tuple[float, str]] = {}

    def _expired(self, saved_at: float) -> bool:
        return self.ttl_seconds is not None and self.clock() - saved_at > self.ttl_seconds

    def save(self, key: str, snapshot: Dict[str, Any]) -> None:
        self._items[key] = (self.clock(), json.dumps(snapshot))

    def load(self, key: str) -> Optional[Dict[str, Any]]:
        entry = self._items.get(key)
        if entry is None:
            return None
        saved_at, raw = entry
        if self._expired(saved_at):
            self._items.pop(key, None)
            return None
        return json.loads(raw)

    def clear(self, key: str) -> None:
        self._items.pop(key, None)

    def purge_expired(self) -> int:
        expired = [k for k, (saved_at, _raw) in list(self._items.items()) if self._expired(saved_at)]
        for key in expired:
            self._items.pop(key, None)
        return len(expired)


class JsonFileStorage:
    """One JSON file per key under *directory*; a file's age is its mtime."""

    def __init__(self, directory: str = SESSION_STORAGE_DIR, ttl_seconds: Optional[int] = None):
        self.directory = directory
        self.ttl_seconds = ttl_seconds

    def _path(self, key: str) -> str:
        safe = re.sub(r"[^A-Za-z0-9_.-]", "_", key)
        return os.path.join(self.directory, f"{safe}.json")

    def _expired(self, path: str) -> bool:
        if self.ttl_seconds is None:
            return False
        return time.time() - os.path.getmtime(path) > self.ttl_seconds

    def _remove(self, path: str) -> None:
        try:
            os.remove(path)
        except FileNotFoundError:
            pass

    def save(self, key: str, snapshot: Dict[str, Any]) -> None:
        os.makedirs(self.directory, exist_ok=True)
        path = self._path(key)
        tmp = path + ".tmp"
        with open(tmp, "w", encoding="utf-8") as fh:
            json.dump(snapshot, fh)
        os.replace(tmp, path)

    def load(self, key: str) -> Optional[Dict[str, Any]]:
        path = self._path(key)
        if not os.path.exists(path):
            return None
        if self._expired(path):
            self._remove(path)
            return None
        with open(path, encoding="utf-8") as fh:
            try:
                return json.load(fh)
            except json.JSONDecodeError as e:
                print(f"[WARN] Ignoring unreadable session file {path}: {e}", file=sys.stderr)
                return None

    def clear(self, key: str) -> None:
        self._remove(self._path(key))

    def purge_expired(self) -> int:
        removed = 0
        for path in glob.glob(os.path.join(self.directory, "*.json")):
            if self._expired(path):
                self._remove(path)
                removed += 1
        return removed


@functools.lru_cache()
def get_redis_client() -> redis.Redis:
    """Redis client (cached), created lazily to avoid import-time connections."""
    return redis.from_url(REDIS_URL, decode_responses=True)


class RedisStorage:
    """Keys carry a server-side TTL, so Redis expires them on its own."""

    def __init__(self, client: Optional[redis.Redis] = None, ttl_seconds: Optional[int] = None):
        self._client = client
        self.ttl_seconds = ttl_seconds

    @property
    def client(self) -> redis.Redis:
        if self._client is None:
            self._client = get_redis_client()
        return self._client

    def save(self, key: str, snapshot: Dict[str, Any]) -> None:
        self.client.set(key, json.dumps(snapshot), ex=self.ttl_seconds)

    def load(self, key: str) -> Optional[Dict[str, Any]]:
        raw = self.client.get(key)
        return json.loads(raw) if raw else None

    def clear(self, key: str) -> None:
        self.client.delete(key)

    def purge_expired(self) -> int:
        return 0


def build_storage(kind: str = SESSION_STORAGE, ttl_seconds: Optional[int] = SESSION_TTL_SECONDS):
    """Return the storage named by SESSION_STORAGE (memory, file or redis)."""
    kind = (kind or "memory").strip().lower()
    if kind == "memory":
        return MemoryStorage(ttl_seconds=ttl_seconds)
    if kind == "file":
        return JsonFileStorage(ttl_seconds=ttl_seconds)
    if kind == "redis":
        return RedisStorage(ttl_seconds=ttl_seconds)
    raise ValueError(f"Unknown session storage '{kind}' (expected memory, file or redis).")
