"""
Injected cache for lookup memoization (geocoding, museum artifacts).

Two backings:
  MemoryCache  in-process dict, lost on restart (tests, single worker)
  StoreCache   rows in the ``cache_entries`` table, shared by every worker
               pointed at the same database

Cached values may legitimately be ``None`` ("looked up, nothing found"), so
``get`` takes an explicit default and callers compare against ``MISSING``.
"""

from __future__ import annotations

import threading
import time
from datetime import datetime, timedelta
from typing import Any, Optional

MISSING = object()


class Cache:
    async def get(self, key: str, default: Any = MISSING) -> Any:
        raise NotImplementedError

    async def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        raise NotImplementedError


class MemoryCache(Cache):
    def __init__(self):
        self._data: dict[str, tuple[Any, Optional[float]]] = {}
        self._lock = threading.Lock()

    async def get(self, key, default=MISSING):
        with self._lock:
            entry = self._data.get(key)
            if entry is None:
                return default
            value, expires = entry
            if expires is not None and expires < time.monotonic():
                del self._data[key]
                return default
            return value

    async def set(self, key, value, ttl_seconds=None):
        expires = time.monotonic() + ttl_seconds if ttl_seconds else None
        with self._lock:
            self._data[key] = (value, expires)

    def __len__(self) -> int:
        return len(self._data)


class StoreCache(Cache):
    """Cache rows kept in the record store's ``cache_entries`` table."""

    TABLE = "cache_entries"

    def __init__(self, store):
        self.store = store

    async def get(self, key, default=MISSING):
        row = await self.store.select_one(self.TABLE, {"key": key})
        if row is None:
            return default
        expires_at = row.get("expires_at")
        if expires_at is not None and expires_at < datetime.utcnow():
            await self.store.delete(self.TABLE, {"key": key})
            return default
        return row["value"]

    async def set(self, key, value, ttl_seconds=None):
        expires_at = datetime.utcnow() + timedelta(seconds=ttl_seconds) if ttl_seconds else None
        await self.store.upsert(
            self.TABLE,
            {"key": key, "value": value, "expires_at": expires_at},
            conflict_key="key",
        )
