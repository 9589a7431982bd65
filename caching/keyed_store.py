"""
Injectable keyed store with TTL support

Backs the reconciliation monitor registry and the gas-balance cache. Services
receive a store instance instead of reaching for module globals, so a shared
external store can be dropped in for multi-instance deployments by
implementing the same coroutine interface.
"""

import asyncio
import logging
import time
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


class KeyedStore:
    """Coroutine interface every store implementation provides"""

    async def get(self, key: str, default: Any = None) -> Any:
        raise NotImplementedError

    async def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        raise NotImplementedError

    async def set_if_absent(self, key: str, value: Any, ttl: Optional[float] = None) -> bool:
        """Atomically store value unless a live entry exists; True when stored"""
        raise NotImplementedError

    async def delete(self, key: str) -> bool:
        raise NotImplementedError

    async def exists(self, key: str) -> bool:
        raise NotImplementedError

    async def keys(self, prefix: str = "") -> List[str]:
        raise NotImplementedError


class InMemoryKeyedStore(KeyedStore):
    """Process-local store guarded by an asyncio lock"""

    def __init__(self, default_ttl: Optional[float] = None, clock: Callable[[], float] = time.monotonic):
        self._entries: Dict[str, Dict[str, Any]] = {}
        self._lock = asyncio.Lock()
        self.default_ttl = default_ttl
        self._clock = clock
        self.stats = {"hits": 0, "misses": 0, "sets": 0, "deletes": 0, "evictions": 0}

    def _expires_at(self, ttl: Optional[float]) -> Optional[float]:
        ttl = self.default_ttl if ttl is None else ttl
        return None if ttl is None else self._clock() + ttl

    def _live_entry(self, key: str) -> Optional[Dict[str, Any]]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry["expires_at"] is not None and entry["expires_at"] <= self._clock():
            del self._entries[key]
            self.stats["evictions"] += 1
            return None
        return entry

    async def get(self, key: str, default: Any = None) -> Any:
        async with self._lock:
            entry = self._live_entry(key)
            if entry is None:
                self.stats["misses"] += 1
                return default
            self.stats["hits"] += 1
            return entry["value"]

    async def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        async with self._lock:
            self._entries[key] = {
                "value": value,
                "created_at": self._clock(),
                "expires_at": self._expires_at(ttl),
            }
            self.stats["sets"] += 1

    async def set_if_absent(self, key: str, value: Any, ttl: Optional[float] = None) -> bool:
        async with self._lock:
            if self._live_entry(key) is not None:
                return False
            self._entries[key] = {
                "value": value,
                "created_at": self._clock(),
                "expires_at": self._expires_at(ttl),
            }
            self.stats["sets"] += 1
            return True

    async def delete(self, key: str) -> bool:
        async with self._lock:
            if key in self._entries:
                del self._entries[key]
                self.stats["deletes"] += 1
                return True
            return False

    async def exists(self, key: str) -> bool:
        async with self._lock:
            return self._live_entry(key) is not None

    async def keys(self, prefix: str = "") -> List[str]:
        async with self._lock:
            return [k for k in list(self._entries) if k.startswith(prefix) and self._live_entry(k) is not None]

    async def clear(self) -> None:
        async with self._lock:
            self.stats["deletes"] += len(self._entries)
            self._entries.clear()

    def get_stats(self) -> Dict[str, Any]:
        """Get store statistics"""
        total_requests = self.stats["hits"] + self.stats["misses"]
        hit_rate = (self.stats["hits"] / total_requests * 100) if total_requests > 0 else 0
        return {
            **self.stats,
            "total_requests": total_requests,
            "hit_rate_percent": round(hit_rate, 2),
            "size": len(self._entries),
        }
