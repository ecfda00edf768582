from __future__ import annotations

import threading
import time
from typing import Callable, Dict, Optional, Protocol, Tuple


class EphemeralStore(Protocol):
    """Keyed string storage where every entry carries a TTL.

    Implemented by :class:`accountgate.storage.redis_cache.RedisCache` for shared
    deployments and by :class:`MemoryEphemeralStore` for a single process.
    """

    async def get_value(self, key: str) -> Optional[str]: ...

    async def set_value(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def set_value_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool: ...

    async def delete_value(self, key: str) -> bool: ...

    async def exists(self, key: str) -> bool: ...


class MemoryEphemeralStore:
    """Process-local TTL map.

    Expiry is checked lazily on read; writes sweep expired entries once the map
    has grown by ``sweep_every`` insertions since the last sweep.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.time,
        sweep_every: int = 256,
    ) -> None:
        self._clock = clock
        self._entries: Dict[str, Tuple[str, float]] = {}
        self._lock = threading.Lock()
        self._sweep_every = max(1, sweep_every)
        self._writes_since_sweep = 0

    def _live(self, key: str, now: float) -> Optional[str]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if now >= expires_at:
            self._entries.pop(key, None)
            return None
        return value

    def _store(self, key: str, value: str, ttl_seconds: int, now: float) -> None:
        self._entries[key] = (value, now + max(1, int(ttl_seconds)))
        self._writes_since_sweep += 1
        if self._writes_since_sweep >= self._sweep_every:
            self._sweep(now)

    def _sweep(self, now: float) -> int:
        expired = [k for k, (_, exp) in self._entries.items() if now >= exp]
        for key in expired:
            self._entries.pop(key, None)
        self._writes_since_sweep = 0
        return len(expired)

    async def get_value(self, key: str) -> Optional[str]:
        with self._lock:
            return self._live(key, self._clock())

    async def set_value(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._lock:
            self._store(key, value, ttl_seconds, self._clock())

    async def set_value_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        with self._lock:
            now = self._clock()
            if self._live(key, now) is not None:
                return False
            self._store(key, value, ttl_seconds, now)
            return True

    async def delete_value(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    async def exists(self, key: str) -> bool:
        with self._lock:
            return self._live(key, self._clock()) is not None

    def sweep_expired(self) -> int:
        with self._lock:
            return self._sweep(self._clock())

    def __len__(self) -> int:
        return len(self._entries)


__all__ = ["EphemeralStore", "MemoryEphemeralStore"]
