"""In-process key-value cache with per-entry TTL.

Only a hand-off and polling optimisation: anything read from here must also
be recoverable from the durable store.
"""

from __future__ import annotations

import threading
import time
from typing import Any, Callable


class TTLCache:
    """Key-value store with lazy expiry."""

    def __init__(self, default_ttl: float = 60, clock: Callable[[], float] = time.time):
        self.default_ttl = default_ttl
        self._clock = clock
        self._entries: dict[str, tuple[Any, float]] = {}
        self._lock = threading.Lock()

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return default
            value, expires_at = entry
            if expires_at <= self._clock():
                del self._entries[key]
                return default
            return value

    def set(self, key: str, value: Any, ttl: float | None = None):
        expires_at = self._clock() + (self.default_ttl if ttl is None else ttl)
        with self._lock:
            self._entries[key] = (value, expires_at)

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def keys(self, prefix: str = "") -> list[str]:
        now = self._clock()
        with self._lock:
            return [k for k, (_, exp) in self._entries.items() if k.startswith(prefix) and exp > now]

    def clear(self):
        with self._lock:
            self._entries.clear()

    def __contains__(self, key: str) -> bool:
        return self.get(key, _MISSING) is not _MISSING

    def __len__(self) -> int:
        return len(self.keys())


_MISSING = object()
