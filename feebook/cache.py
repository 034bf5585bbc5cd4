import threading
import time
from typing import Any, Optional, Protocol


class Cache(Protocol):
    def get(self, key: str) -> Optional[Any]: ...

    def set(self, key: str, value: Any, ttl: float) -> None: ...


class TTLCache:
    """In-process cache; entries disappear ``ttl`` seconds after ``set``."""

    def __init__(self, clock=time.monotonic):
        self._clock = clock
        self._entries = {}
        self._lock = threading.Lock()

    def get(self, key):
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if self._clock() >= expires_at:
                del self._entries[key]
                return None
            return value

    def set(self, key, value, ttl):
        with self._lock:
            self._entries[key] = (self._clock() + ttl, value)


dashboard_cache = TTLCache()


def get_dashboard_cache():
    return dashboard_cache
