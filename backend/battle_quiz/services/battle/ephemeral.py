import threading
import time
from typing import Any, Dict, Hashable, List, Optional, Tuple


class ExpiringStore:
    """Process-wide keyed store with explicit expiry timestamps.

    Expiry is checked on every access; nothing relies on garbage collection
    or process lifetime. Counters share the same expiry rules so retry
    budgets reset on their own once the window passes.
    """

    def __init__(self, clock=time.time):
        self._clock = clock
        self._lock = threading.Lock()
        self._items: Dict[Hashable, Tuple[Any, Optional[float]]] = {}

    def _alive(self, key: Hashable, now: float) -> bool:
        entry = self._items.get(key)
        if entry is None:
            return False
        _, expires_at = entry
        if expires_at is not None and expires_at <= now:
            del self._items[key]
            return False
        return True

    def set(self, key: Hashable, value: Any, ttl: Optional[float] = None) -> None:
        with self._lock:
            expires_at = self._clock() + ttl if ttl is not None else None
            self._items[key] = (value, expires_at)

    def get(self, key: Hashable, default: Any = None) -> Any:
        with self._lock:
            if not self._alive(key, self._clock()):
                return default
            return self._items[key][0]

    def pop(self, key: Hashable, default: Any = None) -> Any:
        with self._lock:
            if not self._alive(key, self._clock()):
                return default
            return self._items.pop(key)[0]

    def __contains__(self, key: Hashable) -> bool:
        with self._lock:
            return self._alive(key, self._clock())

    def expires_at(self, key: Hashable) -> Optional[float]:
        with self._lock:
            if not self._alive(key, self._clock()):
                return None
            return self._items[key][1]

    def incr(self, key: Hashable, ttl: Optional[float] = None) -> int:
        """Bump a counter; a fresh counter starts at 1 with the given ttl."""
        with self._lock:
            now = self._clock()
            if self._alive(key, now):
                count, expires_at = self._items[key]
                self._items[key] = (count + 1, expires_at)
                return count + 1
            self._items[key] = (1, now + ttl if ttl is not None else None)
            return 1

    def keys(self) -> List[Hashable]:
        with self._lock:
            now = self._clock()
            return [k for k in list(self._items) if self._alive(k, now)]

    def clear(self) -> None:
        with self._lock:
            self._items.clear()
