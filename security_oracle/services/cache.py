import threading
import time
from typing import Any, Callable, Dict, Generic, Optional, Tuple, TypeVar

T = TypeVar("T")

DEFAULT_MAX_ENTRIES = 1024
SWEEP_INTERVAL_SECONDS = 60


class TTLCache(Generic[T]):
    """
    Small thread-safe key/value cache with a fixed time-to-live.

    Entries are replaced wholesale on set; nothing is merged. Expired entries
    are swept on set, at most once per sweep interval, and the cache never
    holds more than max_entries: the entry closest to expiry is dropped
    first. Hit and miss counters are kept for the health endpoint.
    """

    def __init__(
        self,
        ttl_seconds: float,
        clock: Callable[[], float] = time.monotonic,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        sweep_interval_seconds: float = SWEEP_INTERVAL_SECONDS,
    ):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._sweep_interval = sweep_interval_seconds
        # Insertion order is expiry order: every entry gets the same TTL
        self._entries: Dict[str, Tuple[float, T]] = {}
        self._lock = threading.Lock()
        self._last_sweep = clock()
        self.hits = 0
        self.misses = 0

    def get(self, key: str) -> Optional[T]:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return None
            expires_at, value = entry
            if expires_at <= now:
                del self._entries[key]
                self.misses += 1
                return None
            self.hits += 1
            return value

    def set(self, key: str, value: T) -> None:
        now = self._clock()
        with self._lock:
            self._entries.pop(key, None)
            self._entries[key] = (now + self.ttl_seconds, value)
            if now - self._last_sweep >= self._sweep_interval:
                self._sweep(now)
            while len(self._entries) > self.max_entries:
                del self._entries[next(iter(self._entries))]

    def _sweep(self, now: float) -> None:
        expired = [key for key, (expires_at, _) in self._entries.items() if expires_at <= now]
        for key in expired:
            del self._entries[key]
        self._last_sweep = now

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        now = self._clock()
        with self._lock:
            return sum(1 for expires_at, _ in self._entries.values() if expires_at > now)

    def stored(self) -> int:
        """Entries held, including expired ones not yet swept."""
        with self._lock:
            return len(self._entries)

    def stats(self) -> Dict[str, Any]:
        total = self.hits + self.misses
        return {
            "size": len(self),
            "max_entries": self.max_entries,
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": round(self.hits / total, 3) if total else 0.0,
            "ttl_seconds": self.ttl_seconds,
        }
