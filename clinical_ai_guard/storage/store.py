"""
Shared key-value store contract.

Every governance component reads and writes through this interface so that
counters, cache entries and alerts are visible to all request handlers.
"""

import copy
import fnmatch
import threading
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Tuple

# Attempts before a contended mutate() gives up
MAX_CAS_ATTEMPTS = 50

# Seconds between opportunistic sweeps of expired entries on write
PURGE_INTERVAL = 60


class StoreContentionError(RuntimeError):
    """Raised when a compare-and-set loop cannot make progress."""


class KeyValueStore(ABC):
    """Abstract shared store.

    Values must be JSON-serializable. Backends that can enumerate keys by
    glob pattern set ``supports_patterns`` to True and implement
    ``keys_matching``.
    """

    supports_patterns: bool = False

    @abstractmethod
    def get(self, key: str, default: Any = None) -> Any:
        """Return the live value for key, or default if missing or expired."""

    @abstractmethod
    def put(self, key: str, value: Any, ttl: int) -> None:
        """Store value under key for ttl seconds."""

    @abstractmethod
    def forget(self, key: str) -> bool:
        """Delete key. Returns True if a live value was removed."""

    @abstractmethod
    def increment_with_ttl(self, key: str, ttl: int, amount: int = 1) -> int:
        """Atomically add amount to an integer counter and return the new value.

        A missing or expired counter starts from zero and receives ttl. An
        existing counter keeps its original expiry so that a window never
        outlives its bucket.
        """

    @abstractmethod
    def compare_and_set(self, key: str, expected: Any, new: Any, ttl: int) -> bool:
        """Atomically replace the value of key if it currently equals expected.

        ``expected=None`` means the key must be missing or expired.
        """

    def keys_matching(self, pattern: str) -> List[str]:
        """Return live keys matching a glob pattern.

        Raises:
            NotImplementedError: If the backend cannot enumerate keys
        """
        raise NotImplementedError(f"{type(self).__name__} cannot enumerate keys")

    def purge_expired(self) -> int:
        """Delete expired entries and return how many were removed.

        Backends whose server expires keys on its own return 0.
        """
        return 0

    def mutate(
        self,
        key: str,
        fn: Callable[[Any], Any],
        ttl: int,
        default: Any = None,
    ) -> Any:
        """Apply fn to the current value atomically using a CAS retry loop.

        Args:
            key: Store key
            fn: Pure function from current value to new value
            ttl: TTL applied to the written value
            default: Value handed to fn when the key is missing

        Returns:
            The value written

        Raises:
            StoreContentionError: If the update keeps losing races
        """
        for _ in range(MAX_CAS_ATTEMPTS):
            current = self.get(key)
            updated = fn(default if current is None else current)
            if self.compare_and_set(key, current, updated, ttl):
                return updated
        raise StoreContentionError(f"Could not update {key} after {MAX_CAS_ATTEMPTS} attempts")


class MemoryStore(KeyValueStore):
    """Thread-safe in-process store.

    Suitable for a single worker process and for tests. Pattern enumeration is
    off by default to model drivers that cannot scan keys. Writes sweep expired
    entries at most once per ``purge_interval`` seconds, so windows that are
    never read again do not accumulate.
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.time,
        pattern_matching: bool = False,
        purge_interval: float = PURGE_INTERVAL,
    ):
        self._clock = clock
        self._data: Dict[str, Tuple[Any, float]] = {}
        self._lock = threading.RLock()
        self.supports_patterns = pattern_matching
        self._purge_interval = purge_interval
        self._last_purge = clock()

    def _purge_if_due(self) -> None:
        if self._clock() - self._last_purge >= self._purge_interval:
            self.purge_expired()

    def purge_expired(self) -> int:
        with self._lock:
            now = self._clock()
            expired = [key for key, (_, expires_at) in self._data.items() if expires_at <= now]
            for key in expired:
                del self._data[key]
            self._last_purge = now
            return len(expired)

    def _live(self, key: str) -> Optional[Tuple[Any, float]]:
        entry = self._data.get(key)
        if entry is None:
            return None
        if entry[1] <= self._clock():
            del self._data[key]
            return None
        return entry

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            entry = self._live(key)
            return default if entry is None else copy.deepcopy(entry[0])

    def put(self, key: str, value: Any, ttl: int) -> None:
        with self._lock:
            self._purge_if_due()
            self._data[key] = (copy.deepcopy(value), self._clock() + ttl)

    def forget(self, key: str) -> bool:
        with self._lock:
            entry = self._live(key)
            self._data.pop(key, None)
            return entry is not None

    def increment_with_ttl(self, key: str, ttl: int, amount: int = 1) -> int:
        with self._lock:
            self._purge_if_due()
            entry = self._live(key)
            if entry is None:
                value, expires_at = amount, self._clock() + ttl
            else:
                value, expires_at = int(entry[0]) + amount, entry[1]
            self._data[key] = (value, expires_at)
            return value

    def compare_and_set(self, key: str, expected: Any, new: Any, ttl: int) -> bool:
        with self._lock:
            self._purge_if_due()
            entry = self._live(key)
            current = None if entry is None else entry[0]
            if current != expected:
                return False
            self._data[key] = (copy.deepcopy(new), self._clock() + ttl)
            return True

    def keys_matching(self, pattern: str) -> List[str]:
        if not self.supports_patterns:
            return super().keys_matching(pattern)
        with self._lock:
            return [
                key for key in list(self._data)
                if fnmatch.fnmatchcase(key, pattern) and self._live(key) is not None
            ]

    def flush(self) -> None:
        """Drop every key."""
        with self._lock:
            self._data.clear()
