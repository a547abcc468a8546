"""Small in-process TTL cache driven by an injectable clock."""

from __future__ import annotations

from copy import deepcopy
import logging
from threading import RLock
from typing import Any, Callable, Dict, Optional, Tuple, TypeVar

from .clock import Clock, SystemClock

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TTLCache:
    """
    Keyed cache where each entry expires ``ttl_seconds`` after it was loaded.

    Entries are deep-copied on the way in and out so callers cannot mutate
    shared state.
    """

    def __init__(self, clock: Optional[Clock] = None) -> None:
        self.clock = clock or SystemClock()
        self._entries: Dict[str, Tuple[float, Any]] = {}
        self._lock = RLock()

    def get_or_refresh(self, key: str, ttl_seconds: float, loader: Callable[[], T]) -> T:
        now = self.clock.monotonic()
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and now < entry[0]:
                return deepcopy(entry[1])

        value = loader()
        with self._lock:
            if ttl_seconds > 0:
                self._entries[key] = (now + ttl_seconds, deepcopy(value))
            else:
                self._entries.pop(key, None)
        logger.debug(f"Refreshed cache entry {key}")
        return value

    def peek(self, key: str) -> Optional[Any]:
        """Return the cached value if still fresh, without loading."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or self.clock.monotonic() >= entry[0]:
                return None
            return deepcopy(entry[1])

    def invalidate(self, key: Optional[str] = None) -> None:
        with self._lock:
            if key is None:
                self._entries.clear()
            else:
                self._entries.pop(key, None)
