from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Hashable, Optional

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class _Entry:
    value: Any
    stored_at: float


class AnalysisCache:
    """In-process TTL cache for analysis responses, keyed by symbol.

    Entries are evicted when read after expiry; there is no capacity bound.
    """

    def __init__(self, ttl_seconds: float = 60.0, clock: Callable[[], float] = time.monotonic) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[Hashable, _Entry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def _is_fresh(self, entry: _Entry, now: float) -> bool:
        return now - entry.stored_at < self.ttl_seconds

    def get(self, key: Hashable) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if not self._is_fresh(entry, self._clock()):
            del self._entries[key]
            logger.debug("Analysis cache entry for %s expired", key)
            return None
        return entry.value

    def set(self, key: Hashable, value: Any) -> None:
        self._entries[key] = _Entry(value=value, stored_at=self._clock())

    def expire(self, key: Hashable) -> bool:
        return self._entries.pop(key, None) is not None

    def purge_expired(self) -> int:
        now = self._clock()
        stale = [key for key, entry in self._entries.items() if not self._is_fresh(entry, now)]
        for key in stale:
            del self._entries[key]
        return len(stale)


__all__ = ["AnalysisCache"]
