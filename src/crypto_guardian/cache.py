from __future__ import annotations

import time
from collections import OrderedDict
from collections.abc import Callable
from typing import Any


class TTLCache:
    """In-process response cache with a fixed time-to-live.

    Entries expire on read; writes also purge expired entries from the
    oldest end so the map does not grow with keys nobody asks for again.
    """

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: OrderedDict[str, tuple[float, Any]] = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: str) -> Any | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            return None
        return value

    def set(self, key: str, value: Any) -> None:
        now = self._clock()
        self._purge(now)
        self._entries.pop(key, None)
        self._entries[key] = (now + self.ttl_seconds, value)

    def _purge(self, now: float) -> None:
        while self._entries:
            first_key = next(iter(self._entries))
            if self._entries[first_key][0] > now:
                break
            self._entries.popitem(last=False)
