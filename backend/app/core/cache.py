from __future__ import annotations

import threading
import time
from typing import Any, Callable


class TTLCache:
    """Per-process key/value cache with a fixed time-to-live.

    Instances are created by the app factory (or by tests) and injected where
    needed; there is no module-level cache.
    """

    def __init__(self, *, ttl_seconds: float, clock: Callable[[], float] = time.monotonic):
        self._ttl = float(ttl_seconds)
        self._clock = clock
        self._data: dict[str, tuple[Any, float]] = {}
        self._lock = threading.Lock()

    @property
    def ttl_seconds(self) -> float:
        return self._ttl

    def get(self, key: str) -> Any | None:
        with self._lock:
            entry = self._data.get(key)
            if entry is None:
                return None
            value, stored_at = entry
            if self._clock() - stored_at >= self._ttl:
                self._data.pop(key, None)
                return None
            return value

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._data[key] = (value, self._clock())

    def clear(self) -> None:
        with self._lock:
            self._data.clear()

    def __len__(self) -> int:
        return len(self._data)
