"""Track durations known to the media proxy.

The proxy parses the real container duration while forwarding the stream and
records it here; the position monitor prefers it over what the renderer reports.
The proxy may run on another thread, so access is guarded by a threading lock.
"""

from __future__ import annotations

import threading


class DurationCache:
    def __init__(self):
        self._lock = threading.Lock()
        self._durations: dict[str, int] = {}

    def get(self, item_id: str) -> int | None:
        with self._lock:
            return self._durations.get(item_id)

    def set(self, item_id: str, seconds: float) -> None:
        if seconds <= 0:
            return
        with self._lock:
            self._durations[item_id] = int(seconds)

    def discard(self, item_id: str) -> None:
        with self._lock:
            self._durations.pop(item_id, None)

    def __contains__(self, item_id: str) -> bool:
        with self._lock:
            return item_id in self._durations

    def __len__(self) -> int:
        with self._lock:
            return len(self._durations)
