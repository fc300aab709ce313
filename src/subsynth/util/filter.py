"""Dedup filters.

Each service keeps one filter per direction: names it has already taken in,
and names it has already sent out. Filters live for the whole run and are
never cleared.
"""

import threading
from typing import Set


class StringFilter:
    """Thread-safe set with test-and-set membership."""

    def __init__(self):
        self._seen: Set[str] = set()
        self._lock = threading.Lock()

    def duplicate(self, s: str) -> bool:
        """Return True if s was seen before. Otherwise remember it and return False."""
        with self._lock:
            if s in self._seen:
                return True
            self._seen.add(s)
            return False

    def __contains__(self, s: str) -> bool:
        with self._lock:
            return s in self._seen

    def __len__(self) -> int:
        with self._lock:
            return len(self._seen)
